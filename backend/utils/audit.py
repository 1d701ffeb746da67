from database import database
from models import AuditLog, AuditAction
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)


def calculate_diff(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Field-level diff of two state snapshots.

    Only non-empty groups are returned: "added", "removed" and "changed"
    (the latter as {"from": old, "to": new}).
    """
    before = before or {}
    after = after or {}
    added = {k: after[k] for k in after.keys() - before.keys()}
    removed = {k: before[k] for k in before.keys() - after.keys()}
    changed = {
        k: {"from": before[k], "to": after[k]}
        for k in before.keys() & after.keys()
        if before[k] != after[k]
    }
    diff = {"added": added, "removed": removed, "changed": changed}
    return {group: values for group, values in diff.items() if values}


async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[str] = None,
    actor_id: Optional[str] = None,
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Write one audit_logs entry and return its audit_id.

    actor_role is "SYSTEM" for webhooks and scheduled jobs. When both states
    are given the diff is stored under metadata["diff"]. Failures are logged
    and an empty id is returned; the caller's operation always proceeds.
    """
    try:
        details = dict(metadata or {})
        if before_state and after_state:
            diff = calculate_diff(before_state, after_state)
            if diff:
                details["diff"] = diff

        entry = AuditLog(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=details or None,
        )
        doc = entry.model_dump()
        doc["timestamp"] = doc["timestamp"].isoformat()

        await database.get_db().audit_logs.insert_one(doc)
        logger.info("Audit log created: %s user_id=%s resource=%s/%s",
                    action.value, user_id, resource_type, resource_id)
        return entry.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log {getattr(action, 'value', action)}: {e}")
        return ""
