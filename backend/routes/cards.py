"""Card Routes - the resources tier limits apply to.

GET /api/cards - List the user's cards
POST /api/cards - Create a card (max_cards)
DELETE /api/cards/{card_id} - Delete a card
POST /api/cards/{card_id}/links - Add a link (max_links per card)
GET /api/cards/{card_id}/leads - Collected leads (lead_collection)
"""
from fastapi import APIRouter, HTTPException, Request, status
from datetime import datetime, timezone
from database import database
from models import Card, SocialLink, CreateCardRequest, AddLinkRequest, AuditAction
from services.entitlement_service import entitlement_service
from services.usage_service import usage_service
from middleware import user_route_guard
from middleware.feature_gating import require_feature
from utils.audit import create_audit_log
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cards", tags=["cards"])


async def _get_owned_card(user_id: str, card_id: str) -> dict:
    db = database.get_db()
    card = await db.cards.find_one({"card_id": card_id, "user_id": user_id}, {"_id": 0})
    if not card:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Card not found"
        )
    return card


@router.get("")
async def list_cards(request: Request):
    user = await user_route_guard(request)
    db = database.get_db()
    cards = await db.cards.find({"user_id": user["user_id"]}, {"_id": 0}).sort("created_at", 1).to_list(length=1000)
    return {"cards": cards, "count": len(cards)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_card(request: Request, body: CreateCardRequest):
    user = await user_route_guard(request)
    user_id = user["user_id"]

    allowed, message, details = await usage_service.can_create_card(user_id)
    if not allowed:
        await create_audit_log(
            action=AuditAction.USAGE_LIMIT_DENIED,
            actor_role=user.get("role"),
            actor_id=user_id,
            user_id=user_id,
            metadata={"limit": "max_cards", **(details or {})},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": message, **(details or {})}
        )

    card = Card(
        user_id=user_id,
        internal_name=body.internal_name,
        slug=f"site-{uuid.uuid4().hex[:8]}",
    )
    doc = card.model_dump()
    doc["created_at"] = doc["created_at"].isoformat()
    doc["updated_at"] = doc["updated_at"].isoformat()

    db = database.get_db()
    await db.cards.insert_one(doc)
    doc.pop("_id", None)

    await create_audit_log(
        action=AuditAction.CARD_CREATED,
        actor_role=user.get("role"),
        actor_id=user_id,
        user_id=user_id,
        resource_type="card",
        resource_id=card.card_id,
    )
    logger.info(f"Card {card.card_id} created for user {user_id}")
    return doc


@router.delete("/{card_id}")
async def delete_card(request: Request, card_id: str):
    user = await user_route_guard(request)
    await _get_owned_card(user["user_id"], card_id)

    db = database.get_db()
    await db.cards.delete_one({"card_id": card_id, "user_id": user["user_id"]})

    await create_audit_log(
        action=AuditAction.CARD_DELETED,
        actor_role=user.get("role"),
        actor_id=user["user_id"],
        user_id=user["user_id"],
        resource_type="card",
        resource_id=card_id,
    )
    return {"deleted": True, "card_id": card_id}


@router.post("/{card_id}/links", status_code=status.HTTP_201_CREATED)
async def add_link(request: Request, card_id: str, body: AddLinkRequest):
    user = await user_route_guard(request)
    card = await _get_owned_card(user["user_id"], card_id)

    subscription = await entitlement_service.get_user_subscription(user["user_id"])
    if not subscription:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve subscription"
        )

    allowed, message, details = usage_service.can_add_link(
        subscription["effective_tier_id"], len(card.get("links") or [])
    )
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": message, **(details or {})}
        )

    link = SocialLink(platform=body.platform, url=body.url, icon=body.icon).model_dump()
    db = database.get_db()
    await db.cards.update_one(
        {"card_id": card_id, "user_id": user["user_id"]},
        {
            "$push": {"links": link},
            "$set": {"updated_at": datetime.now(timezone.utc).isoformat()},
        }
    )
    return link


@router.get("/{card_id}/leads")
@require_feature("lead_collection")
async def list_leads(request: Request, card_id: str):
    user = await user_route_guard(request)
    await _get_owned_card(user["user_id"], card_id)

    db = database.get_db()
    leads = await db.leads.find({"card_id": card_id}, {"_id": 0}).sort("created_at", -1).to_list(length=500)
    return {"leads": leads, "count": len(leads)}
