"""
Stripe Product Setup Script

Creates/validates the Stripe products and one-time prices for the paid lifetime tiers.
Tier names and amounts come from the tier registry so Stripe and the backend stay aligned.

Run this script to:
1. Create a Stripe product per paid tier (metadata.tier_id)
2. Create the one-time EUR price (lookup_key weshare_{tier}_lifetime)
3. Print the STRIPE_PRICE_*_LIFETIME values to put in backend/.env
4. Validate existing products

Usage:
    python scripts/setup_stripe_products.py [--dry-run] [--force-update] [--validate-only]

Environment:
    STRIPE_SECRET_KEY - Required
"""
import os
import sys
import asyncio
import argparse
import logging

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import stripe

from services.tier_registry import tier_registry, STRIPE_PRICE_ENV_VARS, FEATURE_METADATA
from models import TierId

logger = logging.getLogger(__name__)

PAID_TIERS = [TierId.PRO, TierId.BUSINESS]


def lookup_key_for(tier: TierId) -> str:
    return f"weshare_{tier.value}_lifetime"


def product_config_for(tier: TierId) -> dict:
    tier_def = tier_registry.get_tier(tier)
    enabled = [FEATURE_METADATA[k]["name"] for k, v in tier_def["features"].items() if v and k in FEATURE_METADATA]
    return {
        "name": tier_def["name"],
        "description": f"Lifetime license: {', '.join(enabled)}",
        "amount": tier_def["price_lifetime"] * 100,
        "currency": tier_def["currency"].lower(),
    }


class StripeProductSetup:
    """Manages Stripe product and price creation for lifetime tiers."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self.created_products = []
        self.created_prices = []
        self.errors = []

    async def setup_all_products(self, force_update: bool = False):
        """Create/update all lifetime products and prices in Stripe."""
        logger.info(f"Starting Stripe product setup (dry_run={self.dry_run}, force_update={force_update})")

        if not stripe.api_key:
            raise ValueError("STRIPE_SECRET_KEY not set")

        # Test Stripe connection
        try:
            stripe.Account.retrieve()
            logger.info("Stripe connection verified")
        except stripe.AuthenticationError:
            raise ValueError("Invalid Stripe API key")

        for tier in PAID_TIERS:
            try:
                await self._setup_product(tier, product_config_for(tier), force_update)
            except Exception as e:
                logger.error(f"Failed to setup {tier.value}: {e}")
                self.errors.append({"tier_id": tier.value, "error": str(e)})

        # Summary
        logger.info("=" * 60)
        logger.info("STRIPE SETUP SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Products created/updated: {len(self.created_products)}")
        logger.info(f"Prices created: {len(self.created_prices)}")
        logger.info(f"Errors: {len(self.errors)}")

        for err in self.errors:
            logger.error(f"  - {err['tier_id']}: {err['error']}")

        for price in self.created_prices:
            logger.info(f"  {STRIPE_PRICE_ENV_VARS[TierId(price['tier_id'])]}={price['price_id']}")

        return {
            "products": self.created_products,
            "prices": self.created_prices,
            "errors": self.errors,
        }

    async def _setup_product(self, tier: TierId, config: dict, force_update: bool):
        """Setup a single product with its one-time price."""
        logger.info(f"Processing: {tier.value} - {config['name']}")

        existing_product = await self._find_existing_product(tier)

        if existing_product and not force_update:
            logger.info(f"  Product exists: {existing_product.id}")
            product_id = existing_product.id
        else:
            product_id = await self._create_or_update_product(tier, config, existing_product)

        await self._setup_price(tier, config, product_id)

    async def _find_existing_product(self, tier: TierId):
        """Find existing Stripe product by tier_id in metadata."""
        products = stripe.Product.search(query=f"metadata['tier_id']:'{tier.value}'")
        if products.data:
            return products.data[0]
        return None

    async def _create_or_update_product(self, tier: TierId, config: dict, existing_product=None) -> str:
        product_data = {
            "name": config["name"],
            "description": config["description"],
            "metadata": {
                "tier_id": tier.value,
                "purchase_type": "lifetime",
            },
        }

        if self.dry_run:
            logger.info(f"  [DRY RUN] Would create/update product: {product_data}")
            return f"prod_dryrun_{tier.value}"

        if existing_product:
            product = stripe.Product.modify(existing_product.id, **product_data)
            logger.info(f"  Updated product: {product.id}")
        else:
            product = stripe.Product.create(**product_data)
            logger.info(f"  Created product: {product.id}")

        self.created_products.append({"tier_id": tier.value, "product_id": product.id, "name": config["name"]})
        return product.id

    async def _setup_price(self, tier: TierId, config: dict, product_id: str):
        """Create the one-time price; a changed amount archives the old price."""
        lookup_key = lookup_key_for(tier)
        existing_price = await self._find_existing_price(lookup_key)

        price_data = {
            "unit_amount": config["amount"],
            "currency": config["currency"],
            "product": product_id,
            "nickname": f"{config['name']} (lifetime)",
            "metadata": {"tier_id": tier.value, "purchase_type": "lifetime"},
            "lookup_key": lookup_key,
        }

        if self.dry_run:
            logger.info(f"    [DRY RUN] Would create price: {lookup_key} = €{config['amount'] / 100:.2f}")
            return

        if existing_price:
            if existing_price.unit_amount == config["amount"]:
                logger.info(f"    Price unchanged: {lookup_key} -> {existing_price.id}")
                return
            # Price amounts are immutable: archive and move the lookup key
            stripe.Price.modify(existing_price.id, active=False)
            price = stripe.Price.create(transfer_lookup_key=True, **price_data)
            logger.info(f"    Replaced price: {lookup_key} = €{config['amount'] / 100:.2f}")
        else:
            price = stripe.Price.create(**price_data)
            logger.info(f"    Created price: {lookup_key} = €{config['amount'] / 100:.2f}")

        self.created_prices.append({
            "tier_id": tier.value,
            "price_id": price.id,
            "lookup_key": lookup_key,
            "amount": config["amount"],
        })

    async def _find_existing_price(self, lookup_key: str):
        prices = stripe.Price.list(lookup_keys=[lookup_key], limit=1)
        if prices.data:
            return prices.data[0]
        return None

    async def validate_alignment(self):
        """Validate that every paid tier has a product and a price with the registry amount."""
        logger.info("=" * 60)
        logger.info("VALIDATING STRIPE ALIGNMENT")
        logger.info("=" * 60)

        issues = []

        for tier in PAID_TIERS:
            config = product_config_for(tier)
            product = await self._find_existing_product(tier)
            if not product:
                issues.append(f"Missing product: {tier.value}")
                continue

            price = await self._find_existing_price(lookup_key_for(tier))
            if not price:
                issues.append(f"Missing price: {lookup_key_for(tier)}")
            elif price.unit_amount != config["amount"]:
                issues.append(f"Amount mismatch for {tier.value}: stripe={price.unit_amount} registry={config['amount']}")
            else:
                configured = tier_registry.get_stripe_price_id(tier)
                if configured != price.id:
                    issues.append(f"{STRIPE_PRICE_ENV_VARS[tier]} should be {price.id} (backend uses {configured})")
                logger.info(f"{tier.value} -> {price.id}")

        if issues:
            logger.warning("Alignment Issues Found:")
            for issue in issues:
                logger.warning(f"  {issue}")
        else:
            logger.info("All tiers aligned with Stripe")

        return issues


async def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    parser = argparse.ArgumentParser(description="Setup Stripe products for the lifetime tiers")
    parser.add_argument("--dry-run", action="store_true", help="Preview changes without making them")
    parser.add_argument("--force-update", action="store_true", help="Force update existing products")
    parser.add_argument("--validate-only", action="store_true", help="Only validate alignment, don't create")

    args = parser.parse_args()

    stripe.api_key = os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY")
    setup = StripeProductSetup(dry_run=args.dry_run)

    if args.validate_only:
        issues = await setup.validate_alignment()
        sys.exit(1 if issues else 0)

    await setup.setup_all_products(force_update=args.force_update)
    if not args.dry_run:
        await setup.validate_alignment()


if __name__ == "__main__":
    asyncio.run(main())
