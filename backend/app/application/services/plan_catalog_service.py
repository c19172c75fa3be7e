from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.domain.models.plan import Plan, PlanInterval
from app.domain.models.platform_product import PlatformProduct

logger = logging.getLogger(__name__)

DEFAULT_PLANS = [
    {"slug": "vip-mensal", "name": "VIP Mensal", "tier": "vip", "price_cents": 9700, "interval": PlanInterval.MONTHLY.value},
    {"slug": "vip-anual", "name": "VIP Anual", "tier": "vip", "price_cents": 97000, "interval": PlanInterval.ANNUAL.value},
    {
        "slug": "acesso-vitalicio",
        "name": "Acesso Vitalicio",
        "tier": "lifetime",
        "price_cents": 49700,
        "interval": PlanInterval.ONE_TIME.value,
    },
]

# Provider-side identifiers used by the sandbox payloads of each provider.
DEFAULT_PLATFORM_PRODUCTS = [
    {"plan_slug": "vip-mensal", "platform": "hotmart", "product_id": "123456", "price_id": None},
    {"plan_slug": "vip-mensal", "platform": "kiwify", "product_id": "prod_123456", "price_id": None},
    {"plan_slug": "vip-mensal", "platform": "caktor", "product_id": "caktor_prod_123", "price_id": None},
    {"plan_slug": "vip-mensal", "platform": "stripe", "product_id": "prod_vip_mensal", "price_id": "price_vip_mensal"},
    {"plan_slug": "vip-anual", "platform": "stripe", "product_id": "prod_vip_anual", "price_id": "price_vip_anual"},
]


def seed_plan_catalog(
    db: Session,
    *,
    plans: list[dict] | None = None,
    platform_products: list[dict] | None = None,
) -> dict:
    """Insert missing plans and provider product mappings; existing rows are left as they are."""
    plans = DEFAULT_PLANS if plans is None else plans
    platform_products = DEFAULT_PLATFORM_PRODUCTS if platform_products is None else platform_products
    plans_created = 0
    products_created = 0

    by_slug: dict[str, Plan] = {}
    for entry in plans:
        plan = db.execute(select(Plan).where(Plan.slug == entry["slug"])).scalar_one_or_none()
        if plan is None:
            plan = Plan(
                slug=entry["slug"],
                name=entry["name"],
                tier=entry["tier"],
                price_cents=entry["price_cents"],
                interval=entry["interval"],
                active=True,
            )
            db.add(plan)
            db.flush()
            plans_created += 1
        by_slug[plan.slug] = plan

    for entry in platform_products:
        plan = by_slug.get(entry["plan_slug"]) or db.execute(
            select(Plan).where(Plan.slug == entry["plan_slug"])
        ).scalar_one_or_none()
        if plan is None:
            logger.warning("plan_catalog_unknown_plan slug=%s platform=%s", entry["plan_slug"], entry["platform"])
            continue
        existing = db.execute(
            select(PlatformProduct).where(
                PlatformProduct.platform == entry["platform"],
                PlatformProduct.product_id == entry["product_id"],
            )
        ).scalar_one_or_none()
        if existing is not None:
            continue
        db.add(
            PlatformProduct(
                plan_id=plan.id,
                platform=entry["platform"],
                product_id=entry["product_id"],
                price_id=entry.get("price_id"),
                active=True,
            )
        )
        products_created += 1

    db.commit()
    logger.info("plan_catalog_seeded plans_created=%s products_created=%s", plans_created, products_created)
    return {"plans_created": plans_created, "platform_products_created": products_created}
