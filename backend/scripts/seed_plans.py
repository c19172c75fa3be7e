from app.application.services.plan_catalog_service import DEFAULT_PLANS, seed_plan_catalog
from app.infrastructure.db.session import SessionLocal


def seed_plans() -> None:
    with SessionLocal() as db:
        result = seed_plan_catalog(db)

    print("Plan catalog seeded:")
    print(f"- plans_created: {result['plans_created']}")
    print(f"- platform_products_created: {result['platform_products_created']}")
    for plan in DEFAULT_PLANS:
        print(f"- {plan['slug']}: tier={plan['tier']} interval={plan['interval']} price_cents={plan['price_cents']}")


if __name__ == "__main__":
    seed_plans()
