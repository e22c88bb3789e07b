from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.payment import CreditPackage
from app.services.credits import CreditsService

logger = logging.getLogger(__name__)

RECOMMENDATION_WINDOW_DAYS = 30

DEFAULT_PACKAGES: tuple[dict, ...] = (
    {
        "slug": "starter",
        "name": "Starter Pack",
        "description": "Perfect for trying out AI test generation",
        "credits": Decimal("25"),
        "bonus_credits": 0,
        "price": Decimal("9.99"),
        "is_popular": False,
        "sort_order": 1,
        "features": ["25 AI test generations", "All AI providers", "Email support"],
    },
    {
        "slug": "developer",
        "name": "Developer Pack",
        "description": "For individual plugin developers shipping regularly",
        "credits": Decimal("50"),
        "bonus_credits": 5,
        "price": Decimal("19.99"),
        "is_popular": False,
        "sort_order": 2,
        "features": ["55 AI test generations", "All AI providers", "Email support"],
    },
    {
        "slug": "professional",
        "name": "Professional Pack",
        "description": "Best value for active plugin teams",
        "credits": Decimal("100"),
        "bonus_credits": 10,
        "price": Decimal("29.99"),
        "is_popular": True,
        "sort_order": 3,
        "features": ["110 AI test generations", "All AI providers", "Priority support"],
    },
    {
        "slug": "enterprise",
        "name": "Enterprise Pack",
        "description": "For agencies testing many plugins",
        "credits": Decimal("500"),
        "bonus_credits": 100,
        "price": Decimal("99.99"),
        "is_popular": False,
        "sort_order": 4,
        "features": ["600 AI test generations", "All AI providers", "Priority support"],
    },
)

# (max uses in window, package slug), checked in order.
RECOMMENDATION_TIERS: tuple[tuple[int, str], ...] = (
    (25, "starter"),
    (50, "developer"),
    (100, "professional"),
)
RECOMMENDATION_FALLBACK = "enterprise"


class PackagesService:
    def __init__(self, db: Session):
        self.db = db

    def list_active(self) -> list[CreditPackage]:
        return list(
            self.db.execute(
                select(CreditPackage)
                .where(CreditPackage.is_active.is_(True))
                .order_by(CreditPackage.sort_order.asc(), CreditPackage.id.asc())
            )
            .scalars()
            .all()
        )

    def get_active(self, package_id: int | str) -> CreditPackage | None:
        """Look a package up by numeric id or slug; inactive packages are hidden."""
        query = select(CreditPackage).where(CreditPackage.is_active.is_(True))
        if isinstance(package_id, int) or str(package_id).isdigit():
            query = query.where(CreditPackage.id == int(package_id))
        else:
            query = query.where(CreditPackage.slug == str(package_id).strip().lower())
        return self.db.execute(query).scalars().first()

    def seed_defaults(self) -> int:
        """Insert any missing default packages. Existing rows are left untouched."""
        existing = set(self.db.execute(select(CreditPackage.slug)).scalars().all())
        created = 0
        for package in DEFAULT_PACKAGES:
            if package["slug"] in existing:
                continue
            self.db.add(CreditPackage(**package))
            created += 1
        if created:
            self.db.commit()
            logger.info("packages.seeded", extra={"created": created})
        return created

    def recommend(self, user_id: int, *, now: datetime | None = None) -> CreditPackage | None:
        since = (now or datetime.now(timezone.utc)) - timedelta(days=RECOMMENDATION_WINDOW_DAYS)
        uses = CreditsService(self.db).count_usage_since(user_id, since)
        slug = recommended_slug(uses)
        return self.get_active(slug)


def recommended_slug(monthly_uses: int) -> str:
    for ceiling, slug in RECOMMENDATION_TIERS:
        if monthly_uses <= ceiling:
            return slug
    return RECOMMENDATION_FALLBACK
