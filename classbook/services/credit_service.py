from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from classbook.config import settings
from classbook.integrations.payments import Checkout, PaymentGateway
from classbook.runtime import spawn
from classbook.services import email_templates
from classbook.services.email_service import EmailService, deliver
from classbook.services.errors import (
    InsufficientCredit,
    InvalidRequest,
    InvariantViolation,
    NotFound,
)
from classbook.services.schemas import Buyer, Identity
from classbook.storage.models import CreditGrant, CreditRedemption, Package, User
from classbook.utils.dates import now_local

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditHandle:
    redemption_id: int
    grant_id: int


def _identity_filter(instructor_id: int, identity: Identity):
    # a client may have bought as a guest and later created an account,
    # so every known handle of the identity is matched
    matches = []
    if identity.user_id is not None:
        matches.append(CreditGrant.user_id == identity.user_id)
    if identity.phone:
        matches.append(CreditGrant.guest_phone == identity.phone)
    if identity.email:
        matches.append(CreditGrant.guest_email == identity.email)
    return (
        CreditGrant.instructor_id == instructor_id,
        or_(*matches),
    )


class CreditService:
    # packages

    @staticmethod
    async def create_package(
        session: AsyncSession,
        instructor_id: int,
        name: str,
        class_count: int,
        price_cents: int,
        description: Optional[str] = None,
    ) -> Package:
        if not name or not name.strip():
            raise InvalidRequest("Package name is required")
        if class_count < 1:
            raise InvalidRequest("Class count must be at least 1")
        if price_cents < 0:
            raise InvalidRequest("Price cannot be negative")
        instructor = await session.get(User, instructor_id)
        if instructor is None:
            raise NotFound("Instructor not found")
        if not instructor.is_instructor:
            raise InvalidRequest("User is not an instructor")

        package = Package(
            instructor_id=instructor_id,
            name=name.strip(),
            description=(description or "").strip() or None,
            class_count=class_count,
            price_cents=price_cents,
            is_active=True,
        )
        session.add(package)
        await session.commit()
        log.info("packages.create instructor=%s package=%s classes=%s", instructor_id, package.id, class_count)
        return package

    @staticmethod
    async def set_package_active(session: AsyncSession, package_id: int, instructor_id: int, active: bool) -> Package:
        package = await session.get(Package, package_id)
        if package is None or package.instructor_id != instructor_id:
            raise NotFound("Package not found")
        package.is_active = active
        await session.commit()
        return package

    @staticmethod
    async def list_packages(session: AsyncSession, instructor_id: int, *, active_only: bool = True) -> List[Package]:
        stmt = select(Package).where(Package.instructor_id == instructor_id)
        if active_only:
            stmt = stmt.where(Package.is_active.is_(True))
        res = await session.execute(stmt.order_by(Package.price_cents))
        return list(res.scalars().all())

    # purchases

    @staticmethod
    async def start_purchase(
        session: AsyncSession, package_id: int, buyer: Buyer, gateway: PaymentGateway
    ) -> Checkout:
        """Open an external checkout for a package. Nothing is written here."""
        package = await session.scalar(
            select(Package).where(Package.id == package_id, Package.is_active.is_(True))
        )
        if package is None:
            raise NotFound("Package not found or no longer available")
        instructor = await session.get(User, package.instructor_id)
        instructor_name = instructor.full_name if instructor else "your instructor"

        description = f"Class package with {instructor_name}"
        if package.description:
            description += f"\n{package.description}"
        return await gateway.create_checkout(
            amount_cents=package.price_cents,
            currency=settings.currency,
            product_name=f"{package.name} - {package.class_count} Classes",
            description=description,
            customer_email=buyer.email,
            success_url=f"{settings.site_url}/booking-success?session_id={{CHECKOUT_SESSION_ID}}&type=package",
            cancel_url=f"{settings.site_url}/classes?package_cancelled=true",
            metadata={
                "type": "package",
                "package_id": str(package.id),
                "instructor_id": str(package.instructor_id),
                "class_count": str(package.class_count),
                "first_name": buyer.first_name.strip(),
                "last_name": buyer.last_name.strip(),
                "email": buyer.email,
                "phone": buyer.phone or "",
                "user_id": "" if buyer.user_id is None else str(buyer.user_id),
            },
        )

    @staticmethod
    async def purchase(
        session: AsyncSession,
        package_id: int,
        buyer: Buyer,
        checkout_session_id: str,
        payment_intent_id: Optional[str] = None,
    ) -> CreditGrant:
        """Record a grant for a confirmed payment. Append-only and idempotent per checkout."""
        existing = await session.scalar(
            select(CreditGrant).where(CreditGrant.checkout_session_id == checkout_session_id)
        )
        if existing is not None:
            log.info("credits.purchase checkout=%s already recorded as grant=%s", checkout_session_id, existing.id)
            return existing

        package = await session.get(Package, package_id)
        if package is None:
            raise NotFound("Package not found")

        user_id = buyer.user_id
        if user_id is None and buyer.email:
            user_id = await session.scalar(select(User.id).where(User.email == buyer.email))

        grant = CreditGrant(
            package_id=package.id,
            instructor_id=package.instructor_id,
            user_id=user_id,
            guest_email=buyer.email or None,
            guest_phone=buyer.phone,
            classes_total=package.class_count,
            classes_remaining=package.class_count,
            checkout_session_id=checkout_session_id,
            payment_intent_id=payment_intent_id,
        )
        session.add(grant)
        try:
            await session.commit()
        except IntegrityError:
            # duplicate webhook delivery raced us to the insert
            await session.rollback()
            existing = await session.scalar(
                select(CreditGrant).where(CreditGrant.checkout_session_id == checkout_session_id)
            )
            if existing is None:
                raise
            return existing
        log.info(
            "credits.purchase package=%s grant=%s classes=%s user=%s",
            package.id, grant.id, grant.classes_total, user_id,
        )

        if EmailService.is_email(buyer.email):
            instructor = await session.get(User, package.instructor_id)
            msg = email_templates.package_confirmation(
                buyer.email,
                buyer.full_name,
                package.name,
                package.class_count,
                instructor.full_name if instructor else "your instructor",
            )
            spawn(deliver(buyer.email, msg.subject, msg.body), name=f"package-confirmation:{grant.id}")
        return grant

    # balance

    @staticmethod
    async def balance(session: AsyncSession, instructor_id: int, identity: Identity) -> int:
        if identity.is_empty:
            return 0
        total = await session.scalar(
            select(func.coalesce(func.sum(CreditGrant.classes_remaining), 0)).where(
                *_identity_filter(instructor_id, identity)
            )
        )
        return int(total or 0)

    @staticmethod
    async def redeem(session: AsyncSession, instructor_id: int, identity: Identity) -> CreditHandle:
        """Consume one credit. Does not commit; the caller owns the transaction.

        Each candidate grant is decremented with a guarded UPDATE, so two
        bookings racing for the last credit cannot both win.
        """
        if identity.is_empty:
            raise InsufficientCredit()
        res = await session.execute(
            select(CreditGrant.id)
            .where(
                *_identity_filter(instructor_id, identity),
                CreditGrant.classes_remaining > 0,
            )
            .order_by(CreditGrant.purchased_at, CreditGrant.id)
        )
        for grant_id in res.scalars().all():
            taken = await session.execute(
                update(CreditGrant)
                .where(CreditGrant.id == grant_id, CreditGrant.classes_remaining > 0)
                .values(classes_remaining=CreditGrant.classes_remaining - 1)
                .execution_options(synchronize_session=False)
            )
            if taken.rowcount != 1:
                continue
            redemption = CreditRedemption(grant_id=grant_id)
            session.add(redemption)
            await session.flush()
            log.info("credits.redeem instructor=%s grant=%s redemption=%s", instructor_id, grant_id, redemption.id)
            return CreditHandle(redemption_id=redemption.id, grant_id=grant_id)

        log.info("credits.redeem instructor=%s -> insufficient", instructor_id)
        raise InsufficientCredit()

    @staticmethod
    async def handle_for(session: AsyncSession, redemption_id: int) -> CreditHandle:
        redemption = await session.get(CreditRedemption, redemption_id)
        if redemption is None:
            raise InvariantViolation(f"credit redemption {redemption_id} does not exist")
        return CreditHandle(redemption_id=redemption.id, grant_id=redemption.grant_id)

    @staticmethod
    async def restore(session: AsyncSession, handle: CreditHandle) -> bool:
        """Give the credit back. Only the first restore of a handle has an effect.

        Does not commit.
        """
        res = await session.execute(
            update(CreditRedemption)
            .where(CreditRedemption.id == handle.redemption_id, CreditRedemption.restored_at.is_(None))
            .values(restored_at=now_local())
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            log.info("credits.restore redemption=%s already restored", handle.redemption_id)
            return False

        back = await session.execute(
            update(CreditGrant)
            .where(CreditGrant.id == handle.grant_id, CreditGrant.classes_remaining < CreditGrant.classes_total)
            .values(classes_remaining=CreditGrant.classes_remaining + 1)
            .execution_options(synchronize_session=False)
        )
        if back.rowcount != 1:
            log.critical("credits.restore grant=%s would exceed its total", handle.grant_id)
            raise InvariantViolation(f"credit grant {handle.grant_id} cannot take back a credit")
        log.info("credits.restore grant=%s redemption=%s", handle.grant_id, handle.redemption_id)
        return True
