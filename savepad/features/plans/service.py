"""
savepad/features/plans/service.py

Plan store and checkout catalog.

Handles:
- Catalog quotes (individual, familiar; one-off or recurring)
- Plan creation for checkout and provider reference bookkeeping
- Status transitions driven by the webhook reconciler
- Cancellation (provider preapproval + family teardown)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import select, insert, update, delete

from savepad.core.clock import utc_now, ensure_utc
from savepad.core.database import Database, plans, family_members
from savepad.core.errors import ValidationError, NotFoundError, UpstreamError
from savepad.core.logging import log_event
from savepad.features.billing.provider import PaymentProvider, PaymentProviderError, PaymentNotFoundError
from savepad.features.identity.service import IdentityResolver, UserRef
from savepad.models.plan import (
    Plan,
    PlanMode,
    PlanOffer,
    PlanQuote,
    PlanStatus,
    Recurrence,
    STATUS_LABELS,
    EXPIRED_LABEL,
    NO_PLAN_LABEL,
)


PLAN_CATALOG: Dict[str, PlanOffer] = {
    "individual": PlanOffer(
        plan_type="individual",
        mode=PlanMode.INDIVIDUAL,
        title="Plano Individual SavePad",
        price=15.00,
        duration_days=30,
    ),
    "familiar": PlanOffer(
        plan_type="familiar",
        mode=PlanMode.FAMILIAR,
        title="Plano Familiar SavePad",
        price=30.00,
        duration_days=60,
    ),
}

RECURRENCES: Dict[str, Recurrence] = {
    "mensal": Recurrence(name="mensal", frequency_months=1, price_multiplier=1, duration_days=30),
    "anual": Recurrence(name="anual", frequency_months=12, price_multiplier=10, duration_days=365),
}

# Plans whose state a late webhook must not resurrect
TERMINAL_STATUSES = (PlanStatus.CANCELLED, PlanStatus.SUPERSEDED)

DEFAULT_DURATION_DAYS = 30


def quote(plan_type: Optional[str], recurrence: Optional[str] = None) -> PlanQuote:
    """
    Price a plan type, optionally as a recurring subscription.

    Raises:
        ValidationError: unknown plan type or recurrence
    """
    key = (plan_type or "").strip().lower()
    offer = PLAN_CATALOG.get(key)
    if offer is None:
        raise ValidationError(f"Invalid plan: {plan_type}", code="invalid_plan")

    cadence = None
    if recurrence:
        cadence = RECURRENCES.get(recurrence.strip().lower())
        if cadence is None:
            raise ValidationError(f"Invalid recurrence: {recurrence}", code="invalid_recurrence")

    if cadence is None:
        return PlanQuote(
            plan_type=offer.plan_type,
            mode=offer.mode,
            title=offer.title,
            amount=offer.price,
            duration_days=offer.duration_days,
        )
    return PlanQuote(
        plan_type=offer.plan_type,
        mode=offer.mode,
        title=f"{offer.title} ({cadence.name})",
        amount=round(offer.price * cadence.price_multiplier, 2),
        duration_days=cadence.duration_days,
        recurrence=cadence,
    )


def duration_for(plan_type: str) -> int:
    offer = PLAN_CATALOG.get(plan_type)
    return offer.duration_days if offer else DEFAULT_DURATION_DAYS


def row_to_plan(row) -> Plan:
    return Plan(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        mode=row.mode,
        status=row.status,
        recurrence=row.recurrence,
        amount=row.amount,
        expires_at=ensure_utc(row.expires_at),
        checkout_id=row.checkout_id,
        preapproval_id=row.preapproval_id,
        created_at=ensure_utc(row.created_at),
    )


def describe_status(plan: Optional[Plan], now: Optional[datetime] = None) -> Dict[str, Any]:
    """User-facing status block for a plan (or the lack of one)."""
    if plan is None:
        return {
            "status": NO_PLAN_LABEL,
            "active": False,
            "type": None,
            "mode": None,
            "plan_id": None,
            "expires_at": None,
            "days_remaining": None,
        }

    now = now or utc_now()
    expires_at = ensure_utc(plan.expires_at)
    label = STATUS_LABELS.get(plan.status, plan.status)
    active = plan.status == PlanStatus.APPROVED
    if active and expires_at is not None and expires_at <= now:
        label = EXPIRED_LABEL
        active = False

    days_remaining = None
    if expires_at is not None:
        days_remaining = max(0, (expires_at - now).days)

    return {
        "status": label,
        "active": active,
        "type": plan.type,
        "mode": plan.mode,
        "plan_id": plan.id,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "days_remaining": days_remaining,
    }


@dataclass
class CancelResult:
    plan: Plan
    removed_members: int


class PlanStore:
    """Subscription records keyed by canonical owner id."""

    def __init__(self, db: Database, identity: IdentityResolver, provider: Optional[PaymentProvider] = None):
        self.db = db
        self.identity = identity
        self.provider = provider

    def create(
        self,
        owner_ref: UserRef,
        plan_type: str,
        recurrence: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[Plan, PlanQuote]:
        """
        Insert a pending plan for the resolved owner.

        Returns:
            (plan, quote) so the caller can build the provider checkout

        Raises:
            ValidationError: unknown plan type or recurrence
            NotFoundError: owner reference does not resolve
        """
        plan_quote = quote(plan_type, recurrence)
        owner = self.identity.require(owner_ref)
        now = now or utc_now()
        expires_at = None if plan_quote.recurrence else now + timedelta(days=plan_quote.duration_days)

        with self.db.session() as session:
            result = session.execute(
                insert(plans).values(
                    user_id=owner.id,
                    type=plan_quote.plan_type,
                    mode=plan_quote.mode,
                    status=PlanStatus.PENDING,
                    recurrence=plan_quote.recurrence.name if plan_quote.recurrence else None,
                    amount=plan_quote.amount,
                    expires_at=expires_at,
                    created_at=now,
                    updated_at=now,
                )
            )
            plan_id = result.inserted_primary_key[0]
            row = session.execute(select(plans).where(plans.c.id == plan_id)).first()
            plan = row_to_plan(row)

        log_event("info", "plan.created", user_id=owner.id, extra={"plan_id": plan.id, "plan_type": plan.type, "recurrence": plan.recurrence})
        return plan, plan_quote

    def attach_checkout(self, plan_id: int, checkout_id: Optional[str] = None, preapproval_id: Optional[str] = None) -> None:
        values: Dict[str, Any] = {"updated_at": utc_now()}
        if checkout_id:
            values["checkout_id"] = checkout_id
        if preapproval_id:
            values["preapproval_id"] = preapproval_id
        with self.db.session() as session:
            session.execute(update(plans).where(plans.c.id == plan_id).values(**values))

    def get(self, plan_id: int) -> Optional[Plan]:
        with self.db.session() as session:
            row = session.execute(select(plans).where(plans.c.id == plan_id)).first()
            return row_to_plan(row) if row else None

    def latest_for_user_id(self, user_id: int, status: Optional[str] = None, session=None) -> Optional[Plan]:
        stmt = select(plans).where(plans.c.user_id == user_id)
        if status:
            stmt = stmt.where(plans.c.status == status)
        stmt = stmt.order_by(plans.c.id.desc()).limit(1)
        with self.db.session_or(session) as s:
            row = s.execute(stmt).first()
        return row_to_plan(row) if row else None

    def latest_for_owner(self, owner_ref: UserRef) -> Optional[Plan]:
        """Most recent plan for the referenced user; the reference is resolved once."""
        owner = self.identity.resolve(owner_ref)
        if owner is None:
            return None
        return self.latest_for_user_id(owner.id)

    def find_by_preapproval(self, preapproval_id: str) -> Optional[Plan]:
        with self.db.session() as session:
            row = session.execute(
                select(plans).where(plans.c.preapproval_id == preapproval_id)
            ).first()
            return row_to_plan(row) if row else None

    def has_family_plan(self, user_id: int, session=None) -> bool:
        """True when the user owns a non-cancelled familiar plan."""
        stmt = (
            select(plans.c.id)
            .where(plans.c.user_id == user_id)
            .where(plans.c.mode == PlanMode.FAMILIAR)
            .where(plans.c.status.notin_(TERMINAL_STATUSES))
            .limit(1)
        )
        with self.db.session_or(session) as s:
            return s.execute(stmt).first() is not None

    def list_active(self) -> List[Plan]:
        with self.db.session() as session:
            rows = session.execute(
                select(plans)
                .where(plans.c.status == PlanStatus.APPROVED)
                .order_by(plans.c.id.desc())
            ).all()
            return [row_to_plan(row) for row in rows]

    def transition(
        self,
        owner_id: int,
        status: str,
        *,
        plan_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Plan]:
        """
        Move a plan of the owner to `status`.

        The exact plan is used when `plan_id` is given and belongs to the
        owner; otherwise the owner's most recent pending plan. Re-applying the
        current status is a no-op.

        Returns:
            The plan after the transition, or None when nothing matched
        """
        now = now or utc_now()
        with self.db.session() as session:
            row = None
            if plan_id is not None:
                row = session.execute(
                    select(plans).where(plans.c.id == plan_id).where(plans.c.user_id == owner_id)
                ).first()
                if row is None:
                    log_event("warning", "plan.reference_mismatch", user_id=owner_id, extra={"plan_id": plan_id})
            if row is None:
                row = session.execute(
                    select(plans)
                    .where(plans.c.user_id == owner_id)
                    .where(plans.c.status == PlanStatus.PENDING)
                    .order_by(plans.c.id.desc())
                    .limit(1)
                ).first()
            if row is None:
                return None

            if row.status == status:
                return row_to_plan(row)
            if row.status in TERMINAL_STATUSES:
                log_event(
                    "warning",
                    "plan.transition_skipped",
                    user_id=owner_id,
                    extra={"plan_id": row.id, "current": row.status, "requested": status},
                )
                return row_to_plan(row)

            values: Dict[str, Any] = {"status": status, "updated_at": now}
            if status == PlanStatus.APPROVED:
                if row.recurrence is None:
                    values["expires_at"] = now + timedelta(days=duration_for(row.type))
                session.execute(
                    update(plans)
                    .where(plans.c.user_id == owner_id)
                    .where(plans.c.status == PlanStatus.APPROVED)
                    .where(plans.c.id != row.id)
                    .values(status=PlanStatus.SUPERSEDED, updated_at=now)
                )
            session.execute(update(plans).where(plans.c.id == row.id).values(**values))
            updated = session.execute(select(plans).where(plans.c.id == row.id)).first()
            plan = row_to_plan(updated)

        log_event("info", "plan.transitioned", user_id=owner_id, extra={"plan_id": plan.id, "from": row.status, "to": status})
        return plan

    def cancel(self, owner_ref: UserRef, *, now: Optional[datetime] = None) -> CancelResult:
        """
        Cancel the owner's active plan and dissolve the family it governs.

        Raises:
            NotFoundError: unknown owner or no approved plan
            UpstreamError: the provider refused to cancel the subscription
        """
        owner = self.identity.require(owner_ref)
        plan = self.latest_for_user_id(owner.id, status=PlanStatus.APPROVED)
        if plan is None:
            raise NotFoundError(f"No active plan for user {owner.id}", code="plan_not_found")

        if plan.preapproval_id:
            if self.provider is None:
                raise UpstreamError("Payment provider is not configured")
            try:
                self.provider.cancel_preapproval(plan.preapproval_id)
            except PaymentNotFoundError:
                log_event("warning", "plan.preapproval_missing", user_id=owner.id, extra={"preapproval_id": plan.preapproval_id})
            except PaymentProviderError as exc:
                log_event(
                    "error",
                    "plan.cancel_failed",
                    user_id=owner.id,
                    error_code="upstream_error",
                    extra={"preapproval_id": plan.preapproval_id, "http_status": exc.status_code, "body": exc.body},
                )
                raise UpstreamError("Could not cancel subscription with the payment provider") from exc

        now = now or utc_now()
        with self.db.session() as session:
            session.execute(
                update(plans)
                .where(plans.c.id == plan.id)
                .values(status=PlanStatus.CANCELLED, updated_at=now)
            )
            removed = session.execute(
                delete(family_members).where(family_members.c.owner_id == owner.id)
            ).rowcount or 0
            row = session.execute(select(plans).where(plans.c.id == plan.id)).first()
            cancelled = row_to_plan(row)

        log_event("info", "plan.cancelled", user_id=owner.id, extra={"plan_id": plan.id, "removed_members": removed})
        return CancelResult(plan=cancelled, removed_members=removed)
