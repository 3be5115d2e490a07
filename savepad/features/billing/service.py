"""
Billing service orchestrator.

Pure-ish business logic that coordinates:
- Checkout (plan row + provider preference or preapproval)
- Webhook reconciliation (provider event -> user -> plan transition)
- Payment notifications to the WhatsApp bot

All Mercado Pago-specific code is in mercadopago_provider.py.
"""
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any, Mapping

from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError

from savepad.core.database import Database, payment_events
from savepad.core.errors import ValidationError, UpstreamError
from savepad.core.logging import log_event
from savepad.features.billing.mercadopago_provider import verify_signature
from savepad.features.billing.provider import (
    PaymentProvider,
    PaymentProviderError,
    PaymentNotFoundError,
    PaymentDetail,
)
from savepad.features.identity.service import IdentityResolver, UserRef, parse_id
from savepad.features.notifications.bot import Notifier
from savepad.features.plans.service import PlanStore, quote
from savepad.models.plan import PlanStatus


PAYMENT_EVENT_TYPES = {"payment"}
PREAPPROVAL_EVENT_TYPES = {"subscription_preapproval", "preapproval"}

PAYMENT_STATUS_MAP = {
    "approved": PlanStatus.APPROVED,
    "pending": PlanStatus.PENDING,
    "in_process": PlanStatus.PENDING,
    "in_mediation": PlanStatus.PENDING,
}

PREAPPROVAL_STATUS_MAP = {
    "authorized": PlanStatus.APPROVED,
    "pending": PlanStatus.PENDING,
    "cancelled": PlanStatus.CANCELLED,
}

SUCCESS_PATH = "/pagamento-sucesso"
FAILURE_PATH = "/pagamento-erro"


class ReconcileOutcome:
    RECONCILED = "reconciled"
    IGNORED = "ignored"
    NOT_FOUND = "not_found"
    UNMATCHED = "unmatched"


@dataclass
class ExternalReference:
    user_id: Optional[int] = None
    plan_type: Optional[str] = None
    plan_id: Optional[int] = None


@dataclass
class CheckoutResult:
    checkout_url: Optional[str]
    preference_id: str
    plan_id: int
    plan_type: str
    amount: float
    recurrence: Optional[str] = None


@dataclass
class ReconcileResult:
    outcome: str
    payment_id: Optional[str] = None
    status: Optional[str] = None
    user_id: Optional[int] = None
    plan_id: Optional[int] = None
    notified: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_external_reference(user_id: int, plan_type: str, plan_id: int) -> str:
    return f"{user_id}|{plan_type}|{plan_id}"


def parse_external_reference(raw: Optional[str]) -> ExternalReference:
    """Parse `user_id|plan_type|plan_id`; the older `user_id|plan_type` form is accepted."""
    if not raw:
        return ExternalReference()
    parts = str(raw).split("|")
    return ExternalReference(
        user_id=parse_id(parts[0]),
        plan_type=(parts[1].strip() or None) if len(parts) > 1 else None,
        plan_id=parse_id(parts[2]) if len(parts) > 2 else None,
    )


def normalize_status(kind: str, raw: Optional[str]) -> Optional[str]:
    """Map provider statuses onto plan statuses; unknown values pass through."""
    if not raw:
        return None
    key = raw.strip().lower()
    table = PREAPPROVAL_STATUS_MAP if kind == "preapproval" else PAYMENT_STATUS_MAP
    return table.get(key, key)


def _resource_id(payload: Mapping[str, Any], query: Mapping[str, Any]) -> Optional[str]:
    data = payload.get("data")
    if isinstance(data, dict) and data.get("id"):
        return str(data["id"])
    for key in ("data.id", "id"):
        if query.get(key):
            return str(query[key])
    # Legacy IPN bodies carry the resource URL instead
    resource = payload.get("resource")
    if isinstance(resource, str) and resource.strip():
        return resource.rstrip("/").rsplit("/", 1)[-1]
    return None


class CheckoutService:
    """Creates the local plan and the provider checkout that pays for it."""

    def __init__(
        self,
        plans: PlanStore,
        identity: IdentityResolver,
        provider: Optional[PaymentProvider],
        *,
        base_url: str,
        currency: str = "BRL",
    ):
        self.plans = plans
        self.identity = identity
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.currency = currency

    def start(self, user_ref: UserRef, plan_type: str, recurrence: Optional[str] = None) -> CheckoutResult:
        """
        Raises:
            ValidationError: unknown plan/recurrence, or recurring plan without email
            NotFoundError: user reference does not resolve
            UpstreamError: provider missing or rejected the checkout
        """
        plan_quote = quote(plan_type, recurrence)
        user = self.identity.require(user_ref)
        if plan_quote.recurrence and not user.email:
            raise ValidationError("Recurring plans require an email address", code="missing_email")
        if self.provider is None:
            raise UpstreamError("Payment provider is not configured")

        plan, plan_quote = self.plans.create(user.id, plan_type, recurrence)
        reference = build_external_reference(user.id, plan.type, plan.id)

        try:
            if plan_quote.recurrence:
                session = self.provider.create_preapproval(
                    plan_quote.title,
                    plan_quote.amount,
                    plan_quote.recurrence.frequency_months,
                    user.email,
                    reference,
                    currency=self.currency,
                    back_url=f"{self.base_url}{SUCCESS_PATH}",
                )
                self.plans.attach_checkout(plan.id, preapproval_id=session.id)
            else:
                session = self.provider.create_preference(
                    plan_quote.title,
                    plan_quote.amount,
                    reference,
                    currency=self.currency,
                    notification_url=f"{self.base_url}/webhook",
                    back_urls={
                        "success": f"{self.base_url}{SUCCESS_PATH}",
                        "failure": f"{self.base_url}{FAILURE_PATH}",
                    },
                )
                self.plans.attach_checkout(plan.id, checkout_id=session.id)
        except PaymentProviderError as exc:
            log_event(
                "error",
                "checkout.provider_failed",
                user_id=user.id,
                error_code="upstream_error",
                extra={"plan_id": plan.id, "http_status": exc.status_code, "body": exc.body},
            )
            # The unpaid row must not be picked up by later webhooks
            self.plans.transition(user.id, PlanStatus.CANCELLED, plan_id=plan.id)
            raise UpstreamError("Could not create checkout with the payment provider") from exc

        log_event("info", "checkout.created", user_id=user.id, extra={"plan_id": plan.id, "preference_id": session.id})
        return CheckoutResult(
            checkout_url=session.url,
            preference_id=session.id,
            plan_id=plan.id,
            plan_type=plan.type,
            amount=plan_quote.amount,
            recurrence=plan.recurrence,
        )


class WebhookReconciler:
    """
    Maps asynchronous provider events to local plans.

    Redelivery is safe: status writes are idempotent and payment_events
    keeps one row per (payment, status) so the bot hears about an approval once.
    """

    def __init__(
        self,
        db: Database,
        plans: PlanStore,
        identity: IdentityResolver,
        provider: Optional[PaymentProvider],
        notifier: Notifier,
        *,
        webhook_secret: Optional[str] = None,
    ):
        self.db = db
        self.plans = plans
        self.identity = identity
        self.provider = provider
        self.notifier = notifier
        self.webhook_secret = webhook_secret

    def handle(
        self,
        payload: Optional[Mapping[str, Any]],
        query: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> ReconcileResult:
        """
        Raises:
            ValidationError: no resource id, or bad signature
            UpstreamError: provider failure other than not-found
        """
        payload = payload if isinstance(payload, dict) else {}
        query = query or {}
        headers = headers or {}

        event_type = payload.get("type") or payload.get("topic") or query.get("type") or query.get("topic")
        resource_id = _resource_id(payload, query)
        if not resource_id:
            raise ValidationError("Malformed webhook event: missing resource id", code="malformed_event")

        if self.webhook_secret and not verify_signature(
            self.webhook_secret,
            headers.get("x-signature"),
            headers.get("x-request-id"),
            resource_id,
        ):
            log_event("warning", "webhook.bad_signature", error_code="invalid_signature", extra={"payment_id": resource_id})
            raise ValidationError("Invalid webhook signature", code="invalid_signature")

        if event_type in PAYMENT_EVENT_TYPES:
            kind = "payment"
        elif event_type in PREAPPROVAL_EVENT_TYPES:
            kind = "preapproval"
        else:
            log_event("info", "webhook.ignored", event_type=event_type, extra={"payment_id": resource_id})
            return ReconcileResult(outcome=ReconcileOutcome.IGNORED, payment_id=resource_id)

        detail = self._fetch(kind, resource_id)
        if detail is None:
            return ReconcileResult(outcome=ReconcileOutcome.NOT_FOUND, payment_id=resource_id)
        return self._apply(kind, detail)

    def _fetch(self, kind: str, resource_id: str) -> Optional[PaymentDetail]:
        if self.provider is None:
            raise UpstreamError("Payment provider is not configured")
        try:
            if kind == "payment":
                return self.provider.get_payment(resource_id)
            return self.provider.get_preapproval(resource_id)
        except PaymentNotFoundError:
            # Sandbox pings reference resources that never existed
            log_event("info", "webhook.resource_not_found", event_type=kind, extra={"payment_id": resource_id})
            return None
        except PaymentProviderError as exc:
            log_event(
                "error",
                "webhook.provider_failed",
                event_type=kind,
                error_code="upstream_error",
                extra={"payment_id": resource_id, "http_status": exc.status_code, "body": exc.body},
            )
            raise UpstreamError(f"Could not fetch {kind} {resource_id} from the payment provider") from exc

    def _apply(self, kind: str, detail: PaymentDetail) -> ReconcileResult:
        status = normalize_status(kind, detail.status)
        reference = parse_external_reference(detail.external_reference)

        user = self.identity.by_id(reference.user_id) if reference.user_id else None
        if user is None and detail.payer_email:
            user = self.identity.by_email(detail.payer_email)

        plan_id = reference.plan_id
        if kind == "preapproval" and plan_id is None:
            known = self.plans.find_by_preapproval(detail.id)
            if known is not None:
                plan_id = known.id
                if user is None:
                    user = self.identity.by_id(known.user_id)

        if user is None or not status:
            log_event(
                "warning",
                "webhook.unmatched",
                event_type=kind,
                extra={"payment_id": detail.id, "external_reference": detail.external_reference, "provider_status": detail.status},
            )
            return ReconcileResult(outcome=ReconcileOutcome.UNMATCHED, payment_id=detail.id, status=status)

        plan = self.plans.transition(user.id, status, plan_id=plan_id)
        if plan is None:
            log_event("warning", "webhook.no_plan", user_id=user.id, event_type=kind, extra={"payment_id": detail.id})
            return ReconcileResult(
                outcome=ReconcileOutcome.UNMATCHED, payment_id=detail.id, status=status, user_id=user.id
            )

        first_delivery = self._record(detail.id, kind, status, plan.id, user.id)
        notified = False
        if status == PlanStatus.APPROVED and first_delivery:
            amount = detail.amount if detail.amount is not None else plan.amount
            notified = self._notify(user.id, plan.type, status, amount)

        log_event(
            "info",
            "webhook.reconciled",
            user_id=user.id,
            event_type=kind,
            extra={"payment_id": detail.id, "plan_id": plan.id, "plan_status": plan.status, "notified": notified},
        )
        return ReconcileResult(
            outcome=ReconcileOutcome.RECONCILED,
            payment_id=detail.id,
            status=plan.status,
            user_id=user.id,
            plan_id=plan.id,
            notified=notified,
        )

    def _record(self, payment_id: str, kind: str, status: str, plan_id: int, user_id: int) -> bool:
        """Store the (payment, status) pair; False when it was already seen."""
        try:
            with self.db.session() as session:
                session.execute(
                    insert(payment_events).values(
                        payment_id=payment_id,
                        event_type=kind,
                        status=status,
                        plan_id=plan_id,
                        user_id=user_id,
                    )
                )
        except IntegrityError:
            log_event("info", "webhook.duplicate", user_id=user_id, extra={"payment_id": payment_id, "plan_status": status})
            return False
        return True

    def _notify(self, user_id: int, plano: str, status: str, valor: Optional[float]) -> bool:
        try:
            return self.notifier.notify_payment(user_id, plano, status, valor)
        except Exception as exc:
            log_event("error", "webhook.notify_failed", user_id=user_id, error_code="notify_error", extra={"error": repr(exc)})
            return False
