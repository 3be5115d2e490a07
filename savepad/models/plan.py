"""
Plan models: subscription records and the checkout catalog.

A Plan row is created by checkout (status pending) and moved by the
webhook reconciler; its owner is always a canonical user id.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class PlanStatus:
    PENDING = "pending"
    APPROVED = "approved"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"


class PlanMode:
    INDIVIDUAL = "individual"
    FAMILIAR = "familiar"


# User-facing labels; any other provider status is shown as-is
STATUS_LABELS = {
    PlanStatus.APPROVED: "Ativo",
    PlanStatus.PENDING: "Pendente",
    PlanStatus.CANCELLED: "Cancelado",
}
EXPIRED_LABEL = "Expirado"
NO_PLAN_LABEL = "Inativo"


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    type: str
    mode: str = PlanMode.INDIVIDUAL
    status: str = PlanStatus.PENDING
    recurrence: Optional[str] = None
    amount: Optional[float] = None
    expires_at: Optional[datetime] = None
    checkout_id: Optional[str] = None
    preapproval_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None


class PlanOffer(BaseModel):
    """Catalog entry: what a plan type costs and how long it lasts."""
    model_config = ConfigDict(frozen=True)

    plan_type: str
    mode: str
    title: str
    price: float
    duration_days: int


class Recurrence(BaseModel):
    """Recurring billing cadence for provider preapprovals."""
    model_config = ConfigDict(frozen=True)

    name: str
    frequency_months: int
    price_multiplier: int
    duration_days: int


class PlanQuote(BaseModel):
    """Provider-facing price/duration pair returned by plan creation."""
    model_config = ConfigDict(frozen=True)

    plan_type: str
    mode: str
    title: str
    amount: float
    duration_days: int
    recurrence: Optional[Recurrence] = None
