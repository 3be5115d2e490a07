"""
savepad/api/deps.py
Service container wired once in create_app and read by every router.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from savepad.core.database import Database
from savepad.features.billing.provider import PaymentProvider
from savepad.features.billing.service import CheckoutService, WebhookReconciler
from savepad.features.family.service import FamilyService
from savepad.features.identity.service import IdentityResolver
from savepad.features.notifications.bot import Notifier
from savepad.features.plans.service import PlanStore
from savepad.features.users.service import UserService


@dataclass
class Services:
    db: Database
    identity: IdentityResolver
    plans: PlanStore
    family: FamilyService
    users: UserService
    checkout: CheckoutService
    reconciler: WebhookReconciler


def build_services(
    db: Database,
    provider: Optional[PaymentProvider],
    notifier: Notifier,
    *,
    base_url: str,
    currency: str = "BRL",
    webhook_secret: Optional[str] = None,
) -> Services:
    identity = IdentityResolver(db)
    plans = PlanStore(db, identity, provider)
    family = FamilyService(db, identity, plans, notifier)
    return Services(
        db=db,
        identity=identity,
        plans=plans,
        family=family,
        users=UserService(db, identity, family),
        checkout=CheckoutService(plans, identity, provider, base_url=base_url, currency=currency),
        reconciler=WebhookReconciler(db, plans, identity, provider, notifier, webhook_secret=webhook_secret),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
