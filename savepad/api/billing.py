"""
Billing API routes.

Surface:
- POST /checkout: Create a Mercado Pago checkout for a plan
- POST /webhook: Reconcile a Mercado Pago notification
- POST /cancel-plan: Cancel the active plan (and its family)
- GET  /status/{user_id}: Plan status for a user (through their family owner)
- GET  /planos: Active plans
"""
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Body, Depends, Request
from pydantic import BaseModel

from savepad.api.deps import Services, get_services
from savepad.features.plans.service import describe_status
from savepad.models.plan import Plan, PlanStatus


router = APIRouter(tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create a checkout."""
    user_id: Union[int, str]
    plano: str = "individual"
    recorrencia: Optional[str] = None


class CancelRequest(BaseModel):
    user_id: Union[int, str]


def _plan_payload(plan: Plan) -> Dict[str, Any]:
    data = plan.model_dump(mode="json")
    data["label"] = describe_status(plan)["status"]
    return data


@router.post("/checkout")
def create_checkout(request: CheckoutRequest, services: Services = Depends(get_services)):
    """
    Create a Mercado Pago checkout.

    One-off plans get a preference (checkout_url = init_point); `recorrencia`
    mensal/anual creates a preapproval instead.

    Errors:
        400: Invalid plan or recurrence, or recurring plan without email
        404: Unknown user
        500: Mercado Pago API error
    """
    result = services.checkout.start(request.user_id, request.plano, request.recorrencia)
    return {
        "success": True,
        "checkout_url": result.checkout_url,
        "preference_id": result.preference_id,
        "plan_id": result.plan_id,
        "plan_type": result.plan_type,
        "amount": result.amount,
        "recurrence": result.recurrence,
        "message": f"Plano {result.plan_type} criado e aguardando pagamento.",
    }


@router.post("/webhook")
def handle_webhook(
    request: Request,
    payload: Optional[Dict[str, Any]] = Body(None),
    services: Services = Depends(get_services),
):
    """
    Handle Mercado Pago webhook notifications.

    Fetches the authoritative payment/preapproval, resolves the user and plan,
    and applies the status. Redelivery is safe.

    Returns:
        {"received": true, "outcome": ..., ...}

    Errors:
        400: Missing resource id or invalid signature
        500: Mercado Pago API error
    """
    result = services.reconciler.handle(
        payload or {},
        query=dict(request.query_params),
        headers=request.headers,
    )
    return {"received": True, **result.to_dict()}


@router.post("/cancel-plan")
def cancel_plan(request: CancelRequest, services: Services = Depends(get_services)):
    result = services.plans.cancel(request.user_id)
    return {
        "success": True,
        "message": "Plano cancelado.",
        "plan": _plan_payload(result.plan),
        "removed_members": result.removed_members,
    }


@router.get("/status/{user_id}")
def get_status(user_id: str, services: Services = Depends(get_services)):
    """
    Plan status for a user.

    Members of a family see their owner's plan; the approved plan wins over
    a newer pending checkout.
    """
    user = services.identity.require(user_id)
    owner_id = services.family.owner_for(user.id)
    plan = services.plans.latest_for_user_id(owner_id, status=PlanStatus.APPROVED)
    if plan is None:
        plan = services.plans.latest_for_user_id(owner_id)
    return {"user_id": user.id, "owner_id": owner_id, **describe_status(plan)}


@router.get("/planos")
def list_active_plans(services: Services = Depends(get_services)):
    return [_plan_payload(plan) for plan in services.plans.list_active()]
