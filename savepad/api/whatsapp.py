"""
WhatsApp linking routes.

The app asks for a code (/api/link-whatsapp), the user sends it to the bot,
and the bot redeems it with the sender's number (/api/verify-whatsapp).
"""

from typing import Union

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from savepad.api.deps import Services, get_services

router = APIRouter(tags=["whatsapp"])


class LinkRequest(BaseModel):
    user_id: Union[int, str]


class VerifyRequest(BaseModel):
    code: str
    phone: str


class LegacyLinkRequest(BaseModel):
    phone: str


@router.post("/api/link-whatsapp")
def request_link_code(request: LinkRequest, services: Services = Depends(get_services)):
    code = services.users.issue_link_code(request.user_id)
    return {
        "success": True,
        "code": code,
        "message": f"Envie o código {code} para o SavePad no WhatsApp.",
    }


@router.post("/api/verify-whatsapp")
def verify_link_code(request: VerifyRequest, services: Services = Depends(get_services)):
    result = services.users.verify_link_code(request.code, request.phone)
    return {
        "success": True,
        "user_id": result.user_id,
        "phone": result.phone,
        "linked": result.linked,
        "linked_count": result.linked_count,
    }


@router.get("/api/check-whatsapp-link")
def check_link(user_id: str = Query(...), services: Services = Depends(get_services)):
    return services.users.link_status(user_id)


@router.post("/link-whatsapp")
def legacy_link(request: LegacyLinkRequest, services: Services = Depends(get_services)):
    """Kept for older bot builds: activates the account holding this number."""
    user = services.users.activate_by_phone(request.phone)
    return {"success": True, "message": "WhatsApp vinculado com sucesso!", "user_id": user.id}
