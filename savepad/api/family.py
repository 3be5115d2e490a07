"""
savepad/api/family.py
FastAPI routes for family sharing.
"""

from typing import Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from savepad.api.deps import Services, get_services
from savepad.models.family import FamilyMember

router = APIRouter(tags=["family"])


class AddMemberRequest(BaseModel):
    owner_id: Union[int, str]
    name: Optional[str] = None
    phone: Optional[str] = None
    member_email: Optional[str] = None


class RemoveMemberRequest(BaseModel):
    owner_id: Union[int, str]
    relation_id: Optional[int] = None
    member_id: Optional[Union[int, str]] = None


class LeaveRequest(BaseModel):
    member_id: Union[int, str]


class ConfirmWhatsappRequest(BaseModel):
    user_id: Union[int, str]
    phone: str


def _member_payload(member: FamilyMember) -> dict:
    return {
        "id": member.relation_id,
        "member_id": member.member_id,
        "name": member.name,
        "phone": member.phone,
        "linked": member.linked,
    }


@router.post("/family/add", status_code=201)
def add_member(request: AddMemberRequest, services: Services = Depends(get_services)):
    """
    Invite a member by phone (preferred) or email.

    Errors:
        400: Missing name or contact, invalid phone, or self-invite
        404: Owner not found
        409: Member already in the family
    """
    member = services.family.add_member(
        request.owner_id,
        name=request.name,
        phone=request.phone,
        email=request.member_email,
    )
    return {"success": True, "message": "Convite enviado com sucesso!", "member": _member_payload(member)}


@router.delete("/family/remove")
def remove_member(request: RemoveMemberRequest, services: Services = Depends(get_services)):
    member = services.family.remove_member(
        request.owner_id,
        relation_id=request.relation_id,
        member_ref=request.member_id,
    )
    return {"success": True, "message": "Membro removido com sucesso!", "member": _member_payload(member)}


@router.delete("/family/leave")
def leave_family(request: LeaveRequest, services: Services = Depends(get_services)):
    removed = services.family.leave(request.member_id)
    return {"success": True, "message": "Você saiu da família.", "removed": removed}


@router.get("/family/{user_id}")
def get_family(user_id: str, services: Services = Depends(get_services)):
    view = services.family.resolve_family(user_id)
    members = [_member_payload(m) for m in view.members]
    return {
        "success": True,
        "user_id": view.user_id,
        "owner_id": view.owner_id,
        "owner_name": view.owner_name,
        "is_owner": view.is_owner,
        "members": members,
        "total": len(members),
    }


@router.post("/family/confirm-whatsapp")
def confirm_whatsapp(request: ConfirmWhatsappRequest, services: Services = Depends(get_services)):
    result = services.family.confirm_whatsapp(request.user_id, request.phone)
    message = (
        "WhatsApp vinculado e família conectada com sucesso!"
        if result.linked
        else "WhatsApp vinculado, mas nenhum convite correspondente encontrado."
    )
    return {
        "success": True,
        "linked": result.linked,
        "linked_count": result.linked_count,
        "phone": result.phone,
        "message": message,
    }


@router.get("/api/family-members/{owner_id}")
def legacy_family_members(owner_id: str, services: Services = Depends(get_services)):
    """Member list consumed by the WhatsApp bot (bare array)."""
    return services.family.legacy_member_list(owner_id)
