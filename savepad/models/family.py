"""
Family models: memberships and the resolved family view.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class FamilyAction:
    INVITED_EXTERNAL = "invited_external"
    REMOVED = "removed"


class Membership(BaseModel):
    """One family_members row. member_id is None while the invite is pending."""

    model_config = ConfigDict(frozen=True)

    id: int
    owner_id: int
    member_id: Optional[int] = None
    name: Optional[str] = None
    whatsapp_number: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.member_id is None


class FamilyMember(BaseModel):
    """Display view of a membership."""

    model_config = ConfigDict(frozen=True)

    relation_id: int
    member_id: Optional[int] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    linked: bool = False


class FamilyView(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    owner_id: int
    owner_name: Optional[str] = None
    members: List[FamilyMember] = Field(default_factory=list)

    @property
    def is_owner(self) -> bool:
        return self.user_id == self.owner_id


class LinkResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    phone: str
    linked_count: int = 0

    @property
    def linked(self) -> bool:
        return self.linked_count > 0
