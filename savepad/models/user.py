from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class UserStatus:
    REGISTERED = "registered"
    INVITED = "invited"  # placeholder created by a family invite
    ACTIVE = "active"  # WhatsApp number confirmed
    MERGED = "merged"  # placeholder whose phone was claimed by a real account


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status: str = UserStatus.REGISTERED
    password_hash: Optional[str] = None
    verification_code: Optional[str] = None
    created_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None

    @property
    def is_placeholder(self) -> bool:
        return self.status == UserStatus.INVITED and not self.password_hash

    def profile(self) -> dict:
        """Public subset returned by the API (never the hash or code)."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "status": self.status,
        }
