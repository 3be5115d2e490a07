from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from savepad.api.deps import Services, get_services

router = APIRouter(tags=["auth"])


class RegisterIn(BaseModel):
    name: str
    email: str
    password: str
    phone: Optional[str] = None


class LoginIn(BaseModel):
    email: str
    password: str


@router.post("/register", status_code=201)
def register(data: RegisterIn, services: Services = Depends(get_services)):
    user = services.users.register(data.name, data.email, data.password, phone=data.phone)
    return {"success": True, "message": "Usuário cadastrado com sucesso.", "user": user.profile()}


@router.post("/login")
def login(data: LoginIn, services: Services = Depends(get_services)):
    user = services.users.login(data.email, data.password)
    return {
        "success": True,
        "user": {"id": user.id, "name": user.name, "email": user.email, "phone": user.phone},
    }
