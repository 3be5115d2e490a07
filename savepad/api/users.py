from fastapi import APIRouter, Depends

from savepad.api.deps import Services, get_services

router = APIRouter(tags=["users"])


@router.get("/usuarios/{ref}")
def get_user(ref: str, services: Services = Depends(get_services)):
    """Look a user up by id, email or phone."""
    user = services.identity.require(ref)
    return user.profile()
