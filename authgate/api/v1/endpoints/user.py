"""End-user endpoints below the user prefix. Authentication only, no policy check."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from authgate.core.normalize import USER_KIND
from authgate.core.tokens import AuthenticatedPrincipal
from authgate.api.deps import require_principal

router = APIRouter(prefix="/user", tags=["User"])


class UserProfile(BaseModel):
    id: int
    username: str
    kind: str
    auth_state_source: str


@router.get("/me", response_model=UserProfile)
async def get_me(principal: AuthenticatedPrincipal = Depends(require_principal(USER_KIND))) -> UserProfile:
    """Identity of the calling user as established by the gateway."""
    return UserProfile(
        id=principal.id,
        username=principal.username,
        kind=principal.kind,
        auth_state_source=principal.source.value,
    )
