from dataclasses import dataclass

from fastapi import HTTPException, status

ELEVATED_ROLES = {"manager", "admin"}


@dataclass(frozen=True)
class Requester:
    """Capability derived once from the token; the engine never sees raw roles."""

    user_id: str
    is_elevated: bool = False
    email: str | None = None

    def owns(self, owner_id: str) -> bool:
        return self.user_id == owner_id

    def can_view(self, owner_id: str) -> bool:
        return self.owns(owner_id) or self.is_elevated


def _roles(payload: dict) -> set[str]:
    token_roles = payload.get("roles")
    if not isinstance(token_roles, list):
        return set()
    return {str(r).lower() for r in token_roles}


def requester_from_token(payload: dict) -> Requester:
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token subject missing",
        )
    return Requester(
        user_id=str(sub),
        is_elevated=not _roles(payload).isdisjoint(ELEVATED_ROLES),
        email=payload.get("email"),
    )


def require_role(payload: dict, allowed_roles: list[str]):
    roles = _roles(payload)

    if not roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Roles missing in token",
        )

    allowed = {r.lower() for r in allowed_roles}

    if roles.isdisjoint(allowed):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access forbidden for this role",
        )
