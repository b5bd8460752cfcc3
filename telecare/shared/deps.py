from typing import List

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer

from telecare.core.config import settings
from telecare.core.errors import AuthError, PermissionDeniedError
from telecare.core.security import Identity
from telecare.modules.alerts.service import AlertRuntime, get_runtime
from telecare.shared.constants import Role

reusable_oauth2 = OAuth2PasswordBearer(
    tokenUrl=f"{settings.API_V1_STR}/login/access-token",
    auto_error=False,
)


async def get_current_identity(
    token: str | None = Depends(reusable_oauth2),
    runtime: AlertRuntime = Depends(get_runtime),
) -> Identity:
    if not token:
        raise AuthError("not authenticated")
    return await runtime.verifier.verify_credential(token)


class RoleChecker:
    def __init__(self, allowed_roles: List[Role], allow_admin: bool = True) -> None:
        self.allowed_roles = allowed_roles
        self.allow_admin = allow_admin

    def __call__(self, identity: Identity = Depends(get_current_identity)) -> Identity:
        if self.allow_admin and identity.role is Role.ADMIN:
            return identity

        if identity.role in self.allowed_roles:
            return identity

        raise PermissionDeniedError(
            "not enough permissions",
            user_id=identity.user_id,
            role=identity.role.value,
        )
