from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Protocol

from jose import JWTError, jwt

from telecare.core.config import settings
from telecare.core.errors import AuthError
from telecare.shared.constants import Role

ALGORITHM = "HS256"
# Tokens are minted by the auth service; the fallback only serves local runs
SECRET_KEY = settings.SECRET_KEY or (
    "09d25e094faa6ca2556c818166b7a9563b93f7099f6f0f4caa6cf63b88e8d3e7"
)


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: Role
    name: str | None = None
    # None means unrestricted; otherwise the patients this user is assigned to
    patient_ids: frozenset[str] | None = None

    def may_access(self, patient_id: str) -> bool:
        if self.role is Role.ADMIN or self.patient_ids is None:
            return True
        return patient_id in self.patient_ids


class CredentialVerifier(Protocol):
    async def verify_credential(self, token: str) -> Identity: ...


def create_access_token(
    subject: str,
    role: Role | str,
    name: str | None = None,
    patient_ids: Iterable[str] | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )

    to_encode: dict[str, Any] = {
        "exp": expire,
        "sub": str(subject),
        "role": Role(role).value,
    }
    if name:
        to_encode["name"] = name
    if patient_ids is not None:
        to_encode["patients"] = sorted(str(patient_id) for patient_id in patient_ids)
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


class JWTCredentialVerifier:
    """Verify HS256 access tokens and map their claims onto an Identity."""

    def __init__(self, secret_key: str = SECRET_KEY, algorithm: str = ALGORITHM) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm

    async def verify_credential(self, token: str) -> Identity:
        if not token:
            raise AuthError("credential required")
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except JWTError as exc:
            raise AuthError("invalid or expired credential") from exc

        user_id = payload.get("sub")
        if not user_id:
            raise AuthError("credential has no subject")
        try:
            role = Role(str(payload.get("role", "")).strip().lower())
        except ValueError:
            raise AuthError("credential has no valid role", user_id=user_id) from None

        patients = payload.get("patients")
        patient_ids = (
            frozenset(str(patient_id) for patient_id in patients)
            if isinstance(patients, list)
            else None
        )
        return Identity(
            user_id=str(user_id),
            role=role,
            name=payload.get("name"),
            patient_ids=patient_ids,
        )
