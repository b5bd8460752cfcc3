from datetime import timedelta

import pytest
from jose import jwt

from telecare.core.errors import AuthError
from telecare.core.security import (
    ALGORITHM,
    SECRET_KEY,
    Identity,
    JWTCredentialVerifier,
    create_access_token,
)
from telecare.shared.constants import Role


@pytest.mark.asyncio
async def test_token_round_trip() -> None:
    token = create_access_token("doc-1", Role.DOCTOR, name="Dr. Lee")

    identity = await JWTCredentialVerifier().verify_credential(token)

    assert identity == Identity(user_id="doc-1", role=Role.DOCTOR, name="Dr. Lee")


@pytest.mark.asyncio
async def test_patients_claim_restricts_access() -> None:
    token = create_access_token("fam-1", "family", patient_ids=["patient-2", "patient-1"])

    identity = await JWTCredentialVerifier().verify_credential(token)

    assert identity.patient_ids == frozenset({"patient-1", "patient-2"})
    assert identity.may_access("patient-1")
    assert not identity.may_access("patient-3")


@pytest.mark.asyncio
async def test_expired_token_is_rejected() -> None:
    token = create_access_token("doc-1", Role.DOCTOR, expires_delta=timedelta(seconds=-1))

    with pytest.raises(AuthError) as exc_info:
        await JWTCredentialVerifier().verify_credential(token)

    assert exc_info.value.message == "invalid or expired credential"


@pytest.mark.asyncio
async def test_token_signed_with_other_key_is_rejected() -> None:
    token = create_access_token("doc-1", Role.DOCTOR)

    with pytest.raises(AuthError):
        await JWTCredentialVerifier(secret_key="another-secret").verify_credential(token)


@pytest.mark.asyncio
async def test_token_without_role_is_rejected() -> None:
    token = jwt.encode({"sub": "someone", "role": "nurse"}, SECRET_KEY, algorithm=ALGORITHM)

    with pytest.raises(AuthError) as exc_info:
        await JWTCredentialVerifier().verify_credential(token)

    assert exc_info.value.context == {"user_id": "someone"}


@pytest.mark.asyncio
async def test_token_without_subject_is_rejected() -> None:
    token = jwt.encode({"role": "doctor"}, SECRET_KEY, algorithm=ALGORITHM)

    with pytest.raises(AuthError):
        await JWTCredentialVerifier().verify_credential(token)


@pytest.mark.asyncio
async def test_empty_credential_is_rejected() -> None:
    with pytest.raises(AuthError):
        await JWTCredentialVerifier().verify_credential("")


def test_admin_may_access_any_patient() -> None:
    admin = Identity(user_id="admin-1", role=Role.ADMIN, patient_ids=frozenset())

    assert admin.may_access("patient-42")
