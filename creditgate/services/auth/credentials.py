from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import logging
import re
import secrets
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from creditgate.core.errors import CredentialStateError
from creditgate.domain.models import Credential, Tenant
from creditgate.services.audit import record_event
from creditgate.services.credits.plans import normalize_plan
from creditgate.services.usage.ledger import UsageLedger


logger = logging.getLogger(__name__)

SECRET_PREFIX = "sk-proj-"
_DISPLAY_PREFIX_LENGTH = 15
_HASH_ALGORITHM = "pbkdf2_sha256"
_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ASSIGNMENT_UNASSIGNED = "unassigned"
ASSIGNMENT_PENDING = "pending"
ASSIGNMENT_ACCEPTED = "accepted"


@dataclass(frozen=True)
class IssuedCredential:
    # The raw secret exists only in this value and is shown once.
    credential_id: str
    tenant_id: str
    raw_secret: str
    key_prefix: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_secret() -> tuple[str, str]:
    raw_secret = f"{SECRET_PREFIX}{secrets.token_hex(32)}"
    return raw_secret, f"{raw_secret[:_DISPLAY_PREFIX_LENGTH]}..."


def hash_secret(raw_secret: str, *, iterations: int) -> str:
    # Salted slow hash; the stored form embeds its own parameters.
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", raw_secret.encode("utf-8"), salt, iterations)
    return f"{_HASH_ALGORITHM}${iterations}${salt.hex()}${digest.hex()}"


def verify_secret(raw_secret: str, stored_hash: str) -> bool:
    try:
        algorithm, iterations, salt_hex, digest_hex = stored_hash.split("$")
        if algorithm != _HASH_ALGORITHM:
            return False
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(digest_hex)
        rounds = int(iterations)
    except ValueError:
        return False
    candidate = hashlib.pbkdf2_hmac("sha256", raw_secret.encode("utf-8"), salt, rounds)
    return hmac.compare_digest(candidate, expected)


def normalize_email(email: str) -> str:
    normalized = email.strip().lower()
    if not _EMAIL_PATTERN.match(normalized):
        raise CredentialStateError("Invalid email format")
    return normalized


def validate_quota_percentage(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 100:
        raise CredentialStateError("quota_percentage must be an integer between 1 and 100")
    return value


async def ensure_tenant(
    session: AsyncSession,
    tenant_id: str,
    *,
    email: str | None = None,
    plan: str = "free",
) -> Tenant:
    tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        tenant = Tenant(
            id=tenant_id,
            email=normalize_email(email) if email else None,
            plan=normalize_plan(plan).value,
        )
        session.add(tenant)
        await session.flush()
    return tenant


async def issue_credential(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str | None = None,
    quota_percentage: int = 100,
    iterations: int,
    ledger: UsageLedger | None = None,
) -> IssuedCredential:
    # Credential row and its zeroed usage aggregate commit together.
    validate_quota_percentage(quota_percentage)
    if await session.get(Tenant, tenant_id) is None:
        raise CredentialStateError(f"Unknown tenant {tenant_id}")
    raw_secret, key_prefix = generate_secret()
    secret_hash = await asyncio.to_thread(hash_secret, raw_secret, iterations=iterations)
    credential = Credential(
        id=uuid4().hex,
        tenant_id=tenant_id,
        secret_hash=secret_hash,
        key_prefix=key_prefix,
        name=name,
        quota_percentage=quota_percentage,
        is_active=True,
        assignment_status=ASSIGNMENT_UNASSIGNED,
    )
    session.add(credential)
    await session.flush()
    await (ledger or UsageLedger()).initialize(session, credential.id, commit=False)
    await session.commit()
    logger.info("credential_issued credential_id=%s tenant_id=%s", credential.id, tenant_id)
    await _audit(session, tenant_id, "credential.issued", credential.id, {"key_prefix": key_prefix})
    return IssuedCredential(
        credential_id=credential.id,
        tenant_id=tenant_id,
        raw_secret=raw_secret,
        key_prefix=key_prefix,
    )


async def resolve_credential(session: AsyncSession, raw_secret: str) -> Credential | None:
    # No lookup by secret: every active hash is a candidate for the slow check.
    if not raw_secret:
        return None
    rows = (await session.execute(select(Credential).where(Credential.is_active.is_(True)))).scalars().all()
    display_prefix = f"{raw_secret[:_DISPLAY_PREFIX_LENGTH]}..."
    # Try likely matches first; the scan still covers every candidate.
    candidates = sorted(rows, key=lambda row: row.key_prefix != display_prefix)
    for credential in candidates:
        if await asyncio.to_thread(verify_secret, raw_secret, credential.secret_hash):
            return credential
    return None


async def _owned_credential(session: AsyncSession, credential_id: str, tenant_id: str) -> Credential | None:
    result = await session.execute(
        select(Credential).where(Credential.id == credential_id, Credential.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def revoke_credential(session: AsyncSession, *, credential_id: str, tenant_id: str) -> bool:
    # Soft delete; revoked secrets are never reactivated.
    credential = await _owned_credential(session, credential_id, tenant_id)
    if credential is None:
        return False
    if credential.is_active:
        credential.is_active = False
        credential.revoked_at = _utc_now()
        await session.commit()
        logger.info("credential_revoked credential_id=%s tenant_id=%s", credential_id, tenant_id)
        await _audit(session, tenant_id, "credential.revoked", credential_id)
    return True


async def delete_credential(
    session: AsyncSession,
    *,
    credential_id: str,
    tenant_id: str,
    ledger: UsageLedger | None = None,
) -> bool:
    # Hard delete purges the ledger first so no orphaned usage remains.
    credential = await _owned_credential(session, credential_id, tenant_id)
    if credential is None:
        return False
    await (ledger or UsageLedger()).purge(session, credential_id, commit=False)
    await session.execute(delete(Credential).where(Credential.id == credential_id))
    await session.commit()
    logger.info("credential_deleted credential_id=%s tenant_id=%s", credential_id, tenant_id)
    return True


async def set_quota_percentage(
    session: AsyncSession,
    *,
    credential_id: str,
    tenant_id: str,
    quota_percentage: int,
) -> Credential:
    validate_quota_percentage(quota_percentage)
    credential = await _owned_credential(session, credential_id, tenant_id)
    if credential is None:
        raise CredentialStateError("Credential not found")
    credential.quota_percentage = quota_percentage
    await session.commit()
    return credential


async def assign_credential(
    session: AsyncSession,
    *,
    credential_id: str,
    owner_tenant_id: str,
    email: str,
) -> str:
    # unassigned -> pending; returns the invitation token to deliver out of band.
    normalized = normalize_email(email)
    credential = await _owned_credential(session, credential_id, owner_tenant_id)
    if credential is None or not credential.is_active:
        raise CredentialStateError("Credential not found or not active")
    if credential.assignment_status != ASSIGNMENT_UNASSIGNED:
        raise CredentialStateError("Credential is already assigned")
    duplicate = (
        await session.execute(
            select(Credential.id).where(
                Credential.tenant_id == owner_tenant_id,
                Credential.assigned_to_email == normalized,
                Credential.is_active.is_(True),
            )
        )
    ).first()
    if duplicate is not None:
        raise CredentialStateError("A credential is already assigned to this email address")
    token = uuid4().hex
    credential.assigned_to_email = normalized
    credential.assignment_status = ASSIGNMENT_PENDING
    credential.invitation_token = token
    await session.commit()
    logger.info("credential_assignment_pending credential_id=%s", credential_id)
    await _audit(session, owner_tenant_id, "credential.assignment.invited", credential_id)
    return token


async def accept_assignment(
    session: AsyncSession,
    *,
    invitation_token: str,
    account_id: str,
    account_email: str,
) -> Credential:
    # pending -> accepted; only the invited address may accept.
    credential = (
        await session.execute(
            select(Credential).where(
                Credential.invitation_token == invitation_token,
                Credential.assignment_status == ASSIGNMENT_PENDING,
                Credential.is_active.is_(True),
            )
        )
    ).scalar_one_or_none()
    if credential is None:
        raise CredentialStateError("Invalid or expired invitation")
    if credential.assigned_to_email != normalize_email(account_email):
        raise CredentialStateError("This invitation was sent to a different email address")
    credential.assigned_to_account_id = account_id
    credential.assignment_status = ASSIGNMENT_ACCEPTED
    await session.commit()
    logger.info("credential_assignment_accepted credential_id=%s", credential.id)
    await _audit(
        session, credential.tenant_id, "credential.assignment.accepted", credential.id, {"account_id": account_id}
    )
    return credential


async def pending_invitations(session: AsyncSession, email: str) -> list[Credential]:
    rows = await session.execute(
        select(Credential)
        .where(
            Credential.assigned_to_email == normalize_email(email),
            Credential.assignment_status == ASSIGNMENT_PENDING,
            Credential.is_active.is_(True),
        )
        .order_by(Credential.created_at.desc())
    )
    return list(rows.scalars().all())


async def set_tenant_plan(session: AsyncSession, *, tenant_id: str, plan: str) -> Tenant:
    # Applies to every credential the tenant owns on their next request.
    normalized = normalize_plan(plan)
    tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        raise CredentialStateError(f"Unknown tenant {tenant_id}")
    previous = tenant.plan
    tenant.plan = normalized.value
    await session.commit()
    logger.info("tenant_plan_changed tenant_id=%s from=%s to=%s", tenant_id, previous, normalized.value)
    return tenant


async def _audit(
    session: AsyncSession,
    tenant_id: str,
    event_type: str,
    credential_id: str,
    metadata: dict[str, str] | None = None,
) -> None:
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_type="operator",
        actor_id=None,
        event_type=event_type,
        outcome="success",
        resource_type="credential",
        resource_id=credential_id,
        metadata=metadata,
        commit=True,
    )
