from __future__ import annotations

import re

import pytest
from sqlalchemy import select

from creditgate.core.errors import CredentialStateError
from creditgate.domain.models import AuditEvent, Tenant, UsageAggregate
from creditgate.persistence.db import SessionLocal
from creditgate.services.auth.credentials import (
    accept_assignment,
    assign_credential,
    generate_secret,
    hash_secret,
    issue_credential,
    pending_invitations,
    resolve_credential,
    revoke_credential,
    set_quota_percentage,
    set_tenant_plan,
    verify_secret,
)
from creditgate.tests.utils.seed import create_tenant, create_test_credential


def test_generate_secret_format() -> None:
    raw, prefix = generate_secret()
    assert re.fullmatch(r"sk-proj-[0-9a-f]{64}", raw)
    assert prefix == f"{raw[:15]}..."


def test_hash_and_verify_secret() -> None:
    stored = hash_secret("sk-proj-abc", iterations=1000)
    assert "sk-proj-abc" not in stored
    assert verify_secret("sk-proj-abc", stored)
    assert not verify_secret("sk-proj-abd", stored)
    assert not verify_secret("sk-proj-abc", "garbage")
    # Same secret hashes differently under a fresh salt.
    assert hash_secret("sk-proj-abc", iterations=1000) != stored


async def test_issue_initializes_aggregate_and_resolves() -> None:
    tenant_id = await create_tenant()
    issued = await create_test_credential(tenant_id)

    async with SessionLocal() as session:
        aggregate = await session.get(UsageAggregate, issued.credential_id)
        resolved = await resolve_credential(session, issued.raw_secret)
        missing = await resolve_credential(session, "sk-proj-" + "0" * 64)
        events = (await session.execute(select(AuditEvent.event_type))).scalars().all()

    assert aggregate is not None
    assert aggregate.request_count == 0
    assert resolved is not None
    assert resolved.id == issued.credential_id
    assert missing is None
    assert "credential.issued" in events


async def test_issue_for_unknown_tenant_fails() -> None:
    async with SessionLocal() as session:
        with pytest.raises(CredentialStateError):
            await issue_credential(session, tenant_id="nope", iterations=1000)


async def test_revoked_credential_no_longer_resolves() -> None:
    tenant_id = await create_tenant()
    issued = await create_test_credential(tenant_id)

    async with SessionLocal() as session:
        assert await revoke_credential(session, credential_id=issued.credential_id, tenant_id=tenant_id)
    async with SessionLocal() as session:
        assert await resolve_credential(session, issued.raw_secret) is None
        assert not await revoke_credential(session, credential_id=issued.credential_id, tenant_id="other")


async def test_set_quota_percentage_validates_range() -> None:
    tenant_id = await create_tenant()
    issued = await create_test_credential(tenant_id)

    async with SessionLocal() as session:
        updated = await set_quota_percentage(
            session, credential_id=issued.credential_id, tenant_id=tenant_id, quota_percentage=25
        )
        assert updated.quota_percentage == 25
        for bad in (0, 101, -5):
            with pytest.raises(CredentialStateError):
                await set_quota_percentage(
                    session, credential_id=issued.credential_id, tenant_id=tenant_id, quota_percentage=bad
                )


async def test_assignment_state_machine() -> None:
    tenant_id = await create_tenant()
    issued = await create_test_credential(tenant_id)
    second = await create_test_credential(tenant_id)

    async with SessionLocal() as session:
        token = await assign_credential(
            session, credential_id=issued.credential_id, owner_tenant_id=tenant_id, email="Dev@Example.com"
        )
        pending = await pending_invitations(session, "dev@example.com")
        assert [row.id for row in pending] == [issued.credential_id]

        with pytest.raises(CredentialStateError):
            await assign_credential(
                session, credential_id=second.credential_id, owner_tenant_id=tenant_id, email="dev@example.com"
            )
        with pytest.raises(CredentialStateError):
            await assign_credential(
                session, credential_id=second.credential_id, owner_tenant_id=tenant_id, email="not-an-email"
            )
        with pytest.raises(CredentialStateError):
            await accept_assignment(
                session, invitation_token=token, account_id="acct-2", account_email="someone@else.com"
            )

        accepted = await accept_assignment(
            session, invitation_token=token, account_id="acct-1", account_email="dev@example.com"
        )
        assert accepted.assignment_status == "accepted"
        assert accepted.assigned_to_account_id == "acct-1"

        with pytest.raises(CredentialStateError):
            await accept_assignment(
                session, invitation_token=token, account_id="acct-1", account_email="dev@example.com"
            )


async def test_set_tenant_plan_applies_immediately() -> None:
    tenant_id = await create_tenant()

    async with SessionLocal() as session:
        await set_tenant_plan(session, tenant_id=tenant_id, plan="MAX-20X")
    async with SessionLocal() as session:
        tenant = await session.get(Tenant, tenant_id)
        assert tenant is not None
        assert tenant.plan == "max-20x"
        with pytest.raises(ValueError):
            await set_tenant_plan(session, tenant_id=tenant_id, plan="gold")
