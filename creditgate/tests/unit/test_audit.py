from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from creditgate.domain.models import AuditEvent
from creditgate.persistence.db import SessionLocal
from creditgate.services.audit import record_event, sanitize_metadata
from creditgate.tests.utils.seed import create_tenant


def test_sensitive_metadata_is_redacted_recursively() -> None:
    sanitized = sanitize_metadata(
        {
            "reason": "invalid",
            "Authorization": "Bearer sk-proj-abc",
            "upstream": {"refresh_token": "r1", "expires_in": 3600},
            "total_tokens": 150,
            "items": [{"code_verifier": "v"}, {"model": "claude-haiku"}],
            "messages": [{"role": "user", "content": "private"}],
        }
    )
    assert sanitized == {
        "reason": "invalid",
        "Authorization": "[REDACTED]",
        "upstream": {"refresh_token": "[REDACTED]", "expires_in": 3600},
        "total_tokens": 150,
        "items": [{"code_verifier": "[REDACTED]"}, {"model": "claude-haiku"}],
        "messages": "[REDACTED]",
    }


async def test_event_without_session_commits_on_its_own() -> None:
    tenant_id = await create_tenant()
    await record_event(
        tenant_id=tenant_id,
        actor_type="system",
        actor_id=None,
        event_type="usage.record.failed",
        outcome="failure",
        metadata={"api_key": "sk-proj-abc", "model": "claude-haiku"},
        error_code="USAGE_RECORD_FAILED",
    )

    async with SessionLocal() as session:
        event = (await session.execute(select(AuditEvent))).scalar_one()
    assert event.tenant_id == tenant_id
    assert event.metadata_json == {"api_key": "[REDACTED]", "model": "claude-haiku"}


async def test_write_failure_is_logged_not_raised(caplog) -> None:  # type: ignore[no-untyped-def]
    class _FailingSession:
        rolled_back = False

        def add(self, _event) -> None:  # type: ignore[no-untyped-def]
            return None

        async def commit(self) -> None:
            raise OperationalError("INSERT INTO audit_events", {}, Exception("database is locked"))

        async def rollback(self) -> None:
            type(self).rolled_back = True

    await record_event(
        session=_FailingSession(),  # type: ignore[arg-type]
        tenant_id=None,
        actor_type="system",
        actor_id=None,
        event_type="quota.blocked",
        outcome="failure",
        commit=True,
    )

    assert _FailingSession.rolled_back
    assert any("audit_event_write_failed" in record.getMessage() for record in caplog.records)
