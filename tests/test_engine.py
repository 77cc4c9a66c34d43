"""Tests for per-tenant orchestration and multi-tenant fan-out."""

import pytest
from tenant_mock import FakeClock, MockDirectoryService, MockMailboxInventory, RecordingSleep

from tenant_sync.collaborators import Mailbox
from tenant_sync.config import SyncConfig
from tenant_sync.engine import TenantJob, TenantSyncEngine, sync_tenants
from tenant_sync.errors import PermanentRemoteError
from tenant_sync.models import TenantSpec
from tenant_sync.rules import ExceptionAction

GRANTEE = "svc-archive@contoso.com"


def make_spec(**overrides) -> TenantSpec:
    data = {
        "disclaimer": {"html": "<p>External sender</p>"},
        "roster": [f"User {i}" for i in range(5)],
        "grant": {"grantee": GRANTEE, "rights": ["FullAccess"]},
    }
    data.update(overrides)
    return TenantSpec.model_validate(data)


def job_options() -> dict:
    return {"clock": FakeClock(), "sleep": RecordingSleep()}


class BrokenDirectory(MockDirectoryService):
    """Directory whose listing returns garbage."""

    def list(self, name_pattern: str) -> list:
        return [object()]


class TestTenantSyncEngine:
    """Tests for TenantSyncEngine."""

    @pytest.mark.asyncio
    async def test_run_spec_rules_and_grants(self) -> None:
        """Test that a full spec reconciles rules and grants in one run."""
        directory = MockDirectoryService()
        inventory = MockMailboxInventory([Mailbox("alice@contoso.com", "alice")])
        engine = TenantSyncEngine(
            SyncConfig(tenant_id="contoso.onmicrosoft.com"),
            directory=directory,
            inventory=inventory,
            sleep=RecordingSleep(),
        )

        report = await engine.run_spec(make_spec())

        assert report.success
        assert report.rules.exception_action == ExceptionAction.CREATED_DISABLED
        assert report.rules.result.created == 2
        assert report.grants.result.created == 1
        assert len(report.messages) == 2

    @pytest.mark.asyncio
    async def test_rules_skipped_without_disclaimer(self) -> None:
        """Test that a spec without a disclaimer leaves rules alone."""
        directory = MockDirectoryService()
        engine = TenantSyncEngine(
            SyncConfig(tenant_id="contoso.onmicrosoft.com"),
            directory=directory,
            inventory=MockMailboxInventory(),
        )

        report = await engine.run_spec(make_spec(disclaimer=None))

        assert report.rules is None
        assert directory.calls == []
        assert report.grants is not None

    @pytest.mark.asyncio
    async def test_grants_skipped_without_inventory(self) -> None:
        """Test that grants are skipped when no inventory is configured."""
        engine = TenantSyncEngine(
            SyncConfig(tenant_id="contoso.onmicrosoft.com"),
            directory=MockDirectoryService(),
        )

        report = await engine.run_spec(make_spec())

        assert report.grants is None
        assert report.rules is not None

    @pytest.mark.asyncio
    async def test_custom_exception_header(self) -> None:
        """Test that a custom exception header reaches the rule store."""
        directory = MockDirectoryService()
        engine = TenantSyncEngine(SyncConfig(tenant_id="contoso.onmicrosoft.com"), directory=directory)

        await engine.run_spec(make_spec(exception={"headerName": "X-Bypass", "headerValue": "1"}))

        (exception,) = directory.by_name("External Sender Disclaimer Exception")
        assert exception.header_match == ("X-Bypass", "1")

    def test_fresh_deadline_per_run(self) -> None:
        """Test that every run gets its own deadline."""
        clock = FakeClock()
        engine = TenantSyncEngine(
            SyncConfig(tenant_id="contoso.onmicrosoft.com", deadline_seconds=10), clock=clock
        )

        first = engine.new_supervisor()
        clock.advance(20)
        second = engine.new_supervisor()

        assert first.deadline.expired
        assert not second.deadline.expired


class TestSyncTenants:
    """Tests for sync_tenants."""

    @pytest.mark.asyncio
    async def test_tenants_isolated(self) -> None:
        """Test that one failing tenant does not affect the others."""
        failing = MockDirectoryService()
        failing.failures.add("list", PermanentRemoteError("access denied"))
        healthy = MockDirectoryService()

        jobs = [
            TenantJob(SyncConfig(tenant_id="fabrikam.onmicrosoft.com"), make_spec(), directory=failing, options=job_options()),
            TenantJob(SyncConfig(tenant_id="contoso.onmicrosoft.com"), make_spec(), directory=healthy, options=job_options()),
        ]

        reports = await sync_tenants(jobs, max_parallel=2)

        assert [r.tenant_id for r in reports] == ["fabrikam.onmicrosoft.com", "contoso.onmicrosoft.com"]
        assert reports[0].rules.result.error is not None
        assert not reports[0].success
        assert reports[1].success
        assert failing.mutation_count == 0
        assert healthy.mutation_count == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_reported(self) -> None:
        """Test that an unexpected exception becomes a tenant error."""
        jobs = [
            TenantJob(SyncConfig(tenant_id="fabrikam.onmicrosoft.com"), make_spec(), directory=BrokenDirectory()),
            TenantJob(
                SyncConfig(tenant_id="contoso.onmicrosoft.com"),
                make_spec(),
                directory=MockDirectoryService(),
            ),
        ]

        reports = await sync_tenants(jobs, max_parallel=1)

        assert reports[0].error is not None
        assert "fabrikam.onmicrosoft.com" in reports[0].messages[-1]
        assert reports[1].success

    @pytest.mark.asyncio
    async def test_invalid_parallelism(self) -> None:
        """Test that max_parallel must be positive."""
        with pytest.raises(ValueError):
            await sync_tenants([], max_parallel=0)
