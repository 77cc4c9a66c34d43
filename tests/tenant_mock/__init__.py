"""In-memory tenant services for testing.

This module provides mock implementations of the remote collaborators the
reconcilers talk to, so whole runs can be exercised without a tenant.

Key Features:
- In-memory rule store with stable object ids (renames keep identity)
- Mailbox inventory with configurable permission-record shapes
- Failure injection (transient N times, permanent, not found)
- Call recording for "no remote mutation issued" assertions
- Controllable monotonic clock and recording sleep for deadline tests

Usage:
    from tenant_mock import FakeClock, MockDirectoryService, RecordingSleep

    directory = MockDirectoryService()
    engine = TenantSyncEngine(config, directory=directory, sleep=RecordingSleep())
    report = await engine.run(roster=names, disclaimer=payload)

    assert directory.mutation_count == 3
"""

from .clock import FakeClock, RecordingSleep
from .directory import MockDirectoryService
from .failures import FailureRule
from .inventory import MockMailboxInventory

__all__ = [
    "FailureRule",
    "FakeClock",
    "MockDirectoryService",
    "MockMailboxInventory",
    "RecordingSleep",
]
