"""Run configuration with validation.

One SyncConfig is constructed per reconciliation run and handed explicitly
to every component. Invalid values are rejected at construction time so a
run never starts half-configured.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RULE_PREFIX = "External Sender Disclaimer"
DEFAULT_EXCEPTION_RULE_NAME = "External Sender Disclaimer Exception"
DEFAULT_EXCEPTION_HEADER_NAME = "X-Disclaimer-Exempt"
DEFAULT_EXCEPTION_HEADER_VALUE = "true"

# Exchange transport rules accept at most 200 words per match condition
DEFAULT_BATCH_CAPACITY = 200
MAX_BATCH_CAPACITY = 200

DEFAULT_DEADLINE_SECONDS = 600
MIN_DEADLINE_SECONDS = 1
MAX_DEADLINE_SECONDS = 6 * 3600

# Existing-permission reads: linear backoff, step * attempt seconds
DEFAULT_MAX_READ_ATTEMPTS = 3
DEFAULT_READ_BACKOFF_STEP_SECONDS = 2.0

# Rule mutations: exponential backoff with jitter
DEFAULT_MAX_MUTATION_ATTEMPTS = 3
DEFAULT_MUTATION_BACKOFF_BASE_SECONDS = 2.0
MAX_RETRY_ATTEMPTS = 10

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max tenant spec / roster file
MAX_RULE_NAME_LENGTH = 64

USER_MAILBOX = "UserMailbox"
SHARED_MAILBOX = "SharedMailbox"
DEFAULT_EXCLUDE_ALIAS_PATTERN = r"^(DiscoverySearchMailbox|SystemMailbox)"

# Input validation patterns
VALID_TENANT_DOMAIN_PATTERN = r"^[a-z0-9][a-z0-9-]*(\.[a-z0-9][a-z0-9-]*)+$"
VALID_TENANT_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class MailboxFilter:
    """Inclusion predicate for the permission-grant roster.

    Shared mailboxes are opt-in: some tenants delegate them separately,
    so the default roster covers primary user mailboxes only.
    """

    recipient_types: tuple[str, ...] = (USER_MAILBOX,)
    exclude_alias_pattern: str | None = DEFAULT_EXCLUDE_ALIAS_PATTERN

    @classmethod
    def including_shared(cls, exclude_alias_pattern: str | None = DEFAULT_EXCLUDE_ALIAS_PATTERN) -> MailboxFilter:
        """Filter that covers user and shared mailboxes."""
        return cls(
            recipient_types=(USER_MAILBOX, SHARED_MAILBOX),
            exclude_alias_pattern=exclude_alias_pattern,
        )

    def matches(self, recipient_type: str, alias: str) -> bool:
        """Check whether a mailbox qualifies for reconciliation."""
        if recipient_type not in self.recipient_types:
            return False
        if self.exclude_alias_pattern and re.search(self.exclude_alias_pattern, alias or ""):
            return False
        return True


@dataclass(frozen=True)
class SyncConfig:
    """Per-run configuration for one tenant.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    tenant_id: str

    # Rule naming
    rule_prefix: str = DEFAULT_RULE_PREFIX
    exception_rule_name: str = DEFAULT_EXCEPTION_RULE_NAME

    # Sharding
    batch_capacity: int = DEFAULT_BATCH_CAPACITY

    # Timing
    deadline_seconds: float = DEFAULT_DEADLINE_SECONDS
    enable_timeout: bool = True

    # Retry
    enable_retry: bool = True
    max_read_attempts: int = DEFAULT_MAX_READ_ATTEMPTS
    read_backoff_step_seconds: float = DEFAULT_READ_BACKOFF_STEP_SECONDS
    max_mutation_attempts: int = DEFAULT_MAX_MUTATION_ATTEMPTS
    mutation_backoff_base_seconds: float = DEFAULT_MUTATION_BACKOFF_BASE_SECONDS

    # Behavior
    dry_run: bool = False
    mailbox_filter: MailboxFilter = field(default_factory=MailboxFilter)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.tenant_id:
            errors.append("TENANT_ID is required")
        elif not (
            re.match(VALID_TENANT_DOMAIN_PATTERN, self.tenant_id.lower())
            or re.match(VALID_TENANT_GUID_PATTERN, self.tenant_id.lower())
        ):
            errors.append(f"TENANT_ID must be a tenant domain or GUID: {self.tenant_id}")

        if not self.rule_prefix.strip():
            errors.append("RULE_PREFIX must not be empty")
        elif len(self.rule_prefix) > MAX_RULE_NAME_LENGTH - 5:
            errors.append(f"RULE_PREFIX leaves no room for a sequence number within {MAX_RULE_NAME_LENGTH} chars")

        if not self.exception_rule_name.strip():
            errors.append("EXCEPTION_RULE_NAME must not be empty")
        elif len(self.exception_rule_name) > MAX_RULE_NAME_LENGTH:
            errors.append(f"EXCEPTION_RULE_NAME exceeds maximum length of {MAX_RULE_NAME_LENGTH}")
        elif re.fullmatch(re.escape(self.rule_prefix) + r"\s*\d+", self.exception_rule_name):
            errors.append("EXCEPTION_RULE_NAME must not look like a numbered rule shard")

        if not (1 <= self.batch_capacity <= MAX_BATCH_CAPACITY):
            errors.append(f"BATCH_CAPACITY must be between 1 and {MAX_BATCH_CAPACITY}")

        if not (MIN_DEADLINE_SECONDS <= self.deadline_seconds <= MAX_DEADLINE_SECONDS):
            errors.append(
                f"RUN_DEADLINE_SECONDS must be between {MIN_DEADLINE_SECONDS} "
                f"and {MAX_DEADLINE_SECONDS} seconds"
            )

        for name, value in (
            ("max_read_attempts", self.max_read_attempts),
            ("max_mutation_attempts", self.max_mutation_attempts),
        ):
            if not (1 <= value <= MAX_RETRY_ATTEMPTS):
                errors.append(f"{name} must be between 1 and {MAX_RETRY_ATTEMPTS}")

        if self.read_backoff_step_seconds < 0 or self.mutation_backoff_base_seconds < 0:
            errors.append("Backoff seconds cannot be negative")

        if not self.mailbox_filter.recipient_types:
            errors.append("Mailbox filter must include at least one recipient type")

        if self.mailbox_filter.exclude_alias_pattern:
            try:
                re.compile(self.mailbox_filter.exclude_alias_pattern)
            except re.error as e:
                errors.append(f"EXCLUDE_ALIAS_PATTERN is not a valid regex: {e}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def read_attempts(self) -> int:
        """Attempts for existing-permission reads, honoring enable_retry."""
        return self.max_read_attempts if self.enable_retry else 1

    @property
    def mutation_attempts(self) -> int:
        """Attempts for rule mutations, honoring enable_retry."""
        return self.max_mutation_attempts if self.enable_retry else 1

    @property
    def effective_deadline_seconds(self) -> float | None:
        """Wall-clock budget for the run, or None when timeouts are disabled."""
        return self.deadline_seconds if self.enable_timeout else None

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables.

        Environment Variables:
            TENANT_ID: Tenant domain (contoso.onmicrosoft.com) or GUID
            RULE_PREFIX: Name prefix for disclaimer rule shards
            EXCEPTION_RULE_NAME: Name of the singleton exception rule
            BATCH_CAPACITY: Display names per rule shard (default: 200)
            RUN_DEADLINE_SECONDS: Wall-clock budget per run (default: 600)
            ENABLE_RETRY: Retry transient remote errors (default: true)
            ENABLE_TIMEOUT: Enforce the run deadline (default: true)
            DRY_RUN: If "true", plan without mutating (default: false)
            INCLUDE_SHARED_MAILBOXES: Grant on shared mailboxes too (default: false)
            EXCLUDE_ALIAS_PATTERN: Regex of aliases to leave alone
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        exclude_pattern = os.environ.get("EXCLUDE_ALIAS_PATTERN", DEFAULT_EXCLUDE_ALIAS_PATTERN) or None
        if get_bool("INCLUDE_SHARED_MAILBOXES", False):
            mailbox_filter = MailboxFilter.including_shared(exclude_pattern)
        else:
            mailbox_filter = MailboxFilter(exclude_alias_pattern=exclude_pattern)

        return cls(
            tenant_id=os.environ.get("TENANT_ID", ""),
            rule_prefix=os.environ.get("RULE_PREFIX", DEFAULT_RULE_PREFIX),
            exception_rule_name=os.environ.get("EXCEPTION_RULE_NAME", DEFAULT_EXCEPTION_RULE_NAME),
            batch_capacity=get_int("BATCH_CAPACITY", DEFAULT_BATCH_CAPACITY),
            deadline_seconds=get_int("RUN_DEADLINE_SECONDS", DEFAULT_DEADLINE_SECONDS),
            enable_timeout=get_bool("ENABLE_TIMEOUT", True),
            enable_retry=get_bool("ENABLE_RETRY", True),
            dry_run=get_bool("DRY_RUN", False),
            mailbox_filter=mailbox_filter,
        )
