"""Tenant spec and roster loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .collaborators import RemoteRuleObject
from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import TenantSpec

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def _read_yaml(path: Path, what: str) -> Any:
    """Read and parse a size-limited YAML file."""
    if not path.exists():
        raise SpecLoadError(f"{what} file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {what} file {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"{what} file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {what} file {path}: {e}") from e

    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e


def _format_validation_error(path: Path, error: ValidationError) -> str:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}")
    return f"Validation failed for {path}:\n" + "\n".join(errors)


def load_tenant_spec(spec_path: Path) -> TenantSpec:
    """Load and validate a tenant spec from YAML.

    Accepts a flat mapping or a Kubernetes-style wrapper
    (apiVersion / kind / metadata / spec). A `rosterFile` is resolved
    relative to the tenant spec file and merged into `roster`.

    Raises:
        SpecLoadError: If the tenant spec cannot be loaded or fails validation.
    """
    raw_data = _read_yaml(spec_path, "Spec")

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
    else:
        spec_data = raw_data

    try:
        spec = TenantSpec.model_validate(spec_data)
    except ValidationError as e:
        raise SpecLoadError(_format_validation_error(spec_path, e)) from e

    if spec.roster_file:
        roster_path = Path(spec.roster_file)
        if not roster_path.is_absolute():
            roster_path = spec_path.parent / roster_path
        names = load_roster(roster_path)
        spec = spec.model_copy(update={"roster": [*spec.roster, *names]})

    logger.info(
        "Loaded tenant spec from %s",
        spec_path,
        extra={"roster_size": len(spec.roster), "has_grant": spec.grant is not None},
    )
    return spec


def load_roster(roster_path: Path) -> list[str]:
    """Load display names from a YAML list (or a mapping with `names`).

    Raises:
        SpecLoadError: If the file is missing, too large or malformed.
    """
    raw_data = _read_yaml(roster_path, "Roster")

    if isinstance(raw_data, dict):
        raw_data = raw_data.get("names")
    if raw_data is None:
        return []
    if not isinstance(raw_data, list):
        raise SpecLoadError(f"Roster must be a YAML list of display names: {roster_path}")

    return [str(name).strip() for name in raw_data if name is not None and str(name).strip()]


def load_rule_snapshot(snapshot_path: Path) -> list[RemoteRuleObject]:
    """Load a YAML export of current rules for offline planning.

    Each item needs `name`; `id`, `priority`, `words`, `enabled` and
    `disclaimer` are optional. The disclaimer mapping is compared as-is against
    the payload the tenant spec produces, so an unchanged shard plans as a no-op.

    Raises:
        SpecLoadError: If the file is missing, too large or malformed.
    """
    raw_data = _read_yaml(snapshot_path, "Snapshot")
    if raw_data is None:
        return []
    if not isinstance(raw_data, list):
        raise SpecLoadError(f"Snapshot must be a YAML list of rules: {snapshot_path}")

    rules: list[RemoteRuleObject] = []
    for position, item in enumerate(raw_data):
        if not isinstance(item, dict) or not item.get("name"):
            raise SpecLoadError(f"Snapshot item {position} needs a name: {snapshot_path}")
        try:
            priority = int(item.get("priority", position + 1))
        except (TypeError, ValueError) as e:
            raise SpecLoadError(f"Snapshot item {position} has a non-integer priority") from e
        rules.append(
            RemoteRuleObject(
                object_id=str(item.get("id", f"snapshot-{position}")),
                name=str(item["name"]),
                priority=priority,
                member_words=tuple(str(w) for w in item.get("words") or ()),
                enabled=bool(item.get("enabled", True)),
                disclaimer=item.get("disclaimer"),
            )
        )
    return rules
