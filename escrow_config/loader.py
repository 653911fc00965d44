"""
Configuration Loader (``escrow_config.loader``).

Responsibility
--------------
Loads a release configuration YAML file and parses it into typed
``escrow_config.schema`` dataclass instances.  Runtime callers go through
``escrow_config.get_active_config()`` instead of calling this directly.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Required keys raise ``KeyError``; there are no silent defaults for the
  policy table.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the source
  document.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Non-numeric amounts or day counts  -> ``ValueError`` / ``InvalidOperation``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from escrow_config.schema import (
    EngineSettings,
    NotificationSettings,
    PolicyRule,
    ReleaseConfig,
    RetrySettings,
    RuleSet,
    TriggerDef,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_policy_rule(kind: str, data: dict[str, Any]) -> PolicyRule:
    """Parse a PolicyRule from a dict keyed under ``rules.<kind>``."""
    return PolicyRule(
        kind=kind,
        grace_period_days=int(data["grace_period_days"]),
        max_escrow_days=int(data["max_escrow_days"]),
        requires_approval=bool(data.get("requires_approval", False)),
        description=data.get("description", ""),
    )


def parse_rule_set(data: dict[str, Any]) -> RuleSet:
    return RuleSet(
        dispute=parse_policy_rule("dispute", data["dispute"]),
        high_value=parse_policy_rule("high_value", data["high_value"]),
        milestone=parse_policy_rule("milestone", data["milestone"]),
        standard=parse_policy_rule("standard", data["standard"]),
        high_value_threshold=Decimal(str(data.get("high_value_threshold", "5000"))),
    )


def parse_engine_settings(data: dict[str, Any]) -> EngineSettings:
    timeout = data.get("run_timeout_seconds")
    return EngineSettings(
        max_workers=int(data.get("max_workers", 8)),
        max_in_flight=int(data.get("max_in_flight", 32)),
        scan_page_size=int(data.get("scan_page_size", 200)),
        alert_error_threshold=int(data.get("alert_error_threshold", 5)),
        run_timeout_seconds=float(timeout) if timeout is not None else None,
    )


def parse_retry_settings(data: dict[str, Any]) -> RetrySettings:
    return RetrySettings(
        attempts=int(data.get("attempts", 3)),
        backoff_seconds=float(data.get("backoff_seconds", 0.2)),
        max_backoff_seconds=float(data.get("max_backoff_seconds", 2.0)),
        call_timeout_seconds=float(data.get("call_timeout_seconds", 10.0)),
    )


def parse_notification_settings(data: dict[str, Any]) -> NotificationSettings:
    return NotificationSettings(
        enabled=bool(data.get("enabled", True)),
        admin_recipients=tuple(str(r) for r in data.get("admin_recipients", ())),
        queue_size=int(data.get("queue_size", 1000)),
    )


def parse_trigger(data: dict[str, Any]) -> TriggerDef:
    """Parse a TriggerDef from a dict."""
    return TriggerDef(
        name=data["name"],
        cron=data["cron"],
        classes=tuple(data.get("classes", ())),
        enabled=bool(data.get("enabled", True)),
        description=data.get("description", ""),
    )


def parse_release_config(
    data: dict[str, Any],
    source_path: str = "",
) -> ReleaseConfig:
    """
    Parse a complete ReleaseConfig from the root YAML document.

    Postconditions:
        - ``checksum`` is computed over ``data`` exactly as loaded.
    """
    return ReleaseConfig(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        rules=parse_rule_set(data["rules"]),
        engine=parse_engine_settings(data.get("engine") or {}),
        retry=parse_retry_settings(data.get("retry") or {}),
        notifications=parse_notification_settings(data.get("notifications") or {}),
        triggers=tuple(parse_trigger(t) for t in data.get("triggers") or ()),
        checksum=compute_checksum(data),
        source_path=source_path,
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Postconditions:
        - Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
