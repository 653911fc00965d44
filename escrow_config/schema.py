"""
Release configuration schema.

Defines the human-authored, reviewable release-rule configuration.  YAML
files are parsed into these types by the loader and checked by the
validator before the engine ever sees them.

Everything here is declarative data: the Rule Catalog turns ``PolicyRule``
entries into ``ReleasePolicy`` values, the orchestrator reads
``EngineSettings`` and ``RetrySettings``, and the scheduler reads
``TriggerDef`` entries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

# ---------------------------------------------------------------------------
# Release rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PolicyRule:
    """One named release policy (dispute, high_value, milestone, standard)."""

    kind: str
    grace_period_days: int
    max_escrow_days: int
    requires_approval: bool = False
    description: str = ""


@dataclass(frozen=True)
class RuleSet:
    """The four policies plus the amount above which a deal is high value."""

    dispute: PolicyRule
    high_value: PolicyRule
    milestone: PolicyRule
    standard: PolicyRule
    high_value_threshold: Decimal = Decimal("5000")

    def all_rules(self) -> tuple[PolicyRule, ...]:
        return (self.dispute, self.high_value, self.milestone, self.standard)


# ---------------------------------------------------------------------------
# Runtime settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineSettings:
    """Per-run execution limits."""

    max_workers: int = 8
    max_in_flight: int = 32
    scan_page_size: int = 200
    alert_error_threshold: int = 5
    run_timeout_seconds: float | None = None


@dataclass(frozen=True)
class RetrySettings:
    """Retry budget for external calls.

    ``call_timeout_seconds`` applies to notification delivery and the payout
    hook.  Store calls are bounded by the database driver's own timeouts.
    """

    attempts: int = 3
    backoff_seconds: float = 0.2
    max_backoff_seconds: float = 2.0
    call_timeout_seconds: float = 10.0


@dataclass(frozen=True)
class NotificationSettings:
    """Who receives operational alerts and how events are queued."""

    enabled: bool = True
    admin_recipients: tuple[str, ...] = ()
    queue_size: int = 1000


@dataclass(frozen=True)
class TriggerDef:
    """A cron-scheduled release trigger."""

    name: str
    cron: str
    classes: tuple[str, ...]
    enabled: bool = True
    description: str = ""


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReleaseConfig:
    """Root configuration artifact.

    ``checksum`` is the SHA-256 of the canonical JSON form of the source
    YAML, so two runs logged with the same checksum were governed by the
    same rules.
    """

    config_id: str
    version: int
    rules: RuleSet
    engine: EngineSettings = field(default_factory=EngineSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    triggers: tuple[TriggerDef, ...] = ()
    checksum: str = ""
    source_path: str = ""

    def trigger(self, name: str) -> TriggerDef | None:
        for trigger in self.triggers:
            if trigger.name == name:
                return trigger
        return None
