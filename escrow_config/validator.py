"""
Configuration Validator (``escrow_config.validator``).

Responsibility
--------------
Validates a parsed ``ReleaseConfig`` before the engine is built from it.

Invariants enforced
-------------------
* Day counts are positive; a policy's grace period never exceeds its
  maximum escrow duration.
* Worker pool bounds: ``1 <= max_workers <= 16``.
* Trigger names are unique, reference only known eligibility classes, and
  carry a parseable 5-field cron expression.

Failure modes
-------------
* Errors (``ConfigValidationResult.errors``)  -> the config MUST NOT be used.
* Warnings  -> usable but should be reviewed.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from escrow_config.schema import ReleaseConfig

MAX_WORKERS_LIMIT = 16


@dataclass
class ConfigValidationResult:
    """
    Result of configuration validation.

    ``is_valid`` returns ``True`` only when ``errors`` is empty.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_configuration(config: ReleaseConfig) -> ConfigValidationResult:
    """Validate a release configuration. Never raises."""
    result = ConfigValidationResult()

    _validate_rules(config, result)
    _validate_engine(config, result)
    _validate_retry(config, result)
    _validate_triggers(config, result)

    return result


def _validate_rules(config: ReleaseConfig, result: ConfigValidationResult) -> None:
    if config.rules.high_value_threshold <= 0:
        result.add_error(
            f"high_value_threshold must be positive, got {config.rules.high_value_threshold}"
        )

    for rule in config.rules.all_rules():
        if rule.grace_period_days < 0:
            result.add_error(f"rules.{rule.kind}.grace_period_days must be >= 0")
        if rule.max_escrow_days <= 0:
            result.add_error(f"rules.{rule.kind}.max_escrow_days must be positive")
        if rule.grace_period_days > rule.max_escrow_days:
            result.add_warning(
                f"rules.{rule.kind}: grace period ({rule.grace_period_days}d) exceeds "
                f"max escrow ({rule.max_escrow_days}d); overdue release will fire first"
            )

    if config.rules.dispute.requires_approval is False:
        result.add_warning("rules.dispute does not require approval")


def _validate_engine(config: ReleaseConfig, result: ConfigValidationResult) -> None:
    engine = config.engine
    if not 1 <= engine.max_workers <= MAX_WORKERS_LIMIT:
        result.add_error(
            f"engine.max_workers must be between 1 and {MAX_WORKERS_LIMIT}, "
            f"got {engine.max_workers}"
        )
    if engine.max_in_flight < engine.max_workers:
        result.add_error("engine.max_in_flight must be >= engine.max_workers")
    if engine.scan_page_size <= 0:
        result.add_error("engine.scan_page_size must be positive")
    if engine.alert_error_threshold < 0:
        result.add_error("engine.alert_error_threshold must be >= 0")
    if engine.run_timeout_seconds is not None and engine.run_timeout_seconds <= 0:
        result.add_error("engine.run_timeout_seconds must be positive when set")


def _validate_retry(config: ReleaseConfig, result: ConfigValidationResult) -> None:
    from escrow_kernel.services.retry import MAX_ATTEMPTS

    retry = config.retry
    if not 1 <= retry.attempts <= MAX_ATTEMPTS:
        result.add_error(f"retry.attempts must be between 1 and {MAX_ATTEMPTS}")
    if retry.backoff_seconds < 0 or retry.max_backoff_seconds < 0:
        result.add_error("retry backoff must be non-negative")
    if retry.call_timeout_seconds <= 0:
        result.add_error("retry.call_timeout_seconds must be positive")


def _validate_triggers(config: ReleaseConfig, result: ConfigValidationResult) -> None:
    # Cron grammar and class names are owned by the release domain
    from escrow_kernel.exceptions import InvalidCronExpressionError
    from escrow_release.domain.schedule import parse_cron
    from escrow_release.domain.types import CLASS_ORDER

    known = {c.value for c in CLASS_ORDER}
    seen: set[str] = set()

    for trigger in config.triggers:
        if trigger.name in seen:
            result.add_error(f"Duplicate trigger name: {trigger.name}")
        seen.add(trigger.name)

        if not trigger.classes:
            result.add_error(f"Trigger '{trigger.name}' lists no eligibility classes")
        for cls in trigger.classes:
            if cls not in known:
                result.add_error(
                    f"Trigger '{trigger.name}' references unknown class '{cls}'"
                )

        try:
            parse_cron(trigger.cron)
        except InvalidCronExpressionError as exc:
            result.add_error(f"Trigger '{trigger.name}': {exc.reason}")
