"""
Threshold evaluation for the Telemetry Worker.

Implements ``ThresholdEvaluator.evaluate`` which, given one reading, the
device configuration and the prior error state, computes the next error
state and the notifications to send. Pure: no I/O and no mutation of its
inputs.

Key Responsibilities:
    - Presence Gating: A rule is only decided when its sensor is in the
      reading (and, for configurable rules, its limit is in the config).
      Otherwise the prior flag is carried over unchanged.
    - Strict Comparison: ``value > max`` raises a high flag, ``value < min``
      a low flag. Equal to the limit is in range.
    - Edge Triggering: A notification is built only when a flag goes from
      false to true. Persisting violations are silent, and so is clearing.
    - Snapshot Semantics: Every rule reads the same prior state; all
      verdicts are merged into one complete next state.
"""

from __future__ import annotations

import logging
import math

from worker.telemetry.logic.rules import (
    ALL_RULES,
    CONDITION_MESSAGES,
    GENERIC_WARN_MSG,
    ThresholdRule,
    is_violation,
)
from worker.telemetry.models import (
    DeviceConfig,
    ErrorFlag,
    ErrorState,
    EvaluationResult,
    Notification,
    SensorReading,
)

logger = logging.getLogger(__name__)


def build_notification(device_id: str, flag: ErrorFlag) -> Notification:
    """Build the user-facing alert for ``flag`` on ``device_id``."""
    return Notification(
        device_id=device_id,
        condition=flag,
        title=f"{device_id}: {CONDITION_MESSAGES[flag]}",
        body=GENERIC_WARN_MSG,
    )


def decide(
    rule: ThresholdRule, reading: SensorReading, config: DeviceConfig
) -> bool | None:
    """Return the verdict of ``rule`` for this reading.

    Returns
    -------
    bool or None
        True if violated, False if in range, None if the rule cannot be
        decided (sensor not reported, non-finite value, or no limit set).
    """
    limit = rule.resolve_limit(config)
    if limit is None:
        return None

    value = reading.value_of(rule.sensor)
    if value is None or not math.isfinite(value):
        return None

    return is_violation(value, limit, rule.direction)


class ThresholdEvaluator:
    """Evaluates readings against a fixed table of threshold rules.

    Parameters
    ----------
    rules : tuple[ThresholdRule, ...]
        Rules to apply. Defaults to every configurable and fixed rule.
    """

    def __init__(self, rules: tuple[ThresholdRule, ...] = ALL_RULES) -> None:
        self._rules = rules

    @property
    def rules(self) -> tuple[ThresholdRule, ...]:
        return self._rules

    def evaluate(
        self,
        device_id: str,
        reading: SensorReading,
        config: DeviceConfig,
        prior: ErrorState,
    ) -> EvaluationResult:
        """Evaluate one reading.

        Parameters
        ----------
        device_id : str
            Device the reading came from. Used as the notification topic.
        reading : SensorReading
            Sensor values; absent sensors leave their flags untouched.
        config : DeviceConfig
            Current device configuration (source of user thresholds).
        prior : ErrorState
            Error state before this reading. Never modified.

        Returns
        -------
        EvaluationResult
            The complete next error state, one notification per flag that
            went false -> true, and the list of flags whose value changed.
        """
        verdicts: dict[ErrorFlag, bool] = {}
        for rule in self._rules:
            verdict = decide(rule, reading, config)
            if verdict is None:
                continue
            verdicts[rule.flag] = verdict

        notifications: list[Notification] = []
        changed: list[ErrorFlag] = []
        for flag, active in verdicts.items():
            was_active = prior.is_set(flag)
            if active == was_active:
                if active:
                    logger.debug(
                        "Condition %s still active for device=%s, "
                        "not re-notifying",
                        flag.value,
                        device_id,
                    )
                continue

            changed.append(flag)
            if active:
                logger.info(
                    "Condition %s raised for device=%s", flag.value, device_id
                )
                notifications.append(build_notification(device_id, flag))
            else:
                logger.info(
                    "Condition %s cleared for device=%s", flag.value, device_id
                )

        return EvaluationResult(
            error_state=prior.with_flags(verdicts),
            notifications=notifications,
            changed_flags=changed,
        )
