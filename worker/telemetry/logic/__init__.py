"""
Core evaluation logic for the Telemetry Worker.

This package contains the threshold rule table and the pure evaluator that
turns a reading into the next error state and its notifications.

Public API:
    - ``ThresholdEvaluator`` -- Evaluates one reading against all rules.
    - ``ThresholdRule`` -- One sensor/flag/limit triple.
    - ``build_notification`` -- Alert text for a newly raised condition.
"""

from worker.telemetry.logic.evaluator import (
    ThresholdEvaluator,
    build_notification,
    decide,
)
from worker.telemetry.logic.rules import (
    ALL_RULES,
    CONFIG_RULES,
    FIXED_RULES,
    MAX_LEAK_VOLTAGE,
    MIN_BATTERY_VOLTAGE,
    Direction,
    ThresholdRule,
    is_violation,
)

__all__ = [
    "ThresholdEvaluator",
    "ThresholdRule",
    "Direction",
    "build_notification",
    "decide",
    "is_violation",
    "ALL_RULES",
    "CONFIG_RULES",
    "FIXED_RULES",
    "MIN_BATTERY_VOLTAGE",
    "MAX_LEAK_VOLTAGE",
]
