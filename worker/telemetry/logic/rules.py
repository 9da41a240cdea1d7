"""
Threshold dimensions checked against every reading.

Each :class:`ThresholdRule` ties one sensor to one :class:`ErrorFlag` and a
limit. The limit either comes from the device configuration document
(``config_key``) or is a built-in constant (``limit``). Adding a dimension is
a matter of adding a rule here and, for user-configurable limits, a field on
``DeviceConfig``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from worker.telemetry.models import DeviceConfig, ErrorFlag

# ---------------------------------------------------------------------------
# Built-in limits (not user configurable)
# ---------------------------------------------------------------------------

MIN_BATTERY_VOLTAGE: float = 4.0
MAX_LEAK_VOLTAGE: float = 0.6


# ---------------------------------------------------------------------------
# Notification text
# ---------------------------------------------------------------------------

GENERIC_WARN_MSG = "Please check your system to avoid damage..."

CONDITION_MESSAGES: dict[ErrorFlag, str] = {
    ErrorFlag.TEMP_HIGH: "TEMPERATURE TOO HIGH...",
    ErrorFlag.TEMP_LOW: "TEMPERATURE TOO LOW...",
    ErrorFlag.PH_HIGH: "PH TOO HIGH...",
    ErrorFlag.PH_LOW: "PH TOO LOW...",
    ErrorFlag.WATER_LEVEL_LOW: "WATER LEVEL TOO LOW...",
    ErrorFlag.BATTERY_LOW: "BATTERY TOO LOW...",
    ErrorFlag.INTERNAL_LEAK_DETECTED: "INTERNAL LEAK DETECTED...",
    ErrorFlag.LEAK_DETECTED: "LEAK DETECTED...",
}


class Direction(str, Enum):
    """Which side of the limit is a violation. Comparisons are strict."""

    ABOVE = "above"
    BELOW = "below"


@dataclass(frozen=True)
class ThresholdRule:
    """One sensor/flag/limit triple."""

    flag: ErrorFlag
    sensor: str
    direction: Direction
    config_key: str | None = None
    limit: float | None = None

    def resolve_limit(self, config: DeviceConfig) -> float | None:
        """Return the limit to apply, or None if this rule is disabled."""
        if self.config_key is not None:
            return config.threshold(self.config_key)
        return self.limit


def is_violation(value: float, limit: float, direction: Direction) -> bool:
    """Strict comparison: a value equal to the limit is never a violation."""
    if direction is Direction.ABOVE:
        return value > limit
    return value < limit


# Limits owned by the user through the ``Config`` document. A rule whose key
# is missing from the document is skipped.
CONFIG_RULES: tuple[ThresholdRule, ...] = (
    ThresholdRule(
        ErrorFlag.TEMP_LOW, "temperature", Direction.BELOW,
        config_key="min_temperature",
    ),
    ThresholdRule(
        ErrorFlag.TEMP_HIGH, "temperature", Direction.ABOVE,
        config_key="max_temperature",
    ),
    ThresholdRule(
        ErrorFlag.PH_HIGH, "ph", Direction.ABOVE, config_key="max_ph",
    ),
    ThresholdRule(
        ErrorFlag.PH_LOW, "ph", Direction.BELOW, config_key="min_ph",
    ),
    ThresholdRule(
        ErrorFlag.WATER_LEVEL_LOW, "water_level", Direction.BELOW,
        config_key="min_water_level",
    ),
)

# Hardware limits that apply regardless of configuration.
FIXED_RULES: tuple[ThresholdRule, ...] = (
    ThresholdRule(
        ErrorFlag.BATTERY_LOW, "battery_voltage", Direction.BELOW,
        limit=MIN_BATTERY_VOLTAGE,
    ),
    ThresholdRule(
        ErrorFlag.INTERNAL_LEAK_DETECTED, "internal_leak", Direction.ABOVE,
        limit=MAX_LEAK_VOLTAGE,
    ),
    ThresholdRule(
        ErrorFlag.LEAK_DETECTED, "leak", Direction.ABOVE,
        limit=MAX_LEAK_VOLTAGE,
    ),
)

ALL_RULES: tuple[ThresholdRule, ...] = CONFIG_RULES + FIXED_RULES
