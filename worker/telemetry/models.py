"""
Domain models for the Telemetry Worker.

Pydantic v2 models for the documents exchanged with devices, the document
store and the push channels.

**CRITICAL**: Field aliases MUST exactly match the keys devices publish and
the keys stored in the ``Config`` / ``Error`` documents (e.g. ``pH``,
``PH_HIGH``) so that documents written by the mobile app and by older
firmware stay readable.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ErrorFlag(str, Enum):
    """A monitored condition. Values are the keys of the ``Error`` document."""

    PH_HIGH = "PH_HIGH"
    PH_LOW = "PH_LOW"
    TEMP_HIGH = "TEMP_HIGH"
    TEMP_LOW = "TEMP_LOW"
    WATER_LEVEL_LOW = "WATER_LEVEL_LOW"
    BATTERY_LOW = "BATTERY_LOW"
    LEAK_DETECTED = "LEAK_DETECTED"
    INTERNAL_LEAK_DETECTED = "INTERNAL_LEAK_DETECTED"


class Priority(str, Enum):
    """Push delivery priority."""

    NORMAL = "normal"
    HIGH = "high"


class IngestStage(str, Enum):
    """Stages a reading passes through in the ingestion pipeline, in order."""

    RECEIVED = "received"
    TIMESTAMPED = "timestamped"
    PERSISTED = "persisted"
    CONFIG_RESOLVED = "config_resolved"
    ERROR_STATE_RESOLVED = "error_state_resolved"
    EVALUATED = "evaluated"
    NOTIFIED = "notified"
    ERROR_STATE_PERSISTED = "error_state_persisted"


# ---------------------------------------------------------------------------
# Input: SensorReading (device -> queue -> Telemetry Worker)
# ---------------------------------------------------------------------------


class SensorReading(BaseModel):
    """A sparse set of sensor values published by one device.

    Every known sensor is an optional field; ``None`` means the device did not
    report it. Unknown keys are kept (``extra="allow"``) so that they survive
    into the status and history documents, but the evaluator never reads them.

    ``timestamp`` is assigned by the worker on receipt, never trusted from the
    device.
    """

    model_config = {"populate_by_name": True, "extra": "allow", "frozen": True}

    temperature: float | None = None
    ph: float | None = Field(default=None, alias="pH")
    battery_voltage: float | None = None
    leak: float | None = None
    internal_leak: float | None = None
    water_level: float | None = None

    timestamp: datetime | None = None

    @field_validator(
        "temperature",
        "ph",
        "battery_voltage",
        "leak",
        "internal_leak",
        "water_level",
        mode="before",
    )
    @classmethod
    def _reject_bool(cls, value: Any) -> Any:
        # JSON true/false would otherwise coerce to 1.0/0.0
        if isinstance(value, bool):
            raise ValueError("sensor value must be a number, not a boolean")
        return value

    def value_of(self, sensor: str) -> float | None:
        """Return the reading for ``sensor`` (attribute name), or None."""
        return getattr(self, sensor, None)

    def to_document(self) -> dict[str, Any]:
        """Serialize using device keys, omitting sensors that were not sent."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class DeviceEvent(BaseModel):
    """One message from the telemetry queue: who sent it and what it read."""

    model_config = {"populate_by_name": True}

    message_id: str
    device_id: str = Field(min_length=1)
    reading: SensorReading
    sent_at: datetime | None = None  # when the queue accepted the message


# ---------------------------------------------------------------------------
# Documents: DeviceConfig / ErrorState
# ---------------------------------------------------------------------------


class DeviceConfig(BaseModel):
    """Per-device configuration document (``Config/<deviceId>``).

    Only the thresholds read by the evaluator are typed. A document without
    e.g. ``max_ph`` simply disables that check. Setpoints and actuator keys
    (``target_ph``, ``peristaltic_pump_on``, ``update_interval_minutes``) and
    anything else the app writes belong to the device: they are carried as
    extras, never validated, and pushed back to the device untouched.
    """

    model_config = {"populate_by_name": True, "extra": "allow", "frozen": True}

    max_ph: float | None = None
    min_ph: float | None = None
    max_temperature: float | None = None
    min_temperature: float | None = None
    min_water_level: float | None = None

    def threshold(self, key: str) -> float | None:
        """Return the numeric threshold stored under ``key``, or None."""
        value = getattr(self, key, None)
        if value is None and self.model_extra:
            value = self.model_extra.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return value

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ErrorState(BaseModel):
    """Per-device active-condition document (``Error/<deviceId>``).

    One flag per :class:`ErrorFlag`. A flag is true while the most recent
    reading that carried the relevant sensor violated its threshold.
    """

    model_config = {"populate_by_name": True, "frozen": True}

    ph_high: bool = Field(default=False, alias="PH_HIGH")
    ph_low: bool = Field(default=False, alias="PH_LOW")
    temp_high: bool = Field(default=False, alias="TEMP_HIGH")
    temp_low: bool = Field(default=False, alias="TEMP_LOW")
    water_level_low: bool = Field(default=False, alias="WATER_LEVEL_LOW")
    battery_low: bool = Field(default=False, alias="BATTERY_LOW")
    leak_detected: bool = Field(default=False, alias="LEAK_DETECTED")
    internal_leak_detected: bool = Field(
        default=False, alias="INTERNAL_LEAK_DETECTED"
    )

    def is_set(self, flag: ErrorFlag) -> bool:
        return bool(getattr(self, flag.value.lower()))

    def active_flags(self) -> list[ErrorFlag]:
        return [flag for flag in ErrorFlag if self.is_set(flag)]

    def with_flags(self, updates: dict[ErrorFlag, bool]) -> ErrorState:
        """Return a copy with ``updates`` applied; ``self`` is left untouched."""
        return self.model_copy(
            update={flag.value.lower(): value for flag, value in updates.items()}
        )

    def to_document(self) -> dict[str, bool]:
        return self.model_dump(by_alias=True)


# Documents written the first time a device is seen.
DEFAULT_CONFIG_DOC: dict[str, Any] = {
    "max_ph": 10,
    "min_ph": 5,
    "max_temperature": 25,
    "min_temperature": 15,
    "peristaltic_pump_on": False,
    "target_ph": 7,
    "update_interval_minutes": 30,
}

DEFAULT_ERROR_DOC: dict[str, bool] = {flag.value: False for flag in ErrorFlag}


# ---------------------------------------------------------------------------
# Output: Notification (Telemetry Worker -> push channel)
# ---------------------------------------------------------------------------

NOTIFICATION_TTL_SECONDS = 60 * 60 * 24


class Notification(BaseModel):
    """A user-facing alert for one device and one newly raised condition.

    ``topic`` is the device identifier; mobile clients subscribe per device.
    Notifications are sent, never stored.
    """

    model_config = {"populate_by_name": True, "frozen": True}

    device_id: str
    condition: ErrorFlag
    title: str
    body: str
    priority: Priority = Priority.HIGH
    ttl_seconds: int = NOTIFICATION_TTL_SECONDS

    @property
    def topic(self) -> str:
        return self.device_id


class EvaluationResult(BaseModel):
    """Output of one evaluation: the complete next state and what to send."""

    model_config = {"frozen": True}

    error_state: ErrorState
    notifications: list[Notification] = []
    changed_flags: list[ErrorFlag] = []


class IngestOutcome(BaseModel):
    """What happened to one reading in the ingestion pipeline."""

    device_id: str
    stage: IngestStage = IngestStage.RECEIVED
    received_at: datetime | None = None
    telemetry_persisted: bool = False
    notifications_sent: int = 0
    notifications_failed: int = 0
    error_state: ErrorState | None = None


# ---------------------------------------------------------------------------
# Output: DeviceConfigRequest (Telemetry Worker -> device config channel)
# ---------------------------------------------------------------------------


class DeviceConfigRequest(BaseModel):
    """Addressed configuration update for a single device.

    ``name`` is the fully-qualified device path and ``binary_data`` the
    base64-encoded JSON configuration document.
    """

    model_config = {"populate_by_name": True, "frozen": True}

    name: str
    binary_data: str
