"""
Tests for Telemetry Worker domain models.

Focus on document key compatibility (aliases), sparse readings and the
immutability of error state.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from worker.telemetry.models import (
    DEFAULT_CONFIG_DOC,
    DEFAULT_ERROR_DOC,
    DeviceConfig,
    ErrorFlag,
    ErrorState,
    SensorReading,
)


class TestSensorReading:
    def test_ph_alias(self) -> None:
        reading = SensorReading.model_validate({"pH": 6.5})
        assert reading.ph == 6.5
        assert reading.to_document() == {"pH": 6.5}

    def test_sparse_document(self) -> None:
        reading = SensorReading.model_validate({"leak": 0.1})
        assert reading.temperature is None
        assert reading.to_document() == {"leak": 0.1}

    def test_timestamp_serialized(self) -> None:
        reading = SensorReading(
            temperature=20.0,
            timestamp=datetime(2026, 2, 6, 12, 0, tzinfo=timezone.utc),
        )
        assert reading.to_document()["timestamp"] == "2026-02-06T12:00:00Z"

    def test_integer_values_accepted(self) -> None:
        assert SensorReading.model_validate({"temperature": 30}).temperature == 30.0

    def test_non_numeric_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SensorReading.model_validate({"battery_voltage": "low"})

    def test_boolean_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SensorReading.model_validate({"leak": True})

    def test_value_of(self) -> None:
        reading = SensorReading.model_validate({"pH": 7.0, "extra_sensor": 1})
        assert reading.value_of("ph") == 7.0
        assert reading.value_of("water_level") is None


class TestDeviceConfig:
    def test_default_document(self) -> None:
        config = DeviceConfig.model_validate(DEFAULT_CONFIG_DOC)
        assert config.to_document() == DEFAULT_CONFIG_DOC

    def test_threshold_lookup(self) -> None:
        config = DeviceConfig.model_validate({"max_ph": 9, "max_ec": 2.5})
        assert config.threshold("max_ph") == 9
        assert config.threshold("max_ec") == 2.5
        assert config.threshold("min_ph") is None
        assert config.threshold("nonexistent") is None

    def test_non_threshold_keys_untyped(self) -> None:
        doc = {"update_interval_minutes": 0.5, "peristaltic_pump_on": "sometimes"}
        config = DeviceConfig.model_validate(doc)
        assert config.to_document() == doc

    def test_non_numeric_extra_threshold_ignored(self) -> None:
        config = DeviceConfig.model_validate({"max_ec": "high", "min_ec": True})
        assert config.threshold("max_ec") is None
        assert config.threshold("min_ec") is None


class TestErrorState:
    def test_aliases_match_flags(self) -> None:
        assert ErrorState().to_document() == DEFAULT_ERROR_DOC
        assert set(DEFAULT_ERROR_DOC) == {flag.value for flag in ErrorFlag}

    def test_missing_keys_default_false(self) -> None:
        state = ErrorState.model_validate({"PH_HIGH": True})
        assert state.is_set(ErrorFlag.PH_HIGH)
        assert state.active_flags() == [ErrorFlag.PH_HIGH]

    def test_with_flags_returns_copy(self) -> None:
        original = ErrorState()
        updated = original.with_flags(
            {ErrorFlag.BATTERY_LOW: True, ErrorFlag.LEAK_DETECTED: True}
        )

        assert original.active_flags() == []
        assert set(updated.active_flags()) == {
            ErrorFlag.BATTERY_LOW,
            ErrorFlag.LEAK_DETECTED,
        }

    def test_frozen(self) -> None:
        with pytest.raises(ValidationError):
            ErrorState().ph_high = True  # type: ignore[misc]
