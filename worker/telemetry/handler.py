"""
Lambda handler for the Telemetry Worker.

Implements the ``handler(event, context)`` entrypoint for the SQS-triggered
Lambda function that receives device readings. Each record is one reading
from one device; it is timestamped, written to the status and history
stores, evaluated against the device's thresholds, and the resulting error
state is persisted after any new alerts are sent.

Pipeline per reading::

    RECEIVED -> TIMESTAMPED -> PERSISTED(status, history) -> CONFIG_RESOLVED
    -> ERROR_STATE_RESOLVED -> EVALUATED -> NOTIFIED -> ERROR_STATE_PERSISTED

Key Design Decisions:
    - **Partial Batch Failure**: Uses the ``batchItemFailures`` response format
      so that only readings whose evaluation could not be committed are
      redelivered.
    - **Malformed Record ACK**: Records without a device id or with an
      unreadable body are logged and ACKed; retrying cannot fix them.
    - **Best-Effort Telemetry**: Status/history write failures are logged and
      the reading is still evaluated.
    - **Notification Isolation**: A failed push is logged and never blocks the
      other notifications or the error-state write.
    - **Independent Tasks**: Readings share no in-process state, so a batch is
      processed on a thread pool. Two readings from the same device in one
      batch may both see the same prior state; a duplicate alert is the
      accepted worst case.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from worker.telemetry.logic.evaluator import ThresholdEvaluator
from worker.telemetry.models import (
    DeviceEvent,
    IngestOutcome,
    IngestStage,
    SensorReading,
)
from worker.telemetry.notifier import NotificationDispatcher, NotificationError
from worker.telemetry.repo import (
    ConfigStore,
    ErrorStateStore,
    StoreError,
    TelemetryStore,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Metric Constants
# ---------------------------------------------------------------------------

METRIC_READINGS_PROCESSED = "ReadingsProcessed"
METRIC_ALERTS_RAISED = "AlertsRaised"
METRIC_INGEST_LAG = "IngestLag"


class MalformedMessageError(ValueError):
    """A queue record that can never be processed."""


class ErrorStatePersistError(StoreError):
    """The evaluated error state could not be written back."""


# ---------------------------------------------------------------------------
# SQS Batch Response Models
# ---------------------------------------------------------------------------


class SQSBatchItemFailure:
    """A single failed item in the SQS partial batch response."""

    __slots__ = ("item_identifier",)

    def __init__(self, item_identifier: str) -> None:
        self.item_identifier = item_identifier

    def to_dict(self) -> dict[str, str]:
        return {"itemIdentifier": self.item_identifier}


class SQSBatchResponse:
    """Partial batch failure response for SQS Lambda integration."""

    __slots__ = ("batch_item_failures",)

    def __init__(self) -> None:
        self.batch_item_failures: list[SQSBatchItemFailure] = []

    def add_failure(self, message_id: str) -> None:
        self.batch_item_failures.append(SQSBatchItemFailure(message_id))

    def to_dict(self) -> dict[str, list[dict[str, str]]]:
        return {
            "batchItemFailures": [
                f.to_dict() for f in self.batch_item_failures
            ]
        }


# ---------------------------------------------------------------------------
# Metric Emitter
# ---------------------------------------------------------------------------


def _default_metric_emitter(
    name: str, value: float, unit: str, dimensions: dict[str, str]
) -> None:
    """Default metric emitter that logs metrics when no CloudWatch emitter is configured."""
    logger.info(
        "Metric: %s=%.3f %s dimensions=%s",
        name,
        value,
        unit,
        dimensions,
    )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Message Parsing
# ---------------------------------------------------------------------------


def message_attribute(record: dict[str, Any], name: str) -> str | None:
    """Read a string message attribute from an SQS record.

    Accepts the Lambda event shape (``stringValue``), the ReceiveMessage API
    shape (``StringValue``) and plain string values.
    """
    attributes = record.get("messageAttributes") or {}
    value = attributes.get(name)
    if isinstance(value, dict):
        value = value.get("stringValue", value.get("StringValue"))
    if isinstance(value, str) and value:
        return value
    return None


def _sent_at(record: dict[str, Any]) -> datetime | None:
    sent_ms = (record.get("attributes") or {}).get("SentTimestamp")
    if sent_ms is None:
        return None
    try:
        return datetime.fromtimestamp(int(sent_ms) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def parse_device_event(record: dict[str, Any]) -> DeviceEvent:
    """Parse one SQS record into a ``DeviceEvent``.

    The device identifier comes from the ``deviceId`` message attribute,
    falling back to a ``deviceId`` key in the body.

    Raises
    ------
    MalformedMessageError
        If the body is not a JSON object, no device id is present, or a
        known sensor carries a non-numeric value.
    """
    message_id = record.get("messageId", "")
    try:
        body = json.loads(record["body"])
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedMessageError(f"unreadable body: {exc}") from exc
    if not isinstance(body, dict):
        raise MalformedMessageError("body is not a JSON object")

    body_device_id = body.pop("deviceId", None)
    device_id = message_attribute(record, "deviceId") or body_device_id
    if not device_id or not isinstance(device_id, str):
        raise MalformedMessageError("missing device identifier")

    # The server assigns the timestamp; never trust one from the device.
    body.pop("timestamp", None)

    try:
        reading = SensorReading.model_validate(body)
        return DeviceEvent(
            message_id=message_id,
            device_id=device_id,
            reading=reading,
            sent_at=_sent_at(record),
        )
    except ValidationError as exc:
        raise MalformedMessageError(f"invalid reading: {exc}") from exc


def _parse_sqs_records(event: dict[str, Any]) -> list[DeviceEvent]:
    """Parse SQS event records, dropping (and so ACKing) malformed ones."""
    records = event.get("Records", [])
    if not records:
        logger.warning("SQS event contains no Records")
        return []

    parsed: list[DeviceEvent] = []
    for record in records:
        try:
            parsed.append(parse_device_event(record))
        except MalformedMessageError:
            logger.exception(
                "Rejecting SQS record messageId=%s body=%s",
                record.get("messageId", ""),
                str(record.get("body", ""))[:500],
            )
            continue

    return parsed


# ---------------------------------------------------------------------------
# TelemetryWorker
# ---------------------------------------------------------------------------


class TelemetryWorker:
    """Ingestion orchestrator for device readings.

    All state lives behind the injected stores; the worker itself holds none
    between readings.

    Parameters
    ----------
    config_store : ConfigStore
        Source of per-device configuration (default created on first contact).
    error_store : ErrorStateStore
        Source and sink of per-device error state.
    telemetry_store : TelemetryStore
        Sink for status documents and reading history.
    evaluator : ThresholdEvaluator
        Pure threshold evaluation.
    dispatcher : NotificationDispatcher
        Push channel for newly raised conditions.
    metric_emitter : callable or None
        Callback for emitting metrics. If None, metrics are logged.
    max_workers : int
        Threads used to process the records of one batch.
    clock : callable or None
        Returns the current UTC time. Injected for tests.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        error_store: ErrorStateStore,
        telemetry_store: TelemetryStore,
        evaluator: ThresholdEvaluator,
        dispatcher: NotificationDispatcher,
        metric_emitter: Any | None = None,
        max_workers: int = 1,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config_store = config_store
        self._error_store = error_store
        self._telemetry_store = telemetry_store
        self._evaluator = evaluator
        self._dispatcher = dispatcher
        self._metric_emitter = metric_emitter or _default_metric_emitter
        self._max_workers = max(1, max_workers)
        self._clock = clock or _utc_now

    def handler(self, event: dict[str, Any], context: Any) -> dict[str, Any]:
        """Lambda handler entrypoint.

        Processing flow:
        1. Parse SQS batch; malformed records are ACKed by omission.
        2. Run ``process_reading`` for every parsed record, concurrently when
           ``max_workers > 1``.
        3. Any exception from a record (store failure while resolving or
           persisting state) marks that record as failed for redelivery.
        4. Return ``SQSBatchResponse`` with partial failures.
        """
        response = SQSBatchResponse()

        events = _parse_sqs_records(event)
        if not events:
            return response.to_dict()

        if self._max_workers == 1 or len(events) == 1:
            for device_event in events:
                if not self._process_event(device_event):
                    response.add_failure(device_event.message_id)
            return response.to_dict()

        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            # map preserves record order in the failure list
            results = pool.map(self._process_event, events)
            for device_event, ok in zip(events, results):
                if not ok:
                    response.add_failure(device_event.message_id)

        return response.to_dict()

    def _process_event(self, device_event: DeviceEvent) -> bool:
        """Run one record through the pipeline; False means retry it."""
        try:
            self.process_reading(device_event.device_id, device_event.reading)
        except Exception as exc:
            logger.exception(
                "Error processing device=%s messageId=%s: %s. "
                "Message will be retried.",
                device_event.device_id,
                device_event.message_id,
                str(exc),
            )
            return False

        self._emit_ingest_lag(device_event)
        return True

    def process_reading(
        self, device_id: str, reading: SensorReading
    ) -> IngestOutcome:
        """Process one reading end to end.

        Parameters
        ----------
        device_id : str
            Device that published the reading.
        reading : SensorReading
            The reading as received (any device timestamp is replaced).

        Returns
        -------
        IngestOutcome
            Terminal stage and what was written and sent.

        Raises
        ------
        StoreError
            If configuration or error state cannot be resolved.
        ErrorStatePersistError
            If the evaluated error state cannot be written back.
        """
        outcome = IngestOutcome(device_id=device_id)
        logger.info("Received reading from device=%s", device_id)

        received_at = self._clock()
        reading = reading.model_copy(update={"timestamp": received_at})
        outcome.received_at = received_at
        self._advance(outcome, IngestStage.TIMESTAMPED)

        outcome.telemetry_persisted = self._persist_telemetry(device_id, reading)
        self._advance(outcome, IngestStage.PERSISTED)

        config = self._config_store.ensure(device_id)
        self._advance(outcome, IngestStage.CONFIG_RESOLVED)

        prior = self._error_store.ensure(device_id)
        self._advance(outcome, IngestStage.ERROR_STATE_RESOLVED)

        result = self._evaluator.evaluate(device_id, reading, config, prior)
        self._advance(outcome, IngestStage.EVALUATED)

        for notification in result.notifications:
            try:
                self._dispatcher.notify(notification)
                outcome.notifications_sent += 1
            except NotificationError:
                outcome.notifications_failed += 1
                logger.exception(
                    "Failed to send %s notification for device=%s",
                    notification.condition.value,
                    device_id,
                )
        self._advance(outcome, IngestStage.NOTIFIED)

        try:
            self._error_store.save(device_id, result.error_state)
        except StoreError as exc:
            raise ErrorStatePersistError(
                f"failed to persist error state for {device_id}: {exc}"
            ) from exc
        outcome.error_state = result.error_state
        self._advance(outcome, IngestStage.ERROR_STATE_PERSISTED)

        if result.notifications:
            self._emit(METRIC_ALERTS_RAISED, len(result.notifications), "Count")
        self._emit(METRIC_READINGS_PROCESSED, 1, "Count")

        return outcome

    def _persist_telemetry(self, device_id: str, reading: SensorReading) -> bool:
        """Write status and history. Failures are logged, never raised."""
        ok = True
        try:
            self._telemetry_store.save_status(device_id, reading)
        except StoreError:
            ok = False
            logger.warning(
                "Failed to save status for device=%s", device_id, exc_info=True
            )
        try:
            self._telemetry_store.append_history(device_id, reading)
        except StoreError:
            ok = False
            logger.warning(
                "Failed to append history for device=%s",
                device_id,
                exc_info=True,
            )
        return ok

    @staticmethod
    def _advance(outcome: IngestOutcome, stage: IngestStage) -> None:
        outcome.stage = stage
        logger.debug("device=%s stage=%s", outcome.device_id, stage.value)

    def _emit(self, name: str, value: float, unit: str) -> None:
        try:
            self._metric_emitter(name, value, unit, {})
        except Exception:
            logger.warning("Failed to emit %s metric", name, exc_info=True)

    def _emit_ingest_lag(self, device_event: DeviceEvent) -> None:
        """Emit the time from device publish to completed evaluation."""
        if device_event.sent_at is None:
            return
        lag_seconds = (self._clock() - device_event.sent_at).total_seconds()
        self._emit(METRIC_INGEST_LAG, lag_seconds, "Seconds")


# ---------------------------------------------------------------------------
# Module-level handler (Lambda entrypoint)
# ---------------------------------------------------------------------------

# Singleton worker instance, initialized on first cold start and reused
# across warm invocations.
_worker: TelemetryWorker | None = None


def _create_worker() -> TelemetryWorker:
    """Create and configure the TelemetryWorker singleton from Settings."""
    import boto3

    from worker.telemetry.config import load_settings
    from worker.telemetry.notifier import (
        LoggingNotificationDispatcher,
        SnsNotificationDispatcher,
    )
    from worker.telemetry.repo import PostgresDocumentStore

    settings = load_settings()

    store = PostgresDocumentStore(
        conninfo=settings.database_url.get_secret_value(),
    )

    dispatcher: NotificationDispatcher
    if settings.enable_notifications:
        dispatcher = SnsNotificationDispatcher(
            sns_client=boto3.client("sns", region_name=settings.aws_region),
            topic_arn_prefix=settings.notification_topic_arn_prefix,
        )
    else:
        dispatcher = LoggingNotificationDispatcher()

    return TelemetryWorker(
        config_store=ConfigStore(store),
        error_store=ErrorStateStore(store),
        telemetry_store=TelemetryStore(store),
        evaluator=ThresholdEvaluator(),
        dispatcher=dispatcher,
        max_workers=settings.max_workers,
    )


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """AWS Lambda handler entrypoint.

    Delegates to the ``TelemetryWorker`` singleton and returns the SQS batch
    response with ``batchItemFailures``.
    """
    global _worker
    if _worker is None:
        _worker = _create_worker()

    return _worker.handler(event, context)
