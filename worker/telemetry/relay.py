"""
Config-Push Relay: forwards configuration edits to devices.

When a ``Config/<deviceId>`` document is edited (by the mobile app or an
operator), the change event lands on a queue. This module turns each event
into a device-addressed request carrying the full configuration as an
opaque base64 payload and publishes it on the device configuration channel
(AWS IoT data plane, one MQTT topic per fully-qualified device path).

One request per event, no retry loop here: a failed publish is reported back
as a batch item failure and redelivered by the queue.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any

from worker.telemetry.handler import (
    MalformedMessageError,
    SQSBatchResponse,
    message_attribute,
)
from worker.telemetry.models import DeviceConfigRequest

logger = logging.getLogger(__name__)


class ConfigPushError(Exception):
    """Raised when a configuration update could not be sent to a device."""


def device_path(project: str, region: str, registry: str, device_id: str) -> str:
    """Fully-qualified device path used to address the device."""
    return (
        f"projects/{project}/locations/{region}"
        f"/registries/{registry}/devices/{device_id}"
    )


def encode_config(document: dict[str, Any]) -> str:
    """Serialize the configuration document, as stored, to base64 JSON."""
    raw = json.dumps(document, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


class ConfigPushRelay:
    """Builds and sends device configuration updates.

    Parameters
    ----------
    iot_client : boto3 ``iot-data`` client
        Client used to publish the update.
    project, region, registry : str
        Components of the device path.
    """

    def __init__(
        self,
        iot_client: Any,
        project: str,
        region: str,
        registry: str,
    ) -> None:
        self._iot_client = iot_client
        self._project = project
        self._region = region
        self._registry = registry

    def build_request(
        self, device_id: str, document: dict[str, Any]
    ) -> DeviceConfigRequest:
        return DeviceConfigRequest(
            name=device_path(
                self._project, self._region, self._registry, device_id
            ),
            binary_data=encode_config(document),
        )

    def push(
        self, device_id: str, document: dict[str, Any]
    ) -> DeviceConfigRequest:
        """Send the configuration ``document`` to ``device_id`` unchanged.

        Raises
        ------
        ConfigPushError
            If the channel rejects the request.
        """
        request = self.build_request(device_id, document)
        logger.info(
            "Updating device=%s config=%s",
            device_id,
            document,
        )
        try:
            self._iot_client.publish(
                topic=request.name,
                qos=1,
                payload=request.binary_data.encode("ascii"),
            )
        except Exception as exc:
            raise ConfigPushError(
                f"failed to push config to {request.name}: {exc}"
            ) from exc
        return request

    # -----------------------------------------------------------------------
    # Queue entrypoint
    # -----------------------------------------------------------------------

    def handler(self, event: dict[str, Any], context: Any) -> dict[str, Any]:
        """Process a batch of configuration-change records.

        Malformed records are logged and ACKed; failed pushes are returned
        in ``batchItemFailures`` for redelivery.
        """
        response = SQSBatchResponse()
        for record in event.get("Records", []):
            message_id = record.get("messageId", "")
            try:
                device_id, document = parse_config_change(record)
            except MalformedMessageError:
                logger.exception(
                    "Rejecting config change messageId=%s", message_id
                )
                continue

            try:
                self.push(device_id, document)
            except ConfigPushError:
                logger.exception(
                    "Config push failed for device=%s messageId=%s. "
                    "Message will be retried.",
                    device_id,
                    message_id,
                )
                response.add_failure(message_id)

        return response.to_dict()


def parse_config_change(record: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    """Extract ``(device_id, document)`` from a config-change queue record.

    The body is either the configuration document itself (device id in the
    ``deviceId`` attribute) or ``{"device_id": ..., "config": {...}}``. The
    document is returned exactly as written; its contents are the device's
    business and are not validated here.
    """
    try:
        body = json.loads(record["body"])
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedMessageError(f"unreadable body: {exc}") from exc
    if not isinstance(body, dict):
        raise MalformedMessageError("body is not a JSON object")

    device_id = message_attribute(record, "deviceId")
    document = body
    if "config" in body and isinstance(body["config"], dict):
        device_id = device_id or body.get("device_id")
        document = body["config"]

    if not device_id or not isinstance(device_id, str):
        raise MalformedMessageError("missing device identifier")

    return device_id, document


# ---------------------------------------------------------------------------
# Module-level handler (Lambda entrypoint)
# ---------------------------------------------------------------------------

_relay: ConfigPushRelay | None = None


def _create_relay() -> ConfigPushRelay:
    import boto3

    from worker.telemetry.config import load_settings

    settings = load_settings()
    iot_client = boto3.client(
        "iot-data",
        region_name=settings.aws_region,
        endpoint_url=settings.iot_endpoint_url,
    )
    return ConfigPushRelay(
        iot_client=iot_client,
        project=settings.iot_project,
        region=settings.iot_region,
        registry=settings.iot_registry_id,
    )


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """AWS Lambda handler entrypoint for configuration-change events."""
    global _relay
    if _relay is None:
        _relay = _create_relay()

    return _relay.handler(event, context)
