"""
Configuration loader for the Telemetry Worker.

Uses Pydantic Settings for environment variable parsing with SSM parameter
resolution in non-local environments.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from functools import lru_cache
from typing import Any

import boto3
from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Telemetry Worker configuration loaded from environment variables.

    In production (APP_ENV != 'local'), environment variables with an
    ``_SSM_PARAM`` suffix are resolved via AWS Systems Manager Parameter
    Store before constructing the settings object.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: SecretStr
    aws_region: str = "us-east-1"

    # Push notifications: one SNS topic per device, ARN = prefix + device id.
    notification_topic_arn_prefix: str = ""
    enable_notifications: bool = True

    # Device configuration channel. Devices are addressed as
    # projects/<iot_project>/locations/<iot_region>/registries/<registry>/devices/<id>
    iot_project: str = "piponics"
    iot_region: str = "us-central1"
    iot_registry_id: str = "RaspberryPis"
    iot_endpoint_url: str | None = None

    # Records of one batch are evaluated concurrently on this many threads.
    max_workers: int = 4


_SSM_SUFFIX = "_SSM_PARAM"
_SSM_BATCH_SIZE = 10  # GetParameters limit


class ConfigurationError(RuntimeError):
    """Raised when a referenced SSM parameter does not exist."""


def _ssm_references(environ: Mapping[str, str]) -> dict[str, str]:
    """Map target variable name -> SSM parameter name."""
    return {
        key[: -len(_SSM_SUFFIX)]: value
        for key, value in environ.items()
        if key.endswith(_SSM_SUFFIX) and value
    }


def _resolve_ssm_params(ssm_client: Any | None = None) -> None:
    """Replace ``<NAME>_SSM_PARAM`` references with their SSM values.

    ``DATABASE_URL_SSM_PARAM=/piponics/prod/db-url`` results in
    ``DATABASE_URL=<decrypted value>`` in ``os.environ``. A variable that is
    already set explicitly is left alone.

    Raises
    ------
    ConfigurationError
        If any referenced parameter is missing from Parameter Store.
    """
    references = {
        target: name
        for target, name in _ssm_references(os.environ).items()
        if target not in os.environ
    }
    if not references:
        return

    ssm = ssm_client or boto3.client(
        "ssm", region_name=os.environ.get("AWS_REGION", "us-east-1")
    )

    names = sorted(set(references.values()))
    resolved: dict[str, str] = {}
    missing: list[str] = []
    for start in range(0, len(names), _SSM_BATCH_SIZE):
        response = ssm.get_parameters(
            Names=names[start : start + _SSM_BATCH_SIZE], WithDecryption=True
        )
        resolved.update({p["Name"]: p["Value"] for p in response["Parameters"]})
        missing.extend(response.get("InvalidParameters", []))

    if missing:
        raise ConfigurationError(
            f"SSM parameters not found: {', '.join(sorted(missing))}"
        )

    for target, name in references.items():
        os.environ[target] = resolved[name]
        logger.info("Resolved %s from SSM parameter %s", target, name)


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Load and cache application settings.

    1. Check ``APP_ENV`` environment variable.
    2. If not ``local``, resolve SSM parameters into the environment.
    3. Construct and return the ``Settings`` object.
    """
    app_env = os.environ.get("APP_ENV", "local")
    if app_env != "local":
        _resolve_ssm_params()

    return Settings()  # type: ignore[call-arg]
