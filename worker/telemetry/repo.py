"""
Repository: Document persistence for the Telemetry Worker.

Uses ``psycopg`` (v3) for PostgreSQL access. Device documents are JSONB rows
keyed by ``(collection, device_id)``; reading history is an append-only
table.

Key Design Decisions:
    - **Create-If-Absent**: ``ensure`` inserts the default with
      ``ON CONFLICT DO NOTHING`` and then reads the row back, so concurrent
      first contact from one device always observes a single default.
    - **Whole-Document Writes**: ``set_document`` replaces the full body.
      Error state is always written as a complete document.
    - **Adapters over One Store**: ``ConfigStore``, ``ErrorStateStore`` and
      ``TelemetryStore`` share a ``DocumentStore`` and only add typing and
      defaults, so tests can swap in ``InMemoryDocumentStore``.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any

import psycopg
from psycopg.rows import dict_row
from pydantic import ValidationError

from worker.telemetry.models import (
    DEFAULT_CONFIG_DOC,
    DEFAULT_ERROR_DOC,
    DeviceConfig,
    ErrorState,
    SensorReading,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------

STATUS_COLLECTION = "Status"
CONFIG_COLLECTION = "Config"
ERROR_COLLECTION = "Error"


class StoreError(Exception):
    """Raised when the document store cannot be read or written."""


# ---------------------------------------------------------------------------
# DocumentStore Interface
# ---------------------------------------------------------------------------


class DocumentStore(ABC):
    """Abstract base for per-device document storage."""

    @abstractmethod
    def get_document(
        self, collection: str, device_id: str
    ) -> dict[str, Any] | None:
        """Return the document body, or None if it does not exist."""
        ...

    @abstractmethod
    def set_document(
        self, collection: str, device_id: str, body: dict[str, Any]
    ) -> None:
        """Create or fully replace a document."""
        ...

    @abstractmethod
    def create_if_absent(
        self, collection: str, device_id: str, body: dict[str, Any]
    ) -> tuple[dict[str, Any], bool]:
        """Insert ``body`` unless a document exists.

        Returns
        -------
        tuple[dict, bool]
            The stored document (existing or newly inserted) and whether it
            was created by this call.
        """
        ...

    @abstractmethod
    def append_history(self, device_id: str, body: dict[str, Any]) -> None:
        """Append a reading to the device's history."""
        ...


# ---------------------------------------------------------------------------
# SQL Constants
# ---------------------------------------------------------------------------

_CREATE_TABLES_SQL = """\
CREATE TABLE IF NOT EXISTS device_documents (
    collection  TEXT        NOT NULL,
    device_id   TEXT        NOT NULL,
    body        JSONB       NOT NULL,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (collection, device_id)
);
CREATE TABLE IF NOT EXISTS device_history (
    id          BIGSERIAL   PRIMARY KEY,
    device_id   TEXT        NOT NULL,
    body        JSONB       NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_device_history_device
    ON device_history (device_id, created_at);
"""

_GET_DOCUMENT_SQL = """\
SELECT body
FROM device_documents
WHERE collection = %s
  AND device_id = %s
"""

_SET_DOCUMENT_SQL = """\
INSERT INTO device_documents (collection, device_id, body)
VALUES (%s, %s, %s)
ON CONFLICT (collection, device_id) DO UPDATE SET
    body = EXCLUDED.body,
    updated_at = now()
"""

_CREATE_IF_ABSENT_SQL = """\
INSERT INTO device_documents (collection, device_id, body)
VALUES (%s, %s, %s)
ON CONFLICT (collection, device_id) DO NOTHING
RETURNING body
"""

_APPEND_HISTORY_SQL = """\
INSERT INTO device_history (device_id, body)
VALUES (%s, %s)
"""


def _parse_body(raw: Any) -> dict[str, Any]:
    """JSONB arrives as a dict from psycopg but as a string from some drivers."""
    if isinstance(raw, str):
        return json.loads(raw)
    return dict(raw)


# ---------------------------------------------------------------------------
# Concrete Implementation: PostgresDocumentStore
# ---------------------------------------------------------------------------


class PostgresDocumentStore(DocumentStore):
    """PostgreSQL-backed DocumentStore using psycopg v3.

    One short-lived connection per operation. Connection pooling is handled
    externally (PgBouncer).

    Parameters
    ----------
    conninfo : str
        PostgreSQL connection string (DSN).
    """

    def __init__(self, conninfo: str) -> None:
        self._conninfo = conninfo

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(
            self._conninfo,
            row_factory=dict_row,
            autocommit=False,
        )

    def create_schema(self) -> None:
        """Create the document and history tables if they do not exist."""
        try:
            with self._connect() as conn:
                conn.execute(_CREATE_TABLES_SQL)
        except psycopg.Error as exc:
            raise StoreError(f"failed to create schema: {exc}") from exc

    def get_document(
        self, collection: str, device_id: str
    ) -> dict[str, Any] | None:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(_GET_DOCUMENT_SQL, (collection, device_id))
                    row = cur.fetchone()
        except psycopg.Error as exc:
            raise StoreError(
                f"failed to read {collection}/{device_id}: {exc}"
            ) from exc

        if row is None:
            return None
        return _parse_body(row["body"])

    def set_document(
        self, collection: str, device_id: str, body: dict[str, Any]
    ) -> None:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        _SET_DOCUMENT_SQL,
                        (collection, device_id, json.dumps(body)),
                    )
        except psycopg.Error as exc:
            raise StoreError(
                f"failed to write {collection}/{device_id}: {exc}"
            ) from exc

    def create_if_absent(
        self, collection: str, device_id: str, body: dict[str, Any]
    ) -> tuple[dict[str, Any], bool]:
        """Insert-or-read inside a single transaction.

        When the insert loses a race the ``RETURNING`` set is empty and the
        winning row is read back instead.
        """
        try:
            with self._connect() as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        cur.execute(
                            _CREATE_IF_ABSENT_SQL,
                            (collection, device_id, json.dumps(body)),
                        )
                        row = cur.fetchone()
                        if row is not None:
                            return _parse_body(row["body"]), True

                        cur.execute(_GET_DOCUMENT_SQL, (collection, device_id))
                        row = cur.fetchone()
        except psycopg.Error as exc:
            raise StoreError(
                f"failed to create {collection}/{device_id}: {exc}"
            ) from exc

        if row is None:
            # Deleted between the conflicting insert and the read.
            raise StoreError(
                f"{collection}/{device_id} vanished during create"
            )
        return _parse_body(row["body"]), False

    def append_history(self, device_id: str, body: dict[str, Any]) -> None:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        _APPEND_HISTORY_SQL, (device_id, json.dumps(body))
                    )
        except psycopg.Error as exc:
            raise StoreError(
                f"failed to append history for {device_id}: {exc}"
            ) from exc


# ---------------------------------------------------------------------------
# Concrete Implementation: InMemoryDocumentStore
# ---------------------------------------------------------------------------


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe in-process DocumentStore for tests and local runs.

    Documents are deep-copied on the way in and out so callers can never
    alias stored state.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._documents: dict[tuple[str, str], dict[str, Any]] = {}
        self._history: dict[str, list[dict[str, Any]]] = defaultdict(list)

    def get_document(
        self, collection: str, device_id: str
    ) -> dict[str, Any] | None:
        with self._lock:
            body = self._documents.get((collection, device_id))
            return copy.deepcopy(body) if body is not None else None

    def set_document(
        self, collection: str, device_id: str, body: dict[str, Any]
    ) -> None:
        with self._lock:
            self._documents[(collection, device_id)] = copy.deepcopy(body)

    def create_if_absent(
        self, collection: str, device_id: str, body: dict[str, Any]
    ) -> tuple[dict[str, Any], bool]:
        key = (collection, device_id)
        with self._lock:
            created = key not in self._documents
            if created:
                self._documents[key] = copy.deepcopy(body)
            return copy.deepcopy(self._documents[key]), created

    def append_history(self, device_id: str, body: dict[str, Any]) -> None:
        with self._lock:
            self._history[device_id].append(copy.deepcopy(body))

    def history(self, device_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._history.get(device_id, []))


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class ConfigStore:
    """Loads and lazily creates ``Config/<deviceId>`` documents."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def load(self, device_id: str) -> DeviceConfig | None:
        body = self._store.get_document(CONFIG_COLLECTION, device_id)
        if body is None:
            return None
        return _to_config(device_id, body)

    def ensure(self, device_id: str) -> DeviceConfig:
        """Return the device config, persisting the default on first contact."""
        body = self._store.get_document(CONFIG_COLLECTION, device_id)
        if body is None:
            logger.warning(
                "No configuration exists for device=%s, creating default",
                device_id,
            )
            body, _ = self._store.create_if_absent(
                CONFIG_COLLECTION, device_id, dict(DEFAULT_CONFIG_DOC)
            )
        return _to_config(device_id, body)

    def save(self, device_id: str, config: DeviceConfig) -> None:
        self._store.set_document(
            CONFIG_COLLECTION, device_id, config.to_document()
        )


class ErrorStateStore:
    """Loads, lazily creates and persists ``Error/<deviceId>`` documents."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def load(self, device_id: str) -> ErrorState | None:
        body = self._store.get_document(ERROR_COLLECTION, device_id)
        if body is None:
            return None
        return _to_error_state(device_id, body)

    def ensure(self, device_id: str) -> ErrorState:
        """Return the error state, persisting all-clear on first contact."""
        body = self._store.get_document(ERROR_COLLECTION, device_id)
        if body is None:
            logger.warning(
                "No error state exists for device=%s, creating default",
                device_id,
            )
            body, _ = self._store.create_if_absent(
                ERROR_COLLECTION, device_id, dict(DEFAULT_ERROR_DOC)
            )
        return _to_error_state(device_id, body)

    def save(self, device_id: str, state: ErrorState) -> None:
        self._store.set_document(
            ERROR_COLLECTION, device_id, state.to_document()
        )


class TelemetryStore:
    """Writes the latest status document and the reading history."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def save_status(self, device_id: str, reading: SensorReading) -> None:
        self._store.set_document(
            STATUS_COLLECTION, device_id, reading.to_document()
        )

    def append_history(self, device_id: str, reading: SensorReading) -> None:
        self._store.append_history(device_id, reading.to_document())


def _to_config(device_id: str, body: dict[str, Any]) -> DeviceConfig:
    try:
        return DeviceConfig.model_validate(body)
    except ValidationError as exc:
        raise StoreError(
            f"invalid {CONFIG_COLLECTION} document for {device_id}: {exc}"
        ) from exc


def _to_error_state(device_id: str, body: dict[str, Any]) -> ErrorState:
    try:
        return ErrorState.model_validate(body)
    except ValidationError as exc:
        raise StoreError(
            f"invalid {ERROR_COLLECTION} document for {device_id}: {exc}"
        ) from exc
