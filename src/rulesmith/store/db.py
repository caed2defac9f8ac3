"""
SQLite storage for Rulesmith extensions.

One record per extension keyed by id holds the extension body, lifecycle
state, state history and a checksum. Deployment attempts and marketplace
listings are stored alongside.

Design Principles:
    - Integrity: every extension record carries a checksum verified on reload
    - Atomic: writes happen inside transactions
    - Self-contained: a single .db file holds the whole registry
    - Corrupted records are rejected on reload, never half-loaded

Tables:
    - extensions: Extension registry entries
    - deployments: Record of each deployment attempt
    - marketplace: Published extension listings
"""

import hashlib
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

from pydantic import ValidationError

from rulesmith.errors import (
    StorageConnectionError,
    StorageIntegrityError,
    StorageReadError,
    StorageWriteError,
)
from rulesmith.schema import (
    DeploymentResult,
    ExtensionMetrics,
    ExtensionRegistryEntry,
    LifecycleState,
    MarketplaceEntry,
    StateTransition,
    StorageInfo,
    TemplateExtension,
)

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

CREATE_TABLES_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Extensions table: one record per registry entry
CREATE TABLE IF NOT EXISTS extensions (
    extension_id TEXT PRIMARY KEY,
    target_template_id TEXT NOT NULL,
    extension_json TEXT NOT NULL,
    state TEXT NOT NULL,
    history_json TEXT NOT NULL,
    dependencies_json TEXT NOT NULL DEFAULT '[]',
    dependents_json TEXT NOT NULL DEFAULT '[]',
    metrics_json TEXT NOT NULL DEFAULT '{}',
    active INTEGER NOT NULL DEFAULT 0,
    checksum TEXT NOT NULL,
    size INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Deployments table: every deployment attempt
CREATE TABLE IF NOT EXISTS deployments (
    deployment_id TEXT PRIMARY KEY,
    extension_id TEXT NOT NULL,
    status TEXT NOT NULL,
    result_json TEXT NOT NULL,
    started_at TEXT NOT NULL
);

-- Marketplace table: published listings
CREATE TABLE IF NOT EXISTS marketplace (
    extension_id TEXT PRIMARY KEY,
    entry_json TEXT NOT NULL,
    published_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_extensions_target ON extensions(target_template_id);
CREATE INDEX IF NOT EXISTS idx_deployments_extension ON deployments(extension_id);
"""


def generate_id() -> str:
    """Generate a short unique ID for extensions and deployments."""
    return str(uuid.uuid4())[:8]


def compute_hash(data: Any) -> str:
    """Compute SHA256 hash of data."""
    if data is None:
        return ""
    if isinstance(data, str):
        content = data.encode("utf-8")
    elif isinstance(data, bytes):
        content = data
    else:
        content = json.dumps(data, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def now_iso() -> str:
    """Get current UTC time in ISO format."""
    return datetime.now(UTC).isoformat()


def record_checksum(extension_json: str, state: str, history_json: str) -> str:
    """Checksum covering the persisted body, state and history of an extension."""
    return compute_hash("\n".join([extension_json, state, history_json]))


def _history_json(history: list[StateTransition]) -> str:
    return json.dumps([t.model_dump(mode="json") for t in history], sort_keys=True)


class ExtensionDB:
    """
    SQLite database for the extension registry.

    Usage:
        db = ExtensionDB("extensions.db")
        db.save_entry(entry)
        entries, rejected = db.load_entries()
        db.close()

    Or use as context manager:
        with ExtensionDB("extensions.db") as db:
            ...
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file, or ":memory:".
                     Will be created if it doesn't exist.
        """
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._connect()
        self._init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        except sqlite3.Error as e:
            raise StorageConnectionError(
                db_path=str(self.db_path),
                message=f"Failed to connect to database: {e}",
            ) from e

    def _init_schema(self) -> None:
        """Initialize database schema if needed."""
        try:
            cursor = self._conn.executescript(CREATE_TABLES_SQL)
            cursor.close()

            cursor = self._conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            )
            if cursor.fetchone() is None:
                self._conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now_iso()),
                )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageWriteError(operation="init_schema", underlying_error=str(e)) from e

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """Context manager for database transactions."""
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "ExtensionDB":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    # =========================================================================
    # Extension Operations
    # =========================================================================

    def save_entry(self, entry: ExtensionRegistryEntry) -> str:
        """
        Insert or replace the record for an extension.

        Returns:
            The checksum written with the record
        """
        ext = entry.extension
        extension_json = ext.model_dump_json()
        history_json = _history_json(entry.state_history)
        checksum = record_checksum(extension_json, entry.state.value, history_json)
        now = now_iso()

        try:
            with self.transaction():
                self._conn.execute(
                    """
                    INSERT INTO extensions (
                        extension_id, target_template_id, extension_json, state,
                        history_json, dependencies_json, dependents_json,
                        metrics_json, active, checksum, size, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(extension_id) DO UPDATE SET
                        target_template_id = excluded.target_template_id,
                        extension_json = excluded.extension_json,
                        state = excluded.state,
                        history_json = excluded.history_json,
                        dependencies_json = excluded.dependencies_json,
                        dependents_json = excluded.dependents_json,
                        metrics_json = excluded.metrics_json,
                        active = excluded.active,
                        checksum = excluded.checksum,
                        size = excluded.size,
                        updated_at = excluded.updated_at
                    """,
                    (
                        ext.id,
                        ext.target_template_id,
                        extension_json,
                        entry.state.value,
                        history_json,
                        json.dumps(entry.dependencies),
                        json.dumps(entry.dependents),
                        entry.metrics.model_dump_json(),
                        int(entry.active),
                        checksum,
                        len(extension_json.encode("utf-8")),
                        now,
                        now,
                    ),
                )
            return checksum
        except sqlite3.Error as e:
            raise StorageWriteError(operation="save_entry", underlying_error=str(e)) from e

    def delete_entry(self, extension_id: str) -> bool:
        """Delete an extension record. Returns True if a row was removed."""
        try:
            with self.transaction():
                cursor = self._conn.execute(
                    "DELETE FROM extensions WHERE extension_id = ?",
                    (extension_id,),
                )
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageWriteError(operation="delete_entry", underlying_error=str(e)) from e

    def _row_to_entry(self, row: sqlite3.Row) -> ExtensionRegistryEntry:
        expected = row["checksum"]
        actual = record_checksum(row["extension_json"], row["state"], row["history_json"])
        if expected != actual:
            raise StorageIntegrityError(
                record_id=row["extension_id"],
                expected=expected,
                actual=actual,
            )
        extension = TemplateExtension.model_validate_json(row["extension_json"])
        return ExtensionRegistryEntry(
            extension=extension,
            state=LifecycleState(row["state"]),
            state_history=[
                StateTransition.model_validate(t) for t in json.loads(row["history_json"])
            ],
            dependencies=json.loads(row["dependencies_json"]),
            dependents=json.loads(row["dependents_json"]),
            metrics=ExtensionMetrics.model_validate_json(row["metrics_json"]),
            storage=StorageInfo(
                path=str(self.db_path),
                checksum=compute_hash(row["extension_json"]),
                size=row["size"],
            ),
            active=bool(row["active"]),
        )

    def get_entry(self, extension_id: str) -> ExtensionRegistryEntry | None:
        """
        Load one extension record.

        Raises:
            StorageIntegrityError: If the record fails its checksum
        """
        try:
            cursor = self._conn.execute(
                "SELECT * FROM extensions WHERE extension_id = ?",
                (extension_id,),
            )
            row = cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageReadError(operation="get_entry", underlying_error=str(e)) from e
        if row is None:
            return None
        return self._row_to_entry(row)

    def load_entries(self) -> tuple[list[ExtensionRegistryEntry], list[str]]:
        """
        Load every extension record, verifying checksums.

        Returns:
            (entries that verified, ids of rejected records)
        """
        try:
            rows = self._conn.execute(
                "SELECT * FROM extensions ORDER BY extension_id"
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageReadError(operation="load_entries", underlying_error=str(e)) from e

        entries: list[ExtensionRegistryEntry] = []
        rejected: list[str] = []
        for row in rows:
            try:
                entries.append(self._row_to_entry(row))
            except StorageIntegrityError as e:
                logger.warning("Rejected extension record %s: %s", row["extension_id"], e.message)
                rejected.append(row["extension_id"])
            except (ValidationError, ValueError) as e:
                logger.warning("Rejected unreadable extension record %s: %s", row["extension_id"], e)
                rejected.append(row["extension_id"])
        return entries, rejected

    # =========================================================================
    # Deployment Operations
    # =========================================================================

    def record_deployment(self, result: DeploymentResult) -> None:
        """Insert or replace a deployment record."""
        try:
            with self.transaction():
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO deployments (
                        deployment_id, extension_id, status, result_json, started_at
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        result.deployment_id,
                        result.extension_id,
                        result.status.value,
                        result.model_dump_json(),
                        result.started_at.isoformat(),
                    ),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(operation="record_deployment", underlying_error=str(e)) from e

    def get_deployments(self, extension_id: str) -> list[DeploymentResult]:
        """All deployments of an extension, oldest first."""
        try:
            cursor = self._conn.execute(
                """
                SELECT result_json FROM deployments
                WHERE extension_id = ?
                ORDER BY started_at, rowid
                """,
                (extension_id,),
            )
            return [DeploymentResult.model_validate_json(row["result_json"]) for row in cursor]
        except sqlite3.Error as e:
            raise StorageReadError(operation="get_deployments", underlying_error=str(e)) from e

    # =========================================================================
    # Marketplace Operations
    # =========================================================================

    def save_marketplace_entry(self, entry: MarketplaceEntry) -> None:
        """Insert or replace a marketplace listing."""
        try:
            with self.transaction():
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO marketplace (extension_id, entry_json, published_at)
                    VALUES (?, ?, ?)
                    """,
                    (entry.extension_id, entry.model_dump_json(), entry.published_at.isoformat()),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="save_marketplace_entry",
                underlying_error=str(e),
            ) from e

    def list_marketplace(self) -> list[MarketplaceEntry]:
        """All marketplace listings, most recently published first."""
        try:
            cursor = self._conn.execute(
                "SELECT entry_json FROM marketplace ORDER BY published_at DESC"
            )
            return [MarketplaceEntry.model_validate_json(row["entry_json"]) for row in cursor]
        except sqlite3.Error as e:
            raise StorageReadError(operation="list_marketplace", underlying_error=str(e)) from e
