import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from flask import Flask

from infrastructure.database.ops.access_records import AccessRecordOperations
from infrastructure.database.ops.entities import EntityOperations
from infrastructure.database.ops.roles import RoleOperations

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


class SQLiteDatabaseHandler(
    EntityOperations,
    RoleOperations,
    AccessRecordOperations,
):
    """Thread-safe SQLite handler decoupled from Flask globals.

    File databases get one connection per thread (WAL mode). An in-memory
    database only exists inside a single connection, so ``:memory:`` shares
    one connection across threads and serializes access to it.
    """

    def __init__(self, database_path: str, *, busy_timeout_seconds: float = 30.0) -> None:
        self._database_path = database_path
        self._busy_timeout = busy_timeout_seconds
        self._local = threading.local()
        self._shared: Optional[sqlite3.Connection] = None
        self._shared_lock = threading.RLock()

        if database_path != MEMORY_PATH:
            db_path = Path(database_path)
            if not db_path.parent.exists():
                db_path.parent.mkdir(parents=True, exist_ok=True)
                logger.info("Created database directory: %s", db_path.parent)

    @property
    def is_memory(self) -> bool:
        return self._database_path == MEMORY_PATH

    # --- Lifecycle ------------------------------------------------------------
    def init_app(self, app: Flask | None = None) -> None:
        if app is not None and not self.is_memory:
            app.teardown_appcontext(self.close_db)
        self.create_tables()

    def get_db(self) -> sqlite3.Connection:
        if self.is_memory:
            with self._shared_lock:
                if self._shared is None:
                    self._shared = self._open_connection()
                return self._shared

        connection: Optional[sqlite3.Connection] = getattr(self._local, "connection", None)
        if connection is None:
            connection = self._open_connection()
            self._local.connection = connection
        return connection

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._database_path, check_same_thread=False, timeout=self._busy_timeout)
        try:
            connection.row_factory = sqlite3.Row
            self._configure_connection(connection)
            return connection
        except Exception:
            connection.close()
            raise

    def _configure_connection(self, connection: sqlite3.Connection) -> None:
        """Configure SQLite connection.

        - WAL mode: concurrent readers alongside the single writer
        - NORMAL synchronous: still durable across application crashes with WAL
        - Foreign keys enforced
        """
        if not self.is_memory:
            connection.execute("PRAGMA journal_mode=WAL")
            connection.execute("PRAGMA synchronous=NORMAL")
        connection.execute("PRAGMA foreign_keys=ON")
        connection.execute("PRAGMA temp_store=MEMORY")
        connection.commit()

    def close_db(self, _e: Optional[BaseException] = None) -> None:
        if self.is_memory:
            return
        connection: Optional[sqlite3.Connection] = getattr(self._local, "connection", None)
        if connection is not None:
            connection.close()
            delattr(self._local, "connection")

    def close(self) -> None:
        self.close_db()
        with self._shared_lock:
            if self._shared is not None:
                self._shared.close()
                self._shared = None

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """One transaction: committed on success, rolled back on error."""
        if self.is_memory:
            with self._shared_lock:
                conn = self.get_db()
                try:
                    yield conn
                    conn.commit()
                except BaseException:
                    conn.rollback()
                    raise
            return

        conn = self.get_db()
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise

    # --- Schema ----------------------------------------------------------------
    def create_tables(self) -> None:
        """Creates the necessary tables in the database if they do not already exist."""
        with self.connection() as db:
            db.executescript(
                """
                CREATE TABLE IF NOT EXISTS Portfolios (
                    portfolio_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS Properties (
                    property_id TEXT PRIMARY KEY,
                    portfolio_id TEXT NOT NULL REFERENCES Portfolios(portfolio_id),
                    name TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                );
                CREATE INDEX IF NOT EXISTS idx_properties_portfolio ON Properties(portfolio_id);

                CREATE TABLE IF NOT EXISTS Units (
                    unit_id TEXT PRIMARY KEY,
                    property_id TEXT NOT NULL REFERENCES Properties(property_id),
                    name TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                );
                CREATE INDEX IF NOT EXISTS idx_units_property ON Units(property_id);

                -- A device hangs off a unit or (common area) a property, never both.
                CREATE TABLE IF NOT EXISTS Devices (
                    device_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    vendor TEXT NOT NULL,
                    property_id TEXT,
                    unit_id TEXT,
                    is_online INTEGER NOT NULL DEFAULT 1,
                    remote_operation_enabled INTEGER NOT NULL DEFAULT 1,
                    external_id TEXT,
                    metadata TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    CHECK (property_id IS NULL OR unit_id IS NULL)
                );
                CREATE INDEX IF NOT EXISTS idx_devices_unit ON Devices(unit_id);
                CREATE INDEX IF NOT EXISTS idx_devices_property ON Devices(property_id);
                CREATE INDEX IF NOT EXISTS idx_devices_vendor ON Devices(vendor);

                CREATE TABLE IF NOT EXISTS RoleAssociations (
                    association_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    actor_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL CHECK (entity_type IN ('portfolio', 'property', 'unit')),
                    entity_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (actor_id, entity_type, entity_id, role)
                );
                CREATE INDEX IF NOT EXISTS idx_roles_actor ON RoleAssociations(actor_id);

                CREATE TABLE IF NOT EXISTS GuestGrants (
                    grant_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    actor_id TEXT NOT NULL,
                    valid_from TEXT NOT NULL,
                    valid_until TEXT NOT NULL,
                    created_by TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                );
                CREATE INDEX IF NOT EXISTS idx_guest_grants_actor ON GuestGrants(actor_id);

                CREATE TABLE IF NOT EXISTS GuestGrantDevices (
                    grant_id INTEGER NOT NULL REFERENCES GuestGrants(grant_id) ON DELETE CASCADE,
                    device_id TEXT NOT NULL,
                    PRIMARY KEY (grant_id, device_id)
                );

                CREATE TABLE IF NOT EXISTS AccessRecords (
                    sequence INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_id TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    requested_at TEXT NOT NULL,
                    completed_at TEXT,
                    outcome TEXT NOT NULL CHECK (outcome IN ('granted_success', 'granted_failure', 'denied')),
                    denial_reason TEXT,
                    failure_reason TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    details TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_access_device ON AccessRecords(device_id, sequence);
                CREATE INDEX IF NOT EXISTS idx_access_actor ON AccessRecords(actor_id, sequence);
                CREATE INDEX IF NOT EXISTS idx_access_requested ON AccessRecords(requested_at);

                CREATE TRIGGER IF NOT EXISTS AccessRecords_no_update
                BEFORE UPDATE ON AccessRecords
                BEGIN
                    SELECT RAISE(ABORT, 'access records are immutable');
                END;

                CREATE TRIGGER IF NOT EXISTS AccessRecords_no_delete
                BEFORE DELETE ON AccessRecords
                BEGIN
                    SELECT RAISE(ABORT, 'access records are append-only');
                END;

                CREATE TABLE IF NOT EXISTS DispatchIntents (
                    intent_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_id TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    requested_at TEXT NOT NULL,
                    details TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
        logger.debug("Database schema ready at %s", self._database_path)
