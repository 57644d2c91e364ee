# Ultima Agent: Tool-Using Conversational Agent
# Copyright (C) 2026 Pankaj Varma
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
Database Module for Ultima_Agent
Persistence store for session conversations and the knowledge base.
Supports both SQLite (local, zero-config) and PostgreSQL (cloud).
Database type is selected via DB_TYPE environment variable.

Knowledge nodes are append-mostly: correction is modeled by adding a new node and
marking the old one's validation_status as deprecated. Nothing here hard-deletes a node.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.config import Config
from ..core.exceptions import PersistenceError
from ..core.utils import logger, new_id, utc_now_iso

TABLES = ("knowledge_chunks", "knowledge_nodes", "agent_conversations")

SCHEMA_SQL = (
    """
    CREATE TABLE IF NOT EXISTS agent_conversations (
        id               TEXT PRIMARY KEY,
        user_id          TEXT,
        session_id       TEXT NOT NULL,
        role             TEXT NOT NULL,
        content          TEXT NOT NULL,
        message_type     TEXT DEFAULT 'text',
        tools_used       TEXT,
        self_reflection  TEXT,
        loop_iteration   INTEGER DEFAULT 0,
        ai_reasoning     TEXT,
        created_at       TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_conversations_session ON agent_conversations(session_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS knowledge_nodes (
        id           TEXT PRIMARY KEY,
        user_id      TEXT NOT NULL,
        title        TEXT NOT NULL,
        description  TEXT,
        type         TEXT NOT NULL,
        domain_id    TEXT,
        confidence   REAL DEFAULT 0.5,
        metadata     TEXT,
        created_at   TEXT NOT NULL,
        updated_at   TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_nodes_user ON knowledge_nodes(user_id)",
    """
    CREATE TABLE IF NOT EXISTS knowledge_chunks (
        id          TEXT PRIMARY KEY,
        node_id     TEXT NOT NULL REFERENCES knowledge_nodes(id),
        user_id     TEXT NOT NULL,
        title       TEXT,
        content     TEXT NOT NULL,
        metadata    TEXT,
        created_at  TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chunks_user ON knowledge_chunks(user_id)",
)


def store_operation(func):
    """Convert driver errors into PersistenceError"""
    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except PersistenceError:
            raise
        except self.driver_errors as e:
            logger.error(f"Database {func.__name__} failed: {e}")
            raise PersistenceError(f"{func.__name__} failed: {e}") from e
    return wrapper


# Serializes similarity-check-then-insert across worker threads
_KNOWLEDGE_WRITE_LOCK = threading.Lock()


def _load_json(value: Any, default: Any) -> Any:
    if not value:
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default


# =============================================================================
# DATABASE ABSTRACT BASE CLASS
# =============================================================================

class BaseDatabase(ABC):
    """
    Abstract base class for database implementations.
    Backends supply connection handling and a dict-row cursor; the SQL is shared.
    """

    placeholder = "?"
    driver_errors: Tuple[type, ...] = ()

    @abstractmethod
    def connect(self) -> bool:
        """Establish database connection."""

    @abstractmethod
    def disconnect(self):
        """Close database connection."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if database is connected."""

    @abstractmethod
    def get_cursor(self):
        """Context manager yielding a cursor; commits on success, rolls back on error."""

    @abstractmethod
    def _rows(self, cursor) -> List[Dict[str, Any]]:
        """Fetch all remaining rows as dictionaries."""

    def _q(self, sql: str) -> str:
        return sql if self.placeholder == "?" else sql.replace("?", self.placeholder)

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    @store_operation
    def initialize_schema(self):
        """Create tables if they don't exist."""
        if not self.is_connected():
            logger.warning("Cannot initialize schema - not connected")
            return
        with self.get_cursor() as cursor:
            for statement in SCHEMA_SQL:
                cursor.execute(statement)
        logger.info("Database schema initialized")

    @store_operation
    def reset_database(self):
        """Drop all tables and re-initialize schema (FRESH START)."""
        logger.warning("RESETTING DATABASE")
        with self.get_cursor() as cursor:
            for table in TABLES:
                cursor.execute(f"DROP TABLE IF EXISTS {table}")
        self.initialize_schema()

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    @store_operation
    def add_conversation_message(
        self,
        session_id: str,
        role: str,
        content: str,
        user_id: Optional[str] = None,
        message_type: str = "text",
        tools_used: Optional[List[Dict]] = None,
        self_reflection: Optional[str] = None,
        loop_iteration: int = 0,
        ai_reasoning: Optional[str] = None
    ) -> str:
        """Append one message to a session."""
        message_id = new_id()
        with self.get_cursor() as cursor:
            cursor.execute(
                self._q("""
                INSERT INTO agent_conversations
                    (id, user_id, session_id, role, content, message_type, tools_used,
                     self_reflection, loop_iteration, ai_reasoning, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """),
                (
                    message_id, user_id, session_id, role, content, message_type,
                    json.dumps(tools_used) if tools_used else None,
                    self_reflection, loop_iteration, ai_reasoning, utc_now_iso()
                )
            )
        return message_id

    @store_operation
    def get_session_messages(self, session_id: str, limit: Optional[int] = None) -> List[Dict]:
        """Messages of a session, oldest first (the last `limit` when given)."""
        with self.get_cursor() as cursor:
            cursor.execute(
                self._q("SELECT * FROM agent_conversations WHERE session_id = ? ORDER BY created_at ASC"),
                (session_id,)
            )
            rows = self._rows(cursor)
        for row in rows:
            row["tools_used"] = _load_json(row.get("tools_used"), [])
        return rows[-limit:] if limit else rows

    # -------------------------------------------------------------------------
    # Knowledge
    # -------------------------------------------------------------------------

    @store_operation
    def insert_knowledge(self, node: Dict[str, Any], chunk: Dict[str, Any]) -> str:
        """
        Write one knowledge node and its searchable chunk in a single transaction.

        Args:
            node: {user_id, title, description, type, domain_id?, confidence?, metadata?}
            chunk: {title?, content, metadata?}

        Returns:
            The new node id
        """
        with self.get_cursor() as cursor:
            node_id = self._insert_knowledge_rows(cursor, node, chunk)
        logger.info(f"Knowledge node stored: {node_id} ({node['title'][:60]})")
        return node_id

    @store_operation
    def insert_knowledge_if_absent(
        self,
        node: Dict[str, Any],
        chunk: Dict[str, Any],
        is_duplicate: Callable[[str], bool]
    ) -> Optional[str]:
        """
        Insert node + chunk unless one of the owner's existing titles matches `is_duplicate`.
        The title check and the insert run under one lock and one transaction.

        Returns:
            The new node id, or None when a similar node already exists
        """
        with _KNOWLEDGE_WRITE_LOCK, self.get_cursor() as cursor:
            cursor.execute(self._q("SELECT title FROM knowledge_nodes WHERE user_id = ?"), (node["user_id"],))
            if any(is_duplicate(row["title"]) for row in self._rows(cursor)):
                return None
            node_id = self._insert_knowledge_rows(cursor, node, chunk)
        logger.info(f"Knowledge node stored: {node_id} ({node['title'][:60]})")
        return node_id

    def _insert_knowledge_rows(self, cursor, node: Dict[str, Any], chunk: Dict[str, Any]) -> str:
        node_id = node.get("id") or new_id()
        now = utc_now_iso()
        cursor.execute(
            self._q("""
            INSERT INTO knowledge_nodes
                (id, user_id, title, description, type, domain_id, confidence, metadata, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """),
            (
                node_id, node["user_id"], node["title"], node.get("description"), node["type"],
                node.get("domain_id"), node.get("confidence", 0.5),
                json.dumps(node.get("metadata") or {}), now, now
            )
        )
        cursor.execute(
            self._q("""
            INSERT INTO knowledge_chunks (id, node_id, user_id, title, content, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """),
            (
                chunk.get("id") or new_id(), node_id, node["user_id"],
                chunk.get("title", node["title"]), chunk["content"],
                json.dumps(chunk.get("metadata") or {}), now
            )
        )
        return node_id

    @store_operation
    def find_node_titles(self, user_id: str) -> List[str]:
        with self.get_cursor() as cursor:
            cursor.execute(self._q("SELECT title FROM knowledge_nodes WHERE user_id = ?"), (user_id,))
            return [row["title"] for row in self._rows(cursor)]

    @store_operation
    def get_knowledge_node(self, node_id: str) -> Optional[Dict]:
        with self.get_cursor() as cursor:
            cursor.execute(self._q("SELECT * FROM knowledge_nodes WHERE id = ?"), (node_id,))
            rows = self._rows(cursor)
        if not rows:
            return None
        node = rows[0]
        node["metadata"] = _load_json(node.get("metadata"), {})
        return node

    @store_operation
    def list_knowledge_chunks(self, user_id: str) -> List[Dict]:
        """All chunks of an owner joined with their node's metadata."""
        with self.get_cursor() as cursor:
            cursor.execute(
                self._q("""
                SELECT c.id, c.node_id, c.title, c.content, c.metadata, c.created_at,
                       n.type AS node_type, n.confidence AS node_confidence, n.metadata AS node_metadata
                FROM knowledge_chunks c
                JOIN knowledge_nodes n ON n.id = c.node_id
                WHERE c.user_id = ?
                ORDER BY c.created_at DESC
                """),
                (user_id,)
            )
            rows = self._rows(cursor)
        for row in rows:
            row["metadata"] = _load_json(row.get("metadata"), {})
            row["node_metadata"] = _load_json(row.get("node_metadata"), {})
        return rows

    @store_operation
    def deprecate_knowledge_node(self, node_id: str, user_id: str, reason: str) -> bool:
        """Flag a node as deprecated. Returns False when the node does not belong to user_id."""
        with self.get_cursor() as cursor:
            cursor.execute(
                self._q("SELECT metadata FROM knowledge_nodes WHERE id = ? AND user_id = ?"),
                (node_id, user_id)
            )
            rows = self._rows(cursor)
            if not rows:
                return False
            metadata = _load_json(rows[0].get("metadata"), {})
            now = utc_now_iso()
            metadata.update({
                "validation_status": "deprecated",
                "deprecated_reason": reason,
                "deprecated_at": now
            })
            cursor.execute(
                self._q("UPDATE knowledge_nodes SET metadata = ?, updated_at = ? WHERE id = ?"),
                (json.dumps(metadata), now, node_id)
            )
        logger.info(f"Knowledge node deprecated: {node_id} ({reason})")
        return True


# =============================================================================
# SQLITE DATABASE IMPLEMENTATION
# =============================================================================

class SQLiteDatabase(BaseDatabase):
    """
    SQLite database implementation.
    Zero configuration - uses a local file.
    """

    placeholder = "?"
    driver_errors = (sqlite3.Error,)

    def __init__(self, db_path: Optional[str] = None):
        """
        Args:
            db_path: Path to SQLite database file. Defaults to data/Ultima_Agent.db
        """
        default_path = Path(__file__).parent.parent.parent / "data" / "Ultima_Agent.db"
        self.db_path = Path(db_path) if db_path else default_path
        self._connection: Optional[sqlite3.Connection] = None
        self._connected = False
        self._lock = threading.RLock()

    def connect(self) -> bool:
        """Establish connection to SQLite database."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,  # Worker threads (asyncio.to_thread) share the connection
                timeout=30.0
            )
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys = ON")
            self._connected = True
            logger.info(f"SQLite database connected: {self.db_path}")
            return True
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Failed to connect to SQLite: {e}")
            self._connected = False
            return False

    def disconnect(self):
        if self._connection:
            self._connection.close()
            self._connection = None
            self._connected = False
            logger.info("SQLite connection closed")

    def is_connected(self) -> bool:
        return self._connected and self._connection is not None

    @contextmanager
    def get_cursor(self):
        """Get a cursor with automatic commit/rollback."""
        if not self._connection:
            raise PersistenceError("Database not connected")

        # One shared connection: a transaction owns it until commit or rollback
        with self._lock:
            cursor = self._connection.cursor()
            try:
                yield cursor
                self._connection.commit()
            except Exception:
                self._connection.rollback()
                raise
            finally:
                cursor.close()

    def _rows(self, cursor) -> List[Dict[str, Any]]:
        return [dict(row) for row in cursor.fetchall()]


# =============================================================================
# POSTGRESQL DATABASE IMPLEMENTATION
# =============================================================================

class PostgreSQLDatabase(BaseDatabase):
    """
    PostgreSQL database implementation.
    Used for cloud deployments (NeonDB, Supabase, etc.).
    """

    placeholder = "%s"

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or Config.database.DATABASE_URL
        self._pool = None
        self._connected = False
        self.driver_errors = ()

        if not self.database_url:
            logger.warning("DATABASE_URL not set for PostgreSQL")

    def connect(self) -> bool:
        """Establish connection pool to PostgreSQL."""
        if not self.database_url:
            return False

        import psycopg2
        from psycopg2 import pool

        self.driver_errors = (psycopg2.Error,)
        try:
            self._pool = pool.ThreadedConnectionPool(minconn=1, maxconn=5, dsn=self.database_url)
            self._connected = True
            logger.info("PostgreSQL connection pool established")
            return True
        except psycopg2.Error as e:
            logger.error(f"Failed to connect to PostgreSQL: {e}")
            self._connected = False
            return False

    def disconnect(self):
        if self._pool:
            self._pool.closeall()
            self._connected = False
            logger.info("PostgreSQL connections closed")

    def is_connected(self) -> bool:
        return self._connected and self._pool is not None

    @contextmanager
    def get_cursor(self):
        """Get a dict cursor from a pooled connection."""
        if not self._pool:
            raise PersistenceError("Database not connected")
        from psycopg2.extras import RealDictCursor

        conn = self._pool.getconn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                yield cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    def _rows(self, cursor) -> List[Dict[str, Any]]:
        return [dict(row) for row in cursor.fetchall()]


# =============================================================================
# DATABASE MANAGER
# =============================================================================

class DatabaseManager:
    """
    Database manager that selects the appropriate backend based on configuration.
    Acts as a factory and provides a consistent interface.
    """

    def __init__(self, db_type: Optional[str] = None, backend: Optional[BaseDatabase] = None):
        """
        Args:
            db_type: 'sqlite' or 'postgresql'. Defaults to DB_TYPE env var or 'sqlite'.
            backend: Explicit backend instance (tests, embedding applications)
        """
        self.db_type = (db_type or Config.database.DB_TYPE).lower()

        if backend is not None:
            self._backend = backend
        elif self.db_type == "postgresql" and Config.database.DATABASE_URL:
            self._backend = PostgreSQLDatabase(Config.database.DATABASE_URL)
        else:
            if self.db_type == "postgresql":
                logger.warning("PostgreSQL selected but DATABASE_URL not set, falling back to SQLite")
                self.db_type = "sqlite"
            self._backend = SQLiteDatabase(Config.database.SQLITE_DB_PATH or None)

        logger.info(f"Database type selected: {self.db_type}")

    @property
    def backend(self) -> BaseDatabase:
        return self._backend

    def connect(self) -> bool:
        return self._backend.connect()

    def disconnect(self):
        self._backend.disconnect()

    def is_connected(self) -> bool:
        return self._backend.is_connected()

    def initialize_schema(self):
        self._backend.initialize_schema()

    def reset_database(self):
        self._backend.reset_database()

    # Delegate all operations to the backend
    def add_conversation_message(self, session_id: str, role: str, content: str, **fields) -> str:
        return self._backend.add_conversation_message(session_id, role, content, **fields)

    def get_session_messages(self, session_id: str, limit: Optional[int] = None) -> List[Dict]:
        return self._backend.get_session_messages(session_id, limit)

    def insert_knowledge(self, node: Dict[str, Any], chunk: Dict[str, Any]) -> str:
        return self._backend.insert_knowledge(node, chunk)

    def insert_knowledge_if_absent(self, node: Dict[str, Any], chunk: Dict[str, Any], is_duplicate) -> Optional[str]:
        return self._backend.insert_knowledge_if_absent(node, chunk, is_duplicate)

    def find_node_titles(self, user_id: str) -> List[str]:
        return self._backend.find_node_titles(user_id)

    def get_knowledge_node(self, node_id: str) -> Optional[Dict]:
        return self._backend.get_knowledge_node(node_id)

    def list_knowledge_chunks(self, user_id: str) -> List[Dict]:
        return self._backend.list_knowledge_chunks(user_id)

    def deprecate_knowledge_node(self, node_id: str, user_id: str, reason: str) -> bool:
        return self._backend.deprecate_knowledge_node(node_id, user_id, reason)


# =============================================================================
# SINGLETON INSTANCE
# =============================================================================

_db_manager: Optional[DatabaseManager] = None


def get_database() -> DatabaseManager:
    """Get the global database manager instance."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def init_database() -> bool:
    """Initialize database connection and schema."""
    db = get_database()
    if db.connect():
        db.initialize_schema()
        return True
    return False
