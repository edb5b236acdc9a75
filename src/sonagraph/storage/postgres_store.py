"""
PostgreSQL snapshot store.

Each component snapshot is one JSONB row keyed by name, written with an
upsert. ``save_many`` writes a set of components in one transaction.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Mapping, Optional

import psycopg2
from psycopg2.extras import Json, RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

logger = logging.getLogger(__name__)


class PostgresSnapshotStore:
    """
    Snapshot store backed by a ``sonagraph_snapshots`` table.

    Attributes:
        database_url (str): PostgreSQL DSN
        table_name (str): Table holding the snapshots
    """

    def __init__(self, database_url: str, pool_size: int = 5,
                 table_name: str = "sonagraph_snapshots", pool=None):
        """
        Args:
            database_url: PostgreSQL connection string
            pool_size: Maximum pooled connections
            table_name: Snapshot table name
            pool: Pre-built connection pool (mainly for tests)
        """
        self.database_url = database_url
        self.table_name = table_name
        self.pool = pool or ThreadedConnectionPool(minconn=1, maxconn=pool_size, dsn=database_url)

    @contextmanager
    def get_connection(self):
        """Borrow a pooled connection."""
        conn = self.pool.getconn()
        try:
            yield conn
        finally:
            self.pool.putconn(conn)

    def create_schema(self):
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self.table_name} (
                        name TEXT PRIMARY KEY,
                        payload JSONB NOT NULL,
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                    """
                )
                conn.commit()

    def save(self, name: str, payload: Dict[str, Any]) -> None:
        """Insert or replace the snapshot called ``name``."""
        self.save_many({name: payload})

    def save_many(self, payloads: Mapping[str, Dict[str, Any]]) -> None:
        """
        Insert or replace several snapshots in one transaction.

        Either every row is written or, on any error, none is.
        """
        with self.get_connection() as conn:
            try:
                with conn.cursor() as cur:
                    for name, payload in payloads.items():
                        cur.execute(
                            f"""
                            INSERT INTO {self.table_name} (name, payload, updated_at)
                            VALUES (%s, %s, now())
                            ON CONFLICT (name)
                            DO UPDATE SET payload = EXCLUDED.payload, updated_at = now()
                            """,
                            (name, Json(payload)),
                        )
                conn.commit()
            except psycopg2.Error:
                conn.rollback()
                raise
        logger.debug("Saved snapshots %s", ", ".join(payloads))

    def load(self, name: str) -> Optional[Dict[str, Any]]:
        """Fetch the snapshot called ``name``, or None."""
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"SELECT payload FROM {self.table_name} WHERE name = %s",
                    (name,),
                )
                row = cur.fetchone()
        return row['payload'] if row else None

    def delete(self, name: str) -> bool:
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self.table_name} WHERE name = %s", (name,))
                deleted = cur.rowcount > 0
                conn.commit()
        return deleted

    def names(self) -> List[str]:
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT name FROM {self.table_name} ORDER BY name")
                return [row[0] for row in cur.fetchall()]

    def close(self):
        """Close all pooled connections."""
        self.pool.closeall()
