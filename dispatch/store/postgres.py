"""
PostgreSQL record store

Stores each record as a JSONB document in a single ``dispatch_records``
table keyed by (namespace, key). Per-key atomicity comes from row locks:
``update`` reads with SELECT ... FOR UPDATE and writes back inside the same
transaction.
"""

import logging
from typing import List, Optional, Type

from psycopg2.extras import Json

from dispatch.errors import Conflict, NotFound
from dispatch.store.base import Mutator, RecordStore, T, Versioned
from dispatch.utils.database import Database

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS dispatch_records (
        namespace  TEXT        NOT NULL,
        key        TEXT        NOT NULL,
        version    INTEGER     NOT NULL DEFAULT 1,
        document   JSONB       NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (namespace, key)
    )
"""


def ensure_schema(db: Database) -> None:
    """Create the records table if it does not exist yet"""
    db.execute_update(SCHEMA_SQL)
    logger.info("dispatch_records table ready")


class PostgresRecordStore(RecordStore[T]):
    """Record store backed by a PostgreSQL table of JSONB documents"""

    def __init__(self, db: Database, model: Type[T], namespace: str):
        super().__init__(model, namespace)
        self.db = db

    def _load(self, document: dict) -> T:
        return self.model.model_validate(document)

    def _dump(self, record: T) -> Json:
        return Json(record.model_dump(mode="json"))

    def get_versioned(self, key: str) -> Optional[Versioned[T]]:
        row = self.db.execute_query(
            """
            SELECT version, document
            FROM dispatch_records
            WHERE namespace = %s AND key = %s
            """,
            (self.namespace, key),
            fetch_one=True
        )
        if not row:
            return None
        return Versioned(record=self._load(row['document']), version=row['version'])

    def list(self) -> List[T]:
        rows = self.db.execute_query(
            """
            SELECT document
            FROM dispatch_records
            WHERE namespace = %s
            ORDER BY key
            """,
            (self.namespace,)
        )
        return [self._load(row['document']) for row in rows]

    def add(self, key: str, record: T) -> T:
        inserted = self.db.execute_update(
            """
            INSERT INTO dispatch_records (namespace, key, version, document)
            VALUES (%s, %s, 1, %s)
            ON CONFLICT (namespace, key) DO NOTHING
            """,
            (self.namespace, key, self._dump(record))
        )
        if inserted == 0:
            raise Conflict(f"{self.namespace} record {key} already exists")
        return record.model_copy(deep=True)

    def update(self, key: str, mutator: Mutator) -> T:
        with self.db.get_cursor() as cursor:
            cursor.execute(
                """
                SELECT version, document
                FROM dispatch_records
                WHERE namespace = %s AND key = %s
                FOR UPDATE
                """,
                (self.namespace, key)
            )
            row = cursor.fetchone()
            if not row:
                raise NotFound(f"{self.namespace} record {key} not found")

            updated = mutator(self._load(row['document']))

            cursor.execute(
                """
                UPDATE dispatch_records
                SET document = %s, version = version + 1, updated_at = now()
                WHERE namespace = %s AND key = %s
                """,
                (self._dump(updated), self.namespace, key)
            )
        return updated.model_copy(deep=True)

    def compare_and_set(self, key: str, expected_version: int, record: T) -> bool:
        changed = self.db.execute_update(
            """
            UPDATE dispatch_records
            SET document = %s, version = version + 1, updated_at = now()
            WHERE namespace = %s AND key = %s AND version = %s
            """,
            (self._dump(record), self.namespace, key, expected_version)
        )
        return changed == 1
