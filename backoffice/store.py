"""
Document store behind the back-office: named collections of JSON documents.

`PostgresDocumentStore` keeps every document in one JSONB table;
`MemoryDocumentStore` is the process-local backend used for development and
tests. Both expose the same methods and the same transaction semantics:
writes made inside `run_transaction(fn)` are applied only if `fn` returns.
"""

import copy
import logging
import threading
import time
import uuid

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extras import DictCursor, Json

from backoffice.errors import DocumentNotFound, StoreError

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (collection, id)
);
CREATE INDEX IF NOT EXISTS documents_data_idx ON documents USING GIN (data jsonb_path_ops);
"""

TRANSACTION_ATTEMPTS = 3


def new_id():
    return uuid.uuid4().hex


def _with_id(doc_id, data):
    doc = dict(data)
    doc["id"] = doc_id
    return doc


def _strip_id(data):
    return {key: value for key, value in data.items() if key != "id"}


# --- PostgreSQL ---


class PostgresTransaction:
    def __init__(self, cur):
        self._cur = cur

    def get(self, collection, doc_id):
        self._cur.execute(
            "SELECT data FROM documents WHERE collection = %s AND id = %s FOR UPDATE;",
            (collection, doc_id),
        )
        row = self._cur.fetchone()
        return _with_id(doc_id, row["data"]) if row else None

    def set(self, collection, doc_id, data):
        self._cur.execute(
            """INSERT INTO documents (collection, id, data) VALUES (%s, %s, %s)
               ON CONFLICT (collection, id)
               DO UPDATE SET data = EXCLUDED.data, updated_at = now();""",
            (collection, doc_id, Json(_strip_id(data))),
        )

    def update(self, collection, doc_id, data):
        self._cur.execute(
            """UPDATE documents SET data = data || %s, updated_at = now()
               WHERE collection = %s AND id = %s;""",
            (Json(_strip_id(data)), collection, doc_id),
        )
        if self._cur.rowcount == 0:
            raise DocumentNotFound(collection, doc_id)

    def add(self, collection, data):
        doc_id = new_id()
        self.set(collection, doc_id, data)
        return doc_id

    def delete(self, collection, doc_id):
        self._cur.execute(
            "DELETE FROM documents WHERE collection = %s AND id = %s;", (collection, doc_id)
        )


class PostgresDocumentStore:
    def __init__(self, conn):
        self.conn = conn

    def _read(self, sql, params):
        try:
            with self.conn.cursor(cursor_factory=DictCursor) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            self.conn.commit()
        except psycopg2.Error as e:
            self.conn.rollback()
            raise StoreError(f"Read failed: {e}") from e
        return [_with_id(row["id"], row["data"]) for row in rows]

    def fetch_collection(self, collection):
        return self._read(
            "SELECT id, data FROM documents WHERE collection = %s ORDER BY id;", (collection,)
        )

    def get(self, collection, doc_id):
        docs = self._read(
            "SELECT id, data FROM documents WHERE collection = %s AND id = %s;",
            (collection, doc_id),
        )
        return docs[0] if docs else None

    def query(self, collection, field, value):
        return self._read(
            "SELECT id, data FROM documents WHERE collection = %s AND data @> %s ORDER BY id;",
            (collection, Json({field: value})),
        )

    def add(self, collection, data):
        return self.run_transaction(lambda txn: txn.add(collection, data))

    def set(self, collection, doc_id, data, merge=False):
        if merge:
            def write(txn):
                if txn.get(collection, doc_id) is None:
                    txn.set(collection, doc_id, data)
                else:
                    txn.update(collection, doc_id, data)
        else:
            def write(txn):
                txn.set(collection, doc_id, data)
        self.run_transaction(write)

    def delete(self, collection, doc_id):
        self.run_transaction(lambda txn: txn.delete(collection, doc_id))

    def delete_where(self, collection, field, value):
        try:
            with self.conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM documents WHERE collection = %s AND data @> %s;",
                    (collection, Json({field: value})),
                )
                deleted = cur.rowcount
            self.conn.commit()
        except psycopg2.Error as e:
            self.conn.rollback()
            raise StoreError(f"Delete failed: {e}") from e
        return deleted

    def run_transaction(self, fn):
        """
        Runs `fn(txn)` in one database transaction and commits.

        Rows read through `txn.get` stay locked until commit, so concurrent
        transactions over the same documents are serialised. Serialisation
        failures and deadlocks are retried.
        """
        last_exception = None
        for attempt in range(1, TRANSACTION_ATTEMPTS + 1):
            try:
                with self.conn.cursor(cursor_factory=DictCursor) as cur:
                    result = fn(PostgresTransaction(cur))
                self.conn.commit()
                return result
            except (
                pg_errors.SerializationFailure,
                pg_errors.DeadlockDetected,
            ) as e:
                self.conn.rollback()
                last_exception = e
                logger.warning(
                    "Transaction attempt %s/%s conflicted: %s", attempt, TRANSACTION_ATTEMPTS, e
                )
                if attempt < TRANSACTION_ATTEMPTS:
                    time.sleep(0.1 * attempt)
            except psycopg2.Error as e:
                self.conn.rollback()
                raise StoreError(f"Transaction failed: {e}") from e
            except Exception:
                self.conn.rollback()
                raise
        raise StoreError(
            f"Transaction failed after {TRANSACTION_ATTEMPTS} attempts"
        ) from last_exception


def init_schema(conn):
    with conn.cursor() as cur:
        cur.execute(SCHEMA_SQL)
    conn.commit()


# --- In memory ---


class MemoryTransaction:
    def __init__(self, store):
        self._store = store
        self._writes = {}

    def _current(self, collection, doc_id):
        key = (collection, doc_id)
        if key in self._writes:
            return self._writes[key]
        return self._store._collections.get(collection, {}).get(doc_id)

    def get(self, collection, doc_id):
        data = self._current(collection, doc_id)
        return _with_id(doc_id, copy.deepcopy(data)) if data is not None else None

    def set(self, collection, doc_id, data):
        self._writes[(collection, doc_id)] = copy.deepcopy(_strip_id(data))

    def update(self, collection, doc_id, data):
        current = self._current(collection, doc_id)
        if current is None:
            raise DocumentNotFound(collection, doc_id)
        merged = copy.deepcopy(current)
        merged.update(copy.deepcopy(_strip_id(data)))
        self._writes[(collection, doc_id)] = merged

    def add(self, collection, data):
        doc_id = new_id()
        self.set(collection, doc_id, data)
        return doc_id

    def delete(self, collection, doc_id):
        self._writes[(collection, doc_id)] = None

    def _apply(self):
        for (collection, doc_id), data in self._writes.items():
            docs = self._store._collections.setdefault(collection, {})
            if data is None:
                docs.pop(doc_id, None)
            else:
                docs[doc_id] = data


class MemoryDocumentStore:
    def __init__(self, collections=None):
        self._collections = {}
        self._lock = threading.RLock()
        for name, docs in (collections or {}).items():
            for doc in docs:
                doc_id = doc.get("id") or new_id()
                self._collections.setdefault(name, {})[doc_id] = copy.deepcopy(_strip_id(doc))

    def fetch_collection(self, collection):
        with self._lock:
            docs = self._collections.get(collection, {})
            return [_with_id(doc_id, copy.deepcopy(data)) for doc_id, data in sorted(docs.items())]

    def get(self, collection, doc_id):
        with self._lock:
            data = self._collections.get(collection, {}).get(doc_id)
            return _with_id(doc_id, copy.deepcopy(data)) if data is not None else None

    def query(self, collection, field, value):
        return [doc for doc in self.fetch_collection(collection) if doc.get(field) == value]

    def add(self, collection, data):
        return self.run_transaction(lambda txn: txn.add(collection, data))

    def set(self, collection, doc_id, data, merge=False):
        if merge:
            def write(txn):
                if txn.get(collection, doc_id) is None:
                    txn.set(collection, doc_id, data)
                else:
                    txn.update(collection, doc_id, data)
        else:
            def write(txn):
                txn.set(collection, doc_id, data)
        self.run_transaction(write)

    def delete(self, collection, doc_id):
        self.run_transaction(lambda txn: txn.delete(collection, doc_id))

    def delete_where(self, collection, field, value):
        def remove(txn):
            matches = self.query(collection, field, value)
            for doc in matches:
                txn.delete(collection, doc["id"])
            return len(matches)

        return self.run_transaction(remove)

    def run_transaction(self, fn):
        # One writer at a time: the lock plays the part of row locks.
        with self._lock:
            txn = MemoryTransaction(self)
            result = fn(txn)
            txn._apply()
            return result
