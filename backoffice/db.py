import logging
import os
import time
from urllib.parse import urlparse

import click
import psycopg2
from flask import current_app, g
from flask.cli import with_appcontext
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError as SAOperationalError

from backoffice.models import DISH_TYPE
from backoffice.store import MemoryDocumentStore, PostgresDocumentStore, init_schema

logger = logging.getLogger(__name__)
_engine = None

MEMORY_STORE_KEY = "backoffice.memory_store"


def _int_env(name, default):
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _describe_target(conn_string):
    if conn_string.startswith(("postgres://", "postgresql://")):
        parsed = urlparse(conn_string)
        host = parsed.hostname or "localhost"
        db_name = (parsed.path or "").lstrip("/") or "database"
        return f"postgresql://{host}/{db_name}"
    return "configured PostgreSQL database"


def _get_engine(conn_string):
    global _engine
    if _engine is not None:
        return _engine

    _engine = create_engine(
        conn_string,
        pool_size=_int_env("DB_POOL_SIZE", 5),
        max_overflow=_int_env("DB_POOL_MAX_OVERFLOW", 5),
        pool_pre_ping=True,
        pool_recycle=_int_env("DB_POOL_RECYCLE_SECONDS", 1800),
        connect_args={"connect_timeout": _int_env("DB_CONNECT_TIMEOUT_SECONDS", 10)},
    )
    return _engine


def get_db_connection(conn_string=None):
    """Raw psycopg2 connection checked out of the SQLAlchemy pool."""
    conn_string = conn_string or os.getenv("DATABASE_URL")

    if not conn_string:
        raise RuntimeError(
            "DATABASE_URL environment variable is not set; cannot open a connection."
        )

    safe_target = _describe_target(conn_string)
    last_exception = None
    max_attempts = 3
    engine = _get_engine(conn_string)

    for attempt in range(1, max_attempts + 1):
        try:
            return engine.raw_connection()
        except (psycopg2.OperationalError, SAOperationalError) as exc:
            last_exception = exc
            logger.warning(
                "Database connection attempt %s/%s to %s failed: %s",
                attempt,
                max_attempts,
                safe_target,
                exc,
            )
            if attempt < max_attempts:
                time.sleep(0.25 * attempt)

    raise RuntimeError(f"Could not connect to {safe_target}") from last_exception


def get_db():
    """
    Opens a new database connection if one is not already open
    for the current request.
    """
    if "db" not in g:
        g.db = get_db_connection(current_app.config.get("DATABASE_URL"))
    return g.db


def close_db(e=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def get_store():
    """Document store for the current request, per the DOCUMENT_STORE setting."""
    if current_app.config["DOCUMENT_STORE"] == "memory":
        return current_app.extensions[MEMORY_STORE_KEY]
    if "store" not in g:
        g.store = PostgresDocumentStore(get_db())
    return g.store


# --- One-off data migrations ---


def migrate_ingredients(store):
    """Adds baseUnit/equivalences to ingredient documents that predate them."""
    updated = 0
    for doc in store.fetch_collection("ingredients"):
        patch = {}
        if "baseUnit" not in doc:
            patch["baseUnit"] = "g"
        if "equivalences" not in doc:
            patch["equivalences"] = {}
        if patch:
            logger.info("Migrating ingredient %s (%s)", doc.get("name"), doc["id"])
            store.set("ingredients", doc["id"], patch, merge=True)
            updated += 1
    return updated


def migrate_recipes_to_plat(store):
    """Tags untyped documents of the recipes collection as dishes."""
    updated = 0
    for doc in store.fetch_collection("recipes"):
        if not doc.get("type"):
            store.set("recipes", doc["id"], {"type": DISH_TYPE}, merge=True)
            updated += 1
    return updated


@click.command("init-db")
@with_appcontext
def init_db_command():
    """Create the documents table."""
    init_schema(get_db())
    click.echo("Initialized the documents table.")


@click.command("migrate-ingredients")
@with_appcontext
def migrate_ingredients_command():
    count = migrate_ingredients(get_store())
    click.echo(f"{count} ingredient(s) updated.")


@click.command("migrate-recipes")
@with_appcontext
def migrate_recipes_command():
    count = migrate_recipes_to_plat(get_store())
    click.echo(f"{count} recipe(s) tagged as '{DISH_TYPE}'.")


def init_app(app):
    """
    Register database functions with the Flask app. This is called by
    the application factory.
    """
    if app.config["DOCUMENT_STORE"] == "memory":
        app.extensions.setdefault(
            MEMORY_STORE_KEY, MemoryDocumentStore(app.config.get("SEED_COLLECTIONS"))
        )
    app.teardown_appcontext(close_db)
    app.cli.add_command(init_db_command)
    app.cli.add_command(migrate_ingredients_command)
    app.cli.add_command(migrate_recipes_command)
