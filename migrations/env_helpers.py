"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without an alembic context.
DATABASE_URL may be a URL (postgres://, postgresql://) or a libpq key=value
DSN (Cloud SQL style). Both become a SQLAlchemy psycopg2 URL; DB_PASSWORD is
injected when the DSN carries no password.
"""

from __future__ import annotations

import os
import re

from sqlalchemy.engine import URL, make_url

DRIVER = "postgresql+psycopg2"

# key=value pairs; values may be single-quoted with backslash escapes
_DSN_PAIR = re.compile(r"(\w+)\s*=\s*('(?:[^'\\]|\\.)*'|\S*)")
_ESCAPE = re.compile(r"\\(.)")


def parse_libpq_dsn(dsn: str) -> dict[str, str]:
    """Parse a libpq key=value DSN into a dict."""
    pairs: dict[str, str] = {}
    for match in _DSN_PAIR.finditer(dsn):
        key, value = match.group(1), match.group(2)
        if value.startswith("'") and value.endswith("'") and len(value) >= 2:
            value = _ESCAPE.sub(r"\1", value[1:-1])
        pairs[key] = value
    return pairs


def libpq_dsn_to_url(dsn: str) -> URL:
    """Convert a libpq DSN. A host starting with '/' is a Unix socket (Cloud SQL)."""
    pairs = parse_libpq_dsn(dsn)
    password = pairs.get("password") or os.environ.get("DB_PASSWORD") or None
    host = pairs.get("host", "localhost")
    database = pairs.get("dbname") or None
    username = pairs.get("user") or None

    if host.startswith("/"):
        return URL.create(DRIVER, username=username, password=password, database=database, query={"host": host})
    return URL.create(
        DRIVER,
        username=username,
        password=password,
        host=host,
        port=int(pairs.get("port", "5432")),
        database=database,
    )


def get_database_url() -> str:
    """Return DATABASE_URL as a SQLAlchemy URL string (password included).

    Raises:
        RuntimeError: If DATABASE_URL is not set.
    """
    raw = os.environ.get("DATABASE_URL")
    if not raw:
        raise RuntimeError("DATABASE_URL is required to run migrations")

    if "://" not in raw:
        url = libpq_dsn_to_url(raw)
    else:
        url = make_url(raw.replace("postgres://", "postgresql://", 1))
        if url.drivername in ("postgresql", "postgres"):
            url = url.set(drivername=DRIVER)
        db_password = os.environ.get("DB_PASSWORD")
        if db_password and not url.password:
            url = url.set(password=db_password)
    return url.render_as_string(hide_password=False)
