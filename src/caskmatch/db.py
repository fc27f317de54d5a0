"""PostgreSQL access for the canonical catalog and the external feed (psycopg3)."""

import psycopg
from psycopg.rows import dict_row

from caskmatch.config import Settings

# Uniqueness of (name, distillery, variant flag) is enforced here, by the
# store, not by the resolution engine.
SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS canonical_entries (
        id                 uuid PRIMARY KEY,
        name               text NOT NULL,
        brand              text NOT NULL,
        distillery         text NOT NULL,
        category           text NOT NULL DEFAULT 'Spirits',
        type               text,
        age                integer,
        proof              double precision,
        abv                double precision,
        stated_proof       text,
        size               text,
        country            text,
        region             text,
        price              double precision,
        description        text,
        image_url          text,
        is_variant         boolean NOT NULL DEFAULT false,
        variant_detail     text,
        source             text NOT NULL,
        external_feed_id   text,
        sku                text,
        imported_at        timestamptz,
        last_sync_at       timestamptz,
        duplicate_of       uuid REFERENCES canonical_entries (id),
        no_match_marked_at timestamptz,
        created_at         timestamptz NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS canonical_entries_unique_key
        ON canonical_entries (lower(name), lower(distillery), is_variant)
    """,
    """
    CREATE INDEX IF NOT EXISTS canonical_entries_feed_id
        ON canonical_entries (external_feed_id)
    """,
    """
    CREATE INDEX IF NOT EXISTS canonical_entries_source
        ON canonical_entries (source)
    """,
    """
    CREATE TABLE IF NOT EXISTS entry_identifiers (
        entry_id       uuid NOT NULL REFERENCES canonical_entries (id),
        code           text NOT NULL,
        kind           text NOT NULL,
        verified_count integer NOT NULL DEFAULT 0,
        is_admin_added boolean NOT NULL DEFAULT false,
        added_at       timestamptz NOT NULL DEFAULT now(),
        PRIMARY KEY (entry_id, code)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS entry_identifiers_code
        ON entry_identifiers (kind, code)
    """,
    """
    CREATE TABLE IF NOT EXISTS backfill_checkpoints (
        name          text PRIMARY KEY,
        last_entry_id uuid,
        merged        integer NOT NULL DEFAULT 0,
        updated_at    timestamptz NOT NULL DEFAULT now()
    )
    """,
)


def get_connection(settings: Settings | None = None) -> psycopg.Connection:
    """Open a synchronous connection to the catalog database with dict row factory."""
    if settings is None:
        from caskmatch.config import get_settings
        settings = get_settings()

    return psycopg.connect(settings.database_url, row_factory=dict_row)


def get_feed_connection(settings: Settings | None = None) -> psycopg.Connection:
    """Open a read-only connection to the external product feed."""
    if settings is None:
        from caskmatch.config import get_settings
        settings = get_settings()

    conn = psycopg.connect(settings.feed_database_url, row_factory=dict_row)
    conn.read_only = True
    return conn


def init_schema(conn: psycopg.Connection) -> None:
    """Create catalog tables and indexes.

    Called once at process start by each entry point.  Every statement is
    ``IF NOT EXISTS`` so repeated calls are harmless.
    """
    with conn.cursor() as cur:
        for statement in SCHEMA_STATEMENTS:
            cur.execute(statement)
    conn.commit()


def execute_query(conn: psycopg.Connection, query: str, params: tuple = ()) -> list[dict]:
    """Execute a query and return all rows as dicts."""
    with conn.cursor() as cur:
        cur.execute(query, params)
        if cur.description:
            return cur.fetchall()
        return []


def execute_many(conn: psycopg.Connection, query: str, params_list: list[tuple]) -> int:
    """Execute a parameterised query for each set of params. Returns row count."""
    with conn.cursor() as cur:
        cur.executemany(query, params_list)
        return cur.rowcount
