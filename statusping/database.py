import secrets
import sqlite3
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from statusping.config import DATABASE_PATH, DATABASE_URL
from statusping.models import FREQUENCIES, Image, Link, Project, Subscription, Update

IS_POSTGRES = bool(DATABASE_URL)

MAX_IMAGES_PER_UPDATE = 4
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# ---------------------------------------------------------------------------
# PostgreSQL connection pool (only initialised when DATABASE_URL is set)
# ---------------------------------------------------------------------------

if IS_POSTGRES:
    import psycopg2
    import psycopg2.pool
    from psycopg2.extras import RealDictCursor

    # Expose a DB-agnostic IntegrityError that callers can catch.
    IntegrityError = psycopg2.IntegrityError

    _pool = psycopg2.pool.ThreadedConnectionPool(1, 10, DATABASE_URL)

    class _PooledConnection:
        """Thin wrapper around a psycopg2 connection borrowed from the pool.

        Intercepts close() to return the connection to the pool instead of
        discarding it, so the rest of the code can call conn.close() freely.
        """

        def __init__(self, conn):
            self._conn = conn

        def cursor(self):  # noqa: D102
            return self._conn.cursor(cursor_factory=RealDictCursor)

        def commit(self):  # noqa: D102
            self._conn.commit()

        def rollback(self):  # noqa: D102
            self._conn.rollback()

        def close(self):  # returns connection to pool rather than closing it
            _pool.putconn(self._conn)

else:
    IntegrityError = sqlite3.IntegrityError


def get_connection():
    """Return a database connection (SQLite or pooled PostgreSQL)."""
    if IS_POSTGRES:
        return _PooledConnection(_pool.getconn())
    conn = sqlite3.connect(DATABASE_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ---------------------------------------------------------------------------
# Query helpers for cross-database compatibility
# ---------------------------------------------------------------------------

def _q(query: str) -> str:
    """Replace SQLite-style ? placeholders with %s for PostgreSQL."""
    if IS_POSTGRES:
        return query.replace("?", "%s")
    return query


def _insert_and_get_id(cursor, query: str, params: tuple) -> int:
    """Execute an INSERT and return the generated primary key.

    PostgreSQL uses RETURNING id; SQLite uses cursor.lastrowid.
    The *query* must use ? placeholders (they are adapted automatically).
    """
    if IS_POSTGRES:
        cursor.execute(_q(query) + " RETURNING id", params)
        return cursor.fetchone()["id"]
    cursor.execute(query, params)
    return cursor.lastrowid


def _in_clause(column: str, values: Iterable[Any]) -> tuple[str, tuple]:
    """Return a ``column IN (...)`` fragment and its parameters.

    PostgreSQL binds the whole list to a single ``= ANY(%s)`` parameter.
    """
    values = list(values)
    if IS_POSTGRES:
        return f"{column} = ANY(%s)", (values,)
    placeholders = ",".join("?" for _ in values)
    return f"{column} IN ({placeholders})", tuple(values)


def _pk_col() -> str:
    """Return the DDL fragment for an auto-incrementing primary key column."""
    return "id SERIAL PRIMARY KEY" if IS_POSTGRES else "id INTEGER PRIMARY KEY AUTOINCREMENT"


def _ts_type() -> str:
    """Return the column type used for timestamps."""
    return "TIMESTAMPTZ" if IS_POSTGRES else "TIMESTAMP"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime) -> str:
    """Serialise a timestamp for storage.

    Every timestamp is written as a fixed-width UTC ISO string so SQLite can
    compare them as text; PostgreSQL casts the same string to TIMESTAMPTZ.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_dt(value: Any) -> Optional[datetime]:
    """Parse a datetime that may already be a datetime (PostgreSQL) or a string (SQLite)."""
    if value is None:
        return None
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(str(value))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Schema creation
# ---------------------------------------------------------------------------

def init_db():
    """Create all tables if they don't exist."""
    conn = get_connection()
    cursor = conn.cursor()

    pk = _pk_col()
    ts = _ts_type()

    cursor.execute(f"""
        CREATE TABLE IF NOT EXISTS projects (
            {pk},
            name TEXT NOT NULL,
            description TEXT DEFAULT '',
            status TEXT NOT NULL DEFAULT 'active',
            magic_link_token TEXT UNIQUE NOT NULL,
            branding_color TEXT,
            branding_logo_url TEXT,
            notifications_enabled SMALLINT NOT NULL DEFAULT 1,
            created_at {ts} NOT NULL
        )
    """)

    cursor.execute(f"""
        CREATE TABLE IF NOT EXISTS updates (
            {pk},
            project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            content TEXT NOT NULL,
            created_at {ts} NOT NULL
        )
    """)

    cursor.execute(f"""
        CREATE TABLE IF NOT EXISTS images (
            {pk},
            update_id INTEGER NOT NULL REFERENCES updates(id) ON DELETE CASCADE,
            url TEXT NOT NULL,
            filename TEXT,
            size_bytes BIGINT,
            created_at {ts} NOT NULL
        )
    """)

    cursor.execute(f"""
        CREATE TABLE IF NOT EXISTS links (
            {pk},
            update_id INTEGER NOT NULL REFERENCES updates(id) ON DELETE CASCADE,
            url TEXT NOT NULL,
            title TEXT,
            description TEXT,
            image_url TEXT,
            created_at {ts} NOT NULL
        )
    """)

    cursor.execute(f"""
        CREATE TABLE IF NOT EXISTS digest_subscriptions (
            {pk},
            project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            email TEXT NOT NULL,
            frequency TEXT NOT NULL DEFAULT 'instant',
            last_sent_at {ts},
            created_at {ts} NOT NULL,
            UNIQUE(project_id, email)
        )
    """)

    cursor.execute(f"""
        CREATE TABLE IF NOT EXISTS job_queue (
            {pk},
            type TEXT NOT NULL,
            payload TEXT NOT NULL DEFAULT '{{}}',
            status TEXT NOT NULL DEFAULT 'pending',
            attempts INTEGER NOT NULL DEFAULT 0,
            scheduled_for {ts} NOT NULL,
            last_error TEXT,
            created_at {ts} NOT NULL
        )
    """)

    cursor.execute(f"""
        CREATE TABLE IF NOT EXISTS scheduler_state (
            cadence TEXT PRIMARY KEY,
            last_run {ts}
        )
    """)

    # Indexes for common queries
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_updates_project ON updates(project_id, created_at)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_images_update ON images(update_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_links_update ON links(update_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_digest_subs_project ON digest_subscriptions(project_id, frequency)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_job_queue_status ON job_queue(status, scheduled_for)")

    conn.commit()
    conn.close()


# ---------------------------------------------------------------------------
# Project helpers
# ---------------------------------------------------------------------------

def _row_to_project(row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        status=row["status"],
        magic_link_token=row["magic_link_token"],
        branding_color=row["branding_color"],
        branding_logo_url=row["branding_logo_url"],
        notifications_enabled=bool(row["notifications_enabled"]),
        created_at=_parse_dt(row["created_at"]),
    )


def create_project(
    name: str,
    description: str = "",
    branding_color: Optional[str] = None,
    branding_logo_url: Optional[str] = None,
    notifications_enabled: bool = True,
) -> Project:
    """Create a project with a fresh magic-link token."""
    conn = get_connection()
    cursor = conn.cursor()

    token = secrets.token_urlsafe(24)
    now = utcnow()
    project_id = _insert_and_get_id(
        cursor,
        """INSERT INTO projects
           (name, description, magic_link_token, branding_color, branding_logo_url,
            notifications_enabled, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            name,
            description,
            token,
            branding_color,
            branding_logo_url,
            1 if notifications_enabled else 0,
            _ts(now),
        ),
    )

    conn.commit()
    conn.close()
    return Project(
        id=project_id,
        name=name,
        description=description,
        magic_link_token=token,
        branding_color=branding_color,
        branding_logo_url=branding_logo_url,
        notifications_enabled=notifications_enabled,
        created_at=now,
    )


def get_project(project_id: int) -> Optional[Project]:
    """Get a single project by ID."""
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(_q("SELECT * FROM projects WHERE id = ?"), (project_id,))
    row = cursor.fetchone()
    conn.close()

    return _row_to_project(row) if row else None


def get_project_by_token(token: str) -> Optional[Project]:
    """Look up a project by its public magic-link token."""
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(_q("SELECT * FROM projects WHERE magic_link_token = ?"), (token,))
    row = cursor.fetchone()
    conn.close()

    return _row_to_project(row) if row else None


def list_projects() -> list[Project]:
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute("SELECT * FROM projects ORDER BY created_at DESC")
    rows = cursor.fetchall()
    conn.close()

    return [_row_to_project(row) for row in rows]


# ---------------------------------------------------------------------------
# Update helpers
# ---------------------------------------------------------------------------

def _row_to_update(row) -> Update:
    return Update(
        id=row["id"],
        project_id=row["project_id"],
        content=row["content"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_image(row) -> Image:
    return Image(
        id=row["id"],
        update_id=row["update_id"],
        url=row["url"],
        filename=row["filename"],
        size_bytes=row["size_bytes"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_link(row) -> Link:
    return Link(
        id=row["id"],
        update_id=row["update_id"],
        url=row["url"],
        title=row["title"],
        description=row["description"],
        image_url=row["image_url"],
        created_at=_parse_dt(row["created_at"]),
    )


def create_update(
    project_id: int,
    content: str,
    images: Optional[list[dict]] = None,
    link: Optional[dict] = None,
    created_at: Optional[datetime] = None,
) -> Update:
    """Persist an update together with its images and link in one transaction.

    *images* is a list of ``{"url", "filename", "size_bytes"}`` dicts and
    *link* a ``{"url", "title", "description", "image_url"}`` dict.
    Raises ValueError if more than four images are attached.
    """
    images = images or []
    if len(images) > MAX_IMAGES_PER_UPDATE:
        raise ValueError("Maximum {} images allowed per update".format(MAX_IMAGES_PER_UPDATE))

    created_at = created_at or utcnow()
    conn = get_connection()
    cursor = conn.cursor()

    update_id = _insert_and_get_id(
        cursor,
        "INSERT INTO updates (project_id, content, created_at) VALUES (?, ?, ?)",
        (project_id, content, _ts(created_at)),
    )
    update = Update(id=update_id, project_id=project_id, content=content, created_at=created_at)

    for img in images:
        image_id = _insert_and_get_id(
            cursor,
            "INSERT INTO images (update_id, url, filename, size_bytes, created_at) VALUES (?, ?, ?, ?, ?)",
            (update_id, img["url"], img.get("filename"), img.get("size_bytes"), _ts(created_at)),
        )
        update.images.append(Image(
            id=image_id,
            update_id=update_id,
            url=img["url"],
            filename=img.get("filename"),
            size_bytes=img.get("size_bytes"),
            created_at=created_at,
        ))

    if link:
        link_id = _insert_and_get_id(
            cursor,
            """INSERT INTO links (update_id, url, title, description, image_url, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                update_id,
                link["url"],
                link.get("title"),
                link.get("description"),
                link.get("image_url"),
                _ts(created_at),
            ),
        )
        update.link = Link(
            id=link_id,
            update_id=update_id,
            url=link["url"],
            title=link.get("title"),
            description=link.get("description"),
            image_url=link.get("image_url"),
            created_at=created_at,
        )

    conn.commit()
    conn.close()
    return update


def _attach_media(cursor, updates: list[Update]) -> list[Update]:
    """Load images and the first link for each update in *updates*."""
    if not updates:
        return updates
    by_id = {u.id: u for u in updates}

    clause, params = _in_clause("update_id", by_id)
    cursor.execute(_q(f"SELECT * FROM images WHERE {clause} ORDER BY id"), params)
    for row in cursor.fetchall():
        by_id[row["update_id"]].images.append(_row_to_image(row))

    cursor.execute(_q(f"SELECT * FROM links WHERE {clause} ORDER BY id"), params)
    for row in cursor.fetchall():
        update = by_id[row["update_id"]]
        if update.link is None:
            update.link = _row_to_link(row)

    return updates


def get_updates_with_media(update_ids: list[int]) -> list[Update]:
    """Return updates (newest first) with their images and link attached."""
    if not update_ids:
        return []
    conn = get_connection()
    cursor = conn.cursor()

    clause, params = _in_clause("id", update_ids)
    cursor.execute(_q(f"SELECT * FROM updates WHERE {clause} ORDER BY created_at DESC, id DESC"), params)
    updates = [_row_to_update(row) for row in cursor.fetchall()]
    _attach_media(cursor, updates)

    conn.close()
    return updates


def get_updates_since(project_id: int, since: Optional[datetime]) -> list[Update]:
    """Return a project's updates created strictly after *since*, with media.

    ``since=None`` means "from the beginning" and returns every update.
    """
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(
        _q("""
            SELECT * FROM updates
            WHERE project_id = ? AND created_at > ?
            ORDER BY created_at DESC, id DESC
        """),
        (project_id, _ts(since or EPOCH)),
    )
    updates = [_row_to_update(row) for row in cursor.fetchall()]
    _attach_media(cursor, updates)

    conn.close()
    return updates


# ---------------------------------------------------------------------------
# Subscription helpers
# ---------------------------------------------------------------------------

def _row_to_subscription(row) -> Subscription:
    return Subscription(
        id=row["id"],
        project_id=row["project_id"],
        email=row["email"],
        frequency=row["frequency"],
        last_sent_at=_parse_dt(row["last_sent_at"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def upsert_subscription(project_id: int, email: str, frequency: str) -> tuple[Subscription, bool]:
    """Subscribe *email* to a project, or change the frequency of an existing row.

    A subscriber holds exactly one row per project. Returns the subscription
    and whether it was newly created.
    """
    if frequency not in FREQUENCIES:
        raise ValueError("Unknown frequency: {}".format(frequency))
    email = _normalize_email(email)

    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(
        _q("SELECT * FROM digest_subscriptions WHERE project_id = ? AND email = ?"),
        (project_id, email),
    )
    row = cursor.fetchone()

    if row:
        cursor.execute(
            _q("UPDATE digest_subscriptions SET frequency = ? WHERE id = ?"),
            (frequency, row["id"]),
        )
        subscription = _row_to_subscription(row)
        subscription.frequency = frequency
        created = False
    else:
        now = utcnow()
        try:
            sub_id = _insert_and_get_id(
                cursor,
                "INSERT INTO digest_subscriptions (project_id, email, frequency, created_at) VALUES (?, ?, ?, ?)",
                (project_id, email, frequency, _ts(now)),
            )
        except IntegrityError:
            conn.rollback()
            cursor.execute(
                _q("SELECT id FROM digest_subscriptions WHERE project_id = ? AND email = ?"),
                (project_id, email),
            )
            raced = cursor.fetchone()
            conn.close()
            if not raced:
                raise
            # A concurrent subscribe created the row first; update it instead
            return upsert_subscription(project_id, email, frequency)
        subscription = Subscription(
            id=sub_id,
            project_id=project_id,
            email=email,
            frequency=frequency,
            created_at=now,
        )
        created = True

    conn.commit()
    conn.close()
    return subscription, created


def get_subscription(project_id: int, email: str) -> Optional[Subscription]:
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(
        _q("SELECT * FROM digest_subscriptions WHERE project_id = ? AND email = ?"),
        (project_id, _normalize_email(email)),
    )
    row = cursor.fetchone()
    conn.close()

    return _row_to_subscription(row) if row else None


def get_subscriptions_for_project(project_id: int, frequency: Optional[str] = None) -> list[Subscription]:
    """Return a project's subscriptions, optionally only those at *frequency*."""
    conn = get_connection()
    cursor = conn.cursor()

    if frequency:
        cursor.execute(
            _q("""SELECT * FROM digest_subscriptions
               WHERE project_id = ? AND frequency = ?
               ORDER BY created_at DESC, id DESC"""),
            (project_id, frequency),
        )
    else:
        cursor.execute(
            _q("SELECT * FROM digest_subscriptions WHERE project_id = ? ORDER BY created_at DESC, id DESC"),
            (project_id,),
        )
    rows = cursor.fetchall()
    conn.close()

    return [_row_to_subscription(row) for row in rows]


def get_subscriptions_by_ids(subscription_ids: list[int]) -> list[Subscription]:
    if not subscription_ids:
        return []
    conn = get_connection()
    cursor = conn.cursor()

    clause, params = _in_clause("id", subscription_ids)
    cursor.execute(_q(f"SELECT * FROM digest_subscriptions WHERE {clause} ORDER BY id"), params)
    rows = cursor.fetchall()
    conn.close()

    return [_row_to_subscription(row) for row in rows]


def count_subscriptions(project_id: int) -> int:
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(
        _q("SELECT COUNT(*) AS total FROM digest_subscriptions WHERE project_id = ?"),
        (project_id,),
    )
    row = cursor.fetchone()
    conn.close()

    return int(row["total"])


def remove_subscription(project_id: int, email: str) -> bool:
    """Unsubscribe an email from a project. Returns True if a row was deleted."""
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(
        _q("DELETE FROM digest_subscriptions WHERE project_id = ? AND email = ?"),
        (project_id, _normalize_email(email)),
    )
    deleted = cursor.rowcount > 0

    conn.commit()
    conn.close()
    return deleted


def remove_subscription_by_id(project_id: int, subscription_id: int) -> bool:
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(
        _q("DELETE FROM digest_subscriptions WHERE id = ? AND project_id = ?"),
        (subscription_id, project_id),
    )
    deleted = cursor.rowcount > 0

    conn.commit()
    conn.close()
    return deleted


def advance_last_sent_at(subscription_ids: list[int], sent_at: datetime) -> int:
    """Move the watermark of each subscription forward to *sent_at*.

    Rows whose watermark is already at or past *sent_at* are left alone, so
    last_sent_at never decreases. Returns the number of rows updated.
    """
    if not subscription_ids:
        return 0
    conn = get_connection()
    cursor = conn.cursor()

    clause, params = _in_clause("id", subscription_ids)
    stamp = _ts(sent_at)
    cursor.execute(
        _q(f"""
            UPDATE digest_subscriptions SET last_sent_at = ?
            WHERE {clause} AND (last_sent_at IS NULL OR last_sent_at < ?)
        """),
        (stamp,) + params + (stamp,),
    )
    updated = cursor.rowcount

    conn.commit()
    conn.close()
    return updated


def get_project_ids_with_subscribers(frequency: str) -> list[int]:
    """Return distinct project IDs that have at least one subscriber at *frequency*."""
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(
        _q("""
            SELECT DISTINCT s.project_id FROM digest_subscriptions s
            JOIN projects p ON p.id = s.project_id
            WHERE s.frequency = ? AND p.notifications_enabled = 1
            ORDER BY s.project_id
        """),
        (frequency,),
    )
    rows = cursor.fetchall()
    conn.close()

    return [row["project_id"] for row in rows]
