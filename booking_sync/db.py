from __future__ import annotations

from datetime import datetime, timezone
import logging
from pathlib import Path
import sqlite3
import time
from typing import Any, Callable, Iterable, TypeVar
from uuid import uuid4

from .config import AppSettings
from .constants import DEFAULT_PLATFORM_NAME, DEFAULT_SYNC_FREQUENCY_HOURS

_MIGRATIONS_DIR = Path(__file__).with_name("migrations")
_SQLITE_CONNECT_TIMEOUT_SECONDS = 30
_DEFAULT_SQLITE_BUSY_TIMEOUT_MS = 30_000
_DEFAULT_DB_RETRIES = 5
_DEFAULT_DB_BASE_SLEEP_MS = 50
_LOCK_ERROR_MARKERS = ("locked", "busy")
_T = TypeVar("_T")

_UNSET = object()
_logger = logging.getLogger(__name__)

_BOOKING_SELECT_SQL = """
SELECT
    eb.*,
    sc.property_id AS property_id
FROM external_bookings AS eb
JOIN sync_configurations AS sc ON sc.id = eb.sync_configuration_id
"""


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat().replace(
        "+00:00", "Z"
    )


def _as_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return dict(row)


def _configuration_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    out = _as_dict(row)
    if out is None:
        return None
    out["is_active"] = bool(out.get("is_active"))
    return out


def _clean_required(value: object, field: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValueError(f"{field} is required")
    return text


def _normalise_platform_name(value: object) -> str:
    text = " ".join(str(value or "").split())
    return text or DEFAULT_PLATFORM_NAME


def _validate_frequency_hours(value: object) -> int:
    try:
        hours = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        raise ValueError(f"Unsupported sync frequency: {value}") from None
    if hours < 1:
        raise ValueError("sync_frequency_hours must be at least 1")
    return hours


def _is_lock_or_busy_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).strip().lower()
    return any(marker in message for marker in _LOCK_ERROR_MARKERS)


def with_db_retry(
    fn: Callable[[], _T],
    *,
    retries: int = _DEFAULT_DB_RETRIES,
    base_sleep_ms: int = _DEFAULT_DB_BASE_SLEEP_MS,
) -> _T:
    attempts = max(0, int(retries))
    sleep_ms = max(0, int(base_sleep_ms))
    for attempt in range(attempts + 1):
        try:
            return fn()
        except sqlite3.OperationalError as error:
            if attempt >= attempts or not _is_lock_or_busy_error(error):
                raise
            delay_seconds = (sleep_ms * (attempt + 1)) / 1000.0
            time.sleep(delay_seconds)
    raise RuntimeError("unreachable")


def _migration_files() -> list[tuple[int, Path]]:
    if not _MIGRATIONS_DIR.exists():
        raise FileNotFoundError(f"Migrations directory not found: {_MIGRATIONS_DIR}")
    out: list[tuple[int, Path]] = []
    for path in sorted(_MIGRATIONS_DIR.glob("*.sql")):
        prefix, _, _ = path.name.partition("_")
        if not prefix.isdigit():
            continue
        out.append((int(prefix), path))
    versions = [version for version, _ in out]
    if len(set(versions)) != len(versions):
        raise ValueError("Duplicate migration version detected")
    return sorted(out, key=lambda item: item[0])


def _read_user_version(conn: sqlite3.Connection) -> int:
    return int(conn.execute("PRAGMA user_version").fetchone()[0])


def _executescript_allowing_duplicate_columns(
    conn: sqlite3.Connection,
    migration_sql: str,
) -> None:
    try:
        conn.executescript(migration_sql)
    except sqlite3.OperationalError as error:
        if "duplicate column name" not in str(error).strip().lower():
            raise
        for statement in migration_sql.split(";"):
            sql = statement.strip()
            if not sql:
                continue
            try:
                conn.execute(sql)
            except sqlite3.OperationalError as statement_error:
                if "duplicate column name" in str(statement_error).strip().lower():
                    continue
                raise


def connect_db(
    path: Path,
    *,
    timeout: float = _SQLITE_CONNECT_TIMEOUT_SECONDS,
    busy_timeout_ms: int = _DEFAULT_SQLITE_BUSY_TIMEOUT_MS,
) -> sqlite3.Connection:
    db_file = Path(path)
    db_file.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_file, timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute(f"PRAGMA busy_timeout = {max(0, int(busy_timeout_ms))}")
    return conn


def db_path(settings: AppSettings | None = None) -> Path:
    cfg = settings or AppSettings()
    return cfg.db_path


def connect(
    settings: AppSettings | None = None,
    *,
    timeout: float = _SQLITE_CONNECT_TIMEOUT_SECONDS,
) -> sqlite3.Connection:
    cfg = settings or AppSettings()
    return connect_db(
        cfg.db_path,
        timeout=timeout,
        busy_timeout_ms=cfg.sqlite_busy_timeout_ms,
    )


def init_db(settings: AppSettings | None = None) -> Path:
    cfg = settings or AppSettings()
    migrations = _migration_files()
    with connect(cfg) as conn:
        current_version = _read_user_version(conn)

    for target_version, migration_path in migrations:
        if target_version <= current_version:
            continue
        migration_sql = migration_path.read_text(encoding="utf-8")

        def _apply_migration() -> int:
            with connect(cfg) as conn:
                live_version = _read_user_version(conn)
                if live_version >= target_version:
                    return live_version
                _executescript_allowing_duplicate_columns(conn, migration_sql)
                conn.execute(f"PRAGMA user_version = {target_version}")
                conn.commit()
                return target_version

        current_version = with_db_retry(_apply_migration)
    return cfg.db_path


def create_sync_configuration(
    property_id: str,
    *,
    ical_url: str,
    platform_name: str | None = None,
    is_active: bool = True,
    sync_frequency_hours: int = DEFAULT_SYNC_FREQUENCY_HOURS,
    settings: AppSettings | None = None,
) -> dict[str, Any]:
    init_db(settings)
    clean_property_id = _clean_required(property_id, "property_id")
    clean_url = _clean_required(ical_url, "ical_url")
    platform = _normalise_platform_name(platform_name)
    frequency = _validate_frequency_hours(sync_frequency_hours)
    configuration_id = uuid4().hex
    now = _utc_now()
    with connect(settings) as conn:
        conn.execute(
            """
            INSERT INTO sync_configurations (
                id,
                property_id,
                platform_name,
                ical_url,
                is_active,
                sync_frequency_hours,
                last_sync_at,
                created_at,
                updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?)
            """,
            (
                configuration_id,
                clean_property_id,
                platform,
                clean_url,
                1 if is_active else 0,
                frequency,
                now,
                now,
            ),
        )
        row = conn.execute(
            "SELECT * FROM sync_configurations WHERE id = ?",
            (configuration_id,),
        ).fetchone()
        conn.commit()
    return _configuration_dict(row) or {}


def get_sync_configuration(
    configuration_id: str,
    *,
    settings: AppSettings | None = None,
) -> dict[str, Any] | None:
    init_db(settings)
    with connect(settings) as conn:
        row = conn.execute(
            "SELECT * FROM sync_configurations WHERE id = ?",
            (str(configuration_id),),
        ).fetchone()
    return _configuration_dict(row)


def list_sync_configurations(
    *,
    property_id: str | None = None,
    active_only: bool = False,
    settings: AppSettings | None = None,
) -> list[dict[str, Any]]:
    init_db(settings)
    clauses: list[str] = []
    params: list[Any] = []
    if property_id is not None:
        clauses.append("property_id = ?")
        params.append(str(property_id))
    if active_only:
        clauses.append("is_active = 1")
    where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with connect(settings) as conn:
        rows = conn.execute(
            f"""
            SELECT *
            FROM sync_configurations
            {where_sql}
            ORDER BY created_at DESC, id DESC
            """,
            tuple(params),
        ).fetchall()
    return [_configuration_dict(row) or {} for row in rows]


def _update_sync_configuration_fields(
    configuration_id: str,
    assignments: list[str],
    params: list[Any],
    *,
    settings: AppSettings | None,
) -> dict[str, Any] | None:
    assignments.append("updated_at = ?")
    params.append(_utc_now())
    params.append(str(configuration_id))
    with connect(settings) as conn:
        updated = conn.execute(
            f"""
            UPDATE sync_configurations
            SET {', '.join(assignments)}
            WHERE id = ?
            """,
            tuple(params),
        )
        if updated.rowcount < 1:
            conn.commit()
            return None
        row = conn.execute(
            "SELECT * FROM sync_configurations WHERE id = ?",
            (str(configuration_id),),
        ).fetchone()
        conn.commit()
    return _configuration_dict(row)


def update_sync_configuration(
    configuration_id: str,
    *,
    platform_name: str | None | object = _UNSET,
    ical_url: str | object = _UNSET,
    is_active: bool | object = _UNSET,
    sync_frequency_hours: int | object = _UNSET,
    settings: AppSettings | None = None,
) -> dict[str, Any] | None:
    init_db(settings)
    assignments: list[str] = []
    params: list[Any] = []
    if platform_name is not _UNSET:
        assignments.append("platform_name = ?")
        params.append(_normalise_platform_name(platform_name))
    if ical_url is not _UNSET:
        assignments.append("ical_url = ?")
        params.append(_clean_required(ical_url, "ical_url"))
    if is_active is not _UNSET:
        assignments.append("is_active = ?")
        params.append(1 if is_active else 0)
    if sync_frequency_hours is not _UNSET:
        assignments.append("sync_frequency_hours = ?")
        params.append(_validate_frequency_hours(sync_frequency_hours))
    if not assignments:
        raise ValueError("at least one field must be provided for sync configuration update")
    return _update_sync_configuration_fields(
        configuration_id,
        assignments,
        params,
        settings=settings,
    )


def update_sync_configuration_sync_state(
    configuration_id: str,
    *,
    last_sync_at: str | None | object = _UNSET,
    last_sync_count: int | None | object = _UNSET,
    last_error: str | None | object = _UNSET,
    settings: AppSettings | None = None,
) -> dict[str, Any] | None:
    init_db(settings)
    assignments: list[str] = []
    params: list[Any] = []
    if last_sync_at is not _UNSET:
        assignments.append("last_sync_at = ?")
        params.append(last_sync_at)
    if last_sync_count is not _UNSET:
        assignments.append("last_sync_count = ?")
        params.append(last_sync_count)
    if last_error is not _UNSET:
        assignments.append("last_error = ?")
        params.append(last_error)
    if not assignments:
        raise ValueError("at least one field must be provided for sync state update")
    return _update_sync_configuration_fields(
        configuration_id,
        assignments,
        params,
        settings=settings,
    )


def delete_sync_configuration(
    configuration_id: str,
    *,
    settings: AppSettings | None = None,
) -> bool:
    init_db(settings)
    with connect(settings) as conn:
        deleted = conn.execute(
            "DELETE FROM sync_configurations WHERE id = ?",
            (str(configuration_id),),
        )
        conn.commit()
    return deleted.rowcount > 0


def delete_external_bookings(
    sync_configuration_id: str,
    *,
    settings: AppSettings | None = None,
) -> int:
    init_db(settings)

    def _delete() -> int:
        with connect(settings) as conn:
            deleted = conn.execute(
                "DELETE FROM external_bookings WHERE sync_configuration_id = ?",
                (str(sync_configuration_id),),
            )
            conn.commit()
            return int(deleted.rowcount)

    return with_db_retry(_delete)


def replace_external_bookings(
    sync_configuration_id: str,
    bookings: Iterable[dict[str, Any]],
    *,
    settings: AppSettings | None = None,
) -> int:
    """Replace every external booking of a configuration with ``bookings``.

    Delete and insert share one transaction. When the write fails the
    transaction is rolled back and the configuration's bookings are purged in
    a separate commit, so a failed run leaves no bookings rather than stale
    ones. The original error is re-raised.
    """
    init_db(settings)
    configuration_id = _clean_required(sync_configuration_id, "sync_configuration_id")
    rows = list(bookings)
    now = _utc_now()

    def _write_bookings() -> int:
        with connect(settings) as conn:
            conn.execute(
                "DELETE FROM external_bookings WHERE sync_configuration_id = ?",
                (configuration_id,),
            )
            for booking in rows:
                external_uid = str(booking.get("external_uid") or "").strip()
                start_date = str(booking.get("start_date") or "").strip()
                end_date = str(booking.get("end_date") or "").strip()
                if not external_uid or not start_date or not end_date:
                    continue
                conn.execute(
                    """
                    INSERT INTO external_bookings (
                        sync_configuration_id,
                        external_uid,
                        summary,
                        start_date,
                        end_date,
                        platform_name,
                        raw_source,
                        created_at,
                        updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(sync_configuration_id, external_uid) DO UPDATE SET
                        summary = excluded.summary,
                        start_date = excluded.start_date,
                        end_date = excluded.end_date,
                        platform_name = excluded.platform_name,
                        raw_source = excluded.raw_source,
                        updated_at = excluded.updated_at
                    """,
                    (
                        configuration_id,
                        external_uid,
                        str(booking.get("summary") or ""),
                        start_date,
                        end_date,
                        _normalise_platform_name(booking.get("platform_name")),
                        booking.get("raw_source"),
                        now,
                        now,
                    ),
                )
            stored = conn.execute(
                "SELECT COUNT(*) FROM external_bookings WHERE sync_configuration_id = ?",
                (configuration_id,),
            ).fetchone()[0]
            conn.commit()
            return int(stored)

    try:
        return with_db_retry(_write_bookings)
    except sqlite3.Error:
        try:
            delete_external_bookings(configuration_id, settings=settings)
        except sqlite3.Error:
            _logger.exception(
                "external booking purge after failed replace also failed configuration=%s",
                configuration_id,
            )
        raise


def list_external_bookings(
    *,
    sync_configuration_id: str | None = None,
    property_id: str | None = None,
    starts_from: str | None = None,
    ends_to: str | None = None,
    settings: AppSettings | None = None,
) -> list[dict[str, Any]]:
    """List bookings, optionally overlapping the inclusive ``[starts_from, ends_to]`` range."""
    init_db(settings)
    clauses: list[str] = []
    params: list[Any] = []
    if sync_configuration_id is not None:
        clauses.append("eb.sync_configuration_id = ?")
        params.append(str(sync_configuration_id))
    if property_id is not None:
        clauses.append("sc.property_id = ?")
        params.append(str(property_id))
    if starts_from is not None:
        clauses.append("eb.end_date >= ?")
        params.append(str(starts_from).strip())
    if ends_to is not None:
        clauses.append("eb.start_date <= ?")
        params.append(str(ends_to).strip())
    where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with connect(settings) as conn:
        rows = conn.execute(
            f"""
            {_BOOKING_SELECT_SQL}
            {where_sql}
            ORDER BY eb.start_date, eb.external_uid, eb.id
            """,
            tuple(params),
        ).fetchall()
    return [_as_dict(row) or {} for row in rows]


__all__ = [
    "connect",
    "connect_db",
    "create_sync_configuration",
    "db_path",
    "delete_external_bookings",
    "delete_sync_configuration",
    "get_sync_configuration",
    "init_db",
    "list_external_bookings",
    "list_sync_configurations",
    "replace_external_bookings",
    "update_sync_configuration",
    "update_sync_configuration_sync_state",
    "with_db_retry",
]
