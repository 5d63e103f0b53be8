"""
Storage layer for the Habit Lab tracker.
Uses SQLite with raw SQL; every function opens its own short-lived connection.
"""

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime

from errors import StoreUnavailableError
from models import DailyRecord, Experiment

DATABASE_PATH = os.environ.get("HABITLAB_DB_PATH", "habitlab.db")

RECORD_COLUMNS = [
    "carried_out",
    "memo",
    "started_time",
    "duration_time",
    "interrupted",
    "interruption_reason",
    "concentration",
    "accomplishment",
    "fatigue",
]


def get_db_path():
    """Return the absolute path to the database file."""
    return os.path.abspath(DATABASE_PATH)


@contextmanager
def get_db():
    """Context manager for database connections."""
    try:
        conn = sqlite3.connect(DATABASE_PATH)
    except sqlite3.Error as e:
        raise StoreUnavailableError(f"Cannot open database: {e}") from e
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys = ON")
        yield conn
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        raise
    except sqlite3.DatabaseError as e:
        conn.rollback()
        raise StoreUnavailableError(str(e)) from e
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db():
    """Create all tables if they don't exist."""
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS experiments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                strategy TEXT NOT NULL,
                action TEXT NOT NULL,
                duration_days INTEGER NOT NULL,
                start_at DATETIME NOT NULL,
                end_at DATETIME NOT NULL,
                notification_time TEXT NOT NULL,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                experiment_id INTEGER NOT NULL,
                user_id TEXT NOT NULL,
                recorded_date DATETIME NOT NULL,
                carried_out INTEGER NOT NULL DEFAULT 0,
                memo TEXT DEFAULT '',
                started_time TEXT,
                duration_time INTEGER,
                interrupted INTEGER,
                interruption_reason TEXT,
                concentration INTEGER,
                accomplishment INTEGER,
                fatigue INTEGER,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(user_id, experiment_id, recorded_date),
                FOREIGN KEY (experiment_id) REFERENCES experiments(id)
            );

            CREATE TABLE IF NOT EXISTS user_tokens (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                token TEXT NOT NULL,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(user_id, token)
            );

            CREATE TABLE IF NOT EXISTS notification_logs (
                user_id TEXT NOT NULL,
                log_date DATE NOT NULL,
                experiment_id INTEGER,
                sent_at DATETIME NOT NULL,
                success INTEGER DEFAULT 0,
                device_count INTEGER DEFAULT 0,
                success_count INTEGER DEFAULT 0,
                PRIMARY KEY (user_id, log_date)
            );

            CREATE INDEX IF NOT EXISTS idx_experiments_user ON experiments(user_id);
            CREATE INDEX IF NOT EXISTS idx_experiments_end_at ON experiments(end_at);
            CREATE INDEX IF NOT EXISTS idx_records_experiment ON records(experiment_id);
        """)


def _ts(moment):
    # Fixed precision keeps ISO strings comparable in SQL.
    return moment.isoformat(timespec="microseconds")


def _parse_ts(value):
    return datetime.fromisoformat(value) if value else None


def _experiment_from_row(row):
    return Experiment(
        id=row["id"],
        user_id=row["user_id"],
        strategy=row["strategy"],
        action=row["action"],
        duration_days=row["duration_days"],
        start_at=_parse_ts(row["start_at"]),
        end_at=_parse_ts(row["end_at"]),
        notification_time=row["notification_time"],
        created_at=_parse_ts(row["created_at"]),
    )


def _record_from_row(row):
    data = {k: row[k] for k in row.keys() if row[k] is not None}
    data["carried_out"] = bool(data.get("carried_out"))
    if "interrupted" in data:
        data["interrupted"] = bool(data["interrupted"])
    data["recorded_date"] = _parse_ts(row["recorded_date"])
    return DailyRecord.from_dict(data)


def _record_values(record):
    """Column values for a record. Fields the record lacks are written as NULL."""
    data = record.to_dict()
    values = {}
    for column in RECORD_COLUMNS:
        value = data.get(column)
        if isinstance(value, bool):
            value = 1 if value else 0
        values[column] = value
    values["memo"] = data.get("memo", "")
    return values


# Experiment operations


def create_experiment(data):
    """Create a new experiment and return its ID."""
    now = _ts(data.get("created_at") or datetime.now())
    with get_db() as conn:
        cursor = conn.execute(
            """
            INSERT INTO experiments (
                user_id, strategy, action, duration_days,
                start_at, end_at, notification_time, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                data["user_id"],
                data["strategy"],
                data["action"],
                data["duration_days"],
                _ts(data["start_at"]),
                _ts(data["end_at"]),
                data["notification_time"],
                now,
            ),
        )
        return cursor.lastrowid


def create_experiment_if_none_active(data, now):
    """
    Create an experiment unless the user already has one with end_at > now.
    The check and the insert share one write transaction. Returns the new ID,
    or None if an active experiment exists.
    """
    created_at = _ts(data.get("created_at") or now)
    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        cursor = conn.execute(
            """
            INSERT INTO experiments (
                user_id, strategy, action, duration_days,
                start_at, end_at, notification_time, created_at
            )
            SELECT ?, ?, ?, ?, ?, ?, ?, ?
            WHERE NOT EXISTS (
                SELECT 1 FROM experiments WHERE user_id = ? AND end_at > ?
            )
        """,
            (
                data["user_id"],
                data["strategy"],
                data["action"],
                data["duration_days"],
                _ts(data["start_at"]),
                _ts(data["end_at"]),
                data["notification_time"],
                created_at,
                data["user_id"],
                _ts(now),
            ),
        )
        return cursor.lastrowid if cursor.rowcount == 1 else None


def get_experiment(exp_id):
    """Get an experiment by ID."""
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM experiments WHERE id = ?", (exp_id,)
        ).fetchone()
        return _experiment_from_row(row) if row else None


def find_active_experiments(user_id, now):
    """All of a user's experiments with end_at > now, oldest first."""
    with get_db() as conn:
        rows = conn.execute(
            """
            SELECT * FROM experiments
            WHERE user_id = ? AND end_at > ?
            ORDER BY created_at ASC, id ASC
        """,
            (user_id, _ts(now)),
        ).fetchall()
        return [_experiment_from_row(r) for r in rows]


def find_active_experiment(user_id, now):
    """First active experiment for a user, or None."""
    experiments = find_active_experiments(user_id, now)
    return experiments[0] if experiments else None


def list_active_experiments(now):
    """Active experiments across all users."""
    with get_db() as conn:
        rows = conn.execute(
            """
            SELECT * FROM experiments WHERE end_at > ?
            ORDER BY created_at ASC, id ASC
        """,
            (_ts(now),),
        ).fetchall()
        return [_experiment_from_row(r) for r in rows]


def end_experiment(exp_id, now):
    """End an experiment immediately by moving end_at to now."""
    with get_db() as conn:
        conn.execute(
            "UPDATE experiments SET end_at = ? WHERE id = ?", (_ts(now), exp_id)
        )


def find_all_experiments(user_id):
    """All experiments for a user, newest first."""
    with get_db() as conn:
        rows = conn.execute(
            """
            SELECT * FROM experiments WHERE user_id = ?
            ORDER BY created_at DESC, id DESC
        """,
            (user_id,),
        ).fetchall()
        return [_experiment_from_row(r) for r in rows]


# Daily record operations


def find_record(user_id, experiment_id, day):
    """Get the record for one (user, experiment, day) key."""
    with get_db() as conn:
        row = conn.execute(
            """
            SELECT * FROM records
            WHERE user_id = ? AND experiment_id = ? AND recorded_date = ?
        """,
            (user_id, experiment_id, _ts(day)),
        ).fetchone()
        return _record_from_row(row) if row else None


def upsert_record(record_id, record):
    """
    Create the record when record_id is None, otherwise overwrite it.
    Absent variant fields are written as NULL so stale values are removed.
    Returns the record ID.
    """
    values = _record_values(record)
    now = _ts(datetime.now())
    with get_db() as conn:
        if record_id is None:
            try:
                cursor = conn.execute(
                    f"""
                    INSERT INTO records (
                        experiment_id, user_id, recorded_date,
                        {", ".join(RECORD_COLUMNS)}, created_at, updated_at
                    ) VALUES ({", ".join("?" * (len(RECORD_COLUMNS) + 5))})
                """,
                    (
                        record.experiment_id,
                        record.user_id,
                        _ts(record.recorded_date),
                        *[values[c] for c in RECORD_COLUMNS],
                        now,
                        now,
                    ),
                )
                return cursor.lastrowid
            except sqlite3.IntegrityError:
                # Lost a race with another writer for the same day: last write wins.
                row = conn.execute(
                    """
                    SELECT id FROM records
                    WHERE user_id = ? AND experiment_id = ? AND recorded_date = ?
                """,
                    (
                        record.user_id,
                        record.experiment_id,
                        _ts(record.recorded_date),
                    ),
                ).fetchone()
                if row is None:
                    raise
                record_id = row["id"]

        conn.execute(
            f"""
            UPDATE records SET {", ".join(f"{c} = ?" for c in RECORD_COLUMNS)},
                updated_at = ?
            WHERE id = ?
        """,
            (*[values[c] for c in RECORD_COLUMNS], now, record_id),
        )
        return record_id


def find_records(user_id, experiment_id):
    """All records of an experiment for a user, ascending by date."""
    with get_db() as conn:
        rows = conn.execute(
            """
            SELECT * FROM records
            WHERE user_id = ? AND experiment_id = ?
            ORDER BY recorded_date ASC
        """,
            (user_id, experiment_id),
        ).fetchall()
        return [_record_from_row(r) for r in rows]


def count_records(user_id, experiment_id, day):
    """Number of stored records for one day key."""
    with get_db() as conn:
        row = conn.execute(
            """
            SELECT COUNT(*) as c FROM records
            WHERE user_id = ? AND experiment_id = ? AND recorded_date = ?
        """,
            (user_id, experiment_id, _ts(day)),
        ).fetchone()
        return row["c"]


# Device tokens


def add_device_token(user_id, token):
    """Register a push token for a user (no-op if already known)."""
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO user_tokens (user_id, token, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(user_id, token) DO UPDATE SET updated_at = excluded.updated_at
        """,
            (user_id, token, _ts(datetime.now())),
        )


def get_device_tokens(user_id):
    """All push tokens for a user."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT token FROM user_tokens WHERE user_id = ? ORDER BY id",
            (user_id,),
        ).fetchall()
        return [r["token"] for r in rows]


def remove_device_tokens(user_id, tokens):
    """Delete the given push tokens for a user."""
    if not tokens:
        return
    with get_db() as conn:
        conn.executemany(
            "DELETE FROM user_tokens WHERE user_id = ? AND token = ?",
            [(user_id, t) for t in tokens],
        )


# Notification logs


def get_notification_log(user_id, log_date):
    """Get the notification log for a user and calendar date, if any."""
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM notification_logs WHERE user_id = ? AND log_date = ?",
            (user_id, log_date.isoformat()),
        ).fetchone()
        return dict(row) if row else None


def create_notification_log(user_id, log_date, data):
    """Record that a user's reminder was sent for a date."""
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO notification_logs (
                user_id, log_date, experiment_id, sent_at,
                success, device_count, success_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, log_date) DO NOTHING
        """,
            (
                user_id,
                log_date.isoformat(),
                data.get("experiment_id"),
                _ts(data["sent_at"]),
                1 if data.get("success") else 0,
                data.get("device_count", 0),
                data.get("success_count", 0),
            ),
        )
