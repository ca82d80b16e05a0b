import sqlite3
import aiosqlite
import datetime
from contextlib import contextmanager, asynccontextmanager
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from algorithms.levels import DEFAULT_SCALE, RANK_SCALES, LevelResolver
from algorithms.streaks import StreakState
from algorithms.volume import SetEntry
from errors import ConcurrencyConflict
from models import (
    AntiCheatFlag,
    FlagStatus,
    FlagType,
    PrestigeHistoryEntry,
    ProgressionState,
    Severity,
    WeeklyProgression,
)

# Keeps IN (...) lists well below SQLite's host parameter limit.
_CHUNK = 500

T = TypeVar("T")


def _chunks(items: Sequence[T], size: int = _CHUNK) -> Iterable[Sequence[T]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class Database:
    """Provides SQLite connection management and schema initialization."""

    _TABLE_DEFINITIONS = {
        "user_accounts": (
            """CREATE TABLE user_accounts (
                    user_id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    rank_scale TEXT NOT NULL DEFAULT 'free'
                );""",
            ["user_id", "created_at", "rank_scale"],
        ),
        "admin_users": (
            """CREATE TABLE admin_users (
                    user_id TEXT PRIMARY KEY
                );""",
            ["user_id"],
        ),
        "workout_sessions": (
            """CREATE TABLE workout_sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    ended_at TEXT
                );""",
            ["id", "user_id", "started_at", "ended_at"],
        ),
        "set_entries": (
            """CREATE TABLE set_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id INTEGER NOT NULL,
                    reps INTEGER NOT NULL,
                    weight REAL NOT NULL,
                    weight_unit TEXT NOT NULL DEFAULT 'kg',
                    is_warmup INTEGER NOT NULL DEFAULT 0,
                    logged_at TEXT,
                    FOREIGN KEY(session_id) REFERENCES workout_sessions(id) ON DELETE CASCADE
                );""",
            ["id", "session_id", "reps", "weight", "weight_unit", "is_warmup", "logged_at"],
        ),
        "personal_records": (
            """CREATE TABLE personal_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    exercise TEXT NOT NULL,
                    achieved_at TEXT NOT NULL
                );""",
            ["id", "user_id", "exercise", "achieved_at"],
        ),
        "gym_members": (
            """CREATE TABLE gym_members (
                    user_id TEXT NOT NULL,
                    gym_code TEXT NOT NULL,
                    opt_in INTEGER NOT NULL DEFAULT 1,
                    is_approved INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (user_id, gym_code)
                );""",
            ["user_id", "gym_code", "opt_in", "is_approved"],
        ),
        "weekly_progression": (
            """CREATE TABLE weekly_progression (
                    user_id TEXT NOT NULL,
                    iso_week INTEGER NOT NULL,
                    xp INTEGER NOT NULL,
                    workouts INTEGER NOT NULL,
                    volume_kg REAL NOT NULL,
                    pr_count INTEGER NOT NULL,
                    gym_code TEXT,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, iso_week)
                );""",
            ["user_id", "iso_week", "xp", "workouts", "volume_kg", "pr_count", "gym_code", "updated_at"],
        ),
        "user_progression": (
            """CREATE TABLE user_progression (
                    user_id TEXT PRIMARY KEY,
                    total_xp INTEGER NOT NULL DEFAULT 0,
                    level INTEGER NOT NULL DEFAULT 0,
                    current_streak INTEGER NOT NULL DEFAULT 0,
                    longest_streak INTEGER NOT NULL DEFAULT 0,
                    last_activity_date TEXT,
                    forgiveness_used_on TEXT,
                    prestige_count INTEGER NOT NULL DEFAULT 0,
                    last_prestige_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );""",
            [
                "user_id",
                "total_xp",
                "level",
                "current_streak",
                "longest_streak",
                "last_activity_date",
                "forgiveness_used_on",
                "prestige_count",
                "last_prestige_at",
                "created_at",
                "updated_at",
            ],
        ),
        "xp_awards": (
            """CREATE TABLE xp_awards (
                    session_id INTEGER PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    xp INTEGER NOT NULL,
                    prestige_count INTEGER NOT NULL DEFAULT 0,
                    awarded_at TEXT NOT NULL
                );""",
            ["session_id", "user_id", "xp", "prestige_count", "awarded_at"],
        ),
        "prestige_history": (
            """CREATE TABLE prestige_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    prestige_number INTEGER NOT NULL,
                    xp_before INTEGER NOT NULL,
                    level_before INTEGER NOT NULL,
                    xp_after INTEGER NOT NULL,
                    level_after INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (user_id, prestige_number)
                );""",
            [
                "id",
                "user_id",
                "prestige_number",
                "xp_before",
                "level_before",
                "xp_after",
                "level_after",
                "created_at",
            ],
        ),
        "anti_cheat_flags": (
            """CREATE TABLE anti_cheat_flags (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    flag_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    iso_week INTEGER,
                    reference TEXT NOT NULL DEFAULT '',
                    details TEXT NOT NULL DEFAULT '',
                    flagged_at TEXT NOT NULL,
                    reviewed_by TEXT,
                    reviewed_at TEXT,
                    UNIQUE (user_id, flag_type, iso_week, reference)
                );""",
            [
                "id",
                "user_id",
                "flag_type",
                "severity",
                "status",
                "iso_week",
                "reference",
                "details",
                "flagged_at",
                "reviewed_by",
                "reviewed_at",
            ],
        ),
    }

    def __init__(self, db_path: str = "progression.db") -> None:
        self._db_path = db_path
        self._ensure_schema()

    @contextmanager
    def _connection(self):
        connection = sqlite3.connect(self._db_path, timeout=30)
        try:
            connection.execute("PRAGMA foreign_keys=on;")
            yield connection
            connection.commit()
        finally:
            connection.close()

    @contextmanager
    def _transaction(self):
        """Exclusive write transaction; rolled back if the body raises."""
        connection = sqlite3.connect(self._db_path, timeout=30, isolation_level=None)
        try:
            connection.execute("BEGIN IMMEDIATE;")
            try:
                yield connection
            except BaseException:
                connection.execute("ROLLBACK;")
                raise
            connection.execute("COMMIT;")
        finally:
            connection.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            conn.execute("PRAGMA foreign_keys=off;")
            for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                self._ensure_table(conn, table, sql, columns)
            conn.execute("PRAGMA foreign_keys=on;")

    def _ensure_table(
        self, conn: sqlite3.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if cur.fetchone() is None:
            conn.execute(sql)
            return

        cur = conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in cur.fetchall()]
        if existing_cols == columns:
            return

        conn.execute(f"DROP TABLE IF EXISTS {table}_old;")
        conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
        conn.execute(sql)

        common = [c for c in existing_cols if c in columns]
        if common:
            cols = ", ".join(common)
            conn.execute(
                f"INSERT INTO {table} ({cols}) SELECT {cols} FROM {table}_old;"
            )
        conn.execute(f"DROP TABLE {table}_old;")


class BaseRepository(Database):
    """Base repository providing helper methods."""

    def execute(self, query: str, params: Tuple = ()) -> int:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.lastrowid

    def execute_count(self, query: str, params: Tuple = ()) -> int:
        """Execute ``query`` and return the number of affected rows."""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.rowcount

    def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.fetchall()


class AsyncDatabase(Database):
    """Provides asynchronous connection management."""

    @asynccontextmanager
    async def _async_connection(self):
        conn = await aiosqlite.connect(self._db_path, timeout=30)
        try:
            yield conn
            await conn.commit()
        finally:
            await conn.close()


class AsyncBaseRepository(AsyncDatabase):
    """Asynchronous variant of BaseRepository using aiosqlite."""

    async def execute(self, query: str, params: Tuple = ()) -> int:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.lastrowid

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            return rows


def _check_scale(rank_scale: str) -> None:
    if rank_scale not in RANK_SCALES:
        raise ValueError(f"unknown rank scale: {rank_scale}")


class AccountRepository(BaseRepository):
    """Read access to the identity layer's accounts and admin roles."""

    def create(self, user_id: str, created_at: str, rank_scale: str = DEFAULT_SCALE) -> None:
        _check_scale(rank_scale)
        self.execute(
            "INSERT OR IGNORE INTO user_accounts (user_id, created_at, rank_scale) VALUES (?, ?, ?);",
            (user_id, created_at, rank_scale),
        )

    def set_rank_scale(self, user_id: str, rank_scale: str) -> None:
        _check_scale(rank_scale)
        count = self.execute_count(
            "UPDATE user_accounts SET rank_scale = ? WHERE user_id = ?;",
            (rank_scale, user_id),
        )
        if count == 0:
            raise ValueError("account not found")

    def rank_scale(self, user_id: str) -> str:
        rows = self.fetch_all(
            "SELECT rank_scale FROM user_accounts WHERE user_id = ?;", (user_id,)
        )
        return rows[0][0] if rows else DEFAULT_SCALE

    def add_admin(self, user_id: str) -> None:
        self.execute(
            "INSERT OR IGNORE INTO admin_users (user_id) VALUES (?);", (user_id,)
        )

    def is_admin(self, user_id: str) -> bool:
        rows = self.fetch_all(
            "SELECT 1 FROM admin_users WHERE user_id = ?;", (user_id,)
        )
        return bool(rows)

    def created_at_many(self, user_ids: Sequence[str]) -> Dict[str, str]:
        result: Dict[str, str] = {}
        for chunk in _chunks(list(user_ids)):
            rows = self.fetch_all(
                f"SELECT user_id, created_at FROM user_accounts WHERE user_id IN ({_placeholders(len(chunk))});",
                tuple(chunk),
            )
            result.update({uid: created for uid, created in rows})
        return result


class ActivityRepository(BaseRepository):
    """Workout sessions and set entries owned by the activity store.

    The engine only reads; ``create_session`` and ``add_set`` exist for
    seeding and tests.
    """

    def create_session(
        self, user_id: str, started_at: str, ended_at: str | None = None
    ) -> int:
        return self.execute(
            "INSERT INTO workout_sessions (user_id, started_at, ended_at) VALUES (?, ?, ?);",
            (user_id, started_at, ended_at),
        )

    def add_set(
        self,
        session_id: int,
        reps: int,
        weight: float,
        weight_unit: str = "kg",
        is_warmup: bool = False,
        logged_at: str | None = None,
    ) -> int:
        return self.execute(
            "INSERT INTO set_entries (session_id, reps, weight, weight_unit, is_warmup, logged_at) VALUES (?, ?, ?, ?, ?, ?);",
            (session_id, reps, weight, weight_unit, 1 if is_warmup else 0, logged_at),
        )

    def fetch_session(self, session_id: int) -> Optional[Tuple[int, str, str]]:
        rows = self.fetch_all(
            "SELECT id, user_id, started_at FROM workout_sessions WHERE id = ?;",
            (session_id,),
        )
        return rows[0] if rows else None

    def active_user_page(
        self, start: str, end: str, after_user: str = "", limit: int = 500
    ) -> List[str]:
        """Users with qualifying activity in ``[start, end)``, keyset paginated."""
        rows = self.fetch_all(
            "SELECT DISTINCT s.user_id FROM workout_sessions s "
            "WHERE s.started_at >= ? AND s.started_at < ? AND s.user_id > ? "
            "AND EXISTS (SELECT 1 FROM set_entries e WHERE e.session_id = s.id AND e.is_warmup = 0) "
            "ORDER BY s.user_id LIMIT ?;",
            (start, end, after_user, limit),
        )
        return [r[0] for r in rows]

    def fetch_sessions(
        self, user_ids: Sequence[str], start: str, end: str
    ) -> List[Tuple[int, str, str, Optional[str]]]:
        result: List[Tuple[int, str, str, Optional[str]]] = []
        for chunk in _chunks(list(user_ids)):
            result.extend(
                self.fetch_all(
                    "SELECT id, user_id, started_at, ended_at FROM workout_sessions "
                    f"WHERE user_id IN ({_placeholders(len(chunk))}) "
                    "AND started_at >= ? AND started_at < ? "
                    "ORDER BY user_id, started_at, id;",
                    (*chunk, start, end),
                )
            )
        return result

    def fetch_sets(self, session_ids: Sequence[int]) -> Dict[int, List[SetEntry]]:
        result: Dict[int, List[SetEntry]] = {sid: [] for sid in session_ids}
        for chunk in _chunks(list(session_ids)):
            rows = self.fetch_all(
                "SELECT session_id, reps, weight, weight_unit, is_warmup, logged_at FROM set_entries "
                f"WHERE session_id IN ({_placeholders(len(chunk))}) ORDER BY session_id, id;",
                tuple(chunk),
            )
            for sid, reps, weight, unit, warmup, logged_at in rows:
                result[sid].append(
                    SetEntry(
                        reps=reps,
                        weight=weight,
                        unit=unit,
                        is_warmup=bool(warmup),
                        logged_at=logged_at,
                    )
                )
        return result

    def session_owners(self, start: str, end: str) -> List[Tuple[int, str]]:
        """Every session started in ``[start, end)`` with its owner."""
        return self.fetch_all(
            "SELECT id, user_id FROM workout_sessions "
            "WHERE started_at >= ? AND started_at < ? ORDER BY id;",
            (start, end),
        )

    def qualifying_session_times(self, user_id: str) -> List[str]:
        rows = self.fetch_all(
            "SELECT s.started_at FROM workout_sessions s WHERE s.user_id = ? "
            "AND EXISTS (SELECT 1 FROM set_entries e WHERE e.session_id = s.id AND e.is_warmup = 0) "
            "ORDER BY s.started_at;",
            (user_id,),
        )
        return [r[0] for r in rows]


class PersonalRecordRepository(BaseRepository):
    """Personal-record events from the PR store."""

    def add(self, user_id: str, exercise: str, achieved_at: str) -> int:
        return self.execute(
            "INSERT INTO personal_records (user_id, exercise, achieved_at) VALUES (?, ?, ?);",
            (user_id, exercise, achieved_at),
        )

    def count_by_user(
        self, user_ids: Sequence[str], start: str, end: str
    ) -> Dict[str, int]:
        result: Dict[str, int] = {}
        for chunk in _chunks(list(user_ids)):
            rows = self.fetch_all(
                "SELECT user_id, COUNT(*) FROM personal_records "
                f"WHERE user_id IN ({_placeholders(len(chunk))}) "
                "AND achieved_at >= ? AND achieved_at < ? GROUP BY user_id;",
                (*chunk, start, end),
            )
            result.update({uid: int(n) for uid, n in rows})
        return result


class GymMembershipRepository(BaseRepository):
    """Gym-membership directory."""

    def join(
        self, user_id: str, gym_code: str, opt_in: bool = True, approved: bool = False
    ) -> None:
        self.execute(
            "INSERT INTO gym_members (user_id, gym_code, opt_in, is_approved) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(user_id, gym_code) DO UPDATE SET opt_in=excluded.opt_in, is_approved=excluded.is_approved;",
            (user_id, gym_code, 1 if opt_in else 0, 1 if approved else 0),
        )

    def affiliations(self, user_ids: Sequence[str]) -> Dict[str, str]:
        """Approved, opted-in gym per user; the lowest code wins ties."""
        result: Dict[str, str] = {}
        for chunk in _chunks(list(user_ids)):
            rows = self.fetch_all(
                "SELECT user_id, MIN(gym_code) FROM gym_members "
                f"WHERE user_id IN ({_placeholders(len(chunk))}) "
                "AND opt_in = 1 AND is_approved = 1 GROUP BY user_id;",
                tuple(chunk),
            )
            result.update({uid: code for uid, code in rows})
        return result


_WEEKLY_COLUMNS = "user_id, iso_week, xp, workouts, volume_kg, pr_count, gym_code, updated_at"

_FLAGGED_SUBQUERY = (
    "SELECT user_id FROM anti_cheat_flags WHERE status = 'pending' "
    "AND severity IN ('medium', 'high')"
)


def _row_to_weekly(row: Tuple) -> WeeklyProgression:
    uid, week, xp, workouts, volume, prs, gym, updated = row
    return WeeklyProgression(uid, int(week), int(xp), int(workouts), float(volume), int(prs), gym, updated)


def _leaderboard_filters(
    iso_week: int,
    user_ids: Optional[Sequence[str]],
    gym_code: Optional[str],
    exclude_flagged: bool,
) -> Tuple[str, list]:
    clauses = ["iso_week = ?"]
    params: list = [iso_week]
    if user_ids is not None:
        ids = list(user_ids)
        if not ids:
            clauses.append("0")
        else:
            clauses.append(f"user_id IN ({_placeholders(len(ids))})")
            params.extend(ids)
    if gym_code is not None:
        clauses.append("gym_code = ?")
        params.append(gym_code)
    if exclude_flagged:
        clauses.append(f"user_id NOT IN ({_FLAGGED_SUBQUERY})")
    return " WHERE " + " AND ".join(clauses), params


class WeeklyProgressionRepository(BaseRepository):
    """One row per (user, ISO week)."""

    def upsert(self, row: WeeklyProgression) -> bool:
        """Insert or update ``row``; returns whether anything changed.

        An identical row is left untouched, ``updated_at`` included.
        """
        count = self.execute_count(
            f"INSERT INTO weekly_progression ({_WEEKLY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(user_id, iso_week) DO UPDATE SET "
            "xp=excluded.xp, workouts=excluded.workouts, volume_kg=excluded.volume_kg, "
            "pr_count=excluded.pr_count, gym_code=excluded.gym_code, updated_at=excluded.updated_at "
            "WHERE weekly_progression.xp IS NOT excluded.xp "
            "OR weekly_progression.workouts IS NOT excluded.workouts "
            "OR weekly_progression.volume_kg IS NOT excluded.volume_kg "
            "OR weekly_progression.pr_count IS NOT excluded.pr_count "
            "OR weekly_progression.gym_code IS NOT excluded.gym_code;",
            (
                row.user_id,
                row.iso_week,
                row.xp,
                row.workouts,
                row.volume_kg,
                row.pr_count,
                row.gym_code,
                row.updated_at,
            ),
        )
        return count > 0

    def fetch(self, user_id: str, iso_week: int) -> Optional[WeeklyProgression]:
        rows = self.fetch_all(
            f"SELECT {_WEEKLY_COLUMNS} FROM weekly_progression WHERE user_id = ? AND iso_week = ?;",
            (user_id, iso_week),
        )
        return _row_to_weekly(rows[0]) if rows else None

    def fetch_week(self, iso_week: int) -> List[WeeklyProgression]:
        rows = self.fetch_all(
            f"SELECT {_WEEKLY_COLUMNS} FROM weekly_progression WHERE iso_week = ? ORDER BY user_id;",
            (iso_week,),
        )
        return [_row_to_weekly(r) for r in rows]

    def fetch_history(
        self, user_ids: Sequence[str], weeks: Sequence[int]
    ) -> Dict[str, Dict[int, WeeklyProgression]]:
        result: Dict[str, Dict[int, WeeklyProgression]] = {}
        if not weeks:
            return result
        week_list = list(weeks)
        for chunk in _chunks(list(user_ids)):
            rows = self.fetch_all(
                f"SELECT {_WEEKLY_COLUMNS} FROM weekly_progression "
                f"WHERE user_id IN ({_placeholders(len(chunk))}) "
                f"AND iso_week IN ({_placeholders(len(week_list))});",
                (*chunk, *week_list),
            )
            for r in rows:
                row = _row_to_weekly(r)
                result.setdefault(row.user_id, {})[row.iso_week] = row
        return result

    def xp_values(self, iso_week: int) -> List[int]:
        rows = self.fetch_all(
            "SELECT xp FROM weekly_progression WHERE iso_week = ?;", (iso_week,)
        )
        return [int(r[0]) for r in rows]

    def prune_inactive(self, iso_week: int, start: str, end: str) -> int:
        """Delete rows of users without qualifying activity left in the week."""
        return self.execute_count(
            "DELETE FROM weekly_progression WHERE iso_week = ? AND user_id NOT IN ("
            "SELECT s.user_id FROM workout_sessions s "
            "WHERE s.started_at >= ? AND s.started_at < ? "
            "AND EXISTS (SELECT 1 FROM set_entries e WHERE e.session_id = s.id AND e.is_warmup = 0));",
            (iso_week, start, end),
        )

    def delete_row(self, user_id: str, iso_week: int) -> int:
        return self.execute_count(
            "DELETE FROM weekly_progression WHERE user_id = ? AND iso_week = ?;",
            (user_id, iso_week),
        )

    def leaderboard(
        self,
        iso_week: int,
        *,
        user_ids: Optional[Sequence[str]] = None,
        gym_code: Optional[str] = None,
        exclude_flagged: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WeeklyProgression], int]:
        where, params = _leaderboard_filters(iso_week, user_ids, gym_code, exclude_flagged)
        total = self.fetch_all(f"SELECT COUNT(*) FROM weekly_progression{where};", tuple(params))
        rows = self.fetch_all(
            f"SELECT {_WEEKLY_COLUMNS} FROM weekly_progression{where} "
            "ORDER BY xp DESC, user_id ASC LIMIT ? OFFSET ?;",
            (*params, limit, offset),
        )
        return [_row_to_weekly(r) for r in rows], int(total[0][0])


class AsyncWeeklyProgressionRepository(AsyncBaseRepository):
    """Async leaderboard reads for the HTTP surface."""

    async def leaderboard(
        self,
        iso_week: int,
        *,
        user_ids: Optional[Sequence[str]] = None,
        gym_code: Optional[str] = None,
        exclude_flagged: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WeeklyProgression], int]:
        where, params = _leaderboard_filters(iso_week, user_ids, gym_code, exclude_flagged)
        total = await self.fetch_all(
            f"SELECT COUNT(*) FROM weekly_progression{where};", tuple(params)
        )
        rows = await self.fetch_all(
            f"SELECT {_WEEKLY_COLUMNS} FROM weekly_progression{where} "
            "ORDER BY xp DESC, user_id ASC LIMIT ? OFFSET ?;",
            (*params, limit, offset),
        )
        return [_row_to_weekly(r) for r in rows], int(total[0][0])


_STATE_COLUMNS = (
    "user_id, total_xp, level, current_streak, longest_streak, last_activity_date, "
    "forgiveness_used_on, prestige_count, last_prestige_at"
)


def _parse_date(text: Optional[str]) -> Optional[datetime.date]:
    return datetime.date.fromisoformat(text) if text else None


def _row_to_state(row: Tuple) -> ProgressionState:
    uid, xp, level, cur, longest, last, forgiven, count, last_prestige = row
    prestige_at = None
    if last_prestige:
        prestige_at = datetime.datetime.fromisoformat(last_prestige).replace(
            tzinfo=datetime.timezone.utc
        )
    return ProgressionState(
        user_id=uid,
        total_xp=int(xp),
        level=int(level),
        current_streak=int(cur),
        longest_streak=int(longest),
        last_activity_date=_parse_date(last),
        forgiveness_used_on=_parse_date(forgiven),
        prestige_count=int(count),
        last_prestige_at=prestige_at,
    )


class ProgressionStateRepository(BaseRepository):
    """Per-user lifetime progression; every mutation is a transaction."""

    @staticmethod
    def _fetch_state(conn: sqlite3.Connection, user_id: str) -> Optional[ProgressionState]:
        row = conn.execute(
            f"SELECT {_STATE_COLUMNS} FROM user_progression WHERE user_id = ?;",
            (user_id,),
        ).fetchone()
        return _row_to_state(row) if row else None

    def fetch(self, user_id: str) -> Optional[ProgressionState]:
        rows = self.fetch_all(
            f"SELECT {_STATE_COLUMNS} FROM user_progression WHERE user_id = ?;",
            (user_id,),
        )
        return _row_to_state(rows[0]) if rows else None

    def credit_sessions(
        self,
        user_id: str,
        awards: Sequence[Tuple[int, int]],
        now: str,
        revoke: Sequence[int] = (),
    ) -> int:
        """Bring credited XP for ``(session_id, xp)`` pairs up to date.

        Each session contributes its latest XP exactly once: the stored award
        is replaced and only the difference reaches ``total_xp``. Sessions in
        ``revoke`` drop to zero. Awards credited before the user's last
        prestige are frozen. Returns the net XP change.
        """
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO user_progression (user_id, created_at, updated_at) VALUES (?, ?, ?);",
                (user_id, now, now),
            )
            total, prestige_count = conn.execute(
                "SELECT total_xp, prestige_count FROM user_progression WHERE user_id = ?;",
                (user_id,),
            ).fetchone()
            wanted = [(sid, xp) for sid, xp in awards]
            wanted.extend((sid, 0) for sid in revoke)
            delta = 0
            for session_id, xp in wanted:
                row = conn.execute(
                    "SELECT xp, prestige_count FROM xp_awards WHERE session_id = ? AND user_id = ?;",
                    (session_id, user_id),
                ).fetchone()
                if row is None:
                    if xp == 0:
                        continue
                    conn.execute(
                        "INSERT INTO xp_awards (session_id, user_id, xp, prestige_count, awarded_at) "
                        "VALUES (?, ?, ?, ?, ?);",
                        (session_id, user_id, xp, prestige_count, now),
                    )
                    delta += xp
                    continue
                credited, credited_in = int(row[0]), int(row[1])
                if credited_in < prestige_count or credited == xp:
                    continue
                conn.execute(
                    "UPDATE xp_awards SET xp = ?, awarded_at = ? WHERE session_id = ?;",
                    (xp, now, session_id),
                )
                delta += xp - credited
            if delta:
                new_total = max(0, int(total) + delta)
                conn.execute(
                    "UPDATE user_progression SET total_xp = ?, level = ?, updated_at = ? WHERE user_id = ?;",
                    (new_total, LevelResolver.level_for_xp(new_total), now, user_id),
                )
            return delta

    def credited_sessions(self, session_ids: Sequence[int]) -> Dict[str, List[int]]:
        """Sessions among ``session_ids`` that still carry credited XP, by user."""
        result: Dict[str, List[int]] = {}
        for chunk in _chunks(list(session_ids)):
            rows = self.fetch_all(
                "SELECT user_id, session_id FROM xp_awards "
                f"WHERE session_id IN ({_placeholders(len(chunk))}) AND xp > 0 "
                "ORDER BY user_id, session_id;",
                tuple(chunk),
            )
            for user_id, session_id in rows:
                result.setdefault(user_id, []).append(session_id)
        return result

    def set_streak(self, user_id: str, streak: StreakState, now: str) -> bool:
        last = streak.last_date.isoformat() if streak.last_date else None
        forgiven = streak.forgiveness_used_on.isoformat() if streak.forgiveness_used_on else None
        count = self.execute_count(
            "UPDATE user_progression SET current_streak = ?, longest_streak = ?, "
            "last_activity_date = ?, forgiveness_used_on = ?, updated_at = ? "
            "WHERE user_id = ? AND (current_streak IS NOT ? OR longest_streak IS NOT ? "
            "OR last_activity_date IS NOT ? OR forgiveness_used_on IS NOT ?);",
            (
                streak.current,
                streak.longest,
                last,
                forgiven,
                now,
                user_id,
                streak.current,
                streak.longest,
                last,
                forgiven,
            ),
        )
        return count > 0

    def prestige_transition(
        self,
        user_id: str,
        decide: Callable[[Optional[ProgressionState]], T],
        now: str,
    ) -> Tuple[T, Optional[PrestigeHistoryEntry]]:
        """Evaluate ``decide`` and reset XP in one exclusive transaction.

        ``decide`` receives the current state and returns an object with an
        ``eligible`` attribute. The reset is a compare-and-swap on the state
        that was read; losing it raises :class:`ConcurrencyConflict`.
        """
        with self._transaction() as conn:
            state = self._fetch_state(conn, user_id)
            decision = decide(state)
            if not getattr(decision, "eligible", False) or state is None:
                return decision, None
            cur = conn.execute(
                "UPDATE user_progression SET total_xp = 0, level = 0, "
                "prestige_count = prestige_count + 1, last_prestige_at = ?, updated_at = ? "
                "WHERE user_id = ? AND prestige_count = ? AND total_xp = ?;",
                (now, now, user_id, state.prestige_count, state.total_xp),
            )
            if cur.rowcount != 1:
                raise ConcurrencyConflict(f"progression state of {user_id} changed concurrently")
            number = state.prestige_count + 1
            try:
                cur = conn.execute(
                    "INSERT INTO prestige_history (user_id, prestige_number, xp_before, level_before, xp_after, level_after, created_at) "
                    "VALUES (?, ?, ?, ?, 0, 0, ?);",
                    (user_id, number, state.total_xp, state.level, now),
                )
            except sqlite3.IntegrityError as e:
                raise ConcurrencyConflict(str(e))
            entry = PrestigeHistoryEntry(
                id=int(cur.lastrowid),
                user_id=user_id,
                prestige_number=number,
                xp_before=state.total_xp,
                level_before=state.level,
                xp_after=0,
                level_after=0,
                created_at=now,
            )
            return decision, entry


class PrestigeHistoryRepository(BaseRepository):
    """Append-only prestige audit trail."""

    def fetch_for_user(self, user_id: str) -> List[PrestigeHistoryEntry]:
        rows = self.fetch_all(
            "SELECT id, user_id, prestige_number, xp_before, level_before, xp_after, level_after, created_at "
            "FROM prestige_history WHERE user_id = ? ORDER BY prestige_number;",
            (user_id,),
        )
        return [PrestigeHistoryEntry(*r) for r in rows]


_FLAG_COLUMNS = (
    "id, user_id, flag_type, severity, status, iso_week, reference, details, "
    "flagged_at, reviewed_by, reviewed_at"
)


def _row_to_flag(row: Tuple) -> AntiCheatFlag:
    fid, uid, ftype, sev, status, week, ref, details, flagged, reviewer, reviewed = row
    return AntiCheatFlag(
        id=int(fid),
        user_id=uid,
        flag_type=FlagType(ftype),
        severity=Severity(sev),
        status=FlagStatus(status),
        iso_week=week,
        reference=ref,
        details=details,
        flagged_at=flagged,
        reviewed_by=reviewer,
        reviewed_at=reviewed,
    )


class AntiCheatFlagRepository(BaseRepository):
    """Anomaly flags awaiting human review."""

    def add(
        self,
        user_id: str,
        flag_type: FlagType,
        severity: Severity,
        flagged_at: str,
        *,
        iso_week: Optional[int] = None,
        reference: str = "",
        details: str = "",
    ) -> bool:
        """Record a flag; an existing flag for the same finding is kept as is."""
        count = self.execute_count(
            "INSERT OR IGNORE INTO anti_cheat_flags (user_id, flag_type, severity, status, iso_week, reference, details, flagged_at) "
            "VALUES (?, ?, ?, 'pending', ?, ?, ?, ?);",
            (
                user_id,
                FlagType(flag_type).value,
                Severity(severity).value,
                iso_week,
                reference,
                details,
                flagged_at,
            ),
        )
        return count > 0

    def fetch(self, flag_id: int) -> Optional[AntiCheatFlag]:
        rows = self.fetch_all(
            f"SELECT {_FLAG_COLUMNS} FROM anti_cheat_flags WHERE id = ?;", (flag_id,)
        )
        return _row_to_flag(rows[0]) if rows else None

    def fetch_all_flags(
        self, status: Optional[FlagStatus] = None, user_id: Optional[str] = None
    ) -> List[AntiCheatFlag]:
        query = f"SELECT {_FLAG_COLUMNS} FROM anti_cheat_flags"
        clauses: list[str] = []
        params: list[str] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(FlagStatus(status).value)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY flagged_at DESC, id DESC;"
        return [_row_to_flag(r) for r in self.fetch_all(query, tuple(params))]

    def review(
        self, flag_id: int, status: FlagStatus, reviewer: str, reviewed_at: str
    ) -> None:
        """Moderation workflow only: set the review outcome of a flag."""
        status = FlagStatus(status)
        if status is FlagStatus.PENDING:
            raise ValueError("review status must be cleared or confirmed")
        count = self.execute_count(
            "UPDATE anti_cheat_flags SET status = ?, reviewed_by = ?, reviewed_at = ? WHERE id = ?;",
            (status.value, reviewer, reviewed_at, flag_id),
        )
        if count == 0:
            raise ValueError("flag not found")
