"""
SQLite 기반 데이터 접근 레이어.
추적 대상, 도착 기록(append-only), 정류소 페어, 사용자 설정, API 호출 카운터를 보관한다.
"""

import sqlite3
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import config

KST = timezone(timedelta(hours=9))

MAX_STATIONS = 10
MAX_TARGETS = 20

DEFAULT_SETTINGS = {
    "bg_collection_enabled": False,
    "bg_collection_interval": config.BG_COLLECTION_INTERVAL_SEC,
}

_conn: sqlite3.Connection | None = None
_lock = threading.RLock()

# ── SQLite 스키마 ─────────────────────────────────────────────
SCHEMA_SQL = """
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS tracking_target (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    bus_id TEXT NOT NULL,
    bus_no TEXT NOT NULL,
    station_id TEXT NOT NULL,
    station_name TEXT NOT NULL,
    ars_id TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    UNIQUE(user_id, bus_id, station_id)
);

CREATE TABLE IF NOT EXISTS arrival_log (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    bus_id TEXT NOT NULL,
    bus_no TEXT NOT NULL,
    station_id TEXT NOT NULL,
    station_name TEXT NOT NULL,
    arrival_time TEXT NOT NULL,
    day_of_week INTEGER NOT NULL CHECK(day_of_week BETWEEN 0 AND 6),
    plate_no TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_settings (
    user_id TEXT PRIMARY KEY,
    bg_collection_enabled INTEGER NOT NULL DEFAULT 0,
    bg_collection_interval INTEGER NOT NULL DEFAULT 300,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS station_pair (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    bus_id TEXT NOT NULL,
    bus_no TEXT NOT NULL,
    station_a_id TEXT NOT NULL,
    station_a_name TEXT NOT NULL,
    station_a_ars_id TEXT,
    station_b_id TEXT NOT NULL,
    station_b_name TEXT NOT NULL,
    station_b_ars_id TEXT,
    name TEXT,
    created_at TEXT NOT NULL,
    UNIQUE(user_id, bus_id, station_a_id, station_b_id)
);

CREATE TABLE IF NOT EXISTS api_call_counter (
    call_date TEXT PRIMARY KEY,
    call_count INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_target_user_active ON tracking_target(user_id, is_active);
CREATE INDEX IF NOT EXISTS idx_log_user_pair_time ON arrival_log(user_id, bus_id, station_id, arrival_time);
"""


class StoreError(RuntimeError):
    pass


class DuplicateTargetError(StoreError):
    pass


class DuplicatePairError(StoreError):
    pass


def init_db(db_path: str | None = None) -> None:
    """SQLite DB 연결 + 스키마 생성. 앱/스크립트 시작 시 1회 호출."""
    global _conn
    path = db_path or config.DB_PATH
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    with _lock:
        if _conn is not None:
            _conn.close()
            _conn = None
        _conn = sqlite3.connect(path, check_same_thread=False)
        _conn.row_factory = sqlite3.Row
        _conn.executescript(SCHEMA_SQL)
        _conn.commit()


def _db() -> sqlite3.Connection:
    if _conn is None:
        init_db()
    return _conn


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def today_kst() -> str:
    return datetime.now(KST).strftime("%Y-%m-%d")


def _to_utc(value: datetime | str | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def kst_day_of_week(moment: datetime) -> int:
    """0=일, 1=월, ..., 6=토 (KST 기준)."""
    return (moment.astimezone(KST).weekday() + 1) % 7


def _target_row(row: sqlite3.Row) -> dict:
    target = dict(row)
    target["is_active"] = bool(target["is_active"])
    return target


# ── 추적 대상 ─────────────────────────────────────────────────
def list_targets(user_id: str) -> list[dict]:
    with _lock:
        rows = _db().execute(
            "SELECT * FROM tracking_target WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        ).fetchall()
    return [_target_row(r) for r in rows]


def list_active_targets(user_ids: list[str] | None = None) -> list[dict]:
    """활성 추적 대상. user_ids가 주어지면 해당 사용자로 한정한다."""
    query = "SELECT * FROM tracking_target WHERE is_active = 1"
    params: list = []
    if user_ids is not None:
        if not user_ids:
            return []
        placeholders = ",".join("?" * len(user_ids))
        query += f" AND user_id IN ({placeholders})"
        params.extend(user_ids)
    query += " ORDER BY station_id, created_at"
    with _lock:
        rows = _db().execute(query, params).fetchall()
    return [_target_row(r) for r in rows]


def add_target(
    user_id: str,
    bus_id: str,
    bus_no: str,
    station_id: str,
    station_name: str,
    ars_id: str | None = None,
) -> dict:
    target_id = uuid.uuid4().hex
    with _lock:
        db = _db()
        try:
            db.execute(
                """
                INSERT INTO tracking_target
                    (id, user_id, bus_id, bus_no, station_id, station_name, ars_id, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (target_id, user_id, bus_id, bus_no, station_id, station_name, ars_id or None, _now_iso()),
            )
            db.commit()
        except sqlite3.IntegrityError as exc:
            db.rollback()
            raise DuplicateTargetError("이미 추적 중인 버스+정류소 조합입니다.") from exc
        row = db.execute("SELECT * FROM tracking_target WHERE id = ?", (target_id,)).fetchone()
    return _target_row(row)


def set_target_active(user_id: str, target_id: str, is_active: bool) -> dict | None:
    with _lock:
        db = _db()
        cur = db.execute(
            "UPDATE tracking_target SET is_active = ? WHERE id = ? AND user_id = ?",
            (1 if is_active else 0, target_id, user_id),
        )
        db.commit()
        if cur.rowcount == 0:
            return None
        row = db.execute("SELECT * FROM tracking_target WHERE id = ?", (target_id,)).fetchone()
    return _target_row(row)


def delete_target(user_id: str, target_id: str) -> bool:
    with _lock:
        db = _db()
        cur = db.execute(
            "DELETE FROM tracking_target WHERE id = ? AND user_id = ?",
            (target_id, user_id),
        )
        db.commit()
    return cur.rowcount > 0


def get_limits(user_id: str) -> dict:
    """활성 정류소/추적 대상 수와 상한."""
    with _lock:
        rows = _db().execute(
            "SELECT station_id FROM tracking_target WHERE user_id = ? AND is_active = 1",
            (user_id,),
        ).fetchall()
    station_count = len({r["station_id"] for r in rows})
    target_count = len(rows)
    return {
        "stations": {
            "current": station_count,
            "max": MAX_STATIONS,
            "available": MAX_STATIONS - station_count,
            "exceeded": station_count >= MAX_STATIONS,
        },
        "targets": {
            "current": target_count,
            "max": MAX_TARGETS,
            "available": MAX_TARGETS - target_count,
            "exceeded": target_count >= MAX_TARGETS,
        },
    }


# ── 정류소 페어 (같은 노선의 A→B 구간) ─────────────────────────
def _pair_row(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "userId": row["user_id"],
        "busId": row["bus_id"],
        "busNo": row["bus_no"],
        "stationA": {"id": row["station_a_id"], "name": row["station_a_name"], "arsId": row["station_a_ars_id"]},
        "stationB": {"id": row["station_b_id"], "name": row["station_b_name"], "arsId": row["station_b_ars_id"]},
        "name": row["name"],
        "createdAt": row["created_at"],
    }


def list_station_pairs(user_id: str, bus_id: str | None = None) -> list[dict]:
    query = "SELECT * FROM station_pair WHERE user_id = ?"
    params: list = [user_id]
    if bus_id:
        query += " AND bus_id = ?"
        params.append(bus_id)
    query += " ORDER BY created_at DESC"
    with _lock:
        rows = _db().execute(query, params).fetchall()
    return [_pair_row(r) for r in rows]


def get_station_pair(user_id: str, pair_id: str) -> dict | None:
    with _lock:
        row = _db().execute(
            "SELECT * FROM station_pair WHERE id = ? AND user_id = ?", (pair_id, user_id)
        ).fetchone()
    return _pair_row(row) if row else None


def add_station_pair(
    user_id: str,
    bus_id: str,
    bus_no: str,
    station_a: dict,
    station_b: dict,
    name: str | None = None,
) -> dict:
    """station_a/station_b: {"id", "name", "arsId"}. 같은 정류소끼리는 페어가 될 수 없다."""
    if station_a["id"] == station_b["id"]:
        raise ValueError("같은 정류장은 페어로 설정할 수 없습니다.")
    pair_id = uuid.uuid4().hex
    with _lock:
        db = _db()
        try:
            db.execute(
                """
                INSERT INTO station_pair
                    (id, user_id, bus_id, bus_no,
                     station_a_id, station_a_name, station_a_ars_id,
                     station_b_id, station_b_name, station_b_ars_id,
                     name, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    pair_id, user_id, bus_id, bus_no,
                    station_a["id"], station_a["name"], station_a.get("arsId") or None,
                    station_b["id"], station_b["name"], station_b.get("arsId") or None,
                    name or None, _now_iso(),
                ),
            )
            db.commit()
        except sqlite3.IntegrityError as exc:
            db.rollback()
            raise DuplicatePairError("이미 동일한 페어가 존재합니다.") from exc
        row = db.execute("SELECT * FROM station_pair WHERE id = ?", (pair_id,)).fetchone()
    return _pair_row(row)


def delete_station_pair(user_id: str, pair_id: str) -> bool:
    with _lock:
        db = _db()
        cur = db.execute("DELETE FROM station_pair WHERE id = ? AND user_id = ?", (pair_id, user_id))
        db.commit()
    return cur.rowcount > 0


# ── 사용자 설정 ───────────────────────────────────────────────
def get_settings(user_id: str) -> dict:
    """설정 조회. 저장된 값이 없으면 기본값."""
    with _lock:
        row = _db().execute(
            "SELECT * FROM user_settings WHERE user_id = ?", (user_id,)
        ).fetchone()
    if row is None:
        return {"user_id": user_id, **DEFAULT_SETTINGS}
    return {
        "user_id": user_id,
        "bg_collection_enabled": bool(row["bg_collection_enabled"]),
        "bg_collection_interval": int(row["bg_collection_interval"]),
    }


def save_settings(user_id: str, enabled: bool | None = None, interval: int | None = None) -> dict:
    """부분 갱신(upsert). None인 항목은 기존 값을 유지한다."""
    with _lock:
        current = get_settings(user_id)
        if enabled is not None:
            current["bg_collection_enabled"] = bool(enabled)
        if interval:
            current["bg_collection_interval"] = int(interval)
        db = _db()
        db.execute(
            """
            INSERT INTO user_settings (user_id, bg_collection_enabled, bg_collection_interval, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                bg_collection_enabled = excluded.bg_collection_enabled,
                bg_collection_interval = excluded.bg_collection_interval,
                updated_at = excluded.updated_at
            """,
            (
                user_id,
                1 if current["bg_collection_enabled"] else 0,
                current["bg_collection_interval"],
                _now_iso(),
            ),
        )
        db.commit()
    return current


def list_collection_enabled_users() -> list[str]:
    with _lock:
        rows = _db().execute(
            "SELECT user_id FROM user_settings WHERE bg_collection_enabled = 1 ORDER BY user_id"
        ).fetchall()
    return [r["user_id"] for r in rows]


# ── 도착 기록 ─────────────────────────────────────────────────
def insert_arrival_log(
    user_id: str,
    bus_id: str,
    bus_no: str,
    station_id: str,
    station_name: str,
    arrival_time: datetime | str | None = None,
    plate_no: str | None = None,
) -> dict:
    """도착 기록 1건 추가. 중복 검사는 하지 않는다."""
    moment = _to_utc(arrival_time)
    log_id = uuid.uuid4().hex
    with _lock:
        db = _db()
        try:
            db.execute(
                """
                INSERT INTO arrival_log
                    (id, user_id, bus_id, bus_no, station_id, station_name,
                     arrival_time, day_of_week, plate_no, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log_id,
                    user_id,
                    bus_id,
                    bus_no,
                    station_id,
                    station_name,
                    moment.isoformat(),
                    kst_day_of_week(moment),
                    plate_no or None,
                    _now_iso(),
                ),
            )
            db.commit()
        except sqlite3.Error as exc:
            db.rollback()
            raise StoreError(f"도착 기록 저장 실패: {exc}") from exc
        row = db.execute("SELECT * FROM arrival_log WHERE id = ?", (log_id,)).fetchone()
    return dict(row)


def list_arrival_logs(
    user_id: str,
    bus_id: str | None = None,
    station_id: str | None = None,
    days: int = 30,
    ascending: bool = False,
) -> list[dict]:
    cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
    query = "SELECT * FROM arrival_log WHERE user_id = ? AND arrival_time >= ?"
    params: list = [user_id, cutoff]
    if bus_id:
        query += " AND bus_id = ?"
        params.append(bus_id)
    if station_id:
        query += " AND station_id = ?"
        params.append(station_id)
    query += " ORDER BY arrival_time " + ("ASC" if ascending else "DESC")
    with _lock:
        rows = _db().execute(query, params).fetchall()
    return [dict(r) for r in rows]


def delete_arrival_log(user_id: str, log_id: str) -> bool:
    with _lock:
        db = _db()
        cur = db.execute(
            "DELETE FROM arrival_log WHERE id = ? AND user_id = ?", (log_id, user_id)
        )
        db.commit()
    return cur.rowcount > 0


def delete_arrival_logs_on_date(user_id: str, bus_id: str, station_id: str, date_kst: str) -> int:
    """'YYYY-MM-DD'(KST) 하루치 기록 삭제. 삭제 건수 반환."""
    day = datetime.strptime(date_kst, "%Y-%m-%d").replace(tzinfo=KST)
    start = day.astimezone(timezone.utc).isoformat()
    end = (day + timedelta(days=1)).astimezone(timezone.utc).isoformat()
    with _lock:
        db = _db()
        cur = db.execute(
            """
            DELETE FROM arrival_log
            WHERE user_id = ? AND bus_id = ? AND station_id = ?
              AND arrival_time >= ? AND arrival_time < ?
            """,
            (user_id, bus_id, station_id, start, end),
        )
        db.commit()
    return cur.rowcount


# ── API 호출 카운터 ───────────────────────────────────────────
def increment_api_call_count() -> int:
    today = today_kst()
    with _lock:
        db = _db()
        db.execute(
            """
            INSERT INTO api_call_counter (call_date, call_count) VALUES (?, 1)
            ON CONFLICT(call_date) DO UPDATE SET call_count = call_count + 1
            """,
            (today,),
        )
        db.commit()
        row = db.execute(
            "SELECT call_count FROM api_call_counter WHERE call_date = ?", (today,)
        ).fetchone()
    return int(row["call_count"])


def get_api_usage(days: int = 7) -> list[dict]:
    since = (datetime.now(KST) - timedelta(days=days)).strftime("%Y-%m-%d")
    with _lock:
        rows = _db().execute(
            """
            SELECT call_date, call_count FROM api_call_counter
            WHERE call_date >= ? ORDER BY call_date DESC
            """,
            (since,),
        ).fetchall()
    return [dict(r) for r in rows]
