"""
store.py — SQLite-backed device store and activity ledger.

Every boundary operation runs as one transaction under a single lock, so a
failure anywhere in an operation (including scoring) leaves no partial writes.

Boundary operations:
  - register_device(device_id, location_id, created_at)
  - report_location_change(device_id, location_id)
  - report_activity(device_id, start_time, duration_s, direction, counterparty_id, status)
  - get_device(device_id)
  - note_suspicious_cohort(signatures)
  - partition_signature_counts(partition, partitions)
  - get_parameter(name, default)
"""
import json
import sqlite3
import threading
import time
from collections import namedtuple
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

import history_codec
from config import (
    DB_PATH, INCOMING, OUTGOING, OPEN_INTERVAL_END, DWELL_CLOSE_OFFSET_S, GET_DEVICE_COUNTERPARTY_HOURS,
    PARAMETER_DEFAULTS, DEFAULT_RULES, RULE_SET_NAME, get_logger,
)
from errors import ValidationError
from scorer import SuspicionScorer

logger = get_logger("store")

CallSummary = namedtuple("CallSummary", "first_start last_end total_duration count")

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS locations (
    location_id INTEGER PRIMARY KEY
);
CREATE TABLE IF NOT EXISTS devices (
    device_id INTEGER PRIMARY KEY,
    current_location INTEGER NOT NULL,
    first_seen REAL NOT NULL,
    last_seen REAL NOT NULL,
    history TEXT NOT NULL,
    last3 TEXT NOT NULL,
    last6 TEXT NOT NULL,
    suspicious_because TEXT,
    suspicious_value INTEGER
);
CREATE INDEX IF NOT EXISTS devices_last6_idx ON devices (last6);
CREATE TABLE IF NOT EXISTS dwell_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id INTEGER NOT NULL,
    location_id INTEGER NOT NULL,
    from_ts REAL NOT NULL,
    to_ts REAL NOT NULL DEFAULT {OPEN_INTERVAL_END},
    incoming_call_count INTEGER NOT NULL DEFAULT 0,
    outgoing_call_count INTEGER NOT NULL DEFAULT 0,
    incoming_call_duration INTEGER NOT NULL DEFAULT 0,
    outgoing_call_duration INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS dwell_device_idx ON dwell_records (device_id, to_ts);
CREATE TABLE IF NOT EXISTS incoming_calls (
    device_id INTEGER NOT NULL,
    counterparty_id INTEGER NOT NULL,
    start_time REAL NOT NULL,
    end_time REAL NOT NULL,
    duration INTEGER NOT NULL,
    location_id INTEGER NOT NULL,
    status_code TEXT,
    PRIMARY KEY (device_id, counterparty_id, start_time)
);
CREATE TABLE IF NOT EXISTS outgoing_calls (
    device_id INTEGER NOT NULL,
    counterparty_id INTEGER NOT NULL,
    start_time REAL NOT NULL,
    end_time REAL NOT NULL,
    duration INTEGER NOT NULL,
    location_id INTEGER NOT NULL,
    status_code TEXT,
    PRIMARY KEY (device_id, counterparty_id, start_time)
);
CREATE TABLE IF NOT EXISTS cohorts (
    signature TEXT PRIMARY KEY,
    location_id INTEGER NOT NULL,
    created_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS cohort_members (
    signature TEXT NOT NULL,
    device_id INTEGER NOT NULL,
    joined_at REAL NOT NULL,
    location_id INTEGER NOT NULL,
    PRIMARY KEY (signature, device_id)
);
CREATE VIEW IF NOT EXISTS suspicious_devices AS
    SELECT DISTINCT device_id FROM cohort_members;
CREATE TABLE IF NOT EXISTS parameters (
    name TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS rules (
    rule_set TEXT NOT NULL,
    seq INTEGER NOT NULL,
    rule_name TEXT NOT NULL,
    severity INTEGER NOT NULL,
    conditions TEXT NOT NULL,
    PRIMARY KEY (rule_set, seq)
);
"""

CALL_TABLES = {INCOMING: "incoming_calls", OUTGOING: "outgoing_calls"}
DWELL_COUNTERS = {
    INCOMING: ("incoming_call_count", "incoming_call_duration"),
    OUTGOING: ("outgoing_call_count", "outgoing_call_duration"),
}


def to_epoch(value) -> float:
    """Accept datetimes or epoch seconds."""
    if isinstance(value, datetime):
        return value.timestamp()
    return float(value)


class SimGuardStore:
    """Device, dwell, call, cohort, parameter and rule tables behind one lock."""

    def __init__(self, db_path: str = DB_PATH, clock=time.time, seed_defaults: bool = True):
        self.db_path = db_path
        self.clock = clock
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self.conn.executescript(SCHEMA)
        if seed_defaults:
            self._seed_defaults()
        self.scorer = SuspicionScorer(self)
        logger.info("Store ready at %s", db_path)

    def close(self):
        self.conn.close()

    # ─── Transactions ────────────────────────────────────────────────

    @contextmanager
    def transaction(self):
        """Commit at the outermost level; roll back everything on any error."""
        with self._lock:
            self._depth += 1
            try:
                yield self.conn
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self.conn.rollback()
                raise
            else:
                self._depth -= 1
                if self._depth == 0:
                    self.conn.commit()

    def _query(self, sql: str, params=()) -> list:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _query_one(self, sql: str, params=()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _seed_defaults(self):
        with self.transaction() as conn:
            conn.executemany(
                "INSERT OR IGNORE INTO parameters (name, value) VALUES (?, ?)",
                list(PARAMETER_DEFAULTS.items()),
            )
            if not conn.execute("SELECT 1 FROM rules WHERE rule_set = ?", (RULE_SET_NAME,)).fetchone():
                self._write_rules(conn, RULE_SET_NAME, DEFAULT_RULES)

    # ─── Parameters and rules ────────────────────────────────────────

    def get_parameter(self, name: str, default: int) -> int:
        """Return the tunable integer ``name``, or ``default`` if unset."""
        row = self._query_one("SELECT value FROM parameters WHERE name = ?", (name,))
        return int(row["value"]) if row else default

    def set_parameter(self, name: str, value: int):
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO parameters (name, value) VALUES (?, ?) "
                "ON CONFLICT (name) DO UPDATE SET value = excluded.value",
                (name, int(value)),
            )

    def get_rule_rows(self, rule_set: str) -> list:
        return self._query(
            "SELECT rule_name, severity, conditions FROM rules WHERE rule_set = ? ORDER BY seq",
            (rule_set,),
        )

    def replace_rule_set(self, rule_set: str, rules: list):
        """Replace ``rule_set`` with ``[(name, severity, conditions), ...]``."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM rules WHERE rule_set = ?", (rule_set,))
            self._write_rules(conn, rule_set, rules)

    @staticmethod
    def _write_rules(conn, rule_set: str, rules: list):
        conn.executemany(
            "INSERT INTO rules (rule_set, seq, rule_name, severity, conditions) VALUES (?, ?, ?, ?, ?)",
            [
                (rule_set, seq, name, severity,
                 conditions if isinstance(conditions, str) else json.dumps([list(c) for c in conditions]))
                for seq, (name, severity, conditions) in enumerate(rules)
            ],
        )

    # ─── Locations ───────────────────────────────────────────────────

    def create_locations(self, count: int):
        with self.transaction() as conn:
            conn.executemany(
                "INSERT OR IGNORE INTO locations (location_id) VALUES (?)",
                [(i,) for i in range(count)],
            )

    def _require_location(self, location_id: int):
        if not self._query_one("SELECT 1 FROM locations WHERE location_id = ?", (location_id,)):
            raise ValidationError(f"Location {location_id} does not exist")

    def _require_device(self, device_id: int) -> sqlite3.Row:
        row = self._query_one("SELECT * FROM devices WHERE device_id = ?", (device_id,))
        if row is None:
            raise ValidationError(f"Device {device_id} does not exist")
        return row

    # ─── RegisterDevice ──────────────────────────────────────────────

    def register_device(self, device_id: int, location_id: int, created_at):
        """Create ``device_id`` at ``location_id``, discarding any previous registration."""
        now = self.clock()
        with self.transaction() as conn:
            self._require_location(location_id)

            for table in ("devices", "dwell_records", "incoming_calls", "outgoing_calls"):
                conn.execute(f"DELETE FROM {table} WHERE device_id = ?", (device_id,))

            history = history_codec.append(None, location_id, now)
            conn.execute(
                "INSERT INTO devices (device_id, current_location, first_seen, last_seen, "
                "history, last3, last6, suspicious_because, suspicious_value) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, NULL, NULL)",
                (device_id, location_id, to_epoch(created_at), now, history, history, history),
            )
            conn.execute(
                "INSERT INTO dwell_records (device_id, location_id, from_ts) VALUES (?, ?, ?)",
                (device_id, location_id, now),
            )

    # ─── ReportLocationChange ────────────────────────────────────────

    def report_location_change(self, device_id: int, location_id: int):
        """Move a device, extend its history and roll its dwell record over."""
        now = self.clock()
        with self.transaction() as conn:
            device = self._require_device(device_id)
            self._require_location(location_id)

            history = history_codec.append(device["history"], location_id, now)
            conn.execute(
                "UPDATE devices SET current_location = ?, history = ?, last3 = ?, last6 = ?, last_seen = ? "
                "WHERE device_id = ?",
                (location_id, history, history_codec.last_n(history, 3),
                 history_codec.last_n(history, 6), now, device_id),
            )
            conn.execute(
                "UPDATE dwell_records SET to_ts = ? WHERE device_id = ? AND to_ts = ?",
                (now - DWELL_CLOSE_OFFSET_S, device_id, OPEN_INTERVAL_END),
            )
            conn.execute(
                "INSERT INTO dwell_records (device_id, location_id, from_ts) VALUES (?, ?, ?)",
                (device_id, location_id, now),
            )

    # ─── ReportActivity ──────────────────────────────────────────────

    def report_activity(self, device_id: int, start_time, duration_s: int, direction: str,
                        counterparty_id: int, status: str):
        """Record one call leg for ``device_id`` and re-score the device.

        Re-reporting the same (device, counterparty, start time) overwrites the
        call and adjusts dwell counters by the difference only.
        """
        if direction not in CALL_TABLES:
            raise ValidationError(f"Unknown call direction '{direction}'")

        now = self.clock()
        start = to_epoch(start_time)
        duration_s = int(duration_s)

        # Rule set problems abort before any write
        rule_set = self.scorer.rules.get(now)

        with self.transaction() as conn:
            device = self._require_device(device_id)
            self._require_location(device["current_location"])
            table = CALL_TABLES[direction]

            previous = conn.execute(
                f"SELECT duration FROM {table} WHERE device_id = ? AND counterparty_id = ? AND start_time = ?",
                (device_id, counterparty_id, start),
            ).fetchone()
            conn.execute(
                f"INSERT INTO {table} (device_id, counterparty_id, start_time, end_time, duration, "
                f"location_id, status_code) VALUES (?, ?, ?, ?, ?, ?, ?) "
                f"ON CONFLICT (device_id, counterparty_id, start_time) DO UPDATE SET "
                f"end_time = excluded.end_time, duration = excluded.duration, "
                f"location_id = excluded.location_id, status_code = excluded.status_code",
                (device_id, counterparty_id, start, start + duration_s, duration_s,
                 device["current_location"], status),
            )

            count_delta = 0 if previous else 1
            duration_delta = duration_s - (previous["duration"] if previous else 0)
            count_col, duration_col = DWELL_COUNTERS[direction]
            conn.execute(
                f"UPDATE dwell_records SET {count_col} = {count_col} + ?, "
                f"{duration_col} = {duration_col} + ? WHERE device_id = ? AND to_ts = ?",
                (count_delta, duration_delta, device_id, OPEN_INTERVAL_END),
            )
            conn.execute("UPDATE devices SET last_seen = ? WHERE device_id = ?", (now, device_id))

            return self.scorer.score(device_id, now, rule_set)

    # ─── GetDevice ───────────────────────────────────────────────────

    def get_device(self, device_id: int) -> dict:
        """Return a device with its dwell and call history."""
        with self._lock:
            device = self._require_device(device_id)
            since = self.clock() - GET_DEVICE_COUNTERPARTY_HOURS * 3600
            return {
                "device": dict(device),
                "dwell_history": [dict(r) for r in self._query(
                    "SELECT * FROM dwell_records WHERE device_id = ? ORDER BY from_ts, id", (device_id,))],
                "incoming_calls": [dict(r) for r in self._query(
                    "SELECT * FROM incoming_calls WHERE device_id = ? ORDER BY start_time", (device_id,))],
                "outgoing_calls": [dict(r) for r in self._query(
                    "SELECT * FROM outgoing_calls WHERE device_id = ? ORDER BY start_time", (device_id,))],
                "top_counterparties": [
                    {"counterparty_id": c, "how_many": n}
                    for c, n in self.counterparty_counts(device_id, since)
                ],
            }

    # ─── Cohorts ─────────────────────────────────────────────────────

    def partition_signature_counts(self, partition: int, partitions: int) -> dict:
        """Count last-6 signatures among devices in one partition."""
        rows = self._query(
            "SELECT last6, COUNT(*) AS how_many FROM devices WHERE device_id % ? = ? GROUP BY last6",
            (partitions, partition),
        )
        return {r["last6"]: r["how_many"] for r in rows}

    def devices_with_signature(self, signature: str) -> list:
        return self._query(
            "SELECT device_id, current_location FROM devices WHERE last6 = ? ORDER BY device_id",
            (signature,),
        )

    def note_suspicious_cohort(self, signatures: list) -> dict:
        """Create or extend a cohort per signature. Returns members matched per signature."""
        now = self.clock()
        matched = {}
        with self.transaction() as conn:
            for signature in signatures:
                devices = self.devices_with_signature(signature)
                if not devices:
                    continue

                # Lowest device id decides the representative location
                location_id = devices[0]["current_location"]
                conn.execute(
                    "INSERT OR IGNORE INTO cohorts (signature, location_id, created_at) VALUES (?, ?, ?)",
                    (signature, location_id, now),
                )
                conn.executemany(
                    "INSERT OR IGNORE INTO cohort_members (signature, device_id, joined_at, location_id) "
                    "VALUES (?, ?, ?, ?)",
                    [(signature, d["device_id"], now, d["current_location"]) for d in devices],
                )
                matched[signature] = len(devices)
        return matched

    def get_cohorts(self) -> list:
        return [dict(r) for r in self._query(
            "SELECT c.signature, c.location_id, c.created_at, COUNT(m.device_id) AS members "
            "FROM cohorts c LEFT JOIN cohort_members m ON m.signature = c.signature "
            "GROUP BY c.signature, c.location_id, c.created_at ORDER BY c.created_at, c.signature")]

    def cohort_members(self, signature: str) -> list:
        return [dict(r) for r in self._query(
            "SELECT * FROM cohort_members WHERE signature = ? ORDER BY device_id", (signature,))]

    def clear_cohorts(self):
        with self.transaction() as conn:
            conn.execute("DELETE FROM cohort_members")
            conn.execute("DELETE FROM cohorts")

    # ─── Ledger reads ────────────────────────────────────────────────

    def device_row(self, device_id: int) -> sqlite3.Row:
        return self._require_device(device_id)

    def is_suspicious(self, device_id: int) -> bool:
        return self._query_one(
            "SELECT 1 FROM suspicious_devices WHERE device_id = ?", (device_id,)) is not None

    def window_totals(self, device_id: int, since: float) -> dict:
        """In/out counts and durations from dwell records opened since ``since``."""
        row = self._query_one(
            "SELECT COALESCE(SUM(incoming_call_count), 0) AS incoming_call_count, "
            "COALESCE(SUM(outgoing_call_count), 0) AS outgoing_call_count, "
            "COALESCE(SUM(incoming_call_duration), 0) AS incoming_call_duration, "
            "COALESCE(SUM(outgoing_call_duration), 0) AS outgoing_call_duration "
            "FROM dwell_records WHERE device_id = ? AND from_ts >= ?",
            (device_id, since),
        )
        return dict(row)

    def _call_summary(self, sql: str, params) -> Optional[CallSummary]:
        row = self._query_one(sql, params)
        if row is None or not row["how_many"]:
            return None
        return CallSummary(row["first_start"], row["last_end"], row["total_duration"], row["how_many"])

    def call_summary(self, device_id: int, direction: str, since: float) -> Optional[CallSummary]:
        """First start, last end, summed duration and count of calls since ``since``."""
        return self._call_summary(
            f"SELECT MIN(start_time) AS first_start, MAX(end_time) AS last_end, "
            f"COALESCE(SUM(duration), 0) AS total_duration, COUNT(*) AS how_many "
            f"FROM {CALL_TABLES[direction]} WHERE device_id = ? AND start_time >= ?",
            (device_id, since),
        )

    def suspicious_incoming_summary(self, device_id: int, since: float) -> Optional[CallSummary]:
        """Like call_summary for incoming calls, restricted to suspicious counterparties."""
        return self._call_summary(
            "SELECT MIN(c.start_time) AS first_start, MAX(c.end_time) AS last_end, "
            "COALESCE(SUM(c.duration), 0) AS total_duration, COUNT(*) AS how_many "
            "FROM incoming_calls c JOIN suspicious_devices v ON v.device_id = c.counterparty_id "
            "WHERE c.device_id = ? AND c.start_time >= ?",
            (device_id, since),
        )

    def counterparty_counts(self, device_id: int, since: float) -> list:
        """Outgoing call counts per counterparty, busiest first."""
        rows = self._query(
            "SELECT counterparty_id, COUNT(*) AS how_many FROM outgoing_calls "
            "WHERE device_id = ? AND start_time >= ? "
            "GROUP BY counterparty_id ORDER BY how_many DESC, counterparty_id",
            (device_id, since),
        )
        return [(r["counterparty_id"], r["how_many"]) for r in rows]

    # ─── Suspicion marks ─────────────────────────────────────────────

    def flag_device(self, device_id: int, reason: str, severity: int):
        with self.transaction() as conn:
            conn.execute(
                "UPDATE devices SET suspicious_because = ?, suspicious_value = ? WHERE device_id = ?",
                (reason, severity, device_id),
            )

    def clear_device(self, device_id: int):
        with self.transaction() as conn:
            conn.execute(
                "UPDATE devices SET suspicious_because = NULL, suspicious_value = NULL WHERE device_id = ?",
                (device_id,),
            )

    # ─── Reporting ───────────────────────────────────────────────────

    def suspected_device_summary(self) -> dict:
        rows = self._query(
            "SELECT suspicious_because, COUNT(*) AS how_many FROM devices "
            "WHERE suspicious_because IS NOT NULL GROUP BY suspicious_because ORDER BY suspicious_because")
        return {r["suspicious_because"]: r["how_many"] for r in rows}

    def device_status_summary(self, device_ids: list) -> dict:
        """Suspicion reason (or 'not_suspected') counts for the given devices."""
        summary = {}
        ids = list(device_ids)
        for i in range(0, len(ids), 500):
            chunk = ids[i:i + 500]
            placeholders = ",".join("?" * len(chunk))
            rows = self._query(
                f"SELECT COALESCE(suspicious_because, 'not_suspected') AS reason, COUNT(*) AS how_many "
                f"FROM devices WHERE device_id IN ({placeholders}) GROUP BY reason",
                chunk,
            )
            for r in rows:
                summary[r["reason"]] = summary.get(r["reason"], 0) + r["how_many"]
        return summary

    def device_count(self) -> int:
        return self._query_one("SELECT COUNT(*) AS n FROM devices")["n"]
