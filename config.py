"""
config.py — Central configuration for SimGuard simbox detection system.
All thresholds, defaults, paths, and tunable parameters in one place.
Supports .env overrides via os.environ.
"""
import os
from pathlib import Path

# ─── Paths ───────────────────────────────────────────────────────────
BASE_DIR = Path(__file__).parent
DB_PATH = os.environ.get("SIMGUARD_DB_PATH", str(BASE_DIR / "simguard.db"))

# ─── Movement history encoding ───────────────────────────────────────
MAX_LIST_LENGTH = 12
RECORD_SEPARATOR = ":"
FIELD_SEPARATOR = ","

# ─── Store ───────────────────────────────────────────────────────────
INCOMING = "in"
OUTGOING = "out"
# Sentinel "to" timestamp of the single open dwell record per device
OPEN_INTERVAL_END = 253402300799.0   # 9999-12-31T23:59:59Z
DWELL_CLOSE_OFFSET_S = 0.000001
GET_DEVICE_COUNTERPARTY_HOURS = 24

# ─── Cohort detection ────────────────────────────────────────────────
COHORT_DETECTION_SIZE = 60
COHORT_PARTITIONS = 8

# ─── Suspicion scoring ───────────────────────────────────────────────
RULE_SET_NAME = "SIMBOX"
RULE_SET_TTL_S = 60
TOP_BOTTOM_RATIO_SENTINEL = 2 ** 31 - 1

# Tunable integers, seeded into the parameters table on first start.
PARAMETER_DEFAULTS = {
    "OUTGOING_CALL_ONLY_COUNT":            2,
    "INCOMING_CALL_ONLY_COUNT":            2,
    "OUTGOING_INCOMING_RATIO":            10,
    "NOT_NEW_ANY_MORE_DAYS":              10,
    "BUSYNESS_PERCENTAGE":                30,
    "HOURS_BACK_TO_CHECK":                 3,
    "TOP_N":                               5,
    "TOP_BOTTOM_N_RATIO":                 10,
    "ENABLE_SUSPICIOUS_COHORT_DETECTION":  1,
    "SIMBOX_CALLS_ITSELF":                 0,
}

# ─── Default rule set ────────────────────────────────────────────────
# (rule name, severity, [(fact, operator, number-or-fact), ...])
# First rule whose conditions all hold wins.
DEFAULT_RULES = [
    ("all_incoming_calls_from_known_bad_numbers", 90, [
        ("this_device_is_suspicious", "==", 1),
        ("busy_in_pct", ">=", 1),
        ("busy_in_suspicious_pct", "==", "busy_in_pct"),
    ]),
    ("some_incoming_calls_from_known_bad_numbers", 80, [
        ("this_device_is_suspicious", "==", 1),
        ("busy_in_suspicious_pct", ">", 1),
    ]),
    ("suspicious_device_has_no_incoming_calls", 70, [
        ("this_device_is_suspicious", "==", 1),
        ("incoming_call_count", "==", 0),
        ("outgoing_call_count", ">", 0),
    ]),
    ("suspiciously_moving_device", 60, [
        ("this_device_is_suspicious", "==", 1),
    ]),
    ("total_incoming_outgoing_ratio_bad", 50, [
        ("actual_busyness_percentage", ">=", "busyness_percentage"),
        ("outgoing_incoming_ratio_trip", "<", "outgoing_call_count"),
    ]),
    ("topn_incoming_outgoing_ratio_bad", 40, [
        ("actual_busyness_percentage", ">=", "busyness_percentage"),
        ("out_call_top_bottom_n_ratio", "<", "top_bottom_n_ratio"),
    ]),
]

# ─── Simulation ──────────────────────────────────────────────────────
USER_COUNT = int(os.environ.get("SIMGUARD_USER_COUNT", "10000"))
CELL_COUNT = int(os.environ.get("SIMGUARD_CELL_COUNT", "20"))
DURATION_SECONDS = int(os.environ.get("SIMGUARD_DURATION_SECONDS", "300"))
TARGET_OPS_PER_MS = int(os.environ.get("SIMGUARD_TPMS", "1"))
MAX_CALL_SECONDS = int(os.environ.get("SIMGUARD_MAX_CALL_SECONDS", "60"))
STORE_WORKERS = int(os.environ.get("SIMGUARD_STORE_WORKERS", "4"))
RANDOM_SEED = os.environ.get("SIMGUARD_SEED")

RANDOM_SEARCH_ATTEMPTS = 30
INITIAL_MOVES = 6
STATS_INTERVAL_S = 60

# Box behaviour
BOX_CAPACITY = 128
BOX_JOIN_ODDS = 100               # 1 in N new devices joins the box
BOX_MOVE_INTERVAL_MIN = 2
FAKE_CALL_PCT = 15
FAKE_CALL_SECONDS = 10
PROJECTED_PROFIT_PER_MINUTE = 0.16

# Device behaviour
POPULAR_NUMBER_LIST_SIZE = 10
POPULAR_NUMBER_PCT = 30
CELL_MOVE_ODDS = 20               # 1 in N eligible iterations moves cell
MIN_DWELL_BEFORE_MOVE_MIN = 2
CALL_STATUS = "E"

# Device creation dates (days in the past)
ONE_YEAR_DAYS = 365
BOX_SIM_MAX_AGE_DAYS = 1

# ─── API settings ────────────────────────────────────────────────────
API_HOST = os.environ.get("SIMGUARD_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("SIMGUARD_PORT", "8000"))
API_KEY = os.environ.get("SIMGUARD_API_KEY", "sg-dev-key-2026")
RATE_LIMIT_PER_MINUTE = int(os.environ.get("SIMGUARD_RATE_LIMIT", "600"))

# ─── Logging ──────────────────────────────────────────────────────────
import logging

LOG_LEVEL = os.environ.get("SIMGUARD_LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s | %(name)-18s | %(levelname)-7s | %(message)s"

def get_logger(name: str) -> logging.Logger:
    """Get a configured logger for the given module name."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    return logger
