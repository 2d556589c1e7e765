"""
scorer.py — Windowed call-pattern scoring of a single device.

Each reported call leg re-scores the device: windowed busyness and
counterparty-concentration features are turned into a fact set, the cached
rule set picks at most one reason, and the device is flagged with it or
cleared.

Provides:
  - busy_percentage(summary, min_calls) → int
  - top_bottom_ratio(counts, n) → int
  - SuspicionScorer.score(device_id, now, rule_set=None) → ScoreResult
"""
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from config import (
    INCOMING, OUTGOING, PARAMETER_DEFAULTS, RULE_SET_NAME, RULE_SET_TTL_S,
    TOP_BOTTOM_RATIO_SENTINEL, get_logger,
)
from rules import RuleSetCache, load_rule_set

logger = get_logger("scorer")

SECONDS_PER_DAY = 24 * 60 * 60
SECONDS_PER_HOUR = 60 * 60


# ─── Result dataclass ────────────────────────────────────────────────

@dataclass
class ScoreResult:
    """Outcome of scoring one activity event."""
    device_id: int
    scored: bool
    suspicious_because: Optional[str] = None
    suspicious_value: Optional[int] = None
    facts: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "scored": self.scored,
            "suspicious_because": self.suspicious_because,
            "suspicious_value": self.suspicious_value,
            "facts": self.facts,
        }


# ─── Features ────────────────────────────────────────────────────────

def busy_percentage(summary, min_calls: int) -> int:
    """Share of the window spent on calls, as a floored percentage.

    ``summary`` carries first start, last end, summed duration and count.
    Returns 0 unless more than ``min_calls`` calls span a positive interval.
    """
    if summary is None or summary.count <= min_calls:
        return 0

    elapsed_s = int(summary.last_end - summary.first_start)
    if elapsed_s <= 0:
        return 0
    return (100 * int(summary.total_duration)) // elapsed_s


def top_bottom_ratio(counts, n: int) -> int:
    """Calls to the top ``n`` counterparties over calls to the bottom ones.

    ``counts`` must be ordered busiest first. The bottom window holds the
    ranks strictly greater than ``len(counts) - n``, i.e. n - 1 entries.
    """
    counts = np.asarray(counts, dtype=np.int64)
    total = len(counts)
    if total < n * 2:
        return TOP_BOTTOM_RATIO_SENTINEL

    ranks = np.arange(total)
    top = int(counts[ranks < n].sum())
    bottom = int(counts[ranks > total - n].sum())
    if bottom == 0:
        return TOP_BOTTOM_RATIO_SENTINEL
    return top // bottom


# ─── Scorer ──────────────────────────────────────────────────────────

class SuspicionScorer:
    """Scores devices against a cached, time-expiring rule set.

    ``ledger`` is the store: it provides parameters, device rows, windowed
    call reads and the flag/clear writes.
    """

    def __init__(self, ledger, rule_set_name: str = RULE_SET_NAME, ttl: float = RULE_SET_TTL_S):
        self.ledger = ledger
        self.rule_set_name = rule_set_name
        self.rules = RuleSetCache(lambda now: load_rule_set(ledger, rule_set_name, now, ttl))

    def _param(self, name: str) -> int:
        return self.ledger.get_parameter(name, PARAMETER_DEFAULTS[name])

    def compute_facts(self, device_id: int, now: float) -> dict:
        """Build the named fact set for ``device_id`` over the trailing window."""
        hours_back = self._param("HOURS_BACK_TO_CHECK")
        top_n = self._param("TOP_N")
        since = now - hours_back * SECONDS_PER_HOUR

        totals = self.ledger.window_totals(device_id, since)

        busy_out = busy_percentage(
            self.ledger.call_summary(device_id, OUTGOING, since),
            self._param("OUTGOING_CALL_ONLY_COUNT"),
        )
        busy_in = busy_percentage(
            self.ledger.call_summary(device_id, INCOMING, since),
            self._param("INCOMING_CALL_ONLY_COUNT"),
        )
        busy_in_suspicious = busy_percentage(
            self.ledger.suspicious_incoming_summary(device_id, since), 0)

        counts = [how_many for _, how_many in self.ledger.counterparty_counts(device_id, since)]

        return {
            "this_device_is_suspicious": 1 if self.ledger.is_suspicious(device_id) else 0,
            "busy_in_pct": busy_in,
            "busy_out_pct": busy_out,
            "busy_in_suspicious_pct": busy_in_suspicious,
            "incoming_call_count": totals["incoming_call_count"],
            "outgoing_call_count": totals["outgoing_call_count"],
            "busyness_percentage": self._param("BUSYNESS_PERCENTAGE"),
            "actual_busyness_percentage": busy_in + busy_out,
            "outgoing_incoming_ratio_trip":
                self._param("OUTGOING_INCOMING_RATIO") * totals["incoming_call_count"],
            "out_call_top_bottom_n_ratio": top_bottom_ratio(counts, top_n),
            "top_bottom_n_ratio": self._param("TOP_BOTTOM_N_RATIO"),
        }

    def score(self, device_id: int, now: float, rule_set=None) -> ScoreResult:
        """Score ``device_id`` and flag or clear it. Young devices are left untouched."""
        rule_set = rule_set or self.rules.get(now)
        device = self.ledger.device_row(device_id)

        not_new_after_s = self._param("NOT_NEW_ANY_MORE_DAYS") * SECONDS_PER_DAY
        if now - device["first_seen"] < not_new_after_s:
            return ScoreResult(
                device_id=device_id, scored=False,
                suspicious_because=device["suspicious_because"],
                suspicious_value=device["suspicious_value"],
            )

        facts = self.compute_facts(device_id, now)
        rule_name = rule_set.evaluate(facts, {})

        if rule_name is not None:
            severity = rule_set.severity(rule_name)
            self.ledger.flag_device(device_id, rule_name, severity)
            logger.debug("Device %d flagged: %s", device_id, rule_name)
            return ScoreResult(device_id, True, rule_name, severity, facts)

        self.ledger.clear_device(device_id)
        return ScoreResult(device_id, True, None, None, facts)
