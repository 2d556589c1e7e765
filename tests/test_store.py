"""
test_store.py — Store boundary operation tests.
"""
import pytest

from config import DEFAULT_RULES, OPEN_INTERVAL_END, PARAMETER_DEFAULTS
from errors import ConfigurationError, ValidationError
from store import SimGuardStore

SECONDS_PER_DAY = 24 * 60 * 60


# ─── Parameters ──────────────────────────────────────────────────────

def test_defaults_are_seeded(store):
    for name, value in PARAMETER_DEFAULTS.items():
        assert store.get_parameter(name, -1) == value


def test_unknown_parameter_returns_caller_default(store):
    assert store.get_parameter("NO_SUCH_PARAMETER", 17) == 17


def test_set_parameter_overwrites(store):
    store.set_parameter("TOP_N", 7)
    assert store.get_parameter("TOP_N", 5) == 7


def test_seeding_does_not_clobber_existing_values(tmp_path, clock):
    db = str(tmp_path / "simguard.db")
    first = SimGuardStore(db, clock=clock)
    first.set_parameter("TOP_N", 9)
    first.close()

    second = SimGuardStore(db, clock=clock)
    assert second.get_parameter("TOP_N", 5) == 9
    assert len(second.get_rule_rows("SIMBOX")) == len(DEFAULT_RULES)
    second.close()


# ─── RegisterDevice ──────────────────────────────────────────────────

def test_register_device_opens_dwell_record(store, clock):
    store.register_device(7, 3, clock.now)
    device = store.get_device(7)

    assert device["device"]["current_location"] == 3
    assert device["device"]["history"] == "3,00:"
    assert device["device"]["last6"] == "3,00:"
    assert len(device["dwell_history"]) == 1
    assert device["dwell_history"][0]["to_ts"] == OPEN_INTERVAL_END


def test_reregistering_replaces_prior_state(store, clock):
    store.register_device(7, 3, clock.now - 30 * SECONDS_PER_DAY)
    store.report_location_change(7, 5)
    store.report_activity(7, clock.now, 30, "out", 8, "E")
    store.report_activity(7, clock.now, 30, "in", 9, "E")

    store.register_device(7, 9, clock.now)

    assert store.device_count() == 1
    device = store.get_device(7)
    assert device["device"]["current_location"] == 9
    assert device["device"]["history"] == "9,00:"
    assert len(device["dwell_history"]) == 1
    assert device["dwell_history"][0]["location_id"] == 9
    assert device["incoming_calls"] == []
    assert device["outgoing_calls"] == []


def test_register_device_at_unknown_location(store, clock):
    with pytest.raises(ValidationError):
        store.register_device(1, 99, clock.now)
    assert store.device_count() == 0


def test_register_accepts_datetime(store):
    from datetime import datetime, timezone
    store.register_device(1, 0, datetime(2023, 1, 1, tzinfo=timezone.utc))
    assert store.device_row(1)["first_seen"] == datetime(2023, 1, 1, tzinfo=timezone.utc).timestamp()


# ─── ReportLocationChange ────────────────────────────────────────────

def test_location_change_rolls_dwell_over(store, clock):
    store.register_device(1, 0, clock.now)
    clock.advance(5 * 60)
    store.report_location_change(1, 4)

    device = store.get_device(1)
    assert device["device"]["current_location"] == 4
    assert device["device"]["history"] == "0,00:4,05:"
    assert device["device"]["last3"] == "0,00:4,05:"

    closed, opened = device["dwell_history"]
    assert closed["location_id"] == 0
    assert closed["to_ts"] == pytest.approx(clock.now - 0.000001)
    assert opened["location_id"] == 4
    assert opened["from_ts"] == clock.now
    assert opened["to_ts"] == OPEN_INTERVAL_END


def test_last_windows_follow_history(store, clock):
    store.register_device(1, 0, clock.now)
    for location in range(1, 10):
        clock.advance(60)
        store.report_location_change(1, location)

    row = store.device_row(1)
    assert row["last3"] == "7,07:8,08:9,09:"
    assert row["last6"] == "4,04:5,05:6,06:7,07:8,08:9,09:"
    open_records = [r for r in store.get_device(1)["dwell_history"] if r["to_ts"] == OPEN_INTERVAL_END]
    assert len(open_records) == 1


def test_location_change_for_unknown_device(store):
    with pytest.raises(ValidationError, match="Device 42"):
        store.report_location_change(42, 1)


def test_location_change_to_unknown_location_changes_nothing(store, clock):
    store.register_device(1, 0, clock.now)
    with pytest.raises(ValidationError, match="Location 99"):
        store.report_location_change(1, 99)

    device = store.get_device(1)
    assert device["device"]["current_location"] == 0
    assert device["device"]["history"] == "0,00:"
    assert len(device["dwell_history"]) == 1


# ─── ReportActivity ──────────────────────────────────────────────────

def test_activity_records_call_and_dwell_counters(store, clock, old_device):
    store.report_activity(old_device, clock.now, 45, "out", 2, "E")
    store.report_activity(old_device, clock.now + 100, 15, "in", 3, "E")

    device = store.get_device(old_device)
    assert len(device["outgoing_calls"]) == 1
    call = device["outgoing_calls"][0]
    assert (call["counterparty_id"], call["duration"], call["end_time"]) == (2, 45, clock.now + 45)
    assert call["location_id"] == 0
    assert call["status_code"] == "E"

    dwell = device["dwell_history"][0]
    assert dwell["outgoing_call_count"] == 1
    assert dwell["outgoing_call_duration"] == 45
    assert dwell["incoming_call_count"] == 1
    assert dwell["incoming_call_duration"] == 15


def test_rereported_call_is_idempotent(store, clock, old_device):
    store.report_activity(old_device, clock.now, 45, "out", 2, "E")
    store.report_activity(old_device, clock.now, 45, "out", 2, "E")
    store.report_activity(old_device, clock.now, 50, "out", 2, "E")

    device = store.get_device(old_device)
    assert len(device["outgoing_calls"]) == 1
    assert device["outgoing_calls"][0]["duration"] == 50
    dwell = device["dwell_history"][0]
    assert dwell["outgoing_call_count"] == 1
    assert dwell["outgoing_call_duration"] == 50


def test_same_start_different_counterparty_is_a_new_call(store, clock, old_device):
    store.report_activity(old_device, clock.now, 10, "out", 2, "E")
    store.report_activity(old_device, clock.now, 10, "out", 3, "E")
    assert len(store.get_device(old_device)["outgoing_calls"]) == 2


def test_activity_for_unknown_device(store, clock):
    with pytest.raises(ValidationError):
        store.report_activity(5, clock.now, 10, "out", 2, "E")


def test_activity_with_bad_direction(store, clock, old_device):
    with pytest.raises(ValidationError, match="sideways"):
        store.report_activity(old_device, clock.now, 10, "sideways", 2, "E")


def test_missing_rule_set_aborts_activity_without_writes(store, clock, old_device):
    store.replace_rule_set("SIMBOX", [])
    with pytest.raises(ConfigurationError):
        store.report_activity(old_device, clock.now, 10, "out", 2, "E")

    device = store.get_device(old_device)
    assert device["outgoing_calls"] == []
    assert device["dwell_history"][0]["outgoing_call_count"] == 0

    # Nothing was cached, so the next event reloads
    store.replace_rule_set("SIMBOX", DEFAULT_RULES)
    result = store.report_activity(old_device, clock.now, 10, "out", 2, "E")
    assert result.scored


def test_evaluation_failure_rolls_back_the_event(store, clock, old_device):
    store.replace_rule_set("SIMBOX", [("broken", 1, [("no_such_fact", "==", 1)])])
    with pytest.raises(ConfigurationError, match="no_such_fact"):
        store.report_activity(old_device, clock.now, 10, "out", 2, "E")

    device = store.get_device(old_device)
    assert device["outgoing_calls"] == []
    assert device["dwell_history"][0]["outgoing_call_count"] == 0


# ─── Ledger reads ────────────────────────────────────────────────────

def test_call_summary_bounds_the_window(store, clock, old_device):
    start = clock.now - 600
    store.report_activity(old_device, start, 30, "out", 2, "E")
    store.report_activity(old_device, start + 200, 40, "out", 3, "E")
    store.report_activity(old_device, clock.now - 4 * 3600, 99, "out", 4, "E")

    summary = store.call_summary(old_device, "out", clock.now - 3 * 3600)
    assert summary.first_start == start
    assert summary.last_end == start + 240
    assert summary.total_duration == 70
    assert summary.count == 2


def test_call_summary_without_calls_is_none(store, clock, old_device):
    assert store.call_summary(old_device, "in", clock.now - 3600) is None


def test_counterparty_counts_busiest_first(store, clock, old_device):
    for i, counterparty in enumerate([5, 3, 5, 4, 3, 5]):
        store.report_activity(old_device, clock.now - 100 + i, 10, "out", counterparty, "E")

    assert store.counterparty_counts(old_device, clock.now - 3600) == [(5, 3), (3, 2), (4, 1)]


def test_window_totals_use_recent_dwell_records(store, clock, old_device):
    store.report_activity(old_device, clock.now, 10, "out", 2, "E")
    clock.advance(4 * 3600)
    store.report_location_change(old_device, 1)
    store.report_activity(old_device, clock.now, 20, "in", 3, "E")

    totals = store.window_totals(old_device, clock.now - 3 * 3600)
    assert totals == {
        "incoming_call_count": 1,
        "outgoing_call_count": 0,
        "incoming_call_duration": 20,
        "outgoing_call_duration": 0,
    }


def test_device_status_summary(store, clock):
    for device_id in range(3):
        store.register_device(device_id, 0, clock.now)
    store.flag_device(1, "suspiciously_moving_device", 60)

    assert store.device_status_summary([0, 1, 2]) == {
        "not_suspected": 2,
        "suspiciously_moving_device": 1,
    }
    assert store.suspected_device_summary() == {"suspiciously_moving_device": 1}


def test_device_status_summary_handles_large_id_lists(store, clock):
    store.register_device(1, 0, clock.now)
    assert store.device_status_summary(range(2000)) == {"not_suspected": 1}


def test_get_device_top_counterparties(store, clock, old_device):
    store.report_activity(old_device, clock.now - 60, 10, "out", 2, "E")
    store.report_activity(old_device, clock.now - 30, 10, "out", 2, "E")
    store.report_activity(old_device, clock.now - 2 * SECONDS_PER_DAY, 10, "out", 3, "E")

    top = store.get_device(old_device)["top_counterparties"]
    assert top == [{"counterparty_id": 2, "how_many": 2}]
