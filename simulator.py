"""
simulator.py

Drives a population of simulated phones through cell moves and calls, with a
small subset captured in a simbox that launders international calls through
them. Activity is sent fire-and-forget to the store; every STATS_INTERVAL_S
the driver drains outstanding calls, runs cohort detection and logs a summary.

Components:
  - probe_for: bounded random search for a free resource
  - AsyncStoreClient: fire-and-forget store calls with drain()
  - ContactRouter: bounded "popular numbers" call-target model
  - Device: one phone (location, history, busy state)
  - Box: the simbox (fixed capacity, camouflage calls, fan-out relocation)
  - PopulationSimulator: the throttled driving loop

Everything on Device and Box is mutated only by the driving thread.
"""
import random
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, TypeVar

import history_codec
from cohort import CohortDetector
from config import (
    INCOMING, OUTGOING, CALL_STATUS, USER_COUNT, CELL_COUNT, DURATION_SECONDS,
    TARGET_OPS_PER_MS, MAX_CALL_SECONDS, STORE_WORKERS, RANDOM_SEED, DB_PATH,
    RANDOM_SEARCH_ATTEMPTS, INITIAL_MOVES, STATS_INTERVAL_S,
    BOX_CAPACITY, BOX_JOIN_ODDS, BOX_MOVE_INTERVAL_MIN, FAKE_CALL_PCT,
    FAKE_CALL_SECONDS, PROJECTED_PROFIT_PER_MINUTE,
    POPULAR_NUMBER_LIST_SIZE, POPULAR_NUMBER_PCT, CELL_MOVE_ODDS,
    MIN_DWELL_BEFORE_MOVE_MIN, ONE_YEAR_DAYS, BOX_SIM_MAX_AGE_DAYS,
    PARAMETER_DEFAULTS, get_logger,
)
from errors import SimGuardError, StateInconsistency
from store import SimGuardStore

logger = get_logger("simulator")

T = TypeVar("T")

SECONDS_PER_DAY = 24 * 60 * 60


# ─── Probing ─────────────────────────────────────────────────────────

def probe_for(population: Sequence[T], predicate: Callable[[T], bool],
              max_probes: int, rng: random.Random) -> Optional[T]:
    """Draw up to ``max_probes`` random members, return the first that passes.

    Returns None when every probe misses; callers treat that as "nothing
    available right now" and move on instead of scanning exhaustively.
    """
    if not population:
        return None
    for _ in range(max_probes):
        candidate = population[rng.randrange(len(population))]
        if predicate(candidate):
            return candidate
    return None


# ─── Store client ────────────────────────────────────────────────────

class AsyncStoreClient:
    """Fire-and-forget calls against the store, with a drain barrier.

    Failures of individual operations are logged and counted by the
    completion callback. Errors outside the SimGuard taxonomy are kept and
    re-raised by the next drain().
    """

    def __init__(self, store, max_workers: int = STORE_WORKERS):
        self.store = store
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="store")
        self._pending = set()
        self._lock = threading.Lock()
        self._unexpected = []
        self.error_counts = Counter()
        self.calls = 0

    def call(self, procedure: str, *args):
        future = self._pool.submit(getattr(self.store, procedure), *args)
        with self._lock:
            self._pending.add(future)
            self.calls += 1
        future.add_done_callback(self._complain_on_error)
        return future

    def _complain_on_error(self, future):
        # Record the outcome before releasing the future so drain() sees it
        exc = future.exception()
        with self._lock:
            if exc is not None:
                self.error_counts[type(exc).__name__] += 1
                if not isinstance(exc, SimGuardError):
                    self._unexpected.append(exc)
            self._pending.discard(future)

        if isinstance(exc, SimGuardError):
            logger.warning("Store call failed: %s", exc)
        elif exc is not None:
            logger.error("Unexpected store failure: %r", exc)

    def drain(self):
        """Block until every outstanding call has completed."""
        while True:
            with self._lock:
                pending = list(self._pending)
            if not pending:
                break
            wait(pending)

        with self._lock:
            unexpected, self._unexpected = self._unexpected, []
        if unexpected:
            raise unexpected[0]

    def close(self):
        try:
            self.drain()
        finally:
            self._pool.shutdown(wait=True)


# ─── Call targets ────────────────────────────────────────────────────

class ContactRouter:
    """Bounded, insertion-ordered list of numbers a device tends to call.

    Scanning from the front with a fixed pick chance per entry makes early
    entries far more likely, giving a skewed call distribution without a
    frequency table. The list only grows until it is full; it never reorders.
    """

    def __init__(self, owner_id: int, capacity: int = POPULAR_NUMBER_LIST_SIZE,
                 pick_pct: int = POPULAR_NUMBER_PCT):
        self.owner_id = owner_id
        self.capacity = capacity
        self.pick_pct = pick_pct
        self.popular = []

    def __len__(self):
        return len(self.popular)

    def _remember(self, number: int):
        if len(self.popular) < self.capacity and number != self.owner_id:
            self.popular.append(number)

    def next_target(self, rng: random.Random, population_size: int,
                    excluded: Callable[[int], bool]) -> Optional[int]:
        """Pick the next number to call, or None if no eligible number turns up."""
        for number in self.popular:
            if rng.randrange(100) < self.pick_pct:
                return number

        number = probe_for(
            range(population_size),
            lambda n: n != self.owner_id and not excluded(n),
            population_size * 2, rng,
        )
        if number is not None:
            self._remember(number)
        return number

    def note_caller(self, caller_id: int):
        """The first people to call us become people we call."""
        self._remember(caller_id)


# ─── Devices ─────────────────────────────────────────────────────────

class Device:
    """A simulated phone on the network."""

    def __init__(self, device_id: int, location_id: int, now: float, created_at: Optional[float] = None):
        self.device_id = device_id
        self.location_id = location_id
        self.created_at = now if created_at is None else created_at
        self.last_move = now
        self.busy_until = 0.0
        self.history = history_codec.append(None, location_id, now)
        self.router = ContactRouter(device_id)

    def __repr__(self):
        return f"Device({self.device_id}, location={self.location_id})"

    @property
    def last3(self) -> str:
        return history_codec.last_n(self.history, 3)

    @property
    def last6(self) -> str:
        return history_codec.last_n(self.history, 6)

    def is_busy(self, now: float) -> bool:
        return self.busy_until >= now

    def registration_params(self) -> tuple:
        return (self.device_id, self.location_id, self.created_at)

    def move_to(self, location_id: int, now: float) -> tuple:
        """Change location and return the params for a location-change report."""
        self.location_id = location_id
        self.last_move = now
        self.history = history_codec.append(self.history, location_id, now)
        return (self.device_id, location_id)

    def in_location_for(self, minutes: float, now: float) -> bool:
        return self.last_move + minutes * 60 < now

    def make_call(self, callee: "Device", duration_s: int, client: AsyncStoreClient, now: float):
        """Call ``callee``. Both ends are busy for ``duration_s``; both legs are reported."""
        self.busy_until = now + duration_s
        callee.record_being_called(self.device_id, duration_s, now)

        client.call("report_activity", self.device_id, now, duration_s, OUTGOING,
                    callee.device_id, CALL_STATUS)
        client.call("report_activity", callee.device_id, now, duration_s, INCOMING,
                    self.device_id, CALL_STATUS)

    def record_being_called(self, caller_id: int, duration_s: int, now: float):
        self.busy_until = now + duration_s
        self.router.note_caller(caller_id)


# ─── Simbox ──────────────────────────────────────────────────────────

class Box:
    """A simbox: captive devices that route international calls as local ones."""

    def __init__(self, location_id: int, rng: random.Random, now: float,
                 capacity: int = BOX_CAPACITY, fake_call_pct: int = FAKE_CALL_PCT,
                 fake_call_seconds: int = FAKE_CALL_SECONDS):
        self.location_id = location_id
        self.rng = rng
        self.capacity = capacity
        self.fake_call_pct = fake_call_pct
        self.fake_call_seconds = fake_call_seconds
        self.self_calls = False
        self.last_move = now
        self.devices = {}

        self.fraud_calls = 0
        self.camouflage_calls = 0
        self.blocked_calls = 0
        self.fraud_seconds = 0

    def __len__(self):
        return len(self.devices)

    def __contains__(self, device_id) -> bool:
        return device_id in self.devices

    @property
    def is_full(self) -> bool:
        return len(self.devices) >= self.capacity

    @property
    def device_ids(self) -> list:
        return list(self.devices)

    @property
    def projected_revenue(self) -> float:
        return self.fraud_seconds * PROJECTED_PROFIT_PER_MINUTE / 60

    def add(self, device: Device) -> bool:
        """Capture ``device``; it is physically where the box is."""
        if self.is_full:
            return False
        device.location_id = self.location_id
        device.history = history_codec.append(None, self.location_id, device.last_move)
        self.devices[device.device_id] = device
        return True

    def free_device(self, now: float) -> Optional[Device]:
        owned = list(self.devices.values())
        return probe_for(owned, lambda d: not d.is_busy(now), len(owned) * 2, self.rng)

    def route_international_call(self, callee: Device, client: AsyncStoreClient,
                                 duration_s: int, now: float) -> bool:
        """Terminate an incoming international call on ``callee`` via one of our sims.

        Returns False when the call could not be placed (all sims busy).
        """
        if self.self_calls and self.rng.randrange(100) < self.fake_call_pct:
            return self._camouflage_call(client, now)

        device = self.free_device(now)
        if device is None:
            self.blocked_calls += 1
            return False

        self.fraud_calls += 1
        self.fraud_seconds += duration_s
        device.make_call(callee, duration_s, client, now)
        return True

    def _camouflage_call(self, client: AsyncStoreClient, now: float) -> bool:
        # Short call between two of our own sims so they look less one-sided
        callee = self.free_device(now)
        caller = self.free_device(now)

        if callee is None or caller is None or callee.device_id == caller.device_id:
            self.blocked_calls += 1
            return False

        self.camouflage_calls += 1
        caller.make_call(callee, self.fake_call_seconds, client, now)
        return True

    def not_moved_for(self, minutes: float, now: float) -> bool:
        return self.last_move + minutes * 60 < now

    def relocate(self, location_id: int, client: AsyncStoreClient, now: float) -> int:
        """Move every sim to ``location_id``.

        This is n independent location reports, not one transaction: if some
        fail, the rest still land and the box is left partly moved.
        """
        logger.info("Moving %d sims from cell %d to %d", len(self.devices), self.location_id, location_id)
        self.location_id = location_id
        for device in self.devices.values():
            client.call("report_location_change", *device.move_to(location_id, now))
        self.last_move = now
        return len(self.devices)

    def to_dict(self) -> dict:
        return {
            "location_id": self.location_id,
            "size": len(self.devices),
            "fraud_calls": self.fraud_calls,
            "camouflage_calls": self.camouflage_calls,
            "blocked_calls": self.blocked_calls,
            "fake_call_pct": self.fake_call_pct,
            "self_calls": self.self_calls,
            "fraud_seconds": self.fraud_seconds,
            "projected_revenue": round(self.projected_revenue, 2),
        }


# ─── Simulation ──────────────────────────────────────────────────────

@dataclass
class SimulationSummary:
    totals: dict = field(default_factory=dict)
    box: dict = field(default_factory=dict)
    largest_cohort: int = 0
    suspicion_reasons: dict = field(default_factory=dict)
    box_status: dict = field(default_factory=dict)
    store_errors: dict = field(default_factory=dict)
    watched: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "totals": self.totals,
            "box": self.box,
            "largest_cohort": self.largest_cohort,
            "suspicion_reasons": self.suspicion_reasons,
            "box_status": self.box_status,
            "store_errors": self.store_errors,
            "watched": self.watched,
        }


class PopulationSimulator:
    """Single-threaded driver for the whole population plus one box."""

    def __init__(self, store, user_count: int = USER_COUNT, cell_count: int = CELL_COUNT,
                 duration_s: float = DURATION_SECONDS, ops_per_ms: int = TARGET_OPS_PER_MS,
                 max_call_seconds: int = MAX_CALL_SECONDS, rng: Optional[random.Random] = None,
                 clock: Callable[[], float] = time.time, sleep: Callable[[float], None] = time.sleep,
                 client: Optional[AsyncStoreClient] = None, box_capacity: int = BOX_CAPACITY,
                 box_join_odds: int = BOX_JOIN_ODDS, stats_interval_s: float = STATS_INTERVAL_S):
        self.store = store
        self.user_count = user_count
        self.cell_count = cell_count
        self.duration_s = duration_s
        self.ops_per_ms = ops_per_ms
        self.max_call_seconds = max_call_seconds
        self.rng = rng or random.Random()
        self.clock = clock
        self.sleep = sleep
        self.client = client or AsyncStoreClient(store)
        self.box_join_odds = box_join_odds
        self.stats_interval_s = stats_interval_s

        self.devices = {}
        self._device_list = []
        self.box = Box(0, self.rng, clock(), capacity=box_capacity)
        self.detector = CohortDetector(store)

        self.period = Counter()
        self.totals = Counter()
        self.largest_cohort = 0
        self.watched_legit = None
        self.watched_box = None

    def _count(self, key: str, n: int = 1):
        self.period[key] += n
        self.totals[key] += n

    def device(self, device_id: int) -> Device:
        """Look up a tracked device; an unknown id is a driver bug."""
        try:
            return self.devices[device_id]
        except KeyError:
            raise StateInconsistency(f"Device {device_id} was never registered") from None

    # ── Setup ──

    def setup(self):
        """Create cells and devices, give everyone six moves, then drain."""
        now = self.clock()
        self.store.clear_cohorts()
        self.store.create_locations(self.cell_count)

        logger.info("Creating %d devices", self.user_count)
        for device_id in range(self.user_count):
            device = Device(device_id, device_id % self.cell_count, now)
            max_age_days = ONE_YEAR_DAYS

            if not self.box.is_full and self.rng.randrange(self.box_join_odds) == 0:
                max_age_days = BOX_SIM_MAX_AGE_DAYS
                self.box.add(device)

            device.created_at = now - self.rng.uniform(0, max_age_days * SECONDS_PER_DAY)
            self.devices[device_id] = device
            self._device_list.append(device)
            self.client.call("register_device", *device.registration_params())

        self.client.drain()

        logger.info("Moving %d devices %d times...", self.user_count, INITIAL_MOVES)
        for _ in range(INITIAL_MOVES):
            for device in self._device_list:
                self.client.call("report_location_change",
                                 *device.move_to(self.rng.randrange(self.cell_count), now))
                self._count("good_moves")

        self.client.drain()
        logger.info("Created %d devices, %d are in a sim box", self.user_count, len(self.box))

        self.watched_legit = next((d.device_id for d in self._device_list if d.device_id not in self.box), None)
        self.watched_box = next(iter(self.box.device_ids), None)

    # ── Selection ──

    def free_legit_device(self, now: float) -> Optional[Device]:
        return probe_for(
            self._device_list,
            lambda d: d.device_id not in self.box and not d.is_busy(now),
            RANDOM_SEARCH_ATTEMPTS, self.rng,
        )

    def callee_for(self, caller: Device, now: float) -> Optional[Device]:
        for _ in range(RANDOM_SEARCH_ATTEMPTS):
            target_id = caller.router.next_target(self.rng, self.user_count, self.box.__contains__)
            if target_id is None:
                return None
            callee = self.device(target_id)
            if not callee.is_busy(now):
                return callee
        return None

    # ── Loop ──

    def step(self, now: float) -> int:
        """One driver iteration. Returns how many store operations it issued."""
        caller = self.free_legit_device(now)
        callee = self.callee_for(caller, now) if caller else None

        if caller is None or callee is None:
            self._count("blocked")
            return 0

        ops = 0
        duration_s = self.rng.randrange(self.max_call_seconds)

        if self.box.route_international_call(callee, self.client, duration_s, now):
            self._count("box_calls")
            ops += 2
        elif (caller.in_location_for(MIN_DWELL_BEFORE_MOVE_MIN, now)
              and self.rng.randrange(CELL_MOVE_ODDS) == 0):
            self.client.call("report_location_change",
                             *caller.move_to(self.rng.randrange(self.cell_count), now))
            self._count("good_moves")
            ops += 1
        else:
            caller.make_call(callee, duration_s, self.client, now)
            self._count("good_calls")
            ops += 2

        # The box is in the back of a truck
        if self.box.not_moved_for(BOX_MOVE_INTERVAL_MIN, now):
            moved = self.box.relocate((self.box.location_id + 1) % self.cell_count, self.client, now)
            self._count("box_moves", moved)
            ops += moved

        return ops

    def _throttle(self, ops_this_slice: int) -> int:
        if ops_this_slice <= self.ops_per_ms:
            return ops_this_slice
        current_ms = int(self.clock() * 1000)
        while int(self.clock() * 1000) == current_ms:
            self.sleep(0.00005)
        return 0

    def barrier(self) -> SimulationSummary:
        """Drain, look for cohorts, refresh box settings and log a summary."""
        self.client.drain()

        if self.store.get_parameter("ENABLE_SUSPICIOUS_COHORT_DETECTION",
                                    PARAMETER_DEFAULTS["ENABLE_SUSPICIOUS_COHORT_DETECTION"]) == 1:
            report = self.detector.detect()
            self.largest_cohort = report.largest

        self.box.self_calls = self.store.get_parameter(
            "SIMBOX_CALLS_ITSELF", PARAMETER_DEFAULTS["SIMBOX_CALLS_ITSELF"]) == 1

        summary = self.summary()
        summary.watched = self.watched_devices()
        logger.info("Period: %s", dict(self.period))
        logger.info("Box: %s", summary.box)
        logger.info("Largest cohort: %d", summary.largest_cohort)
        logger.info("Suspicion reasons: %s", summary.suspicion_reasons)
        logger.info("Box status: %s", summary.box_status)
        for role, device in summary.watched.items():
            logger.info("Watched %s device: %s", role, device)
        self.period.clear()
        return summary

    def watched_devices(self) -> dict:
        """Store view of one known-good and one known-bad device."""
        watched = {}
        if self.watched_legit is not None:
            watched["legit"] = self.store.get_device(self.watched_legit)
        if self.watched_box is not None:
            watched["box"] = self.store.get_device(self.watched_box)
        return watched

    def summary(self) -> SimulationSummary:
        return SimulationSummary(
            totals=dict(self.totals),
            box=self.box.to_dict(),
            largest_cohort=self.largest_cohort,
            suspicion_reasons=self.store.suspected_device_summary(),
            box_status=self.store.device_status_summary(self.box.device_ids),
            store_errors=dict(self.client.error_counts),
        )

    def run(self) -> SimulationSummary:
        """Set up, drive until the duration elapses, and drain before returning."""
        try:
            self.setup()

            logger.info("Run started")
            start = self.clock()
            last_stats = start
            ops_this_slice = 0

            while self.clock() < start + self.duration_s:
                now = self.clock()
                ops_this_slice = self._throttle(ops_this_slice + self.step(now))

                if last_stats + self.stats_interval_s < self.clock():
                    self.barrier()
                    last_stats = self.clock()
        except BaseException:
            logger.info("Run stopped; draining")
            # The run error wins over anything the drain raises
            try:
                self.client.drain()
            except Exception:
                logger.exception("Drain failed while stopping")
            raise

        logger.info("Run finished; draining")
        self.client.drain()

        summary = self.summary()
        logger.info("done... %s", summary.totals)
        return summary


def main():
    rng = random.Random(int(RANDOM_SEED)) if RANDOM_SEED else random.Random()
    store = SimGuardStore(DB_PATH)
    logger.info("users=%d, tpMs=%d, durationSeconds=%d, cellCount=%d, maxCallSeconds=%d",
                USER_COUNT, TARGET_OPS_PER_MS, DURATION_SECONDS, CELL_COUNT, MAX_CALL_SECONDS)
    simulator = PopulationSimulator(store, rng=rng)
    try:
        simulator.run()
    finally:
        simulator.client.close()
        store.close()


if __name__ == "__main__":
    main()
