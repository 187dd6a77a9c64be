"""도착 추론 엔진 테스트: 상태 전이, 중복 억제, 정류소 단위 조회, 수집기 수명주기."""

import threading
from dataclasses import replace

import pytest
from prometheus_client import REGISTRY

import store
from collector import (
    ArrivalTracker,
    Collector,
    DuplicateGuard,
    EtaSample,
    SinkError,
    TickDeps,
    TrackedPair,
    eta_seconds_of,
    match_route,
    pairs_from_targets,
    run_one_tick,
    store_sink,
)

PAIR = TrackedPair(
    route_id="233000031",
    route_label="7770",
    stop_id="228000710",
    stop_label="강남역",
    aux_stop_code="22345",
    owner="u1",
)
OTHER_PAIR = TrackedPair(
    route_id="200000115",
    route_label="M4102",
    stop_id="228000710",
    stop_label="강남역",
    aux_stop_code="22345",
    owner="u1",
)


def row(route_id="233000031", name="7770", sec=None, plate=None):
    return {
        "routeId": route_id,
        "routeName": name,
        "predictTimeSec1": sec,
        "predictTime1": sec // 60 if sec is not None else None,
        "plateNo1": plate,
    }


class FakeFeed:
    """정류소별 응답을 지정해 두는 업스트림 대역."""

    def __init__(self):
        self.responses = {}
        self.calls = []

    def set_eta(self, pair, sec, plate=None):
        rows = [r for r in self.responses.get(pair.stop_id, []) if r["routeId"] != pair.route_id]
        if sec is not None:
            rows.append(row(pair.route_id, pair.route_label, sec, plate))
        self.responses[pair.stop_id] = rows

    def __call__(self, stop_id, aux_code):
        self.calls.append((stop_id, aux_code))
        value = self.responses.get(stop_id, [])
        if isinstance(value, Exception):
            raise value
        return value


class FakeSink:
    def __init__(self, fail=False):
        self.events = []
        self.fail = fail

    def __call__(self, event):
        if self.fail:
            raise SinkError("insert failed")
        self.events.append(event)
        return str(len(self.events))


@pytest.fixture
def feed():
    return FakeFeed()


@pytest.fixture
def sink():
    return FakeSink()


def make_deps(feed, sink, clock, pairs=(PAIR,), enabled=lambda: True):
    return TickDeps(
        fetch_arrivals=feed,
        list_pairs=lambda: list(pairs),
        log_arrival=sink,
        is_enabled=enabled,
        clock=clock,
    )


# ── 노선 매칭 ─────────────────────────────────────────────────
def test_match_route_prefers_route_id_over_label():
    arrivals = [row("999", "7770", 50), row("233000031", "다른이름", 300)]
    assert match_route(arrivals, PAIR)["predictTimeSec1"] == 300


def test_match_route_coerces_numeric_route_id():
    arrivals = [{"routeId": 233000031, "routeName": "x", "predictTimeSec1": 70}]
    assert match_route(arrivals, PAIR)["predictTimeSec1"] == 70


def test_match_route_falls_back_to_label_then_whitespace_free_label():
    pair = TrackedPair("", "M 4102", "s1", "정류소")
    assert match_route([row("1", "M 4102", 10)], pair)["routeName"] == "M 4102"
    assert match_route([row("1", "M4102", 20)], pair)["predictTimeSec1"] == 20
    assert match_route([row("1", "4102", 20)], pair) is None


def test_eta_seconds_of_prefers_seconds_and_rejects_negative():
    assert eta_seconds_of({"predictTimeSec1": 95, "predictTime1": 2}) == 95
    assert eta_seconds_of({"predictTime1": 3}) == 180
    assert eta_seconds_of({"predictTimeSec1": -5}) is None
    assert eta_seconds_of({}) is None
    assert eta_seconds_of(None) is None


# ── 상태 전이 ─────────────────────────────────────────────────
def sample(sec, at, pair=PAIR):
    return EtaSample(pair=pair, eta_seconds=sec, observed_at=at)


def test_idle_stays_idle_above_threshold():
    tracker = ArrivalTracker()
    for i, sec in enumerate([900, 600, 181, 400]):
        assert tracker.observe(sample(sec, 1000 + i * 60)) is None
    assert tracker.pending == {}
    assert tracker.sweep(set(), 10_000) == []


def test_threshold_is_inclusive():
    tracker = ArrivalTracker()
    tracker.observe(sample(180, 1000))
    assert tracker.is_imminent(PAIR.key)


def test_supersede_resolves_exactly_once():
    tracker = ArrivalTracker()
    assert tracker.observe(sample(120, 1000)) is None
    resolved = tracker.observe(sample(400, 1060))
    assert resolved is not None
    assert resolved.last_known_eta == 120
    assert resolved.first_observed_imminent_at == 1000
    assert tracker.pending == {}
    assert tracker.observe(sample(380, 1120)) is None


def test_imminent_refresh_keeps_first_observation():
    tracker = ArrivalTracker()
    tracker.observe(sample(170, 1000))
    tracker.observe(sample(90, 1060))
    pending = tracker.pending[PAIR.key]
    assert pending.first_observed_imminent_at == 1000
    assert pending.last_updated_at == 1060
    assert pending.last_known_eta == 90


def test_null_sample_does_not_resolve_or_refresh():
    tracker = ArrivalTracker()
    tracker.observe(sample(60, 990))
    assert tracker.observe(sample(None, 1000)) is None
    pending = tracker.pending[PAIR.key]
    assert pending.last_updated_at == 990
    assert pending.last_known_eta == 60


def test_sweep_resolves_only_after_stale_window():
    tracker = ArrivalTracker(stale_after_sec=60)
    tracker.observe(sample(60, 1000))
    assert tracker.sweep(set(), 1059) == []
    assert tracker.sweep(set(), 1060) == []
    resolved = tracker.sweep(set(), 1061)
    assert [p.pair for p in resolved] == [PAIR]
    assert tracker.pending == {}


def test_sweep_skips_pairs_refreshed_this_tick():
    tracker = ArrivalTracker(stale_after_sec=60)
    tracker.observe(sample(60, 1000))
    assert tracker.sweep({PAIR.key}, 5000) == []


def test_duplicate_guard_window():
    guard = DuplicateGuard(window_sec=180)
    assert guard.should_log("k", 1000)
    guard.mark_logged("k", 1000)
    assert not guard.should_log("k", 1179)
    assert guard.should_log("k", 1180)
    assert guard.should_log("other", 1001)


# ── 1회 수집 ─────────────────────────────────────────────────
def test_tick_sequence_logs_once_on_supersede(feed, sink, clock):
    tracker, guard = ArrivalTracker(), DuplicateGuard()
    deps = make_deps(feed, sink, clock)
    logged_at_tick = []
    for i, sec in enumerate([190, 150, 95, 40, None, 500]):
        feed.set_eta(PAIR, sec)
        result = run_one_tick(deps, tracker, guard)
        if result.logged:
            logged_at_tick.append(i)
        clock.advance(30)
    assert logged_at_tick == [5]
    assert len(sink.events) == 1
    assert sink.events[0].reason == "superseded"
    assert sink.events[0].derived_from.last_known_eta == 40


def test_tick_stale_resolution(feed, sink, clock):
    tracker, guard = ArrivalTracker(), DuplicateGuard()
    deps = make_deps(feed, sink, clock)
    feed.set_eta(PAIR, 60)
    run_one_tick(deps, tracker, guard)

    feed.set_eta(PAIR, None)
    for step in (20, 20, 19):
        clock.advance(step)
        assert run_one_tick(deps, tracker, guard).logged == 0

    clock.advance(2)
    result = run_one_tick(deps, tracker, guard)
    assert result.logged == 1
    assert sink.events[0].reason == "stale"
    assert tracker.pending == {}


def test_no_duplicate_within_window(feed, sink, clock):
    tracker, guard = ArrivalTracker(), DuplicateGuard(window_sec=180)
    deps = make_deps(feed, sink, clock)
    for sec in (120, 400, 100, 500):
        feed.set_eta(PAIR, sec)
        run_one_tick(deps, tracker, guard)
        clock.advance(60)
    assert len(sink.events) == 1

    for sec in (100, 500):
        feed.set_eta(PAIR, sec)
        result = run_one_tick(deps, tracker, guard)
        clock.advance(60)
    assert result.logged == 1
    assert len(sink.events) == 2
    assert sink.events[1].logged_at - sink.events[0].logged_at >= 180


def test_suppressed_candidate_is_discarded(feed, sink, clock):
    tracker, guard = ArrivalTracker(), DuplicateGuard()
    deps = make_deps(feed, sink, clock)
    guard.mark_logged(PAIR.key, clock())
    feed.set_eta(PAIR, 100)
    run_one_tick(deps, tracker, guard)
    clock.advance(30)
    feed.set_eta(PAIR, 600)
    result = run_one_tick(deps, tracker, guard)
    assert result.suppressed == 1
    assert result.logged == 0
    assert tracker.pending == {}


def test_one_fetch_per_stop(feed, sink, clock):
    tracker, guard = ArrivalTracker(), DuplicateGuard()
    deps = make_deps(feed, sink, clock, pairs=(PAIR, OTHER_PAIR))
    feed.set_eta(PAIR, 100)
    feed.set_eta(OTHER_PAIR, 900)
    result = run_one_tick(deps, tracker, guard)
    assert feed.calls == [("228000710", "22345")]
    assert result.stops_checked == 1
    assert result.pairs_checked == 2
    assert tracker.is_imminent(PAIR.key)
    assert not tracker.is_imminent(OTHER_PAIR.key)


def test_fetch_failure_is_contained_per_stop(feed, sink, clock):
    far_pair = TrackedPair("1", "9", "stop-b", "다른 정류소", owner="u1")
    tracker, guard = ArrivalTracker(), DuplicateGuard()
    deps = make_deps(feed, sink, clock, pairs=(PAIR, far_pair))
    feed.set_eta(PAIR, 100)
    feed.responses["stop-b"] = RuntimeError("timeout")
    result = run_one_tick(deps, tracker, guard)
    assert tracker.is_imminent(PAIR.key)
    assert len(result.errors) == 1
    assert "stop-b" in result.errors[0]


def test_sink_failure_drops_candidate_without_marking_guard(feed, clock):
    failing = FakeSink(fail=True)
    tracker, guard = ArrivalTracker(), DuplicateGuard()
    deps = make_deps(feed, failing, clock)
    feed.set_eta(PAIR, 100)
    run_one_tick(deps, tracker, guard)
    clock.advance(30)
    feed.set_eta(PAIR, 700)
    result = run_one_tick(deps, tracker, guard)
    assert result.logged == 0
    assert result.errors
    assert tracker.pending == {}
    assert guard.should_log(PAIR.key, clock())


def test_disabled_or_empty_tick_is_skipped(feed, sink, clock):
    tracker, guard = ArrivalTracker(), DuplicateGuard()
    result = run_one_tick(make_deps(feed, sink, clock, enabled=lambda: False), tracker, guard)
    assert result.skipped and result.reason == "disabled"
    result = run_one_tick(make_deps(feed, sink, clock, pairs=()), tracker, guard)
    assert result.skipped and result.reason == "no_targets"
    assert feed.calls == []


def test_inactive_pairs_are_ignored(feed, sink, clock):
    inactive = TrackedPair("1", "9", "stop-x", "정류소", active=False)
    result = run_one_tick(make_deps(feed, sink, clock, pairs=(inactive,)), ArrivalTracker(), DuplicateGuard())
    assert result.skipped
    assert feed.calls == []


def test_deactivated_pair_pending_is_dropped_without_logging(feed, sink, clock):
    pairs = [PAIR, OTHER_PAIR]
    tracker, guard = ArrivalTracker(), DuplicateGuard()
    deps = make_deps(feed, sink, clock, pairs=pairs)
    feed.set_eta(PAIR, 100)
    feed.set_eta(OTHER_PAIR, 900)
    run_one_tick(deps, tracker, guard)
    assert tracker.is_imminent(PAIR.key)

    pairs[0] = replace(PAIR, active=False)
    clock.advance(120)
    result = run_one_tick(deps, tracker, guard)
    assert result.logged == 0
    assert tracker.pending == {}
    assert sink.events == []


def test_deactivate_then_reactivate_does_not_log_old_arrival(feed, sink, clock):
    pairs = [PAIR]
    tracker, guard = ArrivalTracker(), DuplicateGuard()
    deps = make_deps(feed, sink, clock, pairs=pairs)
    feed.set_eta(PAIR, 100)
    run_one_tick(deps, tracker, guard)

    pairs[0] = replace(PAIR, active=False)
    clock.advance(30)
    result = run_one_tick(deps, tracker, guard)
    assert result.skipped and result.reason == "no_targets"
    assert tracker.pending == {}

    pairs[0] = PAIR
    clock.advance(3600)
    feed.set_eta(PAIR, 600)
    result = run_one_tick(deps, tracker, guard)
    assert result.logged == 0
    assert sink.events == []


def test_tracker_retain_returns_dropped_keys():
    tracker = ArrivalTracker()
    tracker.observe(sample(100, 0))
    tracker.observe(sample(100, 0, pair=OTHER_PAIR))
    assert tracker.retain({OTHER_PAIR.key}) == [PAIR.key]
    assert list(tracker.pending) == [OTHER_PAIR.key]


# ── 수집기 ───────────────────────────────────────────────────
def test_collector_disable_clears_pending(feed, sink, clock):
    worker = Collector(make_deps(feed, sink, clock))
    feed.set_eta(PAIR, 100)
    worker.tick()
    assert worker.tracker.is_imminent(PAIR.key)

    worker.stop()
    assert worker.tracker.pending == {}

    clock.advance(600)
    feed.set_eta(PAIR, None)
    result = worker.tick()
    assert result.logged == 0
    assert sink.events == []


def test_collector_skips_reentrant_tick(sink, clock):
    entered, release = threading.Event(), threading.Event()

    def slow_fetch(stop_id, aux_code):
        entered.set()
        release.wait(5)
        return [row(sec=100)]

    worker = Collector(make_deps(slow_fetch, sink, clock))
    runner = threading.Thread(target=worker.tick)
    runner.start()
    assert entered.wait(5)

    second = worker.tick()
    assert second.skipped and second.reason == "busy"

    release.set()
    runner.join(5)
    assert worker.tracker.is_imminent(PAIR.key)
    assert not worker.collecting


def test_collector_stop_discards_in_flight_tick(sink, clock):
    entered, release = threading.Event(), threading.Event()
    results = []

    def slow_fetch(stop_id, aux_code):
        entered.set()
        release.wait(5)
        return [row(sec=100)]

    worker = Collector(make_deps(slow_fetch, sink, clock))
    runner = threading.Thread(target=lambda: results.append(worker.tick()))
    runner.start()
    assert entered.wait(5)
    worker.stop()
    release.set()
    runner.join(5)

    assert results[0].skipped and results[0].reason == "cancelled"
    assert worker.tracker.pending == {}


def test_collector_start_and_stop_timer(feed, sink, clock):
    worker = Collector(make_deps(feed, sink, clock), interval_sec=3600)
    assert worker.start(run_immediately=False)
    assert worker.running
    assert not worker.start(run_immediately=False)
    assert worker.stop()
    assert not worker.running
    assert not worker.stop()


def test_collector_snapshot_restore_roundtrip(feed, sink, clock):
    worker = Collector(make_deps(feed, sink, clock))
    feed.set_eta(PAIR, 100, plate="경기70아1234")
    worker.tick()
    worker.guard.mark_logged(OTHER_PAIR.key, clock())
    state = worker.snapshot()

    revived = Collector(make_deps(feed, sink, clock))
    revived.restore(state)
    pending = revived.tracker.pending[PAIR.key]
    assert pending.pair == PAIR
    assert pending.plate_no == "경기70아1234"
    assert not revived.guard.should_log(OTHER_PAIR.key, clock())

    clock.advance(300)
    feed.set_eta(PAIR, None)
    result = revived.tick()
    assert result.logged == 1
    assert sink.events[0].reason == "stale"


def test_restore_ignores_broken_entries(feed, sink, clock):
    worker = Collector(make_deps(feed, sink, clock))
    worker.restore({"pending": [{"pair": {"route_id": "1"}}], "last_logged": {}})
    assert worker.tracker.pending == {}


def test_restore_skips_malformed_last_logged(feed, sink, clock):
    worker = Collector(make_deps(feed, sink, clock))
    worker.restore({"pending": [], "last_logged": {PAIR.key: "yesterday", OTHER_PAIR.key: 1000.0}})
    assert worker.guard.last_logged == {OTHER_PAIR.key: 1000.0}

    worker.restore({"pending": [], "last_logged": ["not", "a", "map"]})
    assert worker.guard.last_logged == {}


def test_skipped_tick_on_idle_collector_exports_no_pending_gauge(feed, sink, clock):
    worker = Collector(make_deps(feed, sink, clock, enabled=lambda: False), name="idle-owner")
    assert worker.tick().skipped
    worker.stop()
    assert REGISTRY.get_sample_value("busta_pending_arrivals", {"collector": "idle-owner"}) is None


def test_annotations_are_not_evaluated_at_import():
    assert run_one_tick.__annotations__["write_lock"] == "threading.Lock | None"


# ── 저장소 연동 ───────────────────────────────────────────────
def test_store_sink_writes_arrival_log(feed, clock):
    deps = TickDeps(
        fetch_arrivals=feed,
        list_pairs=lambda: pairs_from_targets(store.list_active_targets(["u1"])),
        log_arrival=store_sink,
        clock=clock,
    )
    store.add_target("u1", "233000031", "7770", "228000710", "강남역", ars_id="22345")
    tracker, guard = ArrivalTracker(), DuplicateGuard()

    feed.set_eta(PAIR, 100, plate="경기70아1234")
    run_one_tick(deps, tracker, guard)
    clock.advance(60)
    feed.set_eta(PAIR, 800)
    result = run_one_tick(deps, tracker, guard)

    assert result.logged == 1
    logs = store.list_arrival_logs("u1", days=36500)
    assert len(logs) == 1
    assert logs[0]["bus_no"] == "7770"
    assert logs[0]["plate_no"] == "경기70아1234"
