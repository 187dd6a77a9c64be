"""
버스 도착 추론 엔진.

정류소별 실시간 도착 예정 시간(ETA)을 주기적으로 샘플링하여
"곧 도착(Imminent)" 상태를 추적하고, 그 상태가 끝나는 시점을 도착으로 판정해 기록한다.

  Idle  --(eta <= 임계값)-->  Imminent
  Imminent --(eta <= 임계값)--> Imminent (갱신)
  Imminent --(eta > 임계값)--> Idle + 도착 기록 (다음 버스로 교체됨)
  Imminent --(eta 없음)--> Imminent (변화 없음)
  Imminent --(수집 종료 시 갱신 없이 STALE_AFTER_SEC 초과)--> Idle + 도착 기록
  Imminent --(추적 해제)--> Idle (기록 없음)

도착 기록은 DuplicateGuard 를 통과해야 하며, 기록 성공 후에만 가드 시각을 갱신한다.
호스트(앱 내 백그라운드 타이머, cron 스크립트)는 TickDeps 만 다르게 주입한다.
"""

from __future__ import annotations

import logging
import threading
import time as _time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable

from prometheus_client import Counter, Gauge

import config
import store

logger = logging.getLogger(__name__)

IMMINENT_THRESHOLD_SEC = config.ARRIVAL_IMMINENT_THRESHOLD_SEC
STALE_AFTER_SEC = config.ARRIVAL_STALE_AFTER_SEC
DUPLICATE_WINDOW_SEC = config.ARRIVAL_DUPLICATE_WINDOW_SEC
DEFAULT_INTERVAL_SEC = config.BG_COLLECTION_INTERVAL_SEC
MAX_FETCH_WORKERS = 4

COLLECTOR_TICKS = Counter(
    "busta_collector_ticks_total",
    "Collector ticks by outcome",
    ["outcome"],
)
ARRIVALS_LOGGED = Counter(
    "busta_arrivals_logged_total",
    "Arrival events written to the arrival log",
    ["reason"],
)
ARRIVALS_SUPPRESSED = Counter(
    "busta_arrivals_suppressed_total",
    "Arrival candidates dropped by the duplicate window",
)
PENDING_ARRIVALS = Gauge(
    "busta_pending_arrivals",
    "Pairs currently held in the imminent state",
    ["collector"],
)


class SinkError(RuntimeError):
    pass


# ── 데이터 모델 ───────────────────────────────────────────────
@dataclass(frozen=True)
class TrackedPair:
    """사용자가 추적하는 (노선, 정류소) 조합."""
    route_id: str
    route_label: str
    stop_id: str
    stop_label: str
    aux_stop_code: str | None = None  # 정류소 고유번호(arsId)
    active: bool = True
    owner: str = ""

    @property
    def key(self) -> str:
        return f"{self.owner}|{self.route_id}|{self.stop_id}"

    @property
    def stop_key(self) -> tuple[str, str]:
        return (self.stop_id, self.aux_stop_code or "")

    @classmethod
    def from_target(cls, target: dict) -> "TrackedPair":
        return cls(
            route_id=str(target.get("bus_id") or ""),
            route_label=str(target.get("bus_no") or ""),
            stop_id=str(target.get("station_id") or ""),
            stop_label=str(target.get("station_name") or ""),
            aux_stop_code=target.get("ars_id") or None,
            active=bool(target.get("is_active", True)),
            owner=str(target.get("user_id") or ""),
        )


@dataclass(frozen=True)
class EtaSample:
    pair: TrackedPair
    eta_seconds: int | None
    observed_at: float
    plate_no: str | None = None


@dataclass
class PendingArrival:
    pair: TrackedPair
    last_known_eta: int
    first_observed_imminent_at: float
    last_updated_at: float
    plate_no: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PendingArrival":
        return cls(
            pair=TrackedPair(**data["pair"]),
            last_known_eta=int(data["last_known_eta"]),
            first_observed_imminent_at=float(data["first_observed_imminent_at"]),
            last_updated_at=float(data["last_updated_at"]),
            plate_no=data.get("plate_no"),
        )


@dataclass(frozen=True)
class ArrivalEvent:
    pair: TrackedPair
    logged_at: float
    derived_from: PendingArrival
    reason: str  # "superseded" | "stale"

    @property
    def logged_at_dt(self) -> datetime:
        return datetime.fromtimestamp(self.logged_at, tz=timezone.utc)


@dataclass
class TickResult:
    skipped: bool = False
    reason: str | None = None
    stops_checked: int = 0
    pairs_checked: int = 0
    resolved: int = 0
    logged: int = 0
    suppressed: int = 0
    errors: list[str] = field(default_factory=list)
    events: list[ArrivalEvent] = field(default_factory=list)
    started_at: float = 0.0
    finished_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "skipped": self.skipped,
            "reason": self.reason,
            "stops_checked": self.stops_checked,
            "pairs_checked": self.pairs_checked,
            "resolved": self.resolved,
            "logged": self.logged,
            "suppressed": self.suppressed,
            "errors": list(self.errors),
            "events": [
                {
                    "bus_id": e.pair.route_id,
                    "bus_no": e.pair.route_label,
                    "station_id": e.pair.stop_id,
                    "station_name": e.pair.stop_label,
                    "reason": e.reason,
                    "logged_at": e.logged_at_dt.isoformat(),
                }
                for e in self.events
            ],
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class TickDeps:
    """호스트가 주입하는 외부 협력자."""
    fetch_arrivals: Callable[[str, str | None], list[dict]]
    list_pairs: Callable[[], Iterable[TrackedPair]]
    log_arrival: Callable[[ArrivalEvent], str]
    is_enabled: Callable[[], bool] = lambda: True
    clock: Callable[[], float] = _time.time
    max_workers: int = MAX_FETCH_WORKERS


# ── 노선 매칭 / ETA 샘플링 ────────────────────────────────────
def _strip_ws(text: str) -> str:
    return "".join(text.split())


def match_route(arrivals: list[dict], pair: TrackedPair) -> dict | None:
    """
    도착 목록에서 추적 노선을 찾는다.
    1) routeId 정확히 일치 2) 노선명 정확히 일치 3) 공백 제거 후 노선명 일치. 먼저 찾은 것이 우선.
    """
    route_id = str(pair.route_id or "")
    label = str(pair.route_label or "")
    if route_id:
        for row in arrivals:
            if str(row.get("routeId") or "") == route_id:
                return row
    if label:
        for row in arrivals:
            if str(row.get("routeName") or "") == label:
                return row
        compact = _strip_ws(label)
        for row in arrivals:
            if _strip_ws(str(row.get("routeName") or "")) == compact:
                return row
    return None


def eta_seconds_of(row: dict | None) -> int | None:
    if not row:
        return None
    seconds = row.get("predictTimeSec1")
    if seconds is None and row.get("predictTime1") is not None:
        try:
            seconds = int(row["predictTime1"]) * 60
        except (TypeError, ValueError):
            return None
    try:
        seconds = int(seconds)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


def sample_stop(
    fetch_arrivals: Callable[[str, str | None], list[dict]],
    stop_key: tuple[str, str],
    pairs: list[TrackedPair],
    clock: Callable[[], float] = _time.time,
) -> tuple[list[EtaSample], str | None]:
    """정류소 1곳을 1회 조회하고 해당 정류소의 모든 pair에 결과를 나눠준다. 예외를 올리지 않는다."""
    stop_id, aux_code = stop_key
    error = None
    try:
        arrivals = fetch_arrivals(stop_id, aux_code or None)
        if not isinstance(arrivals, list):
            raise TypeError(f"unexpected arrival payload: {type(arrivals).__name__}")
    except Exception as exc:  # 업스트림 장애는 이번 주기의 "정보 없음"으로 취급
        logger.warning("정류소 %s 도착 정보 조회 실패: %s", stop_id, exc)
        arrivals = []
        error = f"Station {stop_id}: {exc}"

    observed_at = clock()
    samples = []
    for pair in pairs:
        row = match_route(arrivals, pair)
        samples.append(
            EtaSample(
                pair=pair,
                eta_seconds=eta_seconds_of(row),
                observed_at=observed_at,
                plate_no=(row or {}).get("plateNo1") or None,
            )
        )
    return samples, error


# ── 상태 추적 ─────────────────────────────────────────────────
class ArrivalTracker:
    """pair별 Idle/Imminent 상태 머신. Imminent 인 pair만 pending 에 존재한다."""

    def __init__(
        self,
        threshold_sec: int = IMMINENT_THRESHOLD_SEC,
        stale_after_sec: float = STALE_AFTER_SEC,
    ):
        self.threshold_sec = threshold_sec
        self.stale_after_sec = stale_after_sec
        self.pending: dict[str, PendingArrival] = {}

    def is_imminent(self, key: str) -> bool:
        return key in self.pending

    def observe(self, sample: EtaSample) -> PendingArrival | None:
        """샘플 1개 반영. 다음 버스로 교체되어 해소된 pending 을 돌려준다."""
        key = sample.pair.key
        pending = self.pending.get(key)
        eta = sample.eta_seconds

        if eta is None:
            return None

        if eta <= self.threshold_sec:
            if pending is None:
                self.pending[key] = PendingArrival(
                    pair=sample.pair,
                    last_known_eta=eta,
                    first_observed_imminent_at=sample.observed_at,
                    last_updated_at=sample.observed_at,
                    plate_no=sample.plate_no,
                )
                logger.info(
                    "%s @ %s: %d초 남음 (추적 시작)",
                    sample.pair.route_label, sample.pair.stop_label, eta,
                )
            else:
                pending.last_known_eta = eta
                pending.last_updated_at = sample.observed_at
                if sample.plate_no:
                    pending.plate_no = sample.plate_no
            return None

        if pending is not None:
            logger.info(
                "%s @ %s: 다음 버스로 변경됨 (%d초) → 도착",
                sample.pair.route_label, sample.pair.stop_label, eta,
            )
            return self.pending.pop(key)
        return None

    def sweep(self, seen_keys: set[str], now: float) -> list[PendingArrival]:
        """이번 주기에 갱신되지 않았고 STALE_AFTER_SEC 를 넘긴 pending 을 해소한다."""
        resolved = []
        for key, pending in list(self.pending.items()):
            if key in seen_keys:
                continue
            if now - pending.last_updated_at > self.stale_after_sec:
                logger.info(
                    "%s @ %s: 정보 없음 → 도착",
                    pending.pair.route_label, pending.pair.stop_label,
                )
                resolved.append(self.pending.pop(key))
        return resolved

    def retain(self, keys: set[str]) -> list[str]:
        """keys 에 없는 pending 을 기록 없이 버린다. 버린 키 목록을 돌려준다."""
        dropped = [key for key in self.pending if key not in keys]
        for key in dropped:
            self.pending.pop(key, None)
        return dropped

    def clear(self) -> None:
        self.pending.clear()


class DuplicateGuard:
    """pair별 마지막 기록 시각. 창(window) 안의 재기록을 막는다."""

    def __init__(self, window_sec: float = DUPLICATE_WINDOW_SEC):
        self.window_sec = window_sec
        self.last_logged: dict[str, float] = {}

    def should_log(self, key: str, now: float) -> bool:
        last = self.last_logged.get(key)
        return last is None or now - last >= self.window_sec

    def mark_logged(self, key: str, now: float) -> None:
        self.last_logged[key] = now

    def prune(self, now: float) -> None:
        for key, ts in list(self.last_logged.items()):
            if now - ts >= self.window_sec:
                self.last_logged.pop(key, None)


# ── 이벤트 기록 ───────────────────────────────────────────────
def store_sink(event: ArrivalEvent) -> str:
    """도착 기록 테이블에 1건 append. 실패는 SinkError."""
    pair = event.pair
    try:
        row = store.insert_arrival_log(
            user_id=pair.owner,
            bus_id=pair.route_id,
            bus_no=pair.route_label,
            station_id=pair.stop_id,
            station_name=pair.stop_label,
            arrival_time=event.logged_at_dt,
            plate_no=event.derived_from.plate_no,
        )
    except store.StoreError as exc:
        raise SinkError(str(exc)) from exc
    return row["id"]


def pairs_from_targets(targets: Iterable[dict]) -> list[TrackedPair]:
    return [TrackedPair.from_target(t) for t in targets if t.get("is_active", True)]


# ── 1회 수집 ─────────────────────────────────────────────────
def run_one_tick(
    deps: TickDeps,
    tracker: ArrivalTracker,
    guard: DuplicateGuard,
    is_current: Callable[[], bool] = lambda: True,
    write_lock: threading.Lock | None = None,
) -> TickResult:
    """
    수집 1회.
    1) 설정 확인 2) 활성 pair 조회 3) 정류소별 그룹화 4) 정류소별 1회 조회(동시) 후 상태 반영
    5) 모든 조회가 끝난 뒤 stale 판정 6) 중복 가드를 통과한 후보만 기록
    """
    result = TickResult(started_at=deps.clock())

    if not deps.is_enabled():
        result.skipped, result.reason = True, "disabled"
        result.finished_at = deps.clock()
        return result

    pairs = [p for p in deps.list_pairs() if p.active]
    lock = write_lock or threading.Lock()

    # 비활성화/삭제된 pair 의 pending 은 도착으로 보지 않는다
    with lock:
        if is_current():
            for key in tracker.retain({p.key for p in pairs}):
                logger.info("추적 해제된 대상의 대기 상태 정리: %s", key)

    if not pairs:
        result.skipped, result.reason = True, "no_targets"
        result.finished_at = deps.clock()
        return result

    by_stop: dict[tuple[str, str], list[TrackedPair]] = {}
    for pair in pairs:
        by_stop.setdefault(pair.stop_key, []).append(pair)

    workers = max(1, min(deps.max_workers, len(by_stop)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="busta-fetch") as pool:
        futures = [
            pool.submit(sample_stop, deps.fetch_arrivals, stop_key, stop_pairs, deps.clock)
            for stop_key, stop_pairs in by_stop.items()
        ]
        outcomes = [f.result() for f in futures]

    result.stops_checked = len(by_stop)
    result.pairs_checked = len(pairs)

    candidates: list[tuple[PendingArrival, str]] = []
    with lock:
        if not is_current():
            result.skipped, result.reason = True, "cancelled"
            result.finished_at = deps.clock()
            return result

        seen: set[str] = set()
        for samples, error in outcomes:
            if error:
                result.errors.append(error)
            for sample in samples:
                resolved = tracker.observe(sample)
                if resolved is not None:
                    candidates.append((resolved, "superseded"))
                # eta 없는 샘플은 갱신이 아니므로 stale 판정 대상에 남긴다
                if sample.eta_seconds is not None and tracker.is_imminent(sample.pair.key):
                    seen.add(sample.pair.key)

        now = deps.clock()
        candidates.extend((p, "stale") for p in tracker.sweep(seen, now))

    result.resolved = len(candidates)
    for pending, reason in candidates:
        if not is_current():
            break
        key = pending.pair.key
        now = deps.clock()
        if not guard.should_log(key, now):
            logger.info("Skipped (duplicate): %s @ %s", pending.pair.route_label, pending.pair.stop_label)
            result.suppressed += 1
            ARRIVALS_SUPPRESSED.inc()
            continue
        event = ArrivalEvent(pair=pending.pair, logged_at=now, derived_from=pending, reason=reason)
        try:
            deps.log_arrival(event)
        except SinkError as exc:
            logger.error("도착 기록 실패: %s @ %s: %s", pending.pair.route_label, pending.pair.stop_label, exc)
            result.errors.append(f"Log {pending.pair.route_label}: {exc}")
            continue
        guard.mark_logged(key, now)
        result.logged += 1
        result.events.append(event)
        ARRIVALS_LOGGED.labels(reason=reason).inc()
        logger.info("Logged: %s @ %s (%s)", pending.pair.route_label, pending.pair.stop_label, reason)

    result.finished_at = deps.clock()
    return result


# ── 스케줄러 ──────────────────────────────────────────────────
class Collector:
    """
    호스트 1개(앱 프로세스의 사용자별 타이머, cron 실행 1회)에 대응하는 수집기.
    pending/중복 가드/타이머를 인스턴스가 소유한다.
    """

    def __init__(
        self,
        deps: TickDeps,
        interval_sec: float = DEFAULT_INTERVAL_SEC,
        name: str = "default",
        tracker: ArrivalTracker | None = None,
        guard: DuplicateGuard | None = None,
    ):
        self.deps = deps
        self.interval_sec = interval_sec
        self.name = name
        self.tracker = tracker or ArrivalTracker()
        self.guard = guard or DuplicateGuard()
        self.last_result: TickResult | None = None
        self.last_collected_at: float | None = None
        self._state_lock = threading.Lock()
        self._collecting = False
        self._reports_pending = False
        self._generation = 0
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._stop_event is not None

    @property
    def collecting(self) -> bool:
        return self._collecting

    def start(self, run_immediately: bool = True) -> bool:
        with self._state_lock:
            if self._stop_event is not None:
                logger.info("[%s] Collection already running", self.name)
                return False
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._run_loop,
                args=(stop_event, run_immediately),
                name=f"busta-collector-{self.name}",
                daemon=True,
            )
            self._thread.start()
        logger.info("[%s] Collection started (every %ss)", self.name, self.interval_sec)
        return True

    def stop(self) -> bool:
        """타이머와 pending 상태를 즉시 정리한다. 진행 중인 수집 결과는 버려진다."""
        with self._state_lock:
            self._generation += 1
            self.tracker.clear()
            if self._reports_pending:
                PENDING_ARRIVALS.labels(collector=self.name).set(0)
            if self._stop_event is None:
                return False
            self._stop_event.set()
            self._stop_event = None
            self._thread = None
        logger.info("[%s] Collection stopped", self.name)
        return True

    def _run_loop(self, stop_event: threading.Event, run_immediately: bool) -> None:
        if run_immediately and not stop_event.is_set():
            self._safe_tick()
        while not stop_event.wait(self.interval_sec):
            self._safe_tick()

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception:  # 타이머 스레드가 죽지 않도록 로그만 남긴다
            COLLECTOR_TICKS.labels(outcome="error").inc()
            logger.exception("[%s] Collection error", self.name)

    def tick(self) -> TickResult:
        """수집 1회. 이전 수집이 진행 중이면 건너뛴다."""
        with self._state_lock:
            if self._collecting:
                logger.info("[%s] Already collecting, skipping...", self.name)
                COLLECTOR_TICKS.labels(outcome="busy").inc()
                return TickResult(skipped=True, reason="busy", started_at=self.deps.clock())
            self._collecting = True
            generation = self._generation

        try:
            result = run_one_tick(
                self.deps,
                self.tracker,
                self.guard,
                is_current=lambda: self._generation == generation,
                write_lock=self._state_lock,
            )
        finally:
            with self._state_lock:
                self._collecting = False

        COLLECTOR_TICKS.labels(outcome=result.reason or "completed").inc()
        if self.running or not result.skipped:
            self._reports_pending = True
            PENDING_ARRIVALS.labels(collector=self.name).set(len(self.tracker.pending))
        self.last_result = result
        if not result.skipped:
            self.last_collected_at = result.finished_at
            self.guard.prune(result.finished_at)
            logger.info(
                "[%s] Collection complete: %d stops, %d pairs, %d logged, %d suppressed",
                self.name, result.stops_checked, result.pairs_checked, result.logged, result.suppressed,
            )
        return result

    def status(self) -> dict:
        return {
            "running": self.running,
            "collecting": self._collecting,
            "interval_sec": self.interval_sec,
            "pending": len(self.tracker.pending),
            "last_collected_at": (
                datetime.fromtimestamp(self.last_collected_at, tz=timezone.utc).isoformat()
                if self.last_collected_at
                else None
            ),
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }

    def snapshot(self) -> dict:
        """프로세스 간 상태 이어받기용(cron). JSON 직렬화 가능."""
        with self._state_lock:
            return {
                "pending": [p.to_dict() for p in self.tracker.pending.values()],
                "last_logged": dict(self.guard.last_logged),
            }

    def restore(self, state: dict) -> None:
        with self._state_lock:
            self.tracker.pending = {}
            for raw in state.get("pending") or []:
                try:
                    pending = PendingArrival.from_dict(raw)
                except (KeyError, TypeError, ValueError):
                    logger.warning("[%s] 손상된 pending 항목 무시: %r", self.name, raw)
                    continue
                self.tracker.pending[pending.pair.key] = pending
            last_logged = state.get("last_logged")
            self.guard.last_logged = {}
            for key, value in (last_logged.items() if isinstance(last_logged, dict) else []):
                try:
                    self.guard.last_logged[str(key)] = float(value)
                except (TypeError, ValueError):
                    logger.warning("[%s] 손상된 중복 가드 항목 무시: %r=%r", self.name, key, value)
