"""
버스타볼까 백엔드 API.
실시간 도착 정보는 경기도 공공데이터/ODSay, 장소 검색은 카카오 로컬 REST API,
추적 대상/도착 기록/설정은 SQLite(data/busta.db) 기반.
백그라운드 수집은 사용자별 Collector 타이머가 프로세스 안에서 수행한다.
"""

import logging
import threading
import time as _time
from datetime import datetime

from flask import Flask, jsonify, request, Response
from flask_cors import CORS
from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    REGISTRY,
    CONTENT_TYPE_LATEST,
)

import bus_arrival
import collector
import config
import stats
import store

logger = logging.getLogger(__name__)

app = Flask(__name__)

# ── CORS: 프론트엔드 도메인 허용 ──────────────────────────
CORS(app, origins=[o.strip() for o in config.CORS_ORIGINS.split(",") if o.strip()])

API_DAILY_LIMIT = 10000
MIN_COLLECTION_INTERVAL_SEC = 60

# ── Prometheus 메트릭 정의 ──────────────────────────────────
REQUEST_COUNT = Counter(
    "busta_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "busta_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

IN_PROGRESS_REQUESTS = Gauge(
    "busta_in_progress_requests",
    "Number of requests currently being processed",
)

RUNNING_COLLECTORS = Gauge(
    "busta_running_collectors",
    "Owners with an active in-process collection timer",
)


# ── 요청 전/후 훅 (메트릭 수집) ──────────────────────────────
@app.before_request
def _before_request():
    request._prom_start_time = _time.time()
    IN_PROGRESS_REQUESTS.inc()


@app.after_request
def _after_request(response):
    if request.path == "/metrics":
        IN_PROGRESS_REQUESTS.dec()
        return response
    latency = _time.time() - getattr(request, "_prom_start_time", _time.time())
    endpoint = request.url_rule.rule if request.url_rule else request.path
    method = request.method
    status = str(response.status_code)
    REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()
    REQUEST_LATENCY.labels(method=method, endpoint=endpoint).observe(latency)
    IN_PROGRESS_REQUESTS.dec()
    return response


# ── Prometheus / Health 엔드포인트 ───────────────────────────
@app.route("/metrics")
def metrics():
    """Prometheus 메트릭 노출."""
    return Response(generate_latest(REGISTRY), mimetype=CONTENT_TYPE_LATEST)


@app.route("/health")
def health():
    return jsonify({"status": "healthy"})


# ── 응답 유틸 ────────────────────────────────────────────────
def _error(message: str, status: int, code: str, detail: str | None = None):
    payload = {"error": message, "code": code}
    if detail:
        payload["detail"] = detail
    return jsonify(payload), status


def _bad_request(message: str = "잘못된 요청입니다."):
    return _error(message, 400, "BAD_REQUEST")


def _not_found(message: str = "리소스를 찾을 수 없습니다."):
    return _error(message, 404, "NOT_FOUND")


def _current_user() -> str:
    """인증은 범위 밖이므로 X-User-Id 헤더를 소유자로 쓴다."""
    return request.headers.get("X-User-Id", "").strip() or config.DEFAULT_USER_ID


def _json_body() -> dict | None:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else None


# ── 사용자별 수집기 ─────────────────────────────────────────
_collectors: dict[str, collector.Collector] = {}
_collectors_lock = threading.Lock()


def _fetch_arrivals(station_id: str, ars_id: str | None) -> list[dict]:
    return bus_arrival.get_bus_arrival(station_id, ars_id)


def _build_collector(user_id: str, interval_sec: int) -> collector.Collector:
    deps = collector.TickDeps(
        fetch_arrivals=_fetch_arrivals,
        list_pairs=lambda: collector.pairs_from_targets(store.list_active_targets([user_id])),
        log_arrival=collector.store_sink,
        is_enabled=lambda: store.get_settings(user_id)["bg_collection_enabled"],
    )
    return collector.Collector(deps, interval_sec=interval_sec, name=user_id)


def get_collector(user_id: str, create: bool = True) -> collector.Collector | None:
    """등록된 수집기를 돌려준다. create 이면 없을 때 만들어 등록한다."""
    with _collectors_lock:
        found = _collectors.get(user_id)
        if found is None and create:
            interval = store.get_settings(user_id)["bg_collection_interval"]
            found = _build_collector(user_id, interval)
            _collectors[user_id] = found
        return found


def _update_running_gauge() -> None:
    with _collectors_lock:
        RUNNING_COLLECTORS.set(sum(1 for c in _collectors.values() if c.running))


def apply_collection_settings(user_id: str, settings: dict) -> collector.Collector:
    """설정 토글에 맞춰 수집 타이머를 시작/중지한다.

    레지스트리에는 수집을 켠 사용자만 올라간다. 간격 변경은 다음 대기부터
    반영되며 대기 중인 pending 은 유지된다.
    """
    interval = settings["bg_collection_interval"]
    if settings["bg_collection_enabled"]:
        worker = get_collector(user_id)
        worker.interval_sec = interval
        worker.start()
    else:
        worker = get_collector(user_id, create=False)
        if worker is None:
            return _build_collector(user_id, interval)
        worker.interval_sec = interval
        worker.stop()
    _update_running_gauge()
    return worker


def _collector_for_request(user_id: str) -> collector.Collector:
    """수집이 꺼진 사용자에게는 등록하지 않는 일회용 수집기를 쓴다."""
    settings = store.get_settings(user_id)
    worker = get_collector(user_id, create=settings["bg_collection_enabled"])
    return worker or _build_collector(user_id, settings["bg_collection_interval"])


def resume_collectors() -> None:
    """프로세스 시작 시 수집이 켜진 사용자의 타이머를 복원한다."""
    for user_id in store.list_collection_enabled_users():
        apply_collection_settings(user_id, store.get_settings(user_id))


def stop_all_collectors() -> None:
    with _collectors_lock:
        workers = list(_collectors.values())
        _collectors.clear()
    for worker in workers:
        worker.stop()
    RUNNING_COLLECTORS.set(0)


# ── 검색 / 실시간 도착 ───────────────────────────────────────
@app.route("/api/search")
def api_search():
    q = request.args.get("q", "").strip()
    if not q:
        return jsonify({"documents": []})
    return jsonify({"documents": bus_arrival.search_places(q)})


@app.route("/api/bus/arrival")
def api_bus_arrival():
    station_id = request.args.get("stationId", "").strip()
    ars_id = request.args.get("arsId", "").strip()
    if not station_id and not ars_id:
        return _bad_request("stationId 또는 arsId가 필요합니다.")
    try:
        arrivals = bus_arrival.get_bus_arrival(station_id, ars_id or None)
    except bus_arrival.ArrivalConfigError as exc:
        return _error(str(exc), 503, "INTERNAL_ERROR")
    except bus_arrival.ArrivalAPIError as exc:
        return _error("버스 도착 정보 API 호출에 실패했습니다.", 502, "EXTERNAL_API_ERROR", str(exc))
    return jsonify({"arrivals": arrivals})


# ── 추적 대상 ─────────────────────────────────────────────────
@app.route("/api/tracking/targets", methods=["GET", "POST", "PATCH", "DELETE"])
def api_tracking_targets():
    user_id = _current_user()

    if request.method == "GET":
        return jsonify({"targets": store.list_targets(user_id)})

    if request.method == "POST":
        body = _json_body()
        if body is None:
            return _bad_request("잘못된 요청 형식입니다.")
        fields = {k: str(body.get(k) or "").strip() for k in ("bus_id", "bus_no", "station_id", "station_name")}
        if not all(fields.values()):
            return _bad_request("bus_id, bus_no, station_id, station_name are required")

        limits = store.get_limits(user_id)
        active_stations = {t["station_id"] for t in store.list_active_targets([user_id])}
        if limits["targets"]["exceeded"]:
            return _error(f"추적 대상은 최대 {store.MAX_TARGETS}개까지 등록할 수 있습니다.", 429, "LIMIT_EXCEEDED")
        if fields["station_id"] not in active_stations and limits["stations"]["exceeded"]:
            return _error(f"정류소는 최대 {store.MAX_STATIONS}개까지 추적할 수 있습니다.", 429, "LIMIT_EXCEEDED")

        try:
            target = store.add_target(user_id, ars_id=str(body.get("ars_id") or "").strip() or None, **fields)
        except store.DuplicateTargetError as exc:
            return _error(str(exc), 409, "CONFLICT")
        return jsonify({"target": target}), 201

    if request.method == "PATCH":
        body = _json_body() or {}
        target_id = body.get("id")
        is_active = body.get("is_active")
        if not target_id or not isinstance(is_active, bool):
            return _bad_request("id and is_active are required")
        target = store.set_target_active(user_id, str(target_id), is_active)
        if target is None:
            return _not_found("추적 대상을 찾을 수 없습니다.")
        return jsonify({"target": target})

    target_id = request.args.get("id", "").strip()
    if not target_id:
        return _bad_request("id is required")
    if not store.delete_target(user_id, target_id):
        return _not_found("추적 대상을 찾을 수 없습니다.")
    return jsonify({"success": True})


@app.route("/api/tracking/limits")
def api_tracking_limits():
    return jsonify(store.get_limits(_current_user()))


# ── 도착 기록 ─────────────────────────────────────────────────
def _days_arg(default: int = 30) -> int:
    days = request.args.get("days", default=default, type=int) or default
    return max(1, min(days, 365))


@app.route("/api/tracking/logs", methods=["GET", "POST", "DELETE"])
def api_tracking_logs():
    user_id = _current_user()

    if request.method == "GET":
        logs = store.list_arrival_logs(
            user_id,
            bus_id=request.args.get("bus_id") or None,
            station_id=request.args.get("station_id") or None,
            days=_days_arg(),
        )
        return jsonify({"logs": logs})

    if request.method == "POST":
        body = _json_body()
        if body is None:
            return _bad_request("잘못된 요청 형식입니다.")
        fields = {k: str(body.get(k) or "").strip() for k in ("bus_id", "bus_no", "station_id", "station_name")}
        if not all(fields.values()):
            return _bad_request("버스 ID, 노선번호, 정류소 ID, 정류소명이 필요합니다.")
        try:
            log = store.insert_arrival_log(
                user_id,
                arrival_time=body.get("arrival_time") or None,
                plate_no=body.get("plate_no") or None,
                **fields,
            )
        except ValueError:
            return _bad_request("arrival_time 형식이 올바르지 않습니다.")
        except store.StoreError as exc:
            return _error("도착 로그 추가에 실패했습니다.", 500, "INTERNAL_ERROR", str(exc))
        return jsonify({"log": log}), 201

    log_id = request.args.get("id", "").strip()
    date = request.args.get("date", "").strip()
    bus_id = request.args.get("bus_id", "").strip()
    station_id = request.args.get("station_id", "").strip()

    if date and bus_id and station_id:
        try:
            deleted = store.delete_arrival_logs_on_date(user_id, bus_id, station_id, date)
        except ValueError:
            return _bad_request("date는 YYYY-MM-DD 형식이어야 합니다.")
        return jsonify({"success": True, "deletedCount": deleted})

    if not log_id:
        return _bad_request("로그 ID 또는 날짜 정보가 필요합니다.")
    if not store.delete_arrival_log(user_id, log_id):
        return _not_found("도착 로그를 찾을 수 없습니다.")
    return jsonify({"success": True})


@app.route("/api/tracking/stats")
def api_tracking_stats():
    bus_id = request.args.get("bus_id", "").strip()
    station_id = request.args.get("station_id", "").strip()
    if not bus_id or not station_id:
        return _bad_request("bus_id와 station_id가 필요합니다.")
    days = _days_arg()
    logs = store.list_arrival_logs(_current_user(), bus_id=bus_id, station_id=station_id, days=days, ascending=True)
    return jsonify({"stats": stats.compute_arrival_stats(logs, days)})


# ── 정류소 페어 / 출발 추천 ───────────────────────────────────
def _station_arg(value) -> dict | None:
    if not isinstance(value, dict):
        return None
    station = {k: str(value.get(k) or "").strip() for k in ("id", "name", "arsId")}
    if not station["id"] or not station["name"]:
        return None
    return station


@app.route("/api/tracking/pairs", methods=["GET", "POST", "DELETE"])
def api_tracking_pairs():
    user_id = _current_user()

    if request.method == "GET":
        return jsonify({"pairs": store.list_station_pairs(user_id, bus_id=request.args.get("busId") or None)})

    if request.method == "POST":
        body = _json_body()
        if body is None:
            return _bad_request("잘못된 요청 형식입니다.")
        bus_id = str(body.get("busId") or "").strip()
        bus_no = str(body.get("busNo") or "").strip()
        if not bus_id or not bus_no:
            return _bad_request("버스 정보가 필요합니다.")
        station_a = _station_arg(body.get("stationA"))
        station_b = _station_arg(body.get("stationB"))
        if station_a is None or station_b is None:
            return _bad_request("정류장 A와 B 정보가 필요합니다.")
        try:
            pair = store.add_station_pair(
                user_id, bus_id, bus_no, station_a, station_b, name=str(body.get("name") or "").strip() or None
            )
        except (ValueError, store.DuplicatePairError) as exc:
            return _bad_request(str(exc))
        return jsonify({"pair": pair}), 201

    pair_id = request.args.get("id", "").strip()
    if not pair_id:
        return _bad_request("페어 ID가 필요합니다.")
    if not store.delete_station_pair(user_id, pair_id):
        return _not_found("페어를 찾을 수 없습니다.")
    return jsonify({"success": True})


@app.route("/api/tracking/pairs/analysis")
def api_tracking_pairs_analysis():
    user_id = _current_user()
    pair_id = request.args.get("pairId", "").strip()
    if not pair_id:
        return _bad_request("페어 ID가 필요합니다.")
    pair = store.get_station_pair(user_id, pair_id)
    if pair is None:
        return _not_found("페어를 찾을 수 없습니다.")
    days = _days_arg()
    logs_a = store.list_arrival_logs(user_id, pair["busId"], pair["stationA"]["id"], days=days, ascending=True)
    logs_b = store.list_arrival_logs(user_id, pair["busId"], pair["stationB"]["id"], days=days, ascending=True)
    return jsonify({"analysis": stats.analyze_station_pair(pair, logs_a, logs_b, days)})


@app.route("/api/tracking/recommend")
def api_tracking_recommend():
    user_id = _current_user()
    target_id = request.args.get("targetId", "").strip()
    buffer_minutes = max(0, request.args.get("bufferMinutes", default=5, type=int) or 0)
    days = _days_arg()
    start = request.args.get("timeWindowStart", type=int)
    end = request.args.get("timeWindowEnd", type=int)
    window = (start, end) if start is not None and end is not None else None

    targets = store.list_active_targets([user_id])
    if target_id:
        targets = [t for t in targets if t["id"] == target_id]

    now = datetime.now(store.KST)
    day_of_week = store.kst_day_of_week(now)
    recommendations = [
        stats.recommend_departure(
            target,
            store.list_arrival_logs(user_id, target["bus_id"], target["station_id"], days=days),
            day_of_week,
            buffer_minutes,
            window,
        )
        for target in targets
    ]
    return jsonify(
        {
            "recommendations": recommendations,
            "today": {"dayOfWeek": day_of_week, "dayName": stats.DAY_NAMES[day_of_week], "date": now.strftime("%Y-%m-%d")},
            "settings": {"bufferMinutes": buffer_minutes, "analysisDays": days},
        }
    )


@app.route("/api/tracking/api-usage")
def api_tracking_api_usage():
    usage = store.get_api_usage(days=7)
    today = store.today_kst()
    today_count = next((row["call_count"] for row in usage if row["call_date"] == today), 0)
    return jsonify(
        {
            "usage": usage,
            "todayCount": today_count,
            "weeklyTotal": sum(row["call_count"] for row in usage),
            "dailyLimit": API_DAILY_LIMIT,
        }
    )


# ── 설정 / 수집기 ─────────────────────────────────────────────
@app.route("/api/settings", methods=["GET", "POST"])
def api_settings():
    user_id = _current_user()
    if request.method == "GET":
        return jsonify({"settings": store.get_settings(user_id)})

    body = _json_body()
    if body is None:
        return _bad_request("잘못된 요청 형식입니다.")
    enabled = body.get("bg_collection_enabled")
    interval = body.get("bg_collection_interval")
    if enabled is not None and not isinstance(enabled, bool):
        return _bad_request("bg_collection_enabled는 boolean이어야 합니다.")
    if interval is not None:
        if isinstance(interval, bool) or not isinstance(interval, int) or interval < MIN_COLLECTION_INTERVAL_SEC:
            return _bad_request(f"bg_collection_interval은 {MIN_COLLECTION_INTERVAL_SEC}초 이상의 정수여야 합니다.")

    settings = store.save_settings(user_id, enabled=enabled, interval=interval)
    worker = apply_collection_settings(user_id, settings)
    return jsonify({"settings": settings, "collector": worker.status()})


@app.route("/api/collector/status")
def api_collector_status():
    return jsonify({"collector": _collector_for_request(_current_user()).status()})


@app.route("/api/collector/tick", methods=["POST"])
def api_collector_tick():
    """수동 1회 수집. 수집이 꺼져 있으면 건너뛴 결과를 돌려준다."""
    result = _collector_for_request(_current_user()).tick()
    return jsonify({"result": result.to_dict()})


@app.errorhandler(500)
def _internal_error(exc):
    logger.exception("처리되지 않은 오류: %s", exc)
    return _error("서버 오류가 발생했습니다.", 500, "INTERNAL_ERROR")


# ── 시작 시 DB 초기화 ─────────────────────────────────────────
store.init_db()

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    resume_collectors()
    # 리로더가 켜지면 수집 타이머가 두 번 뜬다
    app.run(host="0.0.0.0", debug=True, use_reloader=False, port=8081)
