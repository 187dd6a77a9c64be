"""
실시간 버스 도착 정보 조회.
- 경기도 공공데이터 API (apis.data.go.kr/6410000): stationId 또는 정류소 번호(mobileNo) 기반
- ODSay realtimeStation: 공공데이터 결과가 없을 때 폴백
두 응답을 하나의 도착 정보 dict 형식으로 정규화한다.
"""

import logging
import re

import requests
from prometheus_client import Counter

import config
import store

logger = logging.getLogger(__name__)

GYEONGGI_STATION_URL = "https://apis.data.go.kr/6410000/busstationservice/v2/getBusStationListv2"
GYEONGGI_ARRIVAL_URL = "https://apis.data.go.kr/6410000/busarrivalservice/v2/getBusArrivalListv2"
ODSAY_REALTIME_URL = "https://api.odsay.com/v1/api/realtimeStation"
KAKAO_SEARCH_URL = "https://dapi.kakao.com/v2/local/search/keyword.json"
SEARCH_SIZE = 15

_MOBILE_NO_RE = re.compile(r"^\d{5}$")
_GYEONGGI_STATION_ID_RE = re.compile(r"^\d{9}$")

UPSTREAM_API_CALLS = Counter(
    "busta_upstream_api_calls_total",
    "Total calls to upstream transit/map APIs",
    ["provider", "status"],
)


class ArrivalConfigError(config.ConfigError):
    pass


class ArrivalAPIError(RuntimeError):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


def _traffic_api_key() -> str:
    if not config.TRAFFIC_API_KEY:
        raise ArrivalConfigError("TRAFFIC_API_KEY 환경 변수가 설정되지 않았습니다.")
    return config.TRAFFIC_API_KEY


def has_provider_key() -> bool:
    return bool(config.TRAFFIC_API_KEY or config.ODSAY_API_KEY)


def _get_json(provider: str, url: str, params: dict) -> dict:
    """업스트림 GET 1회. 호출 수를 카운트하고 실패는 ArrivalAPIError로 올린다."""
    try:
        store.increment_api_call_count()
    except store.StoreError:
        logger.warning("API 호출 카운트 증가 실패", exc_info=True)
    try:
        resp = requests.get(url, params=params, timeout=config.UPSTREAM_TIMEOUT_SEC)
    except requests.RequestException as exc:
        UPSTREAM_API_CALLS.labels(provider=provider, status="error").inc()
        raise ArrivalAPIError(502, f"{provider} API 호출 실패: {exc}") from exc

    if resp.status_code >= 400:
        UPSTREAM_API_CALLS.labels(provider=provider, status="error").inc()
        raise ArrivalAPIError(resp.status_code, f"{provider} API 응답 오류: HTTP {resp.status_code}")

    try:
        payload = resp.json()
    except ValueError as exc:
        UPSTREAM_API_CALLS.labels(provider=provider, status="error").inc()
        raise ArrivalAPIError(502, f"{provider} API 응답(JSON) 파싱에 실패했습니다.") from exc

    UPSTREAM_API_CALLS.labels(provider=provider, status="success").inc()
    return payload if isinstance(payload, dict) else {}


def _as_list(value) -> list:
    """공공데이터 API는 항목이 1개면 배열 대신 객체를 돌려준다."""
    if not value:
        return []
    return value if isinstance(value, list) else [value]


def _to_int(value) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _seat_count(value) -> int | None:
    # -1 은 좌석 정보 없음
    count = _to_int(value)
    if count is None or count < 0:
        return None
    return count


# ── 경기도 공공데이터 ─────────────────────────────────────────
def get_gyeonggi_station_id(mobile_no: str) -> str | None:
    """정류소 번호(mobileNo)로 경기도 stationId 조회. 정확히 일치하는 정류소만."""
    payload = _get_json(
        "gyeonggi",
        GYEONGGI_STATION_URL,
        {"serviceKey": _traffic_api_key(), "keyword": mobile_no, "format": "json"},
    )
    stations = _as_list(((payload.get("response") or {}).get("msgBody") or {}).get("busStationList"))
    for station in stations:
        if str(station.get("mobileNo", "")).strip() == mobile_no and station.get("stationId"):
            return str(station["stationId"])
    return None


def _normalize_gyeonggi(item: dict) -> dict | None:
    route_name = item.get("routeName") or item.get("routeNm")
    predict_time1 = _to_int(item.get("predictTime1")) or 0
    if not route_name or predict_time1 <= 0:
        return None
    predict_sec1 = _to_int(item.get("predictTimeSec1")) or predict_time1 * 60
    predict_time2 = _to_int(item.get("predictTime2"))
    return {
        "routeId": str(item["routeId"]) if item.get("routeId") else None,
        "routeName": str(route_name),
        "routeType": _to_int(item.get("routeTypeCd") or item.get("routeType")),
        "predictTime1": predict_time1,
        "predictTimeSec1": predict_sec1,
        "locationNo1": _to_int(item.get("locationNo1")),
        "plateNo1": item.get("plateNo1") or None,
        "remainSeat1": _seat_count(item.get("remainSeatCnt1")),
        "predictTime2": predict_time2,
        "predictTimeSec2": _to_int(item.get("predictTimeSec2"))
        or (predict_time2 * 60 if predict_time2 else None),
        "locationNo2": _to_int(item.get("locationNo2")),
        "plateNo2": item.get("plateNo2") or None,
        "direction": item.get("stationNm1") or None,
    }


def get_gyeonggi_bus_arrival(station_id: str) -> list[dict]:
    payload = _get_json(
        "gyeonggi",
        GYEONGGI_ARRIVAL_URL,
        {"serviceKey": _traffic_api_key(), "stationId": station_id, "format": "json"},
    )
    items = _as_list(((payload.get("response") or {}).get("msgBody") or {}).get("busArrivalList"))
    arrivals = [row for row in (_normalize_gyeonggi(item) for item in items) if row]
    arrivals.sort(key=lambda a: a["predictTimeSec1"] or 0)
    return arrivals


# ── ODSay ─────────────────────────────────────────────────────
def _normalize_odsay(item: dict) -> dict | None:
    arrival1 = item.get("arrival1") or {}
    arrival2 = item.get("arrival2") or {}
    sec1 = _to_int(arrival1.get("arrivalSec"))
    if not sec1:
        return None
    sec2 = _to_int(arrival2.get("arrivalSec"))
    return {
        "routeId": str(item["routeID"]) if item.get("routeID") else None,
        "routeName": str(item.get("routeNm") or ""),
        "routeType": None,
        "predictTime1": sec1 // 60,
        "predictTimeSec1": sec1,
        "locationNo1": _to_int(arrival1.get("leftStation")),
        "plateNo1": arrival1.get("busPlateNo") or None,
        "remainSeat1": None,
        "predictTime2": sec2 // 60 if sec2 else None,
        "predictTimeSec2": sec2 or None,
        "locationNo2": _to_int(arrival2.get("leftStation")),
        "plateNo2": arrival2.get("busPlateNo") or None,
        "direction": arrival1.get("busPosition") or None,
    }


def get_odsay_arrival(station_id: str) -> list[dict]:
    if not config.ODSAY_API_KEY:
        raise ArrivalConfigError("ODSAY_API_KEY 환경 변수가 설정되지 않았습니다.")
    payload = _get_json(
        "odsay",
        ODSAY_REALTIME_URL,
        {"lang": 0, "stationID": station_id, "apiKey": config.ODSAY_API_KEY},
    )
    if payload.get("error"):
        raise ArrivalAPIError(502, f"ODSay realtimeStation 오류: {payload['error']}")
    items = _as_list((payload.get("result") or {}).get("real"))
    arrivals = [row for row in (_normalize_odsay(item) for item in items) if row]
    arrivals.sort(key=lambda a: a["predictTimeSec1"] or 0)
    return arrivals


# ── 통합 조회 ─────────────────────────────────────────────────
def get_bus_arrival(station_id: str, ars_id: str | None = None) -> list[dict]:
    """
    정류소 ID/번호를 기반으로 적절한 API를 호출한다.
    - ars_id가 5자리 숫자: 경기도 정류소 번호로 stationId 조회 후 경기도 API
    - station_id가 9자리 숫자: 경기도 API
    - 결과가 없으면 ODSay 폴백 (키가 있을 때만)
    """
    arrivals: list[dict] = []
    if config.TRAFFIC_API_KEY:
        clean_ars_id = (ars_id or "").replace("-", "").strip()
        gyeonggi_station_id = None
        if _MOBILE_NO_RE.match(clean_ars_id):
            try:
                gyeonggi_station_id = get_gyeonggi_station_id(clean_ars_id)
            except ArrivalAPIError as exc:
                logger.warning("정류소 번호 %s 조회 실패, stationId 로 진행: %s", clean_ars_id, exc)
        if not gyeonggi_station_id and station_id and _GYEONGGI_STATION_ID_RE.match(station_id):
            gyeonggi_station_id = station_id
        if gyeonggi_station_id:
            arrivals = get_gyeonggi_bus_arrival(gyeonggi_station_id)

    if not arrivals and station_id and config.ODSAY_API_KEY:
        arrivals = get_odsay_arrival(station_id)

    if not arrivals and not has_provider_key():
        raise ArrivalConfigError("TRAFFIC_API_KEY 또는 ODSAY_API_KEY 설정이 필요합니다.")
    return arrivals


# ── 카카오 장소 검색 ──────────────────────────────────────────
def search_places(query: str) -> list[dict]:
    if not config.KAKAO_REST_API_KEY:
        return []
    headers = {"Authorization": f"KakaoAK {config.KAKAO_REST_API_KEY}"}
    params = {"query": query, "size": SEARCH_SIZE}
    try:
        resp = requests.get(KAKAO_SEARCH_URL, headers=headers, params=params, timeout=10)
        resp.raise_for_status()
        UPSTREAM_API_CALLS.labels(provider="kakao", status="success").inc()
        return resp.json().get("documents") or []
    except (requests.RequestException, ValueError):
        UPSTREAM_API_CALLS.labels(provider="kakao", status="error").inc()
        logger.warning("카카오 장소 검색 실패: %s", query, exc_info=True)
        return []
