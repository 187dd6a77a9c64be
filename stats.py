"""
도착 기록 기반 통계 (요일별/시간대별 분포, 첫차/막차, 평균 배차 간격, 페어 구간 소요시간, 출발 시각 추천).
모든 시각은 KST 기준으로 계산한다.
"""

from datetime import datetime

from store import KST, _to_utc

DAY_NAMES = ["일", "월", "화", "수", "목", "금", "토"]

# 같은 날 연속 도착 간격 중 이 범위만 배차 간격으로 본다
MIN_INTERVAL_MIN = 5
MAX_INTERVAL_MIN = 120
RECENT_LOG_COUNT = 10


def _kst(value) -> datetime:
    return _to_utc(value).astimezone(KST)


def _minutes_of_day(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def _hhmm(minutes: float) -> str:
    minutes = int(round(minutes))
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def compute_arrival_stats(logs: list[dict], days: int = 30) -> dict:
    """
    logs: arrival_log 행 목록 (정렬 무관).
    반환: byDay(7), byHour(24), totalCount, firstArrival, lastArrival, avgInterval, recentLogs, period
    """
    ordered = sorted(logs, key=lambda row: _to_utc(row["arrival_time"]))
    moments = [(row, _kst(row["arrival_time"])) for row in ordered]

    by_day = [
        {"day": idx, "dayName": name, "count": 0, "times": [], "avgTime": None}
        for idx, name in enumerate(DAY_NAMES)
    ]
    by_hour = [{"hour": hour, "count": 0} for hour in range(24)]
    minutes_by_day: list[list[int]] = [[] for _ in DAY_NAMES]

    for _, moment in moments:
        day = (moment.weekday() + 1) % 7
        by_day[day]["count"] += 1
        by_day[day]["times"].append(moment.strftime("%H:%M"))
        minutes_by_day[day].append(_minutes_of_day(moment))
        by_hour[moment.hour]["count"] += 1

    for day, minutes in enumerate(minutes_by_day):
        if minutes:
            by_day[day]["avgTime"] = _hhmm(sum(minutes) / len(minutes))

    all_minutes = [_minutes_of_day(m) for _, m in moments]
    first_arrival = _hhmm(min(all_minutes)) if all_minutes else None
    last_arrival = _hhmm(max(all_minutes)) if all_minutes else None

    gaps = []
    for (_, prev), (_, cur) in zip(moments, moments[1:]):
        if prev.date() != cur.date():
            continue
        gap = (cur - prev).total_seconds() / 60
        if MIN_INTERVAL_MIN <= gap <= MAX_INTERVAL_MIN:
            gaps.append(gap)
    avg_interval = round(sum(gaps) / len(gaps)) if gaps else None

    recent = [row for row, _ in moments[-RECENT_LOG_COUNT:]]
    recent.reverse()

    return {
        "byDay": by_day,
        "byHour": by_hour,
        "totalCount": len(moments),
        "firstArrival": first_arrival,
        "lastArrival": last_arrival,
        "avgInterval": avg_interval,
        "recentLogs": recent,
        "period": f"최근 {days}일",
    }


# ── 페어 구간 소요시간 ────────────────────────────────────────
# 회차 노선을 고려해 A 도착 후 이 시간 안의 B 도착만 같은 운행으로 본다
PAIR_MATCH_WINDOW_SEC = 6 * 60 * 60


def _population_std(values: list[float]) -> float:
    mean = sum(values) / len(values)
    return (sum((v - mean) ** 2 for v in values) / len(values)) ** 0.5


def analyze_station_pair(pair: dict, logs_a: list[dict], logs_b: list[dict], days: int = 30) -> dict:
    """
    차량번호(plate_no)가 같은 A 도착 → B 도착을 짝지어 구간 소요시간을 낸다.
    B 도착 1건은 한 번만 쓰인다.
    """
    arrivals_a = sorted(logs_a, key=lambda row: _to_utc(row["arrival_time"]))
    arrivals_b = sorted(logs_b, key=lambda row: _to_utc(row["arrival_time"]))
    used_b: set = set()
    matches = []

    for a in arrivals_a:
        if not a.get("plate_no"):
            continue
        at_a = _to_utc(a["arrival_time"])
        for b in arrivals_b:
            if not b.get("plate_no") or b["id"] in used_b or b["plate_no"] != a["plate_no"]:
                continue
            diff = (_to_utc(b["arrival_time"]) - at_a).total_seconds()
            if 0 < diff <= PAIR_MATCH_WINDOW_SEC:
                matches.append(
                    {
                        "plateNo": a["plate_no"],
                        "arrivalAtA": a["arrival_time"],
                        "arrivalAtB": b["arrival_time"],
                        "travelTimeMinutes": round(diff / 60),
                    }
                )
                used_b.add(b["id"])
                break

    travel = [m["travelTimeMinutes"] for m in matches]
    with_plate = sum(1 for a in arrivals_a if a.get("plate_no"))

    return {
        "pairId": pair["id"],
        "busNo": pair["busNo"],
        "stationA": pair["stationA"]["name"],
        "stationB": pair["stationB"]["name"],
        "period": f"최근 {days}일",
        "avgTravelTime": round(sum(travel) / len(travel)) if travel else None,
        "minTravelTime": min(travel) if travel else None,
        "maxTravelTime": max(travel) if travel else None,
        "stdDevTravelTime": round(_population_std(travel), 1) if len(travel) >= 2 else None,
        "totalArrivalsAtA": len(arrivals_a),
        "totalArrivalsAtB": len(arrivals_b),
        "matchedCount": len(matches),
        "missingAtB": max(0, with_plate - len(matches)),
        "matchRate": round(len(matches) / with_plate * 100) if with_plate else 0,
        "recentMatches": matches[-RECENT_LOG_COUNT:][::-1],
    }


# ── 출발 시각 추천 ────────────────────────────────────────────
def _clock(minutes: int) -> str:
    return f"{(minutes // 60) % 24:02d}:{minutes % 60:02d}"


def _in_window(minutes: int, window: tuple[int, int] | None) -> bool:
    return window is None or window[0] <= minutes <= window[1]


def recommend_departure(
    target: dict,
    logs: list[dict],
    day_of_week: int,
    buffer_minutes: int = 5,
    window: tuple[int, int] | None = None,
) -> dict:
    """
    오늘 요일의 평균 도착 시각에서 여유 시간을 뺀 출발 시각.
    요일 기록이 3건 이상이면 편차로 신뢰도를 매기고, 없으면 전체 평균으로 대신한다.
    window: (시작분, 종료분) 시간대 필터, 양끝 포함.
    """
    result = {
        "targetId": target["id"],
        "busNo": target["bus_no"],
        "stationName": target["station_name"],
        "recommendation": None,
        "pattern": None,
    }

    all_minutes = []
    today_minutes = []
    for row in logs:
        moment = _kst(row["arrival_time"])
        minutes = _minutes_of_day(moment)
        if not _in_window(minutes, window):
            continue
        all_minutes.append(minutes)
        if (moment.weekday() + 1) % 7 == day_of_week:
            today_minutes.append(minutes)

    day_name = DAY_NAMES[day_of_week]
    if today_minutes:
        samples = today_minutes
        count = len(samples)
        std = _population_std(samples) if count >= 2 else 0.0
        if count >= 3:
            if count >= 10 and std <= 10:
                confidence = "high"
            elif count >= 5 and std <= 20:
                confidence = "medium"
            else:
                confidence = "low"
            basis = f"{day_name}요일 {count}회 기록 기준"
        else:
            confidence = "low"
            basis = f"{day_name}요일 {count}회 기록 (데이터 부족)"
    elif all_minutes:
        samples = all_minutes
        std = _population_std(samples) if len(samples) >= 2 else 0.0
        confidence = "low"
        basis = f"전체 {len(samples)}회 기록 평균 ({day_name}요일 데이터 없음)"
    else:
        return result

    avg = round(sum(samples) / len(samples))
    result["recommendation"] = {
        "departureTime": _clock(max(0, avg - buffer_minutes)),
        "arrivalTime": _clock(avg),
        "confidence": confidence,
        "basis": basis,
        "dataPoints": len(samples),
    }
    result["pattern"] = {
        "avgTime": _clock(avg),
        "earliestTime": _clock(min(samples)),
        "latestTime": _clock(max(samples)),
        "stdDevMinutes": round(std),
    }
    return result
