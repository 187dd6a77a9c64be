"""
버스 도착 수집 1회 실행 (cron / 스케줄러용).

사용법:
  python collect_arrivals.py                    # 수집이 켜진 사용자 대상 1회 수집
  python collect_arrivals.py --all-users        # 설정과 무관하게 활성 추적 대상 전체
  python collect_arrivals.py --state-file PATH  # pending/중복 가드 상태 파일 경로

프로세스가 실행 사이에 살아 있지 않으므로, 수집 상태는 JSON 파일로 넘겨받고 다시 저장한다.
종료 코드: 수집 1회 완료 시 0 (개별 정류소 실패 포함), DB 열기 실패/도착 API 키 없음 시 1.
"""

import argparse
import json
import logging
import os
import sqlite3
import sys
from pathlib import Path

import bus_arrival
import collector
import config
import store


def log(msg: str) -> None:
    print(f"\033[1;36m[busta]\033[0m {msg}", flush=True)


def err(msg: str) -> None:
    print(f"\033[1;31m[busta]\033[0m {msg}", flush=True)


def load_state(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            state = json.load(f)
    except (OSError, ValueError) as exc:
        err(f"상태 파일을 읽지 못해 빈 상태로 시작합니다: {path} ({exc})")
        return {}
    return state if isinstance(state, dict) else {}


def save_state(path: Path, state: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(state, f, ensure_ascii=False, indent=2)
    os.replace(tmp_path, path)


def build_collector(all_users: bool) -> tuple[collector.Collector, list[str] | None]:
    """수집 대상 사용자 목록과 그에 맞춘 Collector. all_users면 사용자 제한 없음(None)."""
    user_ids = None if all_users else store.list_collection_enabled_users()
    deps = collector.TickDeps(
        fetch_arrivals=bus_arrival.get_bus_arrival,
        list_pairs=lambda: collector.pairs_from_targets(store.list_active_targets(user_ids)),
        log_arrival=collector.store_sink,
    )
    return collector.Collector(deps, name="cron"), user_ids


def drop_inactive_pending(worker: collector.Collector, user_ids: list[str] | None) -> int:
    """수집이 꺼진 사용자나 비활성화/삭제된 대상의 pending 은 이어받지 않는다."""
    active = collector.pairs_from_targets(store.list_active_targets(user_ids))
    return len(worker.tracker.retain({pair.key for pair in active}))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="버스 도착 수집 1회 실행")
    parser.add_argument("--state-file", default=config.STATE_FILE, help="수집 상태(JSON) 파일 경로")
    parser.add_argument("--db", default=config.DB_PATH, help="SQLite DB 경로")
    parser.add_argument("--all-users", action="store_true", help="수집 설정과 무관하게 전체 사용자 대상")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if not bus_arrival.has_provider_key():
        err("TRAFFIC_API_KEY 또는 ODSAY_API_KEY 가 설정되지 않았습니다.")
        return 1

    try:
        store.init_db(args.db)
    except (sqlite3.Error, OSError) as exc:
        err(f"DB를 열 수 없습니다: {args.db} ({exc})")
        return 1

    state_path = Path(args.state_file)
    worker, user_ids = build_collector(args.all_users)
    worker.restore(load_state(state_path))
    dropped = drop_inactive_pending(worker, user_ids)
    if dropped:
        log(f"추적이 해제된 대기 항목 {dropped}건 정리")

    log("Starting arrival collection...")
    result = worker.tick()

    if result.skipped:
        log(f"수집 건너뜀: {result.reason}")
    else:
        log(
            f"Collection complete: 정류소 {result.stops_checked}곳, 추적 {result.pairs_checked}건, "
            f"기록 {result.logged}건, 중복 {result.suppressed}건"
        )
    for message in result.errors:
        err(message)

    try:
        save_state(state_path, worker.snapshot())
    except OSError as exc:
        err(f"상태 파일 저장 실패: {state_path} ({exc})")

    return 0


if __name__ == "__main__":
    sys.exit(main())
