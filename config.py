"""
환경변수 기반 설정.
프로세스 환경변수가 우선이고, 프로젝트 루트의 .env 파일 값은 기본값으로만 쓴다.
"""

import os
from pathlib import Path

PROJECT_DIR = Path(__file__).resolve().parent
DATA_DIR = PROJECT_DIR / "data"
ENV_FILE = PROJECT_DIR / ".env"


class ConfigError(RuntimeError):
    pass


def load_env_file(path: str | os.PathLike) -> dict[str, str]:
    values: dict[str, str] = {}
    if not os.path.exists(path):
        return values
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            if stripped.startswith("export "):
                stripped = stripped[len("export ") :].strip()
            if "=" not in stripped:
                continue
            key, raw_value = stripped.split("=", 1)
            key = key.strip()
            value = raw_value.strip()
            if (
                len(value) >= 2
                and ((value[0] == value[-1] == '"') or (value[0] == value[-1] == "'"))
            ):
                value = value[1:-1]
            values[key] = value
    return values


_env_file_values = load_env_file(ENV_FILE)


def env_str(name: str, default: str = "") -> str:
    return os.environ.get(name, _env_file_values.get(name, default)).strip()


def env_int(name: str, default: int) -> int:
    try:
        return int(env_str(name, str(default)))
    except (TypeError, ValueError):
        return default


DB_PATH = env_str("BUSTA_DB_PATH", str(DATA_DIR / "busta.db"))
STATE_FILE = env_str("BUSTA_STATE_FILE", str(DATA_DIR / "collector_state.json"))
DEFAULT_USER_ID = env_str("DEFAULT_USER_ID", "local") or "local"

TRAFFIC_API_KEY = env_str("TRAFFIC_API_KEY")
ODSAY_API_KEY = env_str("ODSAY_API_KEY")
KAKAO_REST_API_KEY = env_str("KAKAO_REST_API_KEY")

UPSTREAM_TIMEOUT_SEC = env_int("UPSTREAM_TIMEOUT_SEC", 10)

ARRIVAL_IMMINENT_THRESHOLD_SEC = env_int("ARRIVAL_IMMINENT_THRESHOLD_SEC", 180)
ARRIVAL_STALE_AFTER_SEC = env_int("ARRIVAL_STALE_AFTER_SEC", 60)
ARRIVAL_DUPLICATE_WINDOW_SEC = env_int("ARRIVAL_DUPLICATE_WINDOW_SEC", 180)
BG_COLLECTION_INTERVAL_SEC = env_int("BG_COLLECTION_INTERVAL_SEC", 300)

CORS_ORIGINS = env_str(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5500,http://127.0.0.1:5500",
)
