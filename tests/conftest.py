import os

# config 는 import 시점에 환경변수를 읽으므로 다른 모듈보다 먼저 설정한다
os.environ["BUSTA_DB_PATH"] = ":memory:"
os.environ["TRAFFIC_API_KEY"] = ""
os.environ["ODSAY_API_KEY"] = ""
os.environ["KAKAO_REST_API_KEY"] = ""

import pytest  # noqa: E402

import store  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_db():
    store.init_db(":memory:")
    yield


class FakeClock:
    def __init__(self, start: float = 1_760_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
