from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.buyers.api import get_current_caller
from leadflow.buyers.models import Buyer
from leadflow.buyers.policy import Caller
from leadflow.core.config import get_settings
from leadflow.core.database import Base, get_db
from leadflow.core.rate_limit import MutationRateLimiter, get_rate_limiter, reset_rate_limiter
from leadflow.main import app


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_allows_ten_then_rejects_with_retry_after() -> None:
    clock = FakeClock()
    limiter = MutationRateLimiter(max_requests=10, window_seconds=60, clock=clock)

    results = [limiter.take("user-1") for _ in range(10)]
    assert all(allowed for allowed, _ in results)

    allowed, retry_after = limiter.take("user-1")
    assert not allowed
    assert retry_after == 60


def test_window_restarts_from_last_accepted_write() -> None:
    clock = FakeClock()
    limiter = MutationRateLimiter(max_requests=3, window_seconds=60, clock=clock)

    limiter.take("user-1")
    clock.advance(30)
    limiter.take("user-1")
    clock.advance(31)
    assert limiter.count("user-1") == 2

    clock.advance(30)
    assert limiter.count("user-1") == 0
    assert limiter.take("user-1") == (True, 0)


def test_rejected_request_reports_remaining_window() -> None:
    clock = FakeClock()
    limiter = MutationRateLimiter(max_requests=1, window_seconds=60, clock=clock)

    assert limiter.take("user-1") == (True, 0)
    clock.advance(45)
    assert limiter.take("user-1") == (False, 15)


def test_keys_are_independent() -> None:
    limiter = MutationRateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())

    assert limiter.take("user-1")[0]
    assert limiter.take("user-2")[0]
    assert not limiter.take("user-1")[0]


def test_least_recently_written_key_is_evicted() -> None:
    limiter = MutationRateLimiter(max_requests=5, window_seconds=60, max_keys=2, clock=FakeClock())

    limiter.take("a")
    limiter.take("b")
    limiter.take("a")
    limiter.take("c")

    assert len(limiter) == 2
    assert limiter.count("b") == 0
    assert limiter.count("a") == 2
    assert limiter.count("c") == 1


def test_settings_drive_the_shared_limiter(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "4")
    get_settings.cache_clear()
    reset_rate_limiter()
    try:
        limiter = get_rate_limiter()
        assert limiter.max_requests == 4
        assert get_rate_limiter() is limiter
    finally:
        reset_rate_limiter()
        get_settings.cache_clear()


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def limiter() -> MutationRateLimiter:
    return MutationRateLimiter(max_requests=2, window_seconds=60, clock=FakeClock())


@pytest.fixture()
def client(db_session: Session, limiter: MutationRateLimiter) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_caller(request: Request) -> Caller:
        return Caller(
            user_id="user-1",
            email="agent@leadflow.com",
            is_admin=False,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_caller] = override_get_current_caller
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _payload(name: str) -> dict[str, str]:
    return {
        "full_name": name,
        "phone": "9876543210",
        "city": "Mohali",
        "property_type": "Plot",
        "purpose": "Buy",
        "timeline": "3-6m",
        "source": "Referral",
    }


def test_mutations_beyond_limit_are_rejected(client: TestClient, db_session: Session) -> None:
    statuses = [client.post("/api/buyers", json=_payload(f"Lead {index}")).status_code for index in range(3)]
    assert statuses == [201, 201, 429]

    rejected = client.post("/api/buyers", json=_payload("Lead 4"))
    assert rejected.status_code == 429
    assert rejected.headers.get("retry-after") == "60"
    body = rejected.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests. Please try again later."
    assert body["details"] == {"retry_after": 60}

    assert db_session.scalar(select(func.count()).select_from(Buyer)) == 2


def test_rate_limit_is_checked_before_validation(client: TestClient) -> None:
    assert client.post("/api/buyers", json=_payload("Lead 1")).status_code == 201
    assert client.post("/api/buyers", json=_payload("Lead 2")).status_code == 201

    response = client.post("/api/buyers", json={"full_name": ""})
    assert response.status_code == 429


def test_reads_are_not_rate_limited(client: TestClient) -> None:
    client.post("/api/buyers", json=_payload("Lead 1"))
    client.post("/api/buyers", json=_payload("Lead 2"))

    for _ in range(5):
        assert client.get("/api/buyers").status_code == 200


def test_csv_import_counts_as_one_mutation(client: TestClient, limiter: MutationRateLimiter) -> None:
    rows = "\n".join(
        f"Lead {index},98765432{index:02d},Chandigarh,Plot,Buy,0-3m,Website" for index in range(5)
    )
    content = "full_name,phone,city,property_type,purpose,timeline,source\n" + rows + "\n"

    response = client.post("/api/buyers/import", files={"file": ("leads.csv", content.encode(), "text/csv")})

    assert response.status_code == 200
    assert response.json()["imported"] == 5
    assert limiter.count("user-1") == 1
