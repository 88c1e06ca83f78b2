from __future__ import annotations

import csv
import io
import re
from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow import events
from leadflow.buyers.api import get_current_caller
from leadflow.buyers.import_export import EXPORT_HEADERS
from leadflow.buyers.models import Buyer, BuyerHistory
from leadflow.buyers.policy import Caller
from leadflow.core.config import get_settings
from leadflow.core.database import Base, get_db
from leadflow.core.rate_limit import reset_rate_limiter
from leadflow.main import app

IMPORT_HEADER = "Full Name,Email,Phone,City,Property Type,BHK,Purpose,Budget Min,Budget Max,Timeline,Source,Notes,Tags"


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


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    state = {"current": "user-1"}

    def override_get_current_caller(request: Request) -> Caller:
        return Caller(
            user_id=state["current"],
            email=None,
            is_admin=False,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def set_caller(user_id: str) -> None:
        state["current"] = user_id

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_caller] = override_get_current_caller
    with TestClient(app) as test_client:
        yield test_client, set_caller
    app.dependency_overrides.clear()


def _row(index: int, *, city: str = "Chandigarh") -> str:
    return (
        f'Lead {index:03d},lead{index}@gmail.com,98{index:08d},{city},Apartment,2,Buy,'
        f'4000000,6000000,0-3m,Website,Imported row,"hot, nri"'
    )


def _upload(client: TestClient, content: str | bytes):
    data = content.encode("utf-8") if isinstance(content, str) else content
    return client.post("/api/buyers/import", files={"file": ("leads.csv", data, "text/csv")})


def _count(db_session: Session, model) -> int:
    return db_session.scalar(select(func.count()).select_from(model))


def test_import_inserts_all_rows_with_history(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    content = "\n".join([IMPORT_HEADER, _row(1), "", _row(2, city="Mohali")]) + "\n"

    response = _upload(test_client, content)

    assert response.status_code == 200, response.text
    assert response.json() == {
        "success": True,
        "imported": 2,
        "message": "Successfully imported 2 buyer leads.",
    }
    assert _count(db_session, Buyer) == 2
    assert _count(db_session, BuyerHistory) == 2

    buyers = db_session.scalars(select(Buyer).order_by(Buyer.full_name)).all()
    assert [buyer.owner_id for buyer in buyers] == ["user-1", "user-1"]
    assert buyers[0].tags == ["hot", "nri"]
    assert buyers[0].budget_min == 4000000
    assert str(buyers[1].city) == "Mohali"
    assert all(str(buyer.status) == "New" for buyer in buyers)

    completed = [item for item in events.published_events if item["event_type"] == "buyers.import.completed"]
    assert completed[-1]["payload"] == {"imported": 2}


def test_import_accepts_header_aliases_and_bom(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    content = (
        "\ufefffullname, Phone_Number ,city,propertytype,purpose,timeline,source,budgetmin,unused\n"
        "Kiran Rao,9811111111,Panchkula,Office,Rent,>6m,Call,25000,ignored\n"
    )

    response = _upload(test_client, content)

    assert response.status_code == 200, response.text
    buyer = db_session.scalar(select(Buyer))
    assert buyer is not None
    assert buyer.full_name == "Kiran Rao"
    assert buyer.phone == "9811111111"
    assert buyer.budget_min == 25000
    assert buyer.tags == []


def test_import_rejects_more_than_two_hundred_rows(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    content = "\n".join([IMPORT_HEADER, *(_row(index) for index in range(201))])

    response = _upload(test_client, content)

    assert response.status_code == 422
    assert response.json()["details"]["field_errors"] == {
        "file": ["Too many rows. Maximum 200 rows allowed per import."]
    }
    assert _count(db_session, Buyer) == 0


def test_import_with_one_invalid_row_writes_nothing(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    rows = [_row(index, city="Delhi" if index == 57 else "Chandigarh") for index in range(1, 201)]
    content = "\n".join([IMPORT_HEADER, *rows])

    response = _upload(test_client, content)

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "VALIDATION_FAILED"
    assert body["message"] == "Validation failed for 1 rows. Please check your data and try again."
    row_errors = body["details"]["row_errors"]
    assert len(row_errors) == 1
    assert row_errors[0]["row"] == 57
    assert list(row_errors[0]["errors"]) == ["city"]
    assert _count(db_session, Buyer) == 0
    assert _count(db_session, BuyerHistory) == 0


def test_import_reports_every_failing_row(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    content = "\n".join(
        [
            "full_name,phone,city,property_type,bhk,purpose,timeline,source,budget_min,budget_max",
            "Valid Lead,9800000001,Mohali,Plot,,Buy,0-3m,Website,,",
            ",9800000002,Mohali,Villa,,Buy,0-3m,Website,,",
            "Budget Lead,9800000003,Mohali,Plot,,Buy,0-3m,Website,900,100",
        ]
    )

    response = _upload(test_client, content)

    assert response.status_code == 422
    assert response.json()["details"]["row_errors"] == [
        {
            "row": 2,
            "errors": {
                "full_name": ["Full name is required"],
                "bhk": ["BHK is required for Apartment and Villa properties"],
            },
        },
        {
            "row": 3,
            "errors": {"budget_max": ["Maximum budget must be greater than or equal to minimum budget"]},
        },
    ]


def test_import_rejects_oversized_file(
    client: tuple[TestClient, Callable[[str], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    monkeypatch.setenv("IMPORT_MAX_BYTES", "64")
    get_settings.cache_clear()

    response = _upload(test_client, "\n".join([IMPORT_HEADER, _row(1)]))

    assert response.status_code == 422
    assert response.json()["details"]["field_errors"]["file"][0].startswith("File too large.")


def _export(client: TestClient, **params: str):
    response = client.get("/api/buyers/export", params=params)
    assert response.status_code == 200
    return response


def test_export_quotes_every_field_and_keeps_sixteen_columns(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = test_client.post(
        "/api/buyers",
        json={
            "full_name": "Asha Verma",
            "phone": "9876543210",
            "city": "Chandigarh",
            "property_type": "Plot",
            "purpose": "Buy",
            "timeline": "0-3m",
            "source": "Website",
            "notes": 'He said "call later"',
            "tags": ["hot", "family"],
        },
    )
    assert created.status_code == 201

    response = _export(test_client)

    assert response.headers["content-type"].startswith("text/csv")
    assert re.fullmatch(r'attachment; filename="leads-\d{4}-\d{2}-\d{2}\.csv"', response.headers["content-disposition"])

    lines = response.text.split("\n")
    assert lines[0] == ",".join(f'"{header}"' for header in EXPORT_HEADERS)
    assert '"He said ""call later"""' in lines[1]

    rows = list(csv.reader(io.StringIO(response.text)))
    assert rows[0] == EXPORT_HEADERS
    assert len(rows) == 2
    record = dict(zip(rows[0], rows[1]))
    assert len(rows[1]) == 16
    assert record["Email"] == ""
    assert record["BHK"] == ""
    assert record["Budget Min"] == ""
    assert record["Status"] == "New"
    assert record["Tags"] == "hot, family"
    assert record["Created At"].endswith("Z")


def test_export_respects_scope_and_filters(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_caller = client
    assert _upload(test_client, "\n".join([IMPORT_HEADER, _row(1), _row(2, city="Mohali")])).status_code == 200
    set_caller("user-2")
    assert _upload(test_client, "\n".join([IMPORT_HEADER, _row(3)])).status_code == 200

    set_caller("user-1")
    everything = list(csv.reader(io.StringIO(_export(test_client).text)))
    assert sorted(row[0] for row in everything[1:]) == ["Lead 001", "Lead 002"]

    mohali = list(csv.reader(io.StringIO(_export(test_client, city="Mohali").text)))
    assert [row[0] for row in mohali[1:]] == ["Lead 002"]
