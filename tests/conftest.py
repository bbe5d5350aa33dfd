import pathlib
import sys
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from shipledger.fallback_store import VolatileFallbackStore
from shipledger.main import create_app
from shipledger.orchestrator import ReconciliationOrchestrator
from shipledger.record_store import SqliteRecordStore
from shipledger.remote_mirror import InMemoryRemoteMirror
from shipledger.schemas import Order
from shipledger.settings import LedgerSettings


def days_ago(days: int) -> str:
    return (datetime.now(UTC) - timedelta(days=days)).date().isoformat()


def make_order(tracking_number: str, **fields) -> Order:
    payload = {
        "id": fields.pop("id", f"ord_{tracking_number.strip().lower()}"),
        "tracking_number": tracking_number,
        "send_date": fields.pop("send_date", days_ago(1)),
        "customer_name": fields.pop("customer_name", "Nguyen Van A"),
        "cod": fields.pop("cod", 250000.0),
        "shipping_fee": fields.pop("shipping_fee", 30000.0),
    }
    payload.update(fields)
    return Order.model_validate(payload)


@pytest.fixture(autouse=True)
def isolate_env(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SHIPLEDGER_SQLITE_PATH", str(tmp_path / "env_default.sqlite3"))
    monkeypatch.delenv("SHIPLEDGER_MIRROR_BACKEND", raising=False)
    monkeypatch.delenv("SHIPLEDGER_REQUIRE_DURABLE", raising=False)
    monkeypatch.delenv("REDIS_DSN", raising=False)
    yield


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> LedgerSettings:
    return LedgerSettings(
        sqlite_path=str(tmp_path / "orders.sqlite3"),
        import_chunk_size=3,
        import_retry_base_delay_s=0.0,
        import_yield_s=0.0,
    )


@pytest.fixture
def mirror() -> InMemoryRemoteMirror:
    return InMemoryRemoteMirror()


@pytest.fixture
def orchestrator(settings: LedgerSettings, mirror: InMemoryRemoteMirror) -> ReconciliationOrchestrator:
    return ReconciliationOrchestrator(
        [SqliteRecordStore(settings.sqlite_path), VolatileFallbackStore()],
        mirror=mirror,
    )


@pytest.fixture
def client(orchestrator: ReconciliationOrchestrator, settings: LedgerSettings):
    app = create_app(orchestrator, settings=settings)
    with TestClient(app) as base:
        yield base
