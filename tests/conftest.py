import os
from typing import Dict

os.environ.setdefault("ENV", "test")
os.environ.setdefault("POS_DB_URL", "sqlite+pysqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from apps.pos.app import db as pos_db
from apps.pos.app.auth import Actor
from apps.pos.app.models import Base, Product, Table


CATALOG = [
    ("espresso", "Espresso", 120, "bar"),
    ("cappuccino", "Cappuccino", 150, "bar"),
    ("cornetto", "Cornetto", 150, "kitchen"),
    ("tea", "Tea", 100, "bar"),
    ("panino", "Panino", 250, "kitchen"),
]


@pytest.fixture()
def engine(monkeypatch):
    """
    Isolated in-memory SQLite engine, shared by every session of one test.
    The module-level engine is swapped so startup hooks and health checks
    see the same database.
    """
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    monkeypatch.setattr(pos_db, "engine", eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture()
def catalog(session) -> Dict[str, int]:
    ids: Dict[str, int] = {}
    for key, name, cents, station in CATALOG:
        p = Product(name=name, price_cents=cents, station=station, available=True)
        session.add(p)
        session.flush()
        ids[key] = p.id
    for i in (1, 2):
        t = Table(name=f"T{i}", capacity=4, status="free")
        session.add(t)
        session.flush()
        ids[f"t{i}"] = t.id
    session.commit()
    return ids


@pytest.fixture()
def waiter() -> Actor:
    return Actor(id="w-1", role="waiter", tenant_id="bistro", name="Mara")


@pytest.fixture()
def cashier() -> Actor:
    return Actor(id="c-1", role="cashier", tenant_id="bistro", name="Ugo")


@pytest.fixture()
def manager() -> Actor:
    return Actor(id="m-1", role="manager", tenant_id="bistro", name="Lia")


@pytest.fixture()
def app(engine):
    from apps.pos.app.db import get_session
    from apps.pos.app.main import app as pos_app

    def _session():
        with Session(engine) as s:
            yield s

    pos_app.dependency_overrides[get_session] = _session
    yield pos_app
    pos_app.dependency_overrides.clear()


@pytest.fixture()
def client(app):
    return TestClient(app)


def _headers(actor: Actor) -> Dict[str, str]:
    h = {"X-Actor-Id": actor.id, "X-Actor-Role": actor.role, "X-Actor-Name": actor.name or actor.id}
    if actor.tenant_id:
        h["X-Tenant-Id"] = actor.tenant_id
    return h


@pytest.fixture()
def headers():
    """Actor headers as the gateway forwards them."""
    return _headers
