from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, select, text
from sqlalchemy.orm import Session

from .config import DB_URL, SEED_DEMO
from .models import Base, Product, Table

_log = logging.getLogger("tableside.pos.db")

engine = create_engine(DB_URL, future=True)


def get_session():
    with Session(engine) as s:
        yield s


def is_sqlite(s: Session) -> bool:
    bind = s.get_bind()
    return bind.dialect.name == "sqlite"


def locked(s: Session, stmt):
    """
    Row-lock ``stmt`` for the rest of the transaction.

    SQLite has no ``SELECT ... FOR UPDATE``; it serializes writers at the
    database level instead, so the statement is returned unchanged there.
    """
    if is_sqlite(s):
        return stmt
    return stmt.with_for_update()


@contextmanager
def atomic(s: Session) -> Iterator[Session]:
    """One operation, one transaction: commit on success, roll back everything otherwise."""
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise


def ping(s: Session) -> bool:
    s.execute(text("SELECT 1"))
    return True


def _ensure_demo_catalog(s: Session) -> None:
    if s.execute(select(Product.id).limit(1)).first():
        return
    for name, cents, station in [
        ("Espresso", 120, "bar"),
        ("Cappuccino", 150, "bar"),
        ("Cornetto", 150, "kitchen"),
        ("Tea", 100, "bar"),
        ("Toast", 450, "kitchen"),
    ]:
        s.add(Product(name=name, price_cents=cents, station=station))
    for i in range(1, 7):
        s.add(Table(name=f"T{i}", capacity=4))
    s.commit()
    _log.info("seeded demo catalog")


def on_startup() -> None:
    Base.metadata.create_all(engine)
    if SEED_DEMO:
        with Session(engine) as s:
            _ensure_demo_catalog(s)
