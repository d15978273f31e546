"""Pytest configuration and shared fixtures."""
import os

# must be set before control_panel.settings is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("MQTT_ENABLED", "0")
os.environ.setdefault("DEVICE_SECRET", "test-secret")

from datetime import datetime, timezone

import pytest
from sqlmodel import Session

from control_panel.db import init_db, make_engine
from control_panel.devices import register_device

OWNER = "user-alice"
OTHER = "user-bob"
STRANGER = "user-mallory"


@pytest.fixture()
def engine():
    eng = make_engine("sqlite://")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine, expire_on_commit=False) as s:
        yield s


@pytest.fixture()
def session_factory(engine):
    return lambda: Session(engine, expire_on_commit=False)


@pytest.fixture()
def prime(session):
    return register_device(session, "Prime", "192.168.1.100", 3000, OWNER)


@pytest.fixture()
def vip(session):
    return register_device(session, "VIP", "192.168.1.101", 3000, OWNER)


@pytest.fixture()
def t0():
    return datetime(2025, 10, 19, 12, 0, 0, tzinfo=timezone.utc)
