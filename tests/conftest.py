"""Shared fixtures for the pgcluster test suite."""

from __future__ import annotations

import pytest

from fakes import FakeCloud, FakeDns, FakeExecutor, FakeStatusSource, FakeStorage, FrozenClock, Sleeper
from pgcluster.config import ControlPlaneConfig
from pgcluster.db.connection import Database
from pgcluster.db.migrations import run_migrations


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "pgcluster.db")
    run_migrations(database)
    yield database
    database.close()


@pytest.fixture
def config(tmp_path):
    """Config with every wait collapsed to a single quick attempt."""
    return ControlPlaneConfig(
        db_path=str(tmp_path / "pgcluster.db"),
        base_domain="db.test",
        reachability_attempts=3,
        reachability_interval=0,
        quorum_attempts=3,
        quorum_interval=0,
        election_attempts=3,
        election_interval=0,
        restore_timeout=1,
        restore_poll_interval=0.5,
        export_retry_delay=0,
        storage_endpoint="https://s3.test",
        storage_access_key="access",
        storage_secret_key="secret",
    )


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def dns():
    return FakeDns()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def statuses():
    return FakeStatusSource()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def sleeper():
    return Sleeper()
