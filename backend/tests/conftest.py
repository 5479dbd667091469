# backend/tests/conftest.py
import pytest

from tapecapture.db import init_db, make_engine
from tapecapture.persistence import PersistenceAdapter
from tapecapture.registry import JobRegistry
from tapecapture.watchdog import Watchdog

from fakes import FakeLauncher, StaticProbe


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def persistence(engine):
    return PersistenceAdapter(engine)


@pytest.fixture
def collections_dir(tmp_path):
    return str(tmp_path / "collections")


@pytest.fixture
def make_registry(persistence, collections_dir):
    def _make(
        device: bool = True,
        launcher=None,
        emulated_launcher=None,
        watchdog_timeout: float = 60.0,
        cancel_grace: float = 5.0,
        store=None,
    ):
        registry = JobRegistry(
            persistence=store or persistence,
            probe=StaticProbe(device),
            launcher=launcher or FakeLauncher(),
            emulated_launcher=emulated_launcher,
            watchdog=Watchdog(watchdog_timeout),
            collections_dir=collections_dir,
            cancel_grace=cancel_grace,
        )
        return registry

    return _make


@pytest.fixture
async def registry(make_registry):
    reg = make_registry()
    await reg.initialize()
    yield reg
    await reg.shutdown()
