import asyncio
from collections.abc import Iterator
import inspect
import os
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from encore.config import AppConfig, load_config, override_runtime_env  # noqa: E402
from encore.db import init_db, reset_engine_for_tests  # noqa: E402
from tests.support.clock import FakeClock  # noqa: E402


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    marker = pyfuncitem.get_closest_marker("asyncio")
    if marker is None:
        return None
    test_func = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_func):
        return None
    fixtureinfo = getattr(pyfuncitem, "_fixtureinfo", None)
    if fixtureinfo is None:
        return None
    kwargs = {name: pyfuncitem.funcargs[name] for name in fixtureinfo.argnames}
    asyncio.run(test_func(**kwargs))
    return True


_TEST_ENV = {
    "WORKERS_ENABLED": "false",
    "SPOTIFY_CLIENT_ID": "test-client",
    "SPOTIFY_CLIENT_SECRET": "test-secret",
    "TICKETMASTER_API_KEY": "tm-key",
    "IMPORT_DEEP_CATALOG_DELAY_MS": "0",
    "LOG_LEVEL": "INFO",
}


@pytest.fixture(autouse=True)
def _test_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    for key in ("SETLISTFM_API_KEY", "IMPORT_HISTORICAL_SETLISTS"):
        monkeypatch.delenv(key, raising=False)
    for key, value in _TEST_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{data_dir / 'encore.db'}")

    override_runtime_env(None)
    reset_engine_for_tests()
    init_db()
    try:
        yield
    finally:
        reset_engine_for_tests()
        override_runtime_env(None)


@pytest.fixture()
def config() -> AppConfig:
    return load_config()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
