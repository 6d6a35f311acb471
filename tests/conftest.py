from dataclasses import replace

import pytest

from shiki.core.config import DEFAULT_CONFIG
from shiki.core.store.db import Store
from shiki.core.tracker import Tracker


@pytest.fixture
def store(tmp_path):
    s = Store.open(tmp_path / ".shiki" / "shiki.db", create=True)
    yield s
    s.close()


@pytest.fixture
def tracker(tmp_path):
    t = Tracker.open(tmp_path, create=True, config=DEFAULT_CONFIG)
    yield t
    t.close()


@pytest.fixture
def eager_tracker(tmp_path):
    t = Tracker.open(tmp_path, create=True, config=replace(DEFAULT_CONFIG, promotion="eager"))
    yield t
    t.close()


@pytest.fixture(autouse=True)
def _clean_shiki_env(monkeypatch):
    for name in ("SHIKI_ROOT", "SHIKI_PROMOTION", "SHIKI_ACTOR", "SHIKI_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
