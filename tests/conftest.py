"""Lexis test configuration."""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure the lexis package is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


class ManualClock:
    """Monotonic-style clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualDateClock:
    """UTC datetime clock for LearningStore tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def tmp_lexis_dir(tmp_path):
    """Create a temporary LEXIS_HOME for testing."""
    lexis_dir = tmp_path / ".lexis"
    lexis_dir.mkdir()
    old_home = os.environ.get("LEXIS_HOME")
    os.environ["LEXIS_HOME"] = str(lexis_dir)
    # Default: disable encryption in tests for deterministic output
    old_encrypt = os.environ.get("LEXIS_ENCRYPT")
    os.environ["LEXIS_ENCRYPT"] = "0"
    from lexis.crypto import reset_crypto_state
    reset_crypto_state()
    yield lexis_dir
    if old_home is not None:
        os.environ["LEXIS_HOME"] = old_home
    else:
        os.environ.pop("LEXIS_HOME", None)
    if old_encrypt is not None:
        os.environ["LEXIS_ENCRYPT"] = old_encrypt
    else:
        os.environ.pop("LEXIS_ENCRYPT", None)
    reset_crypto_state()


@pytest.fixture
def tmp_lexis_dir_encrypted(tmp_lexis_dir):
    """Same as tmp_lexis_dir, with encryption at rest enabled."""
    os.environ["LEXIS_ENCRYPT"] = "1"
    from lexis.crypto import reset_crypto_state
    reset_crypto_state()
    yield tmp_lexis_dir


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def date_clock():
    return ManualDateClock()


@pytest.fixture
def kv():
    from lexis.kv_store import InMemoryKVStore
    store = InMemoryKVStore()
    yield store
    store.close()


@pytest.fixture
def store(date_clock):
    """A fresh LearningStore on a controllable clock."""
    from lexis.learning_store import LearningStore
    return LearningStore(clock=date_clock)


@pytest.fixture
def offline_config(tmp_lexis_dir):
    from lexis.config import EngineConfig
    return EngineConfig(home=tmp_lexis_dir, online_lookups=False)


@pytest.fixture
def engine(offline_config, kv, store):
    """An offline Engine over an in-memory key-value store."""
    from lexis.engine import Engine
    eng = Engine(config=offline_config, kv=kv, store=store)
    yield eng
    eng.close()
