"""Lexis configuration -- engine settings resolved from LEXIS_* environment variables."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from lexis.errors import InvalidInput

logger = logging.getLogger("lexis.config")


def lexis_home() -> Path:
    """Resolve LEXIS_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("LEXIS_HOME", str(Path.home() / ".lexis")))


def _env_int(name: str, default: int, min_val: int, max_val: int) -> int:
    """Read an integer env var, clamped to [min_val, max_val]."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default
    return max(min_val, min(value, max_val))


def _env_float(name: str, default: float, min_val: float, max_val: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default
    return max(min_val, min(value, max_val))


def _env_flag(name: str, default: bool = True) -> bool:
    val = os.environ.get(name, "").strip().lower()
    if not val:
        return default
    return val not in ("0", "false", "no", "off")


@dataclass
class EngineConfig:
    """Settings for one Engine instance."""

    home: Path = field(default_factory=lexis_home)
    db_path: Path | None = None
    fetch_timeout_s: float = 10.0
    cache_max_entries: int = 1000
    online_lookups: bool = True
    rate_limit_per_minute: int = 10
    max_lookups_per_message: int = 3
    consolidate_interval_s: float = 3600.0
    snapshot_key: str = "learning_store"

    def __post_init__(self):
        self.home = Path(self.home)
        if self.db_path is None:
            self.db_path = self.home / "lexis.db"
        else:
            self.db_path = Path(self.db_path)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config from the environment, clamping numeric values to safe bounds."""
        home = lexis_home()
        db = os.environ.get("LEXIS_DB")
        return cls(
            home=home,
            db_path=Path(db) if db else None,
            fetch_timeout_s=_env_float("LEXIS_FETCH_TIMEOUT", 10.0, 0.1, 120.0),
            cache_max_entries=_env_int("LEXIS_CACHE_MAX", 1000, 10, 1_000_000),
            online_lookups=_env_flag("LEXIS_ONLINE", True),
            rate_limit_per_minute=_env_int("LEXIS_RATE_LIMIT", 10, 1, 10_000),
            max_lookups_per_message=_env_int("LEXIS_MAX_LOOKUPS", 3, 0, 50),
            consolidate_interval_s=_env_float("LEXIS_CONSOLIDATE_INTERVAL", 3600.0, 1.0, 30 * 86400.0),
        )


def log_level_from_env(default: str = "WARNING") -> int:
    """Map LEXIS_LOG_LEVEL to a logging level (unknown names fall back to default)."""
    name = os.environ.get("LEXIS_LOG_LEVEL", default).strip().upper()
    level = logging.getLevelName(name)
    if isinstance(level, int):
        return level
    return logging.getLevelName(default)


def resolve_under_home(filepath: str) -> Path:
    """Resolve a user-supplied path, refusing anything outside LEXIS_HOME."""
    home = lexis_home().expanduser().resolve()
    candidate = Path(filepath).expanduser()
    if not candidate.is_absolute():
        candidate = home / candidate
    resolved = candidate.resolve()
    if resolved != home and home not in resolved.parents:
        raise InvalidInput(f"Path must be under {home}")
    return resolved
