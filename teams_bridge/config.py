import logging
import os
from pathlib import Path
from dataclasses import dataclass

from dotenv import load_dotenv


DEFAULT_CLIENT_ID = "4b3e8f46-56d3-427f-b1e2-d239b2ea6bca"


@dataclass
class Config:
    client_id: str
    data_dir: Path
    log_level: str = "INFO"
    discovery_interval: float = 600.0
    receipt_poll_interval: float = 30.0
    poll_wake_ceiling: float = 5.0
    stop_grace: float = 5.0

    @property
    def db_path(self) -> Path:
        return self.data_dir / "bridge.db"


def _clean(value: str) -> str:
    return value.strip().strip('"').strip("'")


def _seconds(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not _clean(raw):
        return default
    try:
        value = float(_clean(raw))
    except ValueError:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def load_config() -> Config:
    current = Path(__file__).parent.parent
    env_path = current / ".env"

    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()

    client_id = _clean(os.getenv("TEAMS_CLIENT_ID", "")) or DEFAULT_CLIENT_ID
    data_dir = Path(_clean(os.getenv("DATA_DIR", "")) or current / "data")
    data_dir.mkdir(parents=True, exist_ok=True)

    log_level = _clean(os.getenv("LOG_LEVEL", "")).upper() or "INFO"
    if not isinstance(logging.getLevelName(log_level), int):
        raise ValueError(f"LOG_LEVEL must be a logging level name, got {log_level!r}")

    return Config(
        client_id=client_id,
        data_dir=data_dir,
        log_level=log_level,
        discovery_interval=_seconds("DISCOVERY_INTERVAL", 600.0),
        receipt_poll_interval=_seconds("RECEIPT_POLL_INTERVAL", 30.0),
        poll_wake_ceiling=_seconds("POLL_WAKE_CEILING", 5.0),
        stop_grace=_seconds("STOP_GRACE", 5.0),
    )
