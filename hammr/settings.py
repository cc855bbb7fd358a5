from pathlib import Path
from typing import Optional
from pydantic import BaseModel
import tomllib
import os


HAMMR_ROOT = Path(os.getenv("HAMMR_ROOT", Path.cwd()))


class PollingCfg(BaseModel):
    initial_interval_ms: int = 10_000
    min_interval_ms: int = 10_000
    error_backoff_ms: int = 60_000
    max_not_found: int = 5


class FeedCfg(BaseModel):
    api_key: Optional[str] = None
    base_url: str = "https://www.googleapis.com/youtube/v3"
    timeout_seconds: float = 30
    cache_ttl_success_seconds: int = 30 * 60
    cache_ttl_failure_seconds: int = 5 * 60


class LogCfg(BaseModel):
    directory: str = "/tmp/logs/monitor"
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5
    per_job_entries: int = 100
    global_entries: int = 200
    level: str = "INFO"


class DatabaseCfg(BaseModel):
    url: str = f"sqlite+aiosqlite:///{HAMMR_ROOT}/data/hammr.sqlite"
    echo: bool = False


class Settings(BaseModel):
    polling: PollingCfg = PollingCfg()
    feed: FeedCfg = FeedCfg()
    logs: LogCfg = LogCfg()
    database: DatabaseCfg = DatabaseCfg()


def load_settings() -> Settings:
    cfg_path = Path(os.getenv("HAMMR_CONFIG", "hammr.toml"))
    raw = tomllib.loads(cfg_path.read_text()) if cfg_path.exists() else {}
    # the API key usually lives in the environment, not in the file
    feed = raw.setdefault("feed", {})
    if not feed.get("api_key") and os.getenv("YOUTUBE_API_KEY"):
        feed["api_key"] = os.environ["YOUTUBE_API_KEY"]
    return Settings.model_validate(raw)
