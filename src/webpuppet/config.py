"""Central configuration for the webpuppet automation core."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_ENV_FILE = Path.cwd() / ".env"
DEFAULT_INJECT_SCRIPT = PACKAGE_DIR / "assets" / "puppet-bro.js"

MB = 1024 * 1024


# ============================================================
# Nested Configuration Classes
# ============================================================

class WatchdogSettings(BaseModel):
    """Liveness watchdog timeouts (seconds)."""
    heartbeat_timeout: float = Field(60.0, description="Fatal if no heartbeat arrives within this window")
    scan_timeout: float = Field(240.0, description="Reload the session if the login QR stalls this long")
    first_login_timeout: float = Field(120.0, description="Heartbeat window granted right after init")


class BridgeSettings(BaseModel):
    """Embedded session bootstrap and call proxy configuration."""
    default_host: str = Field("https://wx.qq.com", description="Host used when no usable cookie exists")
    ready_probe: str = Field(
        "typeof window.angular !== 'undefined'",
        description="Expression that turns true once the page runtime framework is loaded",
    )
    ready_timeout: float = Field(30.0, description="Max wait for the page runtime framework (seconds)")
    ding_timeout: float = Field(10.0, description="Max wait for the self-test round trip (seconds)")
    inject_script: Path = Field(DEFAULT_INJECT_SCRIPT, description="Automation script injected into the page")
    remote_namespace: str = Field("WechatyBro", description="Global object the injected script exposes")
    session_event_queue_size: int = Field(64, description="Max buffered session-originated events")


class BrowserSettings(BaseModel):
    """Rendering session (Chromium over DevTools) configuration."""
    chrome_path: Optional[str] = Field(None, description="Chromium executable; autodetected when empty")
    devtools_url: Optional[str] = Field(None, description="Attach to a running browser (http://host:port)")
    launch_timeout: float = Field(20.0, description="Max wait for the DevTools endpoint after launch")
    command_timeout: float = Field(30.0, description="Max wait for a single DevTools command")
    extra_args: List[str] = Field(default_factory=list, description="Additional Chromium flags")


class RetrySettings(BaseModel):
    """Bounded linear backoff for data fetches."""
    get_contact_max_attempts: int = Field(35, description="Attempts before getContact gives up")
    get_contact_backoff: float = Field(0.5, description="Backoff step; attempt n waits n * step (seconds)")


class UploadSettings(BaseModel):
    """Media upload limits and HTTP tuning."""
    max_file_size: int = Field(100 * MB, description="Any payload above this is rejected")
    large_file_size: int = Field(25 * MB, description="Payloads above this need a check-phase signature")
    max_video_size: int = Field(20 * MB, description="Video payloads above this are rejected")
    request_timeout: float = Field(120.0, description="HTTP timeout for check and upload requests")
    user_agent: str = Field(
        "Mozilla/5.0 (Windows NT 6.1; WOW64) AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/50.0.2661.102 Safari/537.36",
        description="User-Agent sent with upload requests",
    )


class StabilitySettings(BaseModel):
    """Contact-list stability probe."""
    ready_stable_timeout: float = Field(60.0, description="Wall-clock ceiling for the probe (seconds)")
    ready_stable_interval: float = Field(1.0, description="Delay between contact counts (seconds)")


class Settings(BaseSettings):
    """Environment-driven settings for a puppet instance."""

    # Profile & session
    profile: Optional[str] = Field(None, description="Profile name or absolute path; empty disables persistence")
    head: bool = Field(False, description="Show the browser window instead of running headless")
    cookie_save_interval: float = Field(300.0, description="Persist cookies at most once per interval (seconds)")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Optional[Path] = Field(None, description="Log directory path; console only when empty")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    watchdog: WatchdogSettings = Field(default_factory=WatchdogSettings, description="Watchdog timeouts")
    bridge: BridgeSettings = Field(default_factory=BridgeSettings, description="Bridge bootstrap settings")
    browser: BrowserSettings = Field(default_factory=BrowserSettings, description="Browser launch settings")
    retry: RetrySettings = Field(default_factory=RetrySettings, description="Data fetch retry policy")
    upload: UploadSettings = Field(default_factory=UploadSettings, description="Media upload limits")
    stability: StabilitySettings = Field(default_factory=StabilitySettings, description="Stability probe")

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper() or "INFO"
        return value

    model_config = SettingsConfigDict(
        env_prefix="WEBPUPPET_",
        env_nested_delimiter="__",
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
