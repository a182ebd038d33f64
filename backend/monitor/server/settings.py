"""Monitor server configuration via environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings

from monitor.api.client import DEFAULT_BASE_URL, DEFAULT_TIMEOUT_SECONDS, DEFAULT_USER_AGENT
from monitor.broadcast.hub import DEFAULT_SEND_TIMEOUT_SECONDS, DEFAULT_SHUTDOWN_GRACE_SECONDS
from monitor.polling.scheduler import DEFAULT_INITIAL_DELAY_SECONDS, DEFAULT_QUEUE_SIZE


class MonitorSettings(BaseSettings):
    model_config = {"env_prefix": "MONITOR_"}

    config_path: str = Field(default="backend/config/accounts.yaml", min_length=1)
    log_dir: str = Field(default="backend/logs/monitor", min_length=1)
    error_log_retention_days: int = Field(default=3, ge=1)
    session_cache_path: str = Field(default="vrc_session_cache.json", min_length=1)
    static_dir: str | None = None

    api_base_url: str = Field(default=DEFAULT_BASE_URL, min_length=1)
    user_agent: str = Field(default=DEFAULT_USER_AGENT, min_length=1)
    request_timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)

    poll_queue_size: int = Field(default=DEFAULT_QUEUE_SIZE, ge=1)
    poll_initial_delay_seconds: float = Field(default=DEFAULT_INITIAL_DELAY_SECONDS, ge=0)
    validate_session_on_startup: bool = True

    broadcast_traffic: bool = True
    send_timeout_seconds: float = Field(default=DEFAULT_SEND_TIMEOUT_SECONDS, gt=0)
    shutdown_grace_seconds: float = Field(default=DEFAULT_SHUTDOWN_GRACE_SECONDS, ge=0)
