"""Watched-account roster loaded from a YAML file."""

import re
from pathlib import Path

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = structlog.get_logger()

MIN_POLL_INTERVAL_SECONDS = 60.0

_DURATION_PATTERN = re.compile(r"^(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$", re.IGNORECASE)


class ConfigError(Exception):
    """Accounts configuration file is present but unusable."""


def parse_poll_interval(value: str | float | None) -> float:
    """Parse "1d2h30m15s"-style durations (or bare seconds) into seconds.

    Missing, unparseable, zero and negative values fall back to one minute.
    """
    if value is None or value == "":
        return MIN_POLL_INTERVAL_SECONDS
    if isinstance(value, bool):
        seconds = 0.0
    elif isinstance(value, int | float):
        seconds = float(value)
    else:
        text = value.strip()
        match = _DURATION_PATTERN.match(text) if text else None
        if text.isdigit():
            seconds = float(text)
        elif match is None or not any(match.groups()):
            seconds = 0.0
        else:
            days, hours, minutes, secs = (int(group or 0) for group in match.groups())
            seconds = float(((days * 24 + hours) * 60 + minutes) * 60 + secs)
    if seconds <= 0:
        logger.warning("invalid poll interval, using minimum", value=value, seconds=MIN_POLL_INTERVAL_SECONDS)
        return MIN_POLL_INTERVAL_SECONDS
    return seconds


class WatchedAccount(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    account_id: str = Field(min_length=1)
    label: str = ""
    poll_interval_seconds: float = Field(default=MIN_POLL_INTERVAL_SECONDS, alias="poll_interval")
    volume_hint: float | None = None

    @field_validator("poll_interval_seconds", mode="before")
    @classmethod
    def _parse_interval(cls, value: object) -> float:
        if value is not None and not isinstance(value, str | int | float):
            return parse_poll_interval(None)
        return parse_poll_interval(value)

    @property
    def display_label(self) -> str:
        return self.label or self.account_id


class MonitorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    accounts: list[WatchedAccount] = Field(default_factory=list)
    cache_session: bool = False
    log_errors_to_file: bool = False

    @field_validator("accounts")
    @classmethod
    def _unique_ids(cls, accounts: list[WatchedAccount]) -> list[WatchedAccount]:
        seen: set[str] = set()
        for account in accounts:
            if account.account_id in seen:
                raise ValueError(f"duplicate account_id {account.account_id!r}")
            seen.add(account.account_id)
        return accounts


def _get_default_config_path() -> Path:  # pragma: no cover - production default, tests pass a path
    backend_root = Path(__file__).parent.parent
    return backend_root / "config" / "accounts.yaml"


def load_config(config_path: Path | None = None) -> MonitorConfig:
    """Read the accounts file. A missing file yields an empty roster."""
    path = config_path or _get_default_config_path()
    if not path.exists():
        logger.warning("accounts config not found, watching nothing", path=str(path))
        return MonitorConfig()

    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to read {path}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the root of {path}")

    try:
        config = MonitorConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid accounts config {path}: {exc}") from exc

    logger.info("loaded accounts config", path=str(path), accounts=len(config.accounts))
    return config
