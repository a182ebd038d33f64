"""File-backed cache of session tokens used to pre-seed auth state on startup."""

import contextlib
import json
import os
import tempfile
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = structlog.get_logger()

_FILE_PERMISSIONS = 0o600  # owner read/write only


class CachedTokens(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_token: str = Field(alias="authCookie", min_length=1)
    second_factor_token: str | None = Field(default=None, alias="twoFactorAuthCookie")


class FileSessionCache:
    """Session tokens persisted as a small JSON document.

    A missing, unreadable or malformed file counts as "no cached session";
    a corrupt file is removed so the next save starts clean.
    """

    def __init__(self, file_path: str | Path) -> None:
        self._file_path = Path(file_path)

    @property
    def file_path(self) -> Path:
        return self._file_path

    def load(self) -> CachedTokens | None:
        if not self._file_path.exists():
            return None
        try:
            tokens = CachedTokens.model_validate_json(self._file_path.read_bytes())
        except (OSError, ValidationError):
            logger.warning("discarding unreadable session cache", path=str(self._file_path))
            self.clear()
            return None
        logger.info("loaded cached session", path=str(self._file_path))
        return tokens

    def save(self, tokens: CachedTokens) -> None:
        """Atomically write the tokens with owner-only permissions."""
        self._file_path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(tokens.model_dump(by_alias=True), indent=2).encode("utf-8")

        fd, tmp_path = tempfile.mkstemp(
            dir=self._file_path.parent,
            prefix=".session_",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
                f.flush()
                os.fchmod(f.fileno(), _FILE_PERMISSIONS)
            Path(tmp_path).replace(self._file_path)
        except BaseException:
            with contextlib.suppress(OSError):
                Path(tmp_path).unlink()
            raise
        logger.info("saved session cache", path=str(self._file_path))

    def clear(self) -> None:
        try:
            self._file_path.unlink(missing_ok=True)
        except OSError:
            logger.exception("failed to remove session cache", path=str(self._file_path))
