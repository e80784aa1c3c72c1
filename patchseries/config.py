import logging
import os
from pathlib import Path, PurePosixPath

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator

from patchseries.patch.apply import DEFAULT_MAX_FUZZ

logger = logging.getLogger(__name__)

ENV_PREFIX = "PATCH_SERIES_"
DEFAULT_PATCH_DIR = "patches/"


def _env_truthy(name: str) -> bool | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value.lower() in ("1", "true", "yes", "on")


def _env_int(name: str) -> int | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, value)
        return None


class Settings(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
    )

    patch_dir: str = DEFAULT_PATCH_DIR
    max_fuzz: int = DEFAULT_MAX_FUZZ
    error_on_fail: bool = True
    error_on_warn: bool = False
    registry_url: str | None = None
    fetch_timeout_sec: int = 60
    state_dir: str = "node_modules/.patch-series"

    @field_validator("patch_dir")
    @classmethod
    def _patch_dir_is_relative(cls, value: str) -> str:
        normalized = PurePosixPath(value.replace("\\", "/"))
        if normalized.is_absolute():
            raise ValueError("--patch-dir must be a relative path")
        return f"{normalized.as_posix().rstrip('/')}/"

    @field_validator("max_fuzz", "fetch_timeout_sec")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value


def load_settings(app_root: Path, **overrides) -> Settings:
    """
    Build settings from, in increasing precedence:
        - defaults
        - `<app_root>/.env` (never overrides the real environment)
        - PATCH_SERIES_* environment variables
        - explicit overrides (CLI flags); None values are ignored
    """

    env_file = Path(app_root) / ".env"
    if env_file.is_file():
        load_dotenv(env_file, override=False)
        logger.debug("Loaded environment from %s", env_file)

    values: dict[str, object] = {}
    string_fields = ("patch_dir", "registry_url", "state_dir")
    for field_name in string_fields:
        value = os.getenv(ENV_PREFIX + field_name.upper())
        if value:
            values[field_name] = value
    for field_name in ("max_fuzz", "fetch_timeout_sec"):
        value = _env_int(ENV_PREFIX + field_name.upper())
        if value is not None:
            values[field_name] = value
    for field_name in ("error_on_fail", "error_on_warn"):
        value = _env_truthy(ENV_PREFIX + field_name.upper())
        if value is not None:
            values[field_name] = value

    values.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**values)
