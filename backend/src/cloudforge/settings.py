"""Runtime settings for the trigger and job core.

Settings come from an optional YAML file, then environment variables
override individual keys:

    # cloudforge.yaml
    triggerTimeoutMs: 5000
    jobTimeoutMs: null
    cancelOnTimeout: false
    logTruncateLength: 1000
    jobMaxConcurrency: 10
    masterKey: change-me
    cloudModule: myapp.cloud
    jobStoreUrl: sqlite:///data/jobs.db
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

# YAML key -> (attribute, environment variable)
_KEYS: dict[str, tuple[str, str]] = {
    "triggerTimeoutMs": ("trigger_timeout_ms", "CLOUDFORGE_TRIGGER_TIMEOUT_MS"),
    "jobTimeoutMs": ("job_timeout_ms", "CLOUDFORGE_JOB_TIMEOUT_MS"),
    "cancelOnTimeout": ("cancel_on_timeout", "CLOUDFORGE_CANCEL_ON_TIMEOUT"),
    "logTruncateLength": ("log_truncate_length", "CLOUDFORGE_LOG_TRUNCATE_LENGTH"),
    "jobMaxConcurrency": ("job_max_concurrency", "CLOUDFORGE_JOB_MAX_CONCURRENCY"),
    "masterKey": ("master_key", "CLOUDFORGE_MASTER_KEY"),
    "cloudModule": ("cloud_module", "CLOUDFORGE_CLOUD_MODULE"),
    "jobStoreUrl": ("job_store_url", "CLOUDFORGE_JOB_STORE_URL"),
}

_TRUE = ("1", "true", "yes", "on")

# Settings without a null value; null in YAML keeps the default
_REQUIRED = ("cancel_on_timeout", "log_truncate_length", "job_max_concurrency")


class SettingsError(ValueError):
    """Raised for unreadable or malformed settings."""


@dataclass
class CloudSettings:
    """Trigger and job execution settings.

    Attributes:
        trigger_timeout_ms: Default deadline for hooks and functions (None = unbounded)
        job_timeout_ms: Default deadline for jobs (None = unbounded)
        cancel_on_timeout: Cancel timed-out handler tasks instead of abandoning them
        log_truncate_length: Max characters of input/result in trigger log lines
        job_max_concurrency: Default concurrency bound for job fan-out
        master_key: Key that marks HTTP callers as master
        cloud_module: Dotted module exposing register(registry)
        job_store_url: SQLAlchemy URL for the job status store (None = in-memory only)
    """

    trigger_timeout_ms: int | None = None
    job_timeout_ms: int | None = None
    cancel_on_timeout: bool = False
    log_truncate_length: int = 1000
    job_max_concurrency: int = 10
    master_key: str | None = None
    cloud_module: str | None = None
    job_store_url: str | None = None

    @classmethod
    def load(cls, path: Path | str | None = None) -> CloudSettings:
        """Load settings from YAML (if any) and apply environment overrides.

        Resolution order per key:
        1. CLOUDFORGE_* environment variable
        2. Value in the YAML file (path argument, else CLOUDFORGE_CONFIG)
        3. Dataclass default
        """
        values: dict[str, Any] = {}

        config_path = path or os.environ.get("CLOUDFORGE_CONFIG")
        if config_path:
            values.update(cls._read_yaml(Path(config_path)))

        for attr, env_var in _KEYS.values():
            raw = os.environ.get(env_var)
            if raw is not None and raw != "":
                values[attr] = raw

        return cls.from_dict(values)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CloudSettings:
        """Build settings from attribute names or YAML keys, coercing types."""
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            attr = _KEYS[key][0] if key in _KEYS else key
            if attr not in known:
                raise SettingsError(f"Unknown setting: {key}")
            if value is None and attr in _REQUIRED:
                continue
            kwargs[attr] = cls._coerce(attr, value)
        return cls(**kwargs)

    @staticmethod
    def _read_yaml(path: Path) -> dict[str, Any]:
        if not path.exists():
            raise SettingsError(f"Settings file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise SettingsError(f"Settings file must contain a mapping: {path}")
        return data

    @staticmethod
    def _coerce(attr: str, value: Any) -> Any:
        if value is None:
            return None
        if attr == "cancel_on_timeout":
            if isinstance(value, bool):
                return value
            return str(value).strip().lower() in _TRUE
        if attr in ("trigger_timeout_ms", "job_timeout_ms", "log_truncate_length", "job_max_concurrency"):
            try:
                number = int(value)
            except (TypeError, ValueError) as e:
                raise SettingsError(f"Setting '{attr}' must be an integer, got {value!r}") from e
            if number < 0:
                raise SettingsError(f"Setting '{attr}' must not be negative")
            return number
        return str(value)
