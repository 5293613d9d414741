# pyjobqueue/config.py
import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional

from pyjobqueue.common.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "PYJOBQUEUE_"

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class JobsConfig:
    enabled: bool = True
    workers: int = 5
    poll_interval: float = 5.0
    max_retries: int = 3
    scheduler_check_interval: float = 60.0
    shutdown_timeout: float = 30.0
    lock_timeout: float = 300.0
    retry_backoff_seconds: float = 0.0
    stuck_job_timeout: float = 0.0  # 0 disables recovery
    job_history_retention_days: int = 90
    instance_name: str = ""
    use_redis: bool = False
    redis_url: Optional[str] = None
    database_url: Optional[str] = None

    def validate(self) -> "JobsConfig":
        """Replace out-of-range values with their defaults, logging each one."""
        defaults = JobsConfig()
        for name in (
            "workers",
            "poll_interval",
            "max_retries",
            "scheduler_check_interval",
            "shutdown_timeout",
            "lock_timeout",
            "job_history_retention_days",
        ):
            value = getattr(self, name)
            if value <= 0:
                fallback = getattr(defaults, name)
                logger.warning(f"Invalid {name}={value!r}, using default {fallback!r}")
                setattr(self, name, fallback)
        for name in ("retry_backoff_seconds", "stuck_job_timeout"):
            if getattr(self, name) < 0:
                logger.warning(f"Invalid {name}={getattr(self, name)!r}, using 0")
                setattr(self, name, 0.0)
        return self

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "JobsConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.debug(f"Ignoring unknown job settings: {', '.join(sorted(unknown))}")
        return cls(**{key: value for key, value in data.items() if key in known})

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "JobsConfig":
        """Read ``PYJOBQUEUE_<FIELD>`` variables, e.g. ``PYJOBQUEUE_WORKERS=8``."""
        environ = os.environ if environ is None else environ
        values: dict = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                if f.type in (bool, "bool"):
                    values[f.name] = raw.strip().lower() in _TRUE_VALUES
                elif f.type in (int, "int"):
                    values[f.name] = int(raw)
                elif f.type in (float, "float"):
                    values[f.name] = float(raw)
                elif f.name.endswith("_url"):
                    values[f.name] = raw or None
                else:
                    values[f.name] = raw
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}") from e
        return cls(**values)
