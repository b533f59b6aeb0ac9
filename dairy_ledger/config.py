"""
Ledger Configuration (``dairy_ledger.config``).

Responsibility
--------------
Typed runtime settings for the ledger: database connection, logging level,
and the few business thresholds the reporting side needs.  Values come from
three layers, each overriding the previous one:

1. Dataclass defaults.
2. An optional YAML file (``safe_load``; unknown keys are rejected).
3. Environment variables ``DAIRY_LEDGER_DATABASE_URL`` (falling back to
   ``DATABASE_URL``) and ``DAIRY_LEDGER_LOG_LEVEL``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown key or non-mapping document  -> ``ValueError``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping

import yaml

from dairy_ledger.logging_config import get_logger

logger = get_logger("config")

DEFAULT_DATABASE_URL = "sqlite:///dairy_ledger.sqlite"


@dataclass(frozen=True)
class LedgerSettings:
    """
    Runtime settings.

        settings = load_settings("config/ledger.yaml")
        init_engine_from_url(settings.database_url, echo=settings.echo)
    """

    database_url: str = DEFAULT_DATABASE_URL
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    log_level: str = "INFO"

    # Outstanding anomaly detection
    max_reasonable_outstanding: Decimal = Decimal("1000000")

    default_unapplied_reason: str = "Payment not fully allocated"

    def __post_init__(self):
        if not self.database_url:
            raise ValueError("database_url cannot be empty")
        if self.pool_size <= 0:
            raise ValueError("pool_size must be positive")
        if self.max_overflow < 0:
            raise ValueError("max_overflow cannot be negative")
        if self.max_reasonable_outstanding <= 0:
            raise ValueError("max_reasonable_outstanding must be positive")


def _coerce(name: str, value: Any) -> Any:
    if name == "max_reasonable_outstanding":
        return Decimal(str(value))
    return value


def load_yaml_settings(path: Path | str) -> dict[str, Any]:
    """Read a YAML settings file into a dict of known LedgerSettings fields."""
    path = Path(path)
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at top level")

    known = {f.name for f in fields(LedgerSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"{path}: unknown settings {unknown}")

    return {key: _coerce(key, val) for key, val in data.items()}


def load_settings(
    path: Path | str | None = None,
    env: Mapping[str, str] | None = None,
) -> LedgerSettings:
    """
    Build settings from defaults, an optional YAML file and the environment.

    Args:
        path: Optional YAML file.
        env: Environment mapping (defaults to ``os.environ``).
    """
    env = os.environ if env is None else env
    settings = LedgerSettings()

    if path is not None:
        settings = replace(settings, **load_yaml_settings(path))

    overrides: dict[str, Any] = {}
    database_url = env.get("DAIRY_LEDGER_DATABASE_URL") or env.get("DATABASE_URL")
    if database_url:
        overrides["database_url"] = database_url
    log_level = env.get("DAIRY_LEDGER_LOG_LEVEL")
    if log_level:
        overrides["log_level"] = log_level.upper()
    if overrides:
        settings = replace(settings, **overrides)

    logger.debug(
        "settings_loaded",
        extra={
            "source_file": str(path) if path is not None else None,
            "env_overrides": sorted(overrides),
            "log_level": settings.log_level,
        },
    )
    return settings
