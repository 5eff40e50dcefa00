"""
Job configuration loader (``batch_engine.config``).

Responsibility
--------------
Loads a job configuration YAML file and parses it into a typed
``JobConfig`` holding ``JobParameters``:

    job: transaction_report
    database_url: sqlite:///batch.db
    log_level: INFO
    parameters:
      start_key: 2024-01-01
      end_key: 2024-01-31
      chunk_size: 100
      skip_limit: 10

Invariants enforced
-------------------
* Unknown keys are rejected; nothing is silently ignored.
* Numeric fields must be numbers (booleans are not accepted as integers).
* YAML lists used as order keys become tuples.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid content  -> ``ConfigurationError``.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import date, datetime
from pathlib import Path
from typing import Any, Mapping

import yaml

from batch_kernel.exceptions import ConfigurationError
from batch_engine.domain.totals import freeze_key
from batch_engine.domain.types import JobParameters

_INT_FIELDS = frozenset({
    "chunk_size",
    "page_size",
    "max_retry_attempts",
    "skip_limit",
    "source_retry_attempts",
    "batch_window_seconds",
    "batch_window_warning_seconds",
})
_KEY_FIELDS = frozenset({"start_key", "end_key"})
_TOP_LEVEL_KEYS = frozenset({"job", "database_url", "log_level", "parameters"})


@dataclass(frozen=True)
class JobConfig:
    """Parsed job configuration file."""

    job_name: str | None
    parameters: JobParameters
    database_url: str | None = None
    log_level: str = "INFO"


def load_yaml_file(path: Path | str) -> dict[str, Any]:
    """Load one YAML file; an empty file yields an empty dict."""
    with open(path, encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")
    return data


def _parse_key(name: str, value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (dict, set)):
        raise ConfigurationError(name, "order keys must be scalars or lists")
    return freeze_key(value)


def parameters_from_mapping(data: Mapping[str, Any] | None) -> JobParameters:
    """Build ``JobParameters`` from a plain mapping.

    Raises:
        ConfigurationError: unknown key, wrong type or invalid value.
    """
    data = dict(data or {})
    known = {f.name for f in fields(JobParameters)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(unknown[0], f"unknown parameter (known: {sorted(known)})")

    values: dict[str, Any] = {}
    for name, value in data.items():
        if name in _KEY_FIELDS:
            values[name] = _parse_key(name, value)
        elif name in _INT_FIELDS:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(name, f"must be an integer, got {value!r}")
            values[name] = value
        elif name == "fault_tolerant":
            if not isinstance(value, bool):
                raise ConfigurationError(name, f"must be true or false, got {value!r}")
            values[name] = value
        elif name == "commit_timeout_seconds":
            if value is not None and (
                isinstance(value, bool) or not isinstance(value, (int, float))
            ):
                raise ConfigurationError(name, f"must be a number, got {value!r}")
            values[name] = None if value is None else float(value)
        elif name == "output_target":
            if value is not None and not isinstance(value, str):
                raise ConfigurationError(name, f"must be a path string, got {value!r}")
            values[name] = value
    return JobParameters(**values)


def job_config_from_mapping(data: Mapping[str, Any]) -> JobConfig:
    unknown = sorted(set(data) - _TOP_LEVEL_KEYS)
    if unknown:
        raise ConfigurationError(unknown[0], "unknown configuration key")
    parameters = data.get("parameters") or {}
    if not isinstance(parameters, Mapping):
        raise ConfigurationError("parameters", "must be a mapping")
    job_name = data.get("job")
    if job_name is not None and not isinstance(job_name, str):
        raise ConfigurationError("job", "must be a string")
    return JobConfig(
        job_name=job_name,
        parameters=parameters_from_mapping(parameters),
        database_url=data.get("database_url"),
        log_level=str(data.get("log_level", "INFO")).upper(),
    )


def load_job_config(path: Path | str) -> JobConfig:
    return job_config_from_mapping(load_yaml_file(path))


def load_job_parameters(path: Path | str) -> JobParameters:
    """Load only the ``parameters`` section of a job configuration file."""
    return load_job_config(path).parameters
