"""
Configuration settings for the read-replica benchmark.

`Settings` uses Pydantic Settings to load environment variables (and `.env`)
for connection URLs, logging, and benchmark defaults. `RunConfig` is the
validated, fully-resolved configuration of one run: settings overlaid with CLI
overrides. Any validation failure surfaces as `ConfigError`.
"""
from __future__ import annotations

import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from rr_bench.domain.models import OpAction
from rr_bench.errors import ConfigError
from rr_bench.workload.catalog import QUERY_CATALOG, WeightedChoice

_NUMBER = r"\d+(?:\.\d+)?"
_DURATION_PART = re.compile(rf"({_NUMBER})(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parse a duration into seconds.

    Accepts bare seconds (`30`, `2.5`), unit suffixes (`250ms`, `10s`, `5m`,
    `1h`) and concatenations (`1h30m`, `1m30s`).

    Raises
    ------
    ValueError
        If the text is not a duration.
    """
    if isinstance(value, (int, float)):
        return float(value)
    text = value.strip().lower().replace(" ", "")
    if re.fullmatch(_NUMBER, text):
        return float(text)
    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        raise ValueError(f"Invalid duration {value!r}. Use formats like '10s', '5m', '1h'")
    return total


def format_duration(seconds: float) -> str:
    """Render seconds compactly: `250ms`, `10s`, `1h30m`."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    whole = int(seconds)
    if whole != seconds:
        return f"{seconds:.3f}s"
    hours, rest = divmod(whole, 3600)
    minutes, secs = divmod(rest, 60)
    parts = [f"{v}{u}" for v, u in ((hours, "h"), (minutes, "m"), (secs, "s")) if v]
    return "".join(parts) or "0s"


class Settings(BaseSettings):
    # Connections
    writer_url: Optional[str] = Field(None, alias="WRITER_URL")
    reader_url: Optional[str] = Field(None, alias="READER_URL")

    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # Benchmark defaults
    benchmark_duration: str = Field("10s", alias="BENCHMARK_DURATION")
    benchmark_tps: float = Field(10.0, alias="BENCHMARK_TPS")
    benchmark_concurrency: int = Field(1, alias="BENCHMARK_CONCURRENCY")
    benchmark_seed: int = Field(42, alias="BENCHMARK_SEED")
    benchmark_call_timeout: float = Field(30.0, alias="BENCHMARK_CALL_TIMEOUT")
    benchmark_snapshot_timeout: float = Field(300.0, alias="BENCHMARK_SNAPSHOT_TIMEOUT")
    benchmark_grace_period: float = Field(10.0, alias="BENCHMARK_GRACE_PERIOD")
    benchmark_writer_connections: int = Field(1, alias="BENCHMARK_WRITER_CONNECTIONS")
    benchmark_delete_scope: str = Field("any", alias="BENCHMARK_DELETE_SCOPE")
    benchmark_insert_weight: float = Field(45.0, alias="BENCHMARK_INSERT_WEIGHT")
    benchmark_update_weight: float = Field(45.0, alias="BENCHMARK_UPDATE_WEIGHT")
    benchmark_delete_weight: float = Field(10.0, alias="BENCHMARK_DELETE_WEIGHT")
    benchmark_results_dir: str = Field("results", alias="BENCHMARK_RESULTS_DIR")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


class OperationMix(BaseModel):
    """Relative insert/update/delete weights; only their ratios matter."""

    insert: float = Field(45.0, ge=0)
    update: float = Field(45.0, ge=0)
    delete: float = Field(10.0, ge=0)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _positive_total(self) -> "OperationMix":
        if self.insert + self.update + self.delete <= 0:
            raise ValueError("operation mix weights must have a positive sum")
        return self

    def weights(self) -> Dict[OpAction, float]:
        return {
            OpAction.INSERT: self.insert,
            OpAction.UPDATE: self.update,
            OpAction.DELETE: self.delete,
        }

    def chooser(self) -> WeightedChoice[OpAction]:
        weights = self.weights()
        return WeightedChoice(list(weights), list(weights.values()))


class RunConfig(BaseModel):
    """Validated configuration of a single benchmark run (durations in seconds)."""

    writer_url: str = Field(..., min_length=1)
    reader_url: Optional[str] = None
    duration: float = Field(..., gt=0)
    tps: float = Field(10.0, gt=0)
    concurrency: int = Field(1, ge=1)
    seed: int = 42
    call_timeout: float = Field(30.0, gt=0)
    snapshot_timeout: float = Field(300.0, gt=0)
    grace_period: float = Field(10.0, ge=0)
    writer_connections: int = Field(1, ge=1)
    delete_scope: Literal["any", "corpus"] = "any"
    mix: OperationMix = Field(default_factory=OperationMix)
    query_weights: Optional[Dict[str, float]] = None
    validate_queries: bool = True
    persist: bool = True
    results_dir: Path = Path("results")
    progress: bool = False

    model_config = {"frozen": True}

    @field_validator("duration", "call_timeout", "snapshot_timeout", "grace_period", mode="before")
    @classmethod
    def _parse_durations(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_duration(value)
        return value

    @field_validator("query_weights")
    @classmethod
    def _known_queries(cls, value: Optional[Dict[str, float]]) -> Optional[Dict[str, float]]:
        if value is None:
            return value
        known = {query.name for query in QUERY_CATALOG}
        unknown = sorted(set(value) - known)
        if unknown:
            raise ValueError(f"unknown queries in weights: {', '.join(unknown)}")
        if any(weight < 0 for weight in value.values()):
            raise ValueError("query weights must be non-negative")
        if not any(weight > 0 for weight in value.values()):
            raise ValueError("at least one query weight must be positive")
        return value

    @classmethod
    def build(cls, **values: Any) -> "RunConfig":
        """Construct and validate, raising `ConfigError` instead of `ValidationError`."""
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigError(_describe_validation_error(exc)) from exc

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides: Any) -> "RunConfig":
        """
        Resolve a run configuration from settings plus overrides.

        Overrides set to `None` fall back to the settings value. Mix weights are
        passed as `insert_weight`, `update_weight` and `delete_weight`.
        """
        settings = settings or get_settings()
        given = {key: value for key, value in overrides.items() if value is not None}
        mix = {
            "insert": given.pop("insert_weight", settings.benchmark_insert_weight),
            "update": given.pop("update_weight", settings.benchmark_update_weight),
            "delete": given.pop("delete_weight", settings.benchmark_delete_weight),
        }
        writer_url = given.pop("writer_url", settings.writer_url)
        if not writer_url:
            raise ConfigError("a writer URL is required (--writer-url or WRITER_URL)")
        values: Dict[str, Any] = {
            "writer_url": writer_url,
            "reader_url": settings.reader_url,
            "duration": settings.benchmark_duration,
            "tps": settings.benchmark_tps,
            "concurrency": settings.benchmark_concurrency,
            "seed": settings.benchmark_seed,
            "call_timeout": settings.benchmark_call_timeout,
            "snapshot_timeout": settings.benchmark_snapshot_timeout,
            "grace_period": settings.benchmark_grace_period,
            "writer_connections": settings.benchmark_writer_connections,
            "delete_scope": settings.benchmark_delete_scope,
            "results_dir": settings.benchmark_results_dir,
        }
        values.update(given)
        try:
            values["mix"] = OperationMix(**mix)
        except ValidationError as exc:
            raise ConfigError(_describe_validation_error(exc)) from exc
        return cls.build(**values)


def _describe_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "config"
        problems.append(f"{location}: {error['msg']}")
    return "invalid configuration: " + "; ".join(problems)


__all__ = [
    "OperationMix",
    "RunConfig",
    "Settings",
    "format_duration",
    "get_settings",
    "parse_duration",
]
