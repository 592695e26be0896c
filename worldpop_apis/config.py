from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from worldpop_apis.data_types import DatasetKind

__all__ = ["WorldPopConfig", "DEFAULT_DATASETS"]


DEFAULT_DATASETS: Mapping[DatasetKind, str] = {
    DatasetKind.POPULATION_TOTAL: "wpgppop",  # Global per country 2000-2020
    DatasetKind.POPULATION_BY_AGE_SEX: "wpgpas",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class WorldPopConfig:
    """Endpoints, datasets and polling budget for one WorldPop client."""

    base_url: str = "https://api.worldpop.org/v1"
    services_path: str = "/services"
    stats_service: str = "stats"
    tasks_path: str = "/tasks"
    datasets: Mapping[DatasetKind, str] = field(
        default_factory=lambda: dict(DEFAULT_DATASETS)
    )
    api_key: Optional[str] = None
    timeout: float = 30.0
    max_poll_attempts: int = 10
    backoff_base_seconds: float = 1.0
    max_backoff_seconds: Optional[float] = None
    min_year: int = 2000
    max_year: int = 2020
    resolution: str = "100m"
    allow_sample_region: bool = False
    user_agent: str = "GeoVision-UrbanAnalysis/1.0"

    @property
    def stats_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.services_path}/{self.stats_service}"

    @property
    def services_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.services_path}"

    def task_url(self, task_id: str) -> str:
        return f"{self.base_url.rstrip('/')}{self.tasks_path}/{task_id}"

    def dataset_key(self, kind: DatasetKind) -> str:
        try:
            return self.datasets[kind]
        except KeyError:
            raise ValueError(f"No dataset key configured for {kind.value}") from None

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before poll ``attempt``; attempt 0 never waits."""
        if attempt <= 0:
            return 0.0
        delay = self.backoff_base_seconds * (2 ** (attempt - 1))
        if self.max_backoff_seconds is not None:
            delay = min(delay, self.max_backoff_seconds)
        return float(delay)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "WorldPopConfig":
        """Build a config from WORLDPOP_* environment variables."""
        env = os.environ if environ is None else environ
        kwargs: dict[str, Any] = {}

        base_url = env.get("WORLDPOP_BASE_URL")
        if base_url:
            kwargs["base_url"] = base_url
        api_key = env.get("WORLDPOP_API_KEY")
        if api_key:
            kwargs["api_key"] = api_key

        timeout = _parse_number(env, "WORLDPOP_TIMEOUT", float)
        if timeout is not None:
            kwargs["timeout"] = timeout
        attempts = _parse_number(env, "WORLDPOP_MAX_POLL_ATTEMPTS", int)
        if attempts is not None:
            kwargs["max_poll_attempts"] = attempts
        max_backoff = _parse_number(env, "WORLDPOP_MAX_BACKOFF", float)
        if max_backoff is not None:
            kwargs["max_backoff_seconds"] = max_backoff

        allow_sample = env.get("WORLDPOP_ALLOW_SAMPLE_REGION")
        if allow_sample is not None:
            kwargs["allow_sample_region"] = allow_sample.strip().lower() in _TRUE_VALUES

        return cls(**kwargs)


def _parse_number(env: Mapping[str, str], name: str, kind: type) -> Optional[Any]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return kind(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be a {kind.__name__}, got {raw!r}") from None
