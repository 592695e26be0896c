from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import httpx

from worldpop_apis.analysis import compute_population_change
from worldpop_apis.config import WorldPopConfig
from worldpop_apis.data_types import (
    AgeSexGroup,
    ChangeResult,
    DatasetKind,
    PopulationResult,
    SourceMetadata,
    TaskRequest,
    TaskResponse,
    TaskStatus,
)
from worldpop_apis.errors import ServiceError, TaskTimeoutError, ValidationError
from worldpop_apis.geometry import (
    approximate_area_sq_km,
    as_feature_collection,
    bounding_box_of,
    centroid_of,
    has_polygon_coordinates,
    sample_geojson,
)

__all__ = ["WorldPopClient"]

logger = logging.getLogger(__name__)

_LOG_DIR = Path("logs")
_LOG_DIR.mkdir(parents=True, exist_ok=True)
_LOG_FILE = _LOG_DIR / "worldpop.log"


def _ensure_worldpop_file_logging() -> None:
    """Attach a file handler for persistent WorldPop logging if missing."""
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and getattr(handler, "baseFilename", "") == os.path.abspath(_LOG_FILE):
            break
    else:
        file_handler = logging.FileHandler(_LOG_FILE, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    if logger.level == logging.NOTSET:
        logger.setLevel(logging.INFO)


_ensure_worldpop_file_logging()


def _serialize_for_log(payload: Mapping[str, Any]) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False, default=str)
    except TypeError:
        return repr(payload)


def _log_function_call(name: str, payload: Mapping[str, Any]) -> None:
    logger.info("WorldPop.%s input=%s", name, _serialize_for_log(payload))


def _describe_geometry(geojson: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(geojson, Mapping):
        return None
    features = as_feature_collection(geojson)["features"]
    return {"type": geojson.get("type"), "features": len(features)}


SleepFn = Callable[[float], Awaitable[Any]]


async def _gather_or_cancel(*aws: Awaitable[Any]) -> Tuple[Any, ...]:
    """Run awaitables concurrently; on the first failure cancel the rest and re-raise it."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return tuple(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class WorldPopClient:
    """Async client for the WorldPop stats service and its task endpoint.

    A stats request is submitted once. If the service answers with a finished
    task the result is used directly; if it only creates a task, the task
    endpoint is polled with doubling backoff until it finishes, fails, or the
    attempt budget runs out.
    """

    def __init__(
        self,
        config: Optional[WorldPopConfig] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self.config = config or WorldPopConfig()
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=self.config.timeout,
            headers={
                "Accept": "application/json",
                "User-Agent": self.config.user_agent,
            },
        )
        self._sleep: SleepFn = sleep or asyncio.sleep

    async def __aenter__(self) -> "WorldPopClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()

    # ------------------------------------------------------------------ #
    # Public operations
    # ------------------------------------------------------------------ #

    async def fetch_statistic(self, request: TaskRequest) -> PopulationResult:
        _log_function_call(
            "fetch_statistic",
            {
                "dataset": request.dataset.value,
                "year": request.year,
                "geometry": _describe_geometry(request.area_of_interest),
                "run_async": request.run_async,
            },
        )
        year = self._validate_year(request.year)
        area = self._resolve_area(request.area_of_interest)
        dataset_key = self.config.dataset_key(request.dataset)

        response = await self._submit(dataset_key, year, area, run_async=request.run_async)
        task_id = response.task_id

        if response.is_failed:
            logger.error(
                "WorldPop submission rejected dataset=%s year=%s message=%s",
                dataset_key,
                year,
                response.error_message,
            )
            raise ServiceError(response.error_message or "Unknown error")
        if response.status == TaskStatus.CREATED.value and task_id:
            logger.info("WorldPop task created id=%s, waiting for completion", task_id)
            response = await self._wait_for_task(task_id)

        return self._build_result(
            request.dataset, dataset_key, year, area, response, task_id=response.task_id or task_id
        )

    async def fetch_population(
        self, area_of_interest: Optional[Mapping[str, Any]], year: int
    ) -> PopulationResult:
        return await self.fetch_statistic(
            TaskRequest(DatasetKind.POPULATION_TOTAL, year, area_of_interest)
        )

    async def fetch_age_sex_pyramid(
        self, area_of_interest: Optional[Mapping[str, Any]], year: int
    ) -> PopulationResult:
        return await self.fetch_statistic(
            TaskRequest(DatasetKind.POPULATION_BY_AGE_SEX, year, area_of_interest)
        )

    async def fetch_population_change(
        self,
        area_of_interest: Optional[Mapping[str, Any]],
        year1: int,
        year2: int,
    ) -> ChangeResult:
        _log_function_call(
            "fetch_population_change",
            {
                "year1": year1,
                "year2": year2,
                "geometry": _describe_geometry(area_of_interest),
            },
        )
        first = self._coerce_year(year1)
        second = self._coerce_year(year2)
        if first >= second:
            raise ValidationError("Year1 must be less than Year2")
        self._validate_year(first)
        self._validate_year(second)
        area = self._resolve_area(area_of_interest)

        period1, period2 = await _gather_or_cancel(
            self.fetch_statistic(TaskRequest(DatasetKind.POPULATION_TOTAL, first, area)),
            self.fetch_statistic(TaskRequest(DatasetKind.POPULATION_TOTAL, second, area)),
        )
        change = compute_population_change(period1, period2)
        logger.info(
            "WorldPop population change %s->%s: %.0f -> %.0f (%.2f%%)",
            first,
            second,
            period1.total_population,
            period2.total_population,
            change.percentage_change,
        )
        return change

    async def list_services(self) -> Mapping[str, Any]:
        """Return the service catalogue published under the services path."""
        _log_function_call("list_services", {})
        return await self._request(self.config.services_url)

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    async def _submit(
        self, dataset_key: str, year: int, area: Mapping[str, Any], *, run_async: bool = False
    ) -> TaskResponse:
        params: Dict[str, Any] = {
            "dataset": dataset_key,
            "year": str(year),
            "geojson": json.dumps(area, separators=(",", ":")),
            "runasync": "true" if run_async else "false",
        }
        if self.config.api_key:
            params["key"] = self.config.api_key
        payload = await self._request(self.config.stats_url, params)
        return TaskResponse.from_payload(payload)

    async def _wait_for_task(self, task_id: str) -> TaskResponse:
        url = self.config.task_url(task_id)
        max_attempts = self.config.max_poll_attempts
        last_error: Optional[Exception] = None

        for attempt in range(max_attempts):
            delay = self.config.backoff_delay(attempt)
            if delay > 0:
                logger.info(
                    "WorldPop task %s: sleeping %.1fs before poll %d/%d",
                    task_id,
                    delay,
                    attempt + 1,
                    max_attempts,
                )
                await self._sleep(delay)

            try:
                payload = await self._request(url)
            except ServiceError as exc:
                # A failed status check uses up the attempt but does not end the wait.
                logger.warning(
                    "WorldPop task %s poll %d/%d failed: %s", task_id, attempt + 1, max_attempts, exc
                )
                last_error = exc
                continue

            status = TaskResponse.from_payload(payload)
            if status.is_finished:
                logger.info("WorldPop task %s finished after %d poll(s)", task_id, attempt + 1)
                return status
            if status.is_failed:
                logger.error("WorldPop task %s failed: %s", task_id, status.error_message)
                raise ServiceError(status.error_message or "Unknown error")
            logger.info(
                "WorldPop task %s still %s after poll %d/%d",
                task_id,
                status.status or "pending",
                attempt + 1,
                max_attempts,
            )

        logger.error("WorldPop task %s gave up after %d polls", task_id, max_attempts)
        raise TaskTimeoutError(task_id=task_id, attempts=max_attempts) from last_error

    async def _request(
        self, url: str, params: Optional[Dict[str, Any]] = None
    ) -> Mapping[str, Any]:
        safe_params = {k: v for k, v in (params or {}).items() if k not in ("key", "geojson")}
        logger.info("WorldPop request url=%s params=%s", url, safe_params)

        try:
            response = await self.http_client.get(url, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "WorldPop HTTP error url=%s params=%s status=%s", url, safe_params, exc.response.status_code
            )
            raise ServiceError(
                f"WorldPop API error: {exc.response.status_code} {exc.response.reason_phrase}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("WorldPop transport error url=%s params=%s error=%s", url, safe_params, exc)
            raise ServiceError(f"WorldPop API request failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            logger.error(
                "WorldPop JSON decode error url=%s params=%s error=%s body=%s",
                url,
                safe_params,
                exc,
                response.text,
            )
            raise ServiceError("WorldPop API returned an invalid JSON body") from exc

        if not isinstance(payload, Mapping):
            raise ServiceError("WorldPop API returned an unexpected response body")
        return payload

    def _coerce_year(self, year: Any) -> int:
        if isinstance(year, bool):
            raise ValidationError(f"Year must be an integer, got {year!r}")
        if isinstance(year, float) and not year.is_integer():
            raise ValidationError(f"Year must be an integer, got {year!r}")
        try:
            return int(year)
        except (TypeError, ValueError):
            raise ValidationError(f"Year must be an integer, got {year!r}") from None

    def _validate_year(self, year: Any) -> int:
        value = self._coerce_year(year)
        if value < self.config.min_year or value > self.config.max_year:
            raise ValidationError(
                f"Year must be between {self.config.min_year} and {self.config.max_year}"
            )
        return value

    def _resolve_area(self, area: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        if not area:
            if self.config.allow_sample_region:
                logger.warning("No geometry provided, using the built-in sample region")
                return sample_geojson()
            raise ValidationError("GeoJSON is required")
        if not isinstance(area, Mapping):
            raise ValidationError("GeoJSON must be a JSON object")

        collection = as_feature_collection(area)
        if not has_polygon_coordinates(collection):
            raise ValidationError(
                "GeoJSON must contain at least one Polygon or MultiPolygon feature"
            )
        return collection

    def _build_result(
        self,
        dataset: DatasetKind,
        dataset_key: str,
        year: int,
        area: Mapping[str, Any],
        response: TaskResponse,
        *,
        task_id: Optional[str] = None,
    ) -> PopulationResult:
        pyramid: Optional[Tuple[AgeSexGroup, ...]] = None
        if dataset is DatasetKind.POPULATION_BY_AGE_SEX:
            if response.age_sex_pyramid is None:
                raise ServiceError("No age/sex data returned from API")
            pyramid = response.age_sex_pyramid
            total = sum(group.total for group in pyramid)
        else:
            if response.total_population is None:
                raise ServiceError("No population data returned from API")
            total = response.total_population

        bounds = bounding_box_of(area)
        area_sq_km = approximate_area_sq_km(bounds)
        if area_sq_km > 0:
            density = total / area_sq_km
        else:
            logger.warning("WorldPop area of interest has zero extent; density set to 0")
            density = 0.0

        return PopulationResult(
            total_population=total,
            population_density=density,
            area_sq_km=area_sq_km,
            bounding_box=bounds,
            centroid=centroid_of(area),
            source_metadata=SourceMetadata(
                dataset_key=dataset_key,
                year=year,
                resolution=self.config.resolution,
                retrieved_at=datetime.now(timezone.utc).isoformat(),
            ),
            age_sex_pyramid=pyramid,
            task_id=task_id,
        )
