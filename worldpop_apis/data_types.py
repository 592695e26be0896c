from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

__all__ = [
    "DatasetKind",
    "TaskStatus",
    "TaskRequest",
    "TaskResponse",
    "AgeSexGroup",
    "BoundingBox",
    "Centroid",
    "SourceMetadata",
    "PopulationResult",
    "UrbanizationLevel",
    "GrowthTrend",
    "ChangeResult",
]

WORLDPOP_SOURCE = "WorldPop Global Project"


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value in (None, "", "null"):
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


class DatasetKind(str, Enum):
    POPULATION_TOTAL = "population_total"
    POPULATION_BY_AGE_SEX = "population_by_age_sex"


class TaskStatus(str, Enum):
    CREATED = "created"
    FINISHED = "finished"
    ERROR = "error"


class UrbanizationLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class GrowthTrend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


@dataclass(frozen=True)
class TaskRequest:
    dataset: DatasetKind
    year: int
    area_of_interest: Optional[Mapping[str, Any]]
    run_async: bool = False


@dataclass(frozen=True)
class AgeSexGroup:
    age_class: str
    age_band: str
    male: float
    female: float

    @property
    def total(self) -> float:
        return self.male + self.female

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AgeSexGroup":
        return cls(
            age_class=str(payload.get("class", "")),
            age_band=str(payload.get("age", "")),
            male=_safe_float(payload.get("male")) or 0.0,
            female=_safe_float(payload.get("female")) or 0.0,
        )


@dataclass(frozen=True)
class TaskResponse:
    """One status document returned by the stats service or the task endpoint."""

    status: str
    is_error: bool = False
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    task_id: Optional[str] = None
    total_population: Optional[float] = None
    age_sex_pyramid: Optional[Tuple[AgeSexGroup, ...]] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_seconds: Optional[float] = None

    @property
    def is_finished(self) -> bool:
        return self.status == TaskStatus.FINISHED.value and not self.is_error

    @property
    def is_failed(self) -> bool:
        return self.is_error or self.status == TaskStatus.ERROR.value

    @property
    def is_pending(self) -> bool:
        return not self.is_finished and not self.is_failed

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TaskResponse":
        data = payload.get("data")
        if not isinstance(data, Mapping):
            data = {}

        total = data.get("total_population")
        pyramid = data.get("agesexpyramid")
        groups: Optional[Tuple[AgeSexGroup, ...]] = None
        if isinstance(pyramid, Sequence) and not isinstance(pyramid, (str, bytes)):
            groups = tuple(
                AgeSexGroup.from_payload(item) for item in pyramid if isinstance(item, Mapping)
            )

        status_code = payload.get("status_code")
        duration = payload.get("executionTime")
        return cls(
            status=str(payload.get("status") or "").strip().lower(),
            is_error=bool(payload.get("error")),
            status_code=int(status_code) if isinstance(status_code, (int, float)) else None,
            error_message=payload.get("error_message") or None,
            task_id=payload.get("taskid") or None,
            total_population=_safe_float(total),
            age_sex_pyramid=groups,
            started_at=payload.get("startTime"),
            finished_at=payload.get("endTime"),
            duration_seconds=float(duration) if isinstance(duration, (int, float)) else None,
        )


@dataclass(frozen=True)
class BoundingBox:
    north: float
    south: float
    east: float
    west: float

    @property
    def is_degenerate(self) -> bool:
        # All-zero bounds mean "no coordinates found", not a box at 0,0.
        return self.north == self.south == self.east == self.west == 0.0


@dataclass(frozen=True)
class Centroid:
    lat: float
    lng: float


@dataclass(frozen=True)
class SourceMetadata:
    dataset_key: str
    year: int
    resolution: str
    retrieved_at: str
    source: str = WORLDPOP_SOURCE


@dataclass(frozen=True)
class PopulationResult:
    total_population: float
    population_density: float
    area_sq_km: float
    bounding_box: BoundingBox
    centroid: Centroid
    source_metadata: SourceMetadata
    age_sex_pyramid: Optional[Tuple[AgeSexGroup, ...]] = None
    task_id: Optional[str] = None

    @property
    def year(self) -> int:
        return self.source_metadata.year

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        if self.age_sex_pyramid is None:
            payload.pop("age_sex_pyramid")
        else:
            payload["age_sex_pyramid"] = [asdict(group) for group in self.age_sex_pyramid]
        return payload


@dataclass(frozen=True)
class ChangeResult:
    year1: int
    year2: int
    period1: PopulationResult
    period2: PopulationResult
    absolute_change: float
    percentage_change: float
    annual_growth_rate_percent: float
    density_change: float
    density_percentage_change: float
    growth_trend: GrowthTrend
    urbanization_level: UrbanizationLevel

    @property
    def population_density(self) -> float:
        return self.period2.population_density

    @property
    def area_sq_km(self) -> float:
        return self.period2.area_sq_km

    def to_dict(self) -> Dict[str, Any]:
        return {
            "year1": self.year1,
            "year2": self.year2,
            "period1_population": self.period1.total_population,
            "period2_population": self.period2.total_population,
            "absolute_change": self.absolute_change,
            "percentage_change": self.percentage_change,
            "annual_growth_rate_percent": self.annual_growth_rate_percent,
            "density_change": self.density_change,
            "density_percentage_change": self.density_percentage_change,
            "growth_trend": self.growth_trend.value,
            "urbanization_level": self.urbanization_level.value,
            "population_density": self.population_density,
            "area_sq_km": self.area_sq_km,
            "bounding_box": asdict(self.period2.bounding_box),
            "centroid": asdict(self.period2.centroid),
            "source_metadata": asdict(self.period2.source_metadata),
        }
