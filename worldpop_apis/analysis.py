from __future__ import annotations

from worldpop_apis.data_types import (
    ChangeResult,
    GrowthTrend,
    PopulationResult,
    UrbanizationLevel,
)

__all__ = [
    "HIGH_DENSITY_THRESHOLD",
    "MEDIUM_DENSITY_THRESHOLD",
    "urbanization_level",
    "growth_trend",
    "annual_growth_rate_percent",
    "percentage_change",
    "compute_population_change",
]

# People per km², applied to the final period's density.
HIGH_DENSITY_THRESHOLD = 1000.0
MEDIUM_DENSITY_THRESHOLD = 500.0


def urbanization_level(population_density: float) -> UrbanizationLevel:
    if population_density > HIGH_DENSITY_THRESHOLD:
        return UrbanizationLevel.HIGH
    if population_density > MEDIUM_DENSITY_THRESHOLD:
        return UrbanizationLevel.MEDIUM
    return UrbanizationLevel.LOW


def growth_trend(absolute_change: float) -> GrowthTrend:
    if absolute_change > 0:
        return GrowthTrend.INCREASING
    if absolute_change < 0:
        return GrowthTrend.DECREASING
    return GrowthTrend.STABLE


def percentage_change(before: float, after: float) -> float:
    """Relative change in percent; 0.0 when there is no baseline."""
    if before <= 0:
        return 0.0
    return (after - before) / before * 100


def annual_growth_rate_percent(before: float, after: float, years: int) -> float:
    """Compound annual growth rate in percent over ``years``."""
    if before <= 0 or years <= 0:
        return 0.0
    return ((after / before) ** (1 / years) - 1) * 100


def compute_population_change(
    period1: PopulationResult, period2: PopulationResult
) -> ChangeResult:
    year1, year2 = period1.year, period2.year
    p1, p2 = period1.total_population, period2.total_population
    d1, d2 = period1.population_density, period2.population_density

    absolute = p2 - p1
    return ChangeResult(
        year1=year1,
        year2=year2,
        period1=period1,
        period2=period2,
        absolute_change=absolute,
        percentage_change=percentage_change(p1, p2),
        annual_growth_rate_percent=annual_growth_rate_percent(p1, p2, year2 - year1),
        density_change=d2 - d1,
        density_percentage_change=percentage_change(d1, d2),
        growth_trend=growth_trend(absolute),
        urbanization_level=urbanization_level(d2),
    )
