from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Sequence
from urllib.parse import unquote

from worldpop_apis.config import WorldPopConfig
from worldpop_apis.data_types import WORLDPOP_SOURCE, DatasetKind, PopulationResult
from worldpop_apis.errors import ValidationError
from worldpop_apis.worldpop import WorldPopClient

__all__ = [
    "PopulationTool",
    "GEOJSON_SCHEMA",
    "ANALYSIS_TYPES",
    "parse_geometry",
]

logger = logging.getLogger(__name__)

POPULATION_DATA = "Population Data"
POPULATION_DENSITY = "Population Density"
AGE_GENDER_DATA = "Age Gender Data"
POPULATION_CHANGE = "Population Change"

ANALYSIS_TYPES: Sequence[str] = (
    POPULATION_DATA,
    POPULATION_DENSITY,
    AGE_GENDER_DATA,
    POPULATION_CHANGE,
)

GEOJSON_SCHEMA: Mapping[str, Any] = {
    "type": "object",
    "description": (
        "GeoJSON FeatureCollection, Feature, Polygon or MultiPolygon describing "
        "the area of interest. Coordinates are [lng, lat] in WGS84."
    ),
    "properties": {
        "type": {"type": "string"},
        "features": {"type": "array", "items": {"type": "object"}},
        "geometry": {"type": "object"},
        "coordinates": {"type": "array"},
    },
    "required": ["type"],
    "additionalProperties": True,
}


def _api_info(config: WorldPopConfig) -> Dict[str, Any]:
    return {
        "dataAvailability": f"{config.min_year}-{config.max_year}",
        "requiredParameters": ["country", "year", "geojson"],
        "supportedAnalysisTypes": list(ANALYSIS_TYPES),
    }


def parse_geometry(raw: Any) -> Optional[Mapping[str, Any]]:
    """Accept a GeoJSON mapping or a (possibly URI-encoded) JSON string."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, Mapping):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(unquote(raw))
        except ValueError:
            raise ValidationError("Invalid geometry JSON") from None
        if not isinstance(parsed, Mapping):
            raise ValidationError("Invalid geometry JSON")
        return parsed
    raise ValidationError("Invalid geometry JSON")


class PopulationTool:
    """Tool wrapper exposing WorldPop population analyses."""

    def __init__(self, client: Optional[WorldPopClient] = None) -> None:
        self._owns_client = client is None
        self.client = client or WorldPopClient(WorldPopConfig.from_env())
        self._tool_schemas = self._build_tool_schemas()

    @property
    def tools(self) -> Sequence[Mapping[str, Any]]:
        """Return OpenAI tool declarations for registration."""
        return self._tool_schemas

    @property
    def api_info(self) -> Mapping[str, Any]:
        return _api_info(self.client.config)

    async def __aenter__(self) -> "PopulationTool":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the client, but only when this tool created it."""
        if self._owns_client:
            await self.client.aclose()

    async def call(self, tool_name: str, arguments: Mapping[str, Any]) -> Mapping[str, Any]:
        dispatch = {
            "getPopulationStats": self.getPopulationStats,
            "getAgeSexPyramid": self.getAgeSexPyramid,
            "getPopulationChange": self.getPopulationChange,
        }
        if tool_name not in dispatch:
            raise ValueError(f"Unsupported population tool '{tool_name}'")
        return await dispatch[tool_name](**arguments)

    # ------------------------------------------------------------------ #
    # Tool function implementations
    # ------------------------------------------------------------------ #

    async def getPopulationStats(self, geojson: Any, year: Any) -> Mapping[str, Any]:
        result = await self.client.fetch_population(parse_geometry(geojson), year)
        return self._format_population(result)

    async def getAgeSexPyramid(self, geojson: Any, year: Any) -> Mapping[str, Any]:
        result = await self.client.fetch_age_sex_pyramid(parse_geometry(geojson), year)
        return self._format_population(result)

    async def getPopulationChange(self, geojson: Any, year1: Any, year2: Any) -> Mapping[str, Any]:
        change = await self.client.fetch_population_change(parse_geometry(geojson), year1, year2)
        return {"provider": "worldpop", **change.to_dict()}

    # ------------------------------------------------------------------ #
    # Analysis request handling
    # ------------------------------------------------------------------ #

    async def run_analysis(self, body: Mapping[str, Any]) -> Dict[str, Any]:
        """Run one population analysis request and wrap it for the web layer.

        ``body`` carries ``analysisType``, ``country`` (display only),
        ``year1``/``year2``, an optional ``selectedRoiGeometry`` and the
        ``resolution``/``format`` hints, which are echoed back unchanged.
        """
        analysis_type = body.get("analysisType")
        country = body.get("country")
        resolution = body.get("resolution") or "100m"
        output_format = body.get("format") or "json"

        if not analysis_type or not country:
            raise ValidationError("Analysis type and country are required parameters.")
        if analysis_type not in ANALYSIS_TYPES:
            raise ValidationError(
                "Invalid analysis type. Must be one of: "
                + ", ".join(f"'{name}'" for name in ANALYSIS_TYPES)
            )

        geometry = parse_geometry(body.get("selectedRoiGeometry"))
        year1 = body.get("year1")
        year2 = body.get("year2")

        logger.info(
            "Population analysis type=%s country=%s year1=%s year2=%s geometry=%s",
            analysis_type,
            country,
            year1,
            year2,
            geometry is not None,
        )

        if analysis_type == POPULATION_CHANGE:
            if not year1 or not year2:
                raise ValidationError(
                    "Both year1 and year2 are required for population change analysis"
                )
            change = await self.client.fetch_population_change(geometry, year1, year2)
            data: Dict[str, Any] = change.to_dict()
            dataset = self.client.config.dataset_key(DatasetKind.POPULATION_TOTAL)
        else:
            if not year1:
                label = "age/gender data" if analysis_type == AGE_GENDER_DATA else analysis_type.lower()
                raise ValidationError(f"Year is required for {label} analysis")
            if analysis_type == AGE_GENDER_DATA:
                result = await self.client.fetch_age_sex_pyramid(geometry, year1)
            else:
                result = await self.client.fetch_population(geometry, year1)
            data = result.to_dict()
            dataset = result.source_metadata.dataset_key
            if analysis_type == POPULATION_DENSITY:
                data["analysis_type"] = POPULATION_DENSITY
                data["primary_metric"] = result.population_density

        return {
            "success": True,
            "analysisType": analysis_type,
            "country": country,
            "year1": _as_year(year1),
            "year2": _as_year(year2),
            "selectedRoiGeometry": geometry,
            "resolution": resolution,
            "format": output_format,
            "data": data,
            "metadata": {
                "source": WORLDPOP_SOURCE,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "analysisType": analysis_type,
                "country": country,
                "resolution": resolution,
                "dataAvailability": self.api_info["dataAvailability"],
                "apiVersion": "v1",
                "dataset": dataset,
            },
        }

    def _format_population(self, result: PopulationResult) -> Mapping[str, Any]:
        return {"provider": "worldpop", **result.to_dict()}

    def _build_tool_schemas(self) -> Sequence[Mapping[str, Any]]:
        config = self.client.config
        year_description = (
            f"Census year between {config.min_year} and {config.max_year} inclusive."
        )
        return [
            {
                "type": "function",
                "name": "getPopulationStats",
                "description": (
                    "Estimate the total population and population density inside "
                    "an area of interest using the WorldPop Global Project rasters."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "geojson": GEOJSON_SCHEMA,
                        "year": {"type": "integer", "description": year_description},
                    },
                    "required": ["geojson", "year"],
                },
            },
            {
                "type": "function",
                "name": "getAgeSexPyramid",
                "description": (
                    "Return the population broken down by age band and sex inside "
                    "an area of interest, with the total and density."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "geojson": GEOJSON_SCHEMA,
                        "year": {"type": "integer", "description": year_description},
                    },
                    "required": ["geojson", "year"],
                },
            },
            {
                "type": "function",
                "name": "getPopulationChange",
                "description": (
                    "Compare population between two years for an area of interest: "
                    "absolute and percentage change, annual growth rate and an "
                    "urbanization level derived from the later density."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "geojson": GEOJSON_SCHEMA,
                        "year1": {"type": "integer", "description": "Earlier year. " + year_description},
                        "year2": {"type": "integer", "description": "Later year. " + year_description},
                    },
                    "required": ["geojson", "year1", "year2"],
                },
            },
        ]


def _as_year(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
