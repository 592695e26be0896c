from __future__ import annotations

import copy
import math
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from worldpop_apis.data_types import BoundingBox, Centroid
from worldpop_apis.errors import ValidationError

__all__ = [
    "KM_PER_DEGREE",
    "as_feature_collection",
    "iter_coordinates",
    "has_polygon_coordinates",
    "bounding_box_of",
    "centroid_of",
    "approximate_area_sq_km",
    "sample_geojson",
]

KM_PER_DEGREE = 111.32

_POLYGON_TYPES = ("Polygon", "MultiPolygon")

_SAMPLE_GEOJSON: Mapping[str, Any] = {
    "type": "FeatureCollection",
    "features": [
        {
            "type": "Feature",
            "properties": {},
            "geometry": {
                "type": "Polygon",
                "coordinates": [
                    [
                        [-0.1, 51.5],
                        [-0.05, 51.5],
                        [-0.05, 51.55],
                        [-0.1, 51.55],
                        [-0.1, 51.5],
                    ]
                ],
            },
        }
    ],
}


def as_feature_collection(geojson: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Wrap a Feature or bare geometry into a FeatureCollection.

    Anything that is not recognisable GeoJSON becomes an empty collection.
    """
    if not isinstance(geojson, Mapping):
        return {"type": "FeatureCollection", "features": []}

    kind = geojson.get("type")
    if kind == "FeatureCollection":
        features = geojson.get("features")
        if not isinstance(features, (list, tuple)):
            features = []
        return {
            "type": "FeatureCollection",
            "features": [f for f in features if isinstance(f, Mapping)],
        }
    if kind == "Feature":
        return {"type": "FeatureCollection", "features": [dict(geojson)]}
    if kind in _POLYGON_TYPES:
        return {
            "type": "FeatureCollection",
            "features": [{"type": "Feature", "properties": {}, "geometry": dict(geojson)}],
        }
    return {"type": "FeatureCollection", "features": []}


def _iter_rings(geometry: Mapping[str, Any]) -> Iterator[Any]:
    kind = geometry.get("type")
    coordinates = geometry.get("coordinates")
    if not isinstance(coordinates, (list, tuple)):
        return
    if kind == "Polygon":
        yield from coordinates
    elif kind == "MultiPolygon":
        for polygon in coordinates:
            if isinstance(polygon, (list, tuple)):
                yield from polygon


def iter_coordinates(geojson: Optional[Mapping[str, Any]]) -> Iterator[Tuple[float, float]]:
    """Yield every (lng, lat) pair of every polygon ring in the collection.

    Rings and positions of the wrong shape are skipped; a position whose
    values are not numbers raises ``ValidationError``.
    """
    for feature in as_feature_collection(geojson)["features"]:
        geometry = feature.get("geometry")
        if not isinstance(geometry, Mapping):
            continue
        for ring in _iter_rings(geometry):
            if not isinstance(ring, (list, tuple)):
                continue
            for position in ring:
                if not isinstance(position, (list, tuple)) or len(position) < 2:
                    continue
                yield _as_lng_lat(position)


def _as_lng_lat(position: Any) -> Tuple[float, float]:
    lng, lat = position[0], position[1]
    for value in (lng, lat):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise ValidationError("GeoJSON coordinates must be numeric [lng, lat] pairs")
    return float(lng), float(lat)


def has_polygon_coordinates(geojson: Optional[Mapping[str, Any]]) -> bool:
    """True when there is at least one position; every position is checked."""
    count = 0
    for _ in iter_coordinates(geojson):
        count += 1
    return count > 0


def bounding_box_of(geojson: Optional[Mapping[str, Any]]) -> BoundingBox:
    """Min/max latitude and longitude over all polygon rings.

    Returns an all-zero box when there are no coordinates; check
    ``BoundingBox.is_degenerate`` before trusting the result.
    """
    min_lng = min_lat = math.inf
    max_lng = max_lat = -math.inf
    for lng, lat in iter_coordinates(geojson):
        min_lng = min(min_lng, lng)
        max_lng = max(max_lng, lng)
        min_lat = min(min_lat, lat)
        max_lat = max(max_lat, lat)

    if min_lng == math.inf:
        return BoundingBox(north=0.0, south=0.0, east=0.0, west=0.0)
    return BoundingBox(north=max_lat, south=min_lat, east=max_lng, west=min_lng)


def centroid_of(geojson: Optional[Mapping[str, Any]]) -> Centroid:
    """Midpoint of the bounding box, not an area-weighted centroid."""
    bounds = bounding_box_of(geojson)
    return Centroid(
        lat=(bounds.north + bounds.south) / 2,
        lng=(bounds.east + bounds.west) / 2,
    )


def approximate_area_sq_km(bounds: BoundingBox) -> float:
    # Planar degrees-to-km conversion; overstates area away from the equator.
    return (
        abs(bounds.east - bounds.west)
        * abs(bounds.north - bounds.south)
        * KM_PER_DEGREE
        * KM_PER_DEGREE
    )


def sample_geojson() -> Dict[str, Any]:
    """A small area around central London, for demo and test runs."""
    return copy.deepcopy(dict(_SAMPLE_GEOJSON))
