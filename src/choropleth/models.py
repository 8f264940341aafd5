"""Domain models shared across pipeline modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

POLYGONAL_TYPES = frozenset({"Polygon", "MultiPolygon"})


def _require_polygonal(geometry: Any) -> Mapping[str, Any]:
    if not isinstance(geometry, Mapping):
        raise ValueError("Expected mapping for feature geometry")
    geom_type = geometry.get("type")
    if geom_type not in POLYGONAL_TYPES:
        raise ValueError(f"Expected Polygon or MultiPolygon geometry, got '{geom_type}'")
    if not isinstance(geometry.get("coordinates"), list):
        raise ValueError(f"Expected coordinates list for {geom_type} geometry")
    return geometry


@dataclass(frozen=True, slots=True)
class Feature:
    """One boundary polygon with its attribute properties."""

    geometry: Mapping[str, Any]
    properties: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _require_polygonal(self.geometry)

    @property
    def geometry_type(self) -> str:
        return str(self.geometry["type"])

    def get(self, key: str, default: Any = None) -> Any:
        return self.properties.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "Feature",
            "geometry": dict(self.geometry),
            "properties": dict(self.properties),
        }


@dataclass(frozen=True, slots=True)
class FeatureCollection:
    """Canonical, polygon-only feature collection. Replaced, never mutated."""

    features: tuple[Feature, ...] = ()

    @property
    def type(self) -> str:
        return "FeatureCollection"

    def __len__(self) -> int:
        return len(self.features)

    def __iter__(self):
        return iter(self.features)

    def with_features(self, features: Iterable[Feature]) -> FeatureCollection:
        return FeatureCollection(features=tuple(features))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "FeatureCollection",
            "features": [feature.to_dict() for feature in self.features],
        }


@dataclass(frozen=True, slots=True)
class ClassBreaks:
    """Ascending numeric breaks, or ordered categories for unique classification."""

    values: tuple[Any, ...]
    method: str

    @property
    def is_categorical(self) -> bool:
        return self.method == "u"

    def __len__(self) -> int:
        return len(self.values)


@dataclass(frozen=True, slots=True)
class LegendEntry:
    label: str
    color: str
    lower: Any = None
    upper: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "color": self.color,
            "lower": self.lower,
            "upper": self.upper,
        }


@dataclass(frozen=True, slots=True)
class BoundingBox:
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    def __post_init__(self) -> None:
        if self.min_x > self.max_x or self.min_y > self.max_y:
            raise ValueError("Bounding box min must not exceed max")

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.min_x, self.min_y, self.max_x, self.max_y)

    def union(self, other: BoundingBox) -> BoundingBox:
        return BoundingBox(
            min_x=min(self.min_x, other.min_x),
            min_y=min(self.min_y, other.min_y),
            max_x=max(self.max_x, other.max_x),
            max_y=max(self.max_y, other.max_y),
        )
