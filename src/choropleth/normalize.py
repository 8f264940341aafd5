"""Boundary payload normalization into polygon-only feature collections."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from .models import POLYGONAL_TYPES, Feature, FeatureCollection
from .topology import TopologyError, count_polygonal, is_topology, object_to_features

_LOGGER = logging.getLogger("choropleth.normalize")


class SchemaError(ValueError):
    """Payload is not a usable GeoJSON or TopoJSON document."""


class InvalidJsonError(SchemaError):
    """Payload bytes could not be decoded as a JSON object or array."""


def parse_payload(text: str | bytes) -> Any:
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise InvalidJsonError(f"Boundary payload is not valid JSON: {exc}") from exc
    if not isinstance(data, (dict, list)):
        raise InvalidJsonError("Boundary payload must be a JSON object or array")
    return data


def select_layer(
    topology: Mapping[str, Any],
    preferred_layer_name: str | None = None,
    prefer_first_layer: bool = True,
    honor_preferred_name: bool = False,
) -> str:
    objects = topology["objects"]
    names = list(objects.keys())
    if not names:
        raise SchemaError("Topology declares no objects")
    if honor_preferred_name and preferred_layer_name and preferred_layer_name in objects:
        return preferred_layer_name
    if prefer_first_layer:
        return names[0]
    best_name = names[0]
    best_count = -1
    for name in names:
        obj = objects[name]
        count = count_polygonal(obj) if isinstance(obj, Mapping) else 0
        if count > best_count:
            best_name, best_count = name, count
    return best_name


def _is_coordinate(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_positions(coords: Any, depth: int, geom_type: str) -> None:
    # depth counts the list levels above each position: 2 for Polygon, 3 for MultiPolygon.
    if not isinstance(coords, list):
        raise SchemaError(f"{geom_type} geometry has malformed coordinates")
    if depth == 0:
        if len(coords) < 2 or not all(_is_coordinate(v) for v in coords):
            raise SchemaError(f"{geom_type} geometry holds a non-numeric position")
        return
    for item in coords:
        _check_positions(item, depth - 1, geom_type)


def flatten_geometry(geometry: Any) -> dict[str, Any] | None:
    """Reduce a geometry to its polygonal part, or None when there is none."""
    if not isinstance(geometry, Mapping):
        return None
    geom_type = geometry.get("type")
    if geom_type in POLYGONAL_TYPES:
        coords = geometry.get("coordinates")
        if not isinstance(coords, list):
            raise SchemaError(f"{geom_type} geometry is missing its coordinates")
        _check_positions(coords, 3 if geom_type == "MultiPolygon" else 2, geom_type)
        return {"type": geom_type, "coordinates": coords}
    if geom_type != "GeometryCollection":
        return None

    polygons: list[Any] = []
    for member in geometry.get("geometries") or []:
        flat = flatten_geometry(member)
        if flat is None:
            continue
        if flat["type"] == "Polygon":
            polygons.append(flat["coordinates"])
        else:
            polygons.extend(flat["coordinates"])
    if not polygons:
        return None
    if len(polygons) == 1:
        return {"type": "Polygon", "coordinates": polygons[0]}
    return {"type": "MultiPolygon", "coordinates": polygons}


def _raw_features(
    payload: Any,
    preferred_layer_name: str | None,
    prefer_first_layer: bool,
    honor_preferred_name: bool,
) -> list[Any]:
    if not isinstance(payload, Mapping):
        raise SchemaError("Boundary payload must be a JSON object")
    if is_topology(payload):
        layer = select_layer(payload, preferred_layer_name, prefer_first_layer, honor_preferred_name)
        try:
            features = object_to_features(payload, layer)
        except TopologyError as exc:
            raise SchemaError(f"Topology object '{layer}' is unusable: {exc}") from exc
        _LOGGER.debug("decoded topology object '%s' into %d features", layer, len(features))
        return features
    payload_type = payload.get("type")
    if payload_type == "Topology":
        raise SchemaError("Topology payload needs an 'objects' mapping and an 'arcs' list")
    if payload_type != "FeatureCollection":
        raise SchemaError(f"Expected FeatureCollection or Topology, got '{payload_type}'")
    features = payload.get("features")
    if not isinstance(features, list):
        raise SchemaError("FeatureCollection must carry a 'features' list")
    return features


def normalize(
    payload: Any,
    preferred_layer_name: str | None = None,
    prefer_first_layer: bool = True,
    honor_preferred_name: bool = False,
) -> FeatureCollection:
    """Convert GeoJSON/TopoJSON into a canonical polygon-only FeatureCollection."""
    raw = _raw_features(payload, preferred_layer_name, prefer_first_layer, honor_preferred_name)
    features: list[Feature] = []
    dropped = 0
    for item in raw:
        if not isinstance(item, Mapping):
            dropped += 1
            continue
        geometry = flatten_geometry(item.get("geometry"))
        if geometry is None:
            dropped += 1
            continue
        props = item.get("properties")
        properties = dict(props) if isinstance(props, Mapping) else {}
        features.append(Feature(geometry=geometry, properties=properties))
    if dropped:
        _LOGGER.debug("dropped %d features without polygonal geometry", dropped)
    return FeatureCollection(features=tuple(features))
