"""TopoJSON decoding and shared-arc encoding with Visvalingam presimplification."""

from __future__ import annotations

import heapq
import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from .models import Feature, FeatureCollection

Position = tuple[float, float]
ArcRef = int
Ring = tuple[ArcRef, ...]

_LOGGER = logging.getLogger("choropleth.topology")


class TopologyError(ValueError):
    """Raised when geometry cannot be decoded from or encoded into arcs."""


def is_topology(payload: Any) -> bool:
    return (
        isinstance(payload, Mapping)
        and payload.get("type") == "Topology"
        and isinstance(payload.get("objects"), Mapping)
        and isinstance(payload.get("arcs"), list)
    )


# --- decoding -----------------------------------------------------------------


def _transform_params(topology: Mapping[str, Any]) -> tuple[float, float, float, float] | None:
    transform = topology.get("transform")
    if transform is None:
        return None
    if not isinstance(transform, Mapping):
        raise TopologyError("Topology transform must be a mapping")
    try:
        sx, sy = (float(v) for v in transform["scale"])
        tx, ty = (float(v) for v in transform["translate"])
    except (KeyError, TypeError, ValueError) as exc:
        raise TopologyError("Topology transform needs numeric scale and translate pairs") from exc
    return sx, sy, tx, ty


def decode_arcs(topology: Mapping[str, Any]) -> list[list[Position]]:
    """Absolute arc coordinates; quantized arcs are delta-decoded through `transform`."""
    params = _transform_params(topology)
    decoded: list[list[Position]] = []
    for idx, arc in enumerate(topology.get("arcs") or []):
        if not isinstance(arc, list):
            raise TopologyError(f"Arc {idx} is not a list of positions")
        points: list[Position] = []
        x = y = 0.0
        for pos in arc:
            try:
                px, py = float(pos[0]), float(pos[1])
            except (TypeError, ValueError, IndexError) as exc:
                raise TopologyError(f"Arc {idx} holds a malformed position") from exc
            if params is None:
                points.append((px, py))
                continue
            x += px
            y += py
            sx, sy, tx, ty = params
            points.append((x * sx + tx, y * sy + ty))
        decoded.append(points)
    return decoded


def _arc_points(arcs: Sequence[Sequence[Position]], ref: int) -> list[Position]:
    index = ~ref if ref < 0 else ref
    if index >= len(arcs):
        raise TopologyError(f"Arc reference {ref} is out of range")
    points = list(arcs[index])
    if ref < 0:
        points.reverse()
    return points


def _stitch(arcs: Sequence[Sequence[Position]], refs: Iterable[int]) -> list[list[float]]:
    coords: list[Position] = []
    for ref in refs:
        points = _arc_points(arcs, int(ref))
        if coords and points:
            points = points[1:]
        coords.extend(points)
    return [[x, y] for x, y in coords]


def _point(pos: Sequence[Any], params: tuple[float, float, float, float] | None) -> list[float]:
    x, y = float(pos[0]), float(pos[1])
    if params is None:
        return [x, y]
    sx, sy, tx, ty = params
    return [x * sx + tx, y * sy + ty]


def _decode_geometry(
    geom: Mapping[str, Any],
    arcs: Sequence[Sequence[Position]],
    params: tuple[float, float, float, float] | None,
) -> dict[str, Any] | None:
    geom_type = geom.get("type")
    try:
        if geom_type is None:
            return None
        if geom_type == "GeometryCollection":
            members = [
                _decode_geometry(child, arcs, params)
                for child in geom.get("geometries") or []
                if isinstance(child, Mapping)
            ]
            return {"type": "GeometryCollection", "geometries": [m for m in members if m is not None]}
        if geom_type == "Point":
            return {"type": "Point", "coordinates": _point(geom["coordinates"], params)}
        if geom_type == "MultiPoint":
            return {"type": "MultiPoint", "coordinates": [_point(p, params) for p in geom["coordinates"]]}
        if geom_type == "LineString":
            return {"type": "LineString", "coordinates": _stitch(arcs, geom["arcs"])}
        if geom_type == "MultiLineString":
            return {"type": "MultiLineString", "coordinates": [_stitch(arcs, line) for line in geom["arcs"]]}
        if geom_type == "Polygon":
            return {"type": "Polygon", "coordinates": [_stitch(arcs, ring) for ring in geom["arcs"]]}
        if geom_type == "MultiPolygon":
            return {
                "type": "MultiPolygon",
                "coordinates": [[_stitch(arcs, ring) for ring in poly] for poly in geom["arcs"]],
            }
    except (KeyError, TypeError, ValueError) as exc:
        raise TopologyError(f"Malformed {geom_type} geometry in topology") from exc
    raise TopologyError(f"Unsupported topology geometry type '{geom_type}'")


def object_to_features(topology: Mapping[str, Any], name: str) -> list[dict[str, Any]]:
    """Decode one named object into GeoJSON feature mappings.

    A top-level GeometryCollection yields one feature per member; nested
    collections stay as GeometryCollection geometries for later flattening.
    """
    objects = topology.get("objects")
    if not isinstance(objects, Mapping) or name not in objects:
        raise TopologyError(f"Topology has no object named '{name}'")
    obj = objects[name]
    if not isinstance(obj, Mapping):
        raise TopologyError(f"Topology object '{name}' is not a mapping")
    arcs = decode_arcs(topology)
    params = _transform_params(topology)
    members = obj.get("geometries") if obj.get("type") == "GeometryCollection" else [obj]
    features: list[dict[str, Any]] = []
    for member in members or []:
        if not isinstance(member, Mapping):
            continue
        feature: dict[str, Any] = {
            "type": "Feature",
            "properties": dict(member.get("properties") or {}),
            "geometry": _decode_geometry(member, arcs, params),
        }
        if "id" in member:
            feature["id"] = member["id"]
        features.append(feature)
    return features


def count_polygonal(obj: Mapping[str, Any]) -> int:
    geom_type = obj.get("type")
    if geom_type in ("Polygon", "MultiPolygon"):
        return 1
    if geom_type == "GeometryCollection":
        return sum(count_polygonal(child) for child in obj.get("geometries") or [] if isinstance(child, Mapping))
    return 0


# --- encoding -----------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EncodedFeature:
    geometry_type: str
    polygons: tuple[tuple[Ring, ...], ...]
    properties: Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class ArcTopology:
    """Feature rings expressed as references into a table of shared arcs.

    A negative reference `~i` walks arc `i` backwards, as in TopoJSON.
    """

    arcs: tuple[tuple[Position, ...], ...]
    features: tuple[EncodedFeature, ...]

    @property
    def point_count(self) -> int:
        return sum(len(arc) for arc in self.arcs)


def _open_ring(ring: Any) -> list[Position]:
    if not isinstance(ring, list) or len(ring) < 4:
        raise TopologyError("Polygon rings need at least 4 positions")
    try:
        points = [(float(pos[0]), float(pos[1])) for pos in ring]
    except (TypeError, ValueError, IndexError) as exc:
        raise TopologyError("Polygon ring holds a malformed position") from exc
    if not all(math.isfinite(x) and math.isfinite(y) for x, y in points):
        raise TopologyError("Polygon ring holds a non-finite coordinate")
    if points[0] != points[-1]:
        raise TopologyError("Polygon ring is not closed")
    return points[:-1]


def _feature_rings(feature: Feature) -> list[list[list[Position]]]:
    coords = feature.geometry["coordinates"]
    polygons = [coords] if feature.geometry_type == "Polygon" else coords
    if not isinstance(polygons, list):
        raise TopologyError("Malformed polygon coordinates")
    out: list[list[list[Position]]] = []
    for poly in polygons:
        if not isinstance(poly, list) or not poly:
            raise TopologyError("Polygon without rings")
        out.append([_open_ring(ring) for ring in poly])
    return out


def _junctions(rings: Iterable[list[Position]]) -> set[Position]:
    neighbours: dict[Position, frozenset[Position]] = {}
    junctions: set[Position] = set()
    for ring in rings:
        n = len(ring)
        for i, point in enumerate(ring):
            pair = frozenset((ring[i - 1], ring[(i + 1) % n]))
            seen = neighbours.get(point)
            if seen is None:
                neighbours[point] = pair
            elif seen != pair:
                junctions.add(point)
    return junctions


def _cut_ring(ring: list[Position], junctions: set[Position]) -> list[list[Position]]:
    cuts = [i for i, point in enumerate(ring) if point in junctions]
    if not cuts:
        start = ring.index(min(ring))
        rotated = ring[start:] + ring[:start]
        return [rotated + [rotated[0]]]
    rotated = ring[cuts[0]:] + ring[: cuts[0]]
    offsets = [c - cuts[0] for c in cuts] + [len(ring)]
    closed = rotated + [rotated[0]]
    return [closed[a : b + 1] for a, b in zip(offsets, offsets[1:])]


def build_topology(collection: FeatureCollection) -> ArcTopology:
    """Encode polygon features as shared arcs so common borders are stored once."""
    feature_rings = [_feature_rings(feature) for feature in collection]
    junctions = _junctions(ring for polys in feature_rings for poly in polys for ring in poly)

    arcs: list[tuple[Position, ...]] = []
    lookup: dict[tuple[Position, ...], int] = {}

    def _ref(points: list[Position]) -> int:
        key = tuple(points)
        found = lookup.get(key)
        if found is not None:
            return found
        found = lookup.get(key[::-1])
        if found is not None:
            return ~found
        lookup[key] = len(arcs)
        arcs.append(key)
        return len(arcs) - 1

    encoded: list[EncodedFeature] = []
    for feature, polys in zip(collection, feature_rings):
        polygons = tuple(
            tuple(tuple(_ref(piece) for piece in _cut_ring(ring, junctions)) for ring in poly)
            for poly in polys
        )
        encoded.append(
            EncodedFeature(
                geometry_type=feature.geometry_type,
                polygons=polygons,
                properties=dict(feature.properties),
            )
        )
    _LOGGER.debug("encoded %d features into %d arcs (%d junctions)", len(encoded), len(arcs), len(junctions))
    return ArcTopology(arcs=tuple(arcs), features=tuple(encoded))


# --- presimplification --------------------------------------------------------


def _triangle_area(a: Position, b: Position, c: Position) -> float:
    return abs((a[0] - c[0]) * (b[1] - a[1]) - (a[0] - b[0]) * (c[1] - a[1])) / 2.0


def visvalingam_weights(points: Sequence[Position]) -> list[float]:
    """Effective area per point; endpoints are infinite and never removed.

    Weights are made monotonic so removing a point never lowers the weight of
    a later-removed neighbour below it.
    """
    n = len(points)
    weights = [math.inf] * n
    if n < 3:
        return weights
    prev = list(range(-1, n - 1))
    nxt = list(range(1, n + 1))
    areas = [math.inf] * n
    heap: list[tuple[float, int]] = []
    for i in range(1, n - 1):
        areas[i] = _triangle_area(points[i - 1], points[i], points[i + 1])
        heap.append((areas[i], i))
    heapq.heapify(heap)
    removed = [False] * n
    floor = 0.0
    while heap:
        area, i = heapq.heappop(heap)
        if removed[i] or area != areas[i]:
            continue
        floor = max(floor, area)
        weights[i] = floor
        removed[i] = True
        p, q = prev[i], nxt[i]
        nxt[p] = q
        prev[q] = p
        for j in (p, q):
            if 0 < j < n - 1 and not removed[j]:
                areas[j] = _triangle_area(points[prev[j]], points[j], points[nxt[j]])
                heapq.heappush(heap, (areas[j], j))
    return weights


def presimplify(topology: ArcTopology) -> tuple[tuple[float, ...], ...]:
    return tuple(tuple(visvalingam_weights(arc)) for arc in topology.arcs)


def _ring_coords(arcs: Sequence[Sequence[Position]], ring: Ring) -> list[list[float]]:
    return _stitch(arcs, ring)


def simplify(
    topology: ArcTopology,
    weights: Sequence[Sequence[float]],
    threshold: float,
) -> FeatureCollection:
    """Drop arc points weighted below `threshold` and rebuild polygon features.

    Any ring that would fall below 4 positions keeps its arcs at full detail;
    because the decision is made per arc, neighbours sharing them stay coincident.
    """
    kept = [
        tuple(p for p, w in zip(arc, arc_weights) if w >= threshold)
        for arc, arc_weights in zip(topology.arcs, weights)
    ]
    restore: set[int] = set()
    for feature in topology.features:
        for poly in feature.polygons:
            for ring in poly:
                if len(_ring_coords(kept, ring)) < 4:
                    restore.update(~ref if ref < 0 else ref for ref in ring)
    for index in restore:
        kept[index] = topology.arcs[index]

    features: list[Feature] = []
    for feature in topology.features:
        polygons = [[_ring_coords(kept, ring) for ring in poly] for poly in feature.polygons]
        if feature.geometry_type == "Polygon":
            geometry = {"type": "Polygon", "coordinates": polygons[0]}
        else:
            geometry = {"type": "MultiPolygon", "coordinates": polygons}
        features.append(Feature(geometry=geometry, properties=dict(feature.properties)))
    return FeatureCollection(features=tuple(features))
