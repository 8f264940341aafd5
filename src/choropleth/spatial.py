"""Bounding-box R-tree over feature positions for hit and viewport queries."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from .models import BoundingBox, Feature, FeatureCollection

_LOGGER = logging.getLogger("choropleth.spatial")


def _iter_positions(coords: Any) -> Iterable[Sequence[float]]:
    if not isinstance(coords, (list, tuple)):
        return
    if coords and isinstance(coords[0], (int, float)):
        yield coords
        return
    for item in coords:
        yield from _iter_positions(item)


def feature_bounds(feature: Feature) -> BoundingBox | None:
    xs: list[float] = []
    ys: list[float] = []
    for pos in _iter_positions(feature.geometry.get("coordinates")):
        xs.append(float(pos[0]))
        ys.append(float(pos[1]))
    if not xs:
        return None
    return BoundingBox(min_x=min(xs), min_y=min(ys), max_x=max(xs), max_y=max(ys))


def collection_bounds(collection: Iterable[Feature]) -> BoundingBox | None:
    total: BoundingBox | None = None
    for feature in collection:
        bbox = feature_bounds(feature)
        if bbox is None:
            continue
        total = bbox if total is None else total.union(bbox)
    return total


class SpatialIndex:
    """Read-only STRtree of feature bounding boxes.

    Queries return positions into the indexed collection; rebuild the index
    whenever the collection is replaced.
    """

    def __init__(self, collection: FeatureCollection, boxes: Sequence[BoundingBox | None]) -> None:
        box = _require_shapely_box_factory()
        self.collection = collection
        self._positions = [idx for idx, bbox in enumerate(boxes) if bbox is not None]
        self._boxes = [bbox for bbox in boxes if bbox is not None]
        self._tree = _require_strtree()([box(*bbox.as_tuple()) for bbox in self._boxes])
        self.bounds = collection_bounds(collection)

    @classmethod
    def build(cls, collection: FeatureCollection) -> SpatialIndex:
        boxes = [feature_bounds(feature) for feature in collection]
        _LOGGER.debug("indexing %d feature bounding boxes", sum(1 for b in boxes if b is not None))
        return cls(collection, boxes)

    def __len__(self) -> int:
        return len(self._boxes)

    def query(self, bbox: BoundingBox | Sequence[float]) -> list[int]:
        """Positions of features whose bounding box intersects `bbox`."""
        if not self._boxes:
            return []
        bounds = bbox.as_tuple() if isinstance(bbox, BoundingBox) else tuple(float(v) for v in bbox)
        hits = self._tree.query(_require_shapely_box_factory()(*bounds))
        return sorted(self._positions[int(hit)] for hit in hits)

    def query_features(self, bbox: BoundingBox | Sequence[float]) -> list[Feature]:
        return [self.collection.features[idx] for idx in self.query(bbox)]


def _require_strtree() -> Any:
    try:
        from shapely.strtree import STRtree
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("shapely is required for the spatial index") from exc
    return STRtree


def _require_shapely_box_factory() -> Any:
    try:
        from shapely.geometry import box
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("shapely is required for the spatial index") from exc
    return box
