"""Zoom-bucketed simplification ladder over a shared-arc topology."""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass
from typing import Sequence, Union

import numpy as np

from .models import FeatureCollection
from .topology import ArcTopology, TopologyError, build_topology, presimplify, simplify

LOD_BUCKETS = ("coarse", "low", "medium", "high", "max")
# Resolution (metres per pixel) strictly above each value selects the bucket at the same index.
DEFAULT_BREAKPOINTS = (7500.0, 5000.0, 2500.0, 1000.0)
DEFAULT_PERCENTILES = (80.0, 60.0, 40.0, 20.0, 0.0)

_LOGGER = logging.getLogger("choropleth.lod")


@dataclass(frozen=True, slots=True)
class Presimplified:
    topology: ArcTopology
    weights: tuple[tuple[float, ...], ...]
    thresholds: dict[str, float]


@dataclass(frozen=True, slots=True)
class Degraded:
    reason: str


LodBuild = Union[Presimplified, Degraded]


def bucket_for(resolution: float, breakpoints: Sequence[float] = DEFAULT_BREAKPOINTS) -> str:
    for label, limit in zip(LOD_BUCKETS, breakpoints):
        if resolution > limit:
            return label
    return LOD_BUCKETS[-1]


def weight_thresholds(
    weights: Sequence[Sequence[float]],
    percentiles: Sequence[float] = DEFAULT_PERCENTILES,
) -> dict[str, float]:
    """Map each bucket to the weight percentile that points must reach to survive."""
    finite = np.array([w for arc in weights for w in arc if math.isfinite(w)], dtype=float)
    if finite.size == 0:
        return {label: 0.0 for label in LOD_BUCKETS}
    return {
        label: float(np.percentile(finite, pct)) for label, pct in zip(LOD_BUCKETS, percentiles)
    }


class LODSimplifier:
    """Serve a simplified FeatureCollection per zoom bucket, memoized by label."""

    def __init__(
        self,
        collection: FeatureCollection,
        *,
        cache_size: int = 8,
        percentiles: Sequence[float] = DEFAULT_PERCENTILES,
        breakpoints: Sequence[float] = DEFAULT_BREAKPOINTS,
    ) -> None:
        if cache_size < 1:
            raise ValueError("cache_size must be >= 1")
        if len(percentiles) != len(LOD_BUCKETS):
            raise ValueError(f"Expected {len(LOD_BUCKETS)} percentiles")
        if len(breakpoints) != len(LOD_BUCKETS) - 1:
            raise ValueError(f"Expected {len(LOD_BUCKETS) - 1} breakpoints")
        self.collection = collection
        self.cache_size = cache_size
        self.percentiles = tuple(float(p) for p in percentiles)
        self.breakpoints = tuple(float(b) for b in breakpoints)
        self._cache: OrderedDict[str, FeatureCollection] = OrderedDict()
        self.state: LodBuild = self.build(collection)

    @property
    def degraded(self) -> bool:
        return isinstance(self.state, Degraded)

    @property
    def cached_buckets(self) -> tuple[str, ...]:
        return tuple(self._cache.keys())

    def build(self, collection: FeatureCollection) -> LodBuild:
        try:
            topology = build_topology(collection)
        except TopologyError as exc:
            _LOGGER.warning("LOD topology build failed; serving original geometry: %s", exc)
            return Degraded(reason=str(exc))
        weights = presimplify(topology)
        thresholds = weight_thresholds(weights, self.percentiles)
        _LOGGER.debug(
            "presimplified %d arcs / %d points; thresholds %s",
            len(topology.arcs),
            topology.point_count,
            thresholds,
        )
        return Presimplified(topology=topology, weights=weights, thresholds=thresholds)

    def bucket_for(self, resolution: float) -> str:
        return bucket_for(resolution, self.breakpoints)

    def simplified_for(self, resolution: float) -> FeatureCollection:
        if isinstance(self.state, Degraded):
            return self.collection
        label = self.bucket_for(resolution)
        cached = self._cache.get(label)
        if cached is not None:
            return cached
        simplified = simplify(self.state.topology, self.state.weights, self.state.thresholds[label])
        if len(self._cache) >= self.cache_size:
            evicted, _ = self._cache.popitem(last=False)
            _LOGGER.debug("evicting LOD bucket %s", evicted)
        self._cache[label] = simplified
        return simplified
