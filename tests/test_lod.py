"""Tests for choropleth.lod and the shared-arc topology underneath it."""

from __future__ import annotations

import math

import pytest

from choropleth.lod import LOD_BUCKETS, Degraded, LODSimplifier, Presimplified, bucket_for, weight_thresholds
from choropleth.models import Feature, FeatureCollection
from choropleth.topology import build_topology, presimplify, simplify, visvalingam_weights

from conftest import square

ZIGZAG = [[1.0, 0.0], [1.1, 0.2], [1.0, 0.4], [1.1, 0.6], [1.0, 0.8], [1.0, 1.0]]


def _zigzag_pair() -> FeatureCollection:
    left = [[0.0, 0.0], *ZIGZAG, [0.0, 1.0], [0.0, 0.0]]
    right = [[1.0, 0.0], [2.0, 0.0], [2.0, 1.0], *reversed(ZIGZAG)]
    return FeatureCollection(
        features=(
            Feature(geometry={"type": "Polygon", "coordinates": [left]}, properties={"id": "L"}),
            Feature(geometry={"type": "Polygon", "coordinates": [right]}, properties={"id": "R"}),
        )
    )


def _coords(feature: Feature) -> set[tuple[float, float]]:
    return {(x, y) for ring in feature.geometry["coordinates"] for x, y in ring}


class TestBuckets:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "resolution, label",
        [
            (7600, "coarse"),
            (7500, "low"),
            (7400, "low"),
            (5000, "medium"),
            (3000, "medium"),
            (2500, "high"),
            (1500, "high"),
            (1000, "max"),
            (10, "max"),
        ],
    )
    def test_resolution_thresholds(self, resolution, label):
        assert bucket_for(resolution) == label

    @pytest.mark.unit
    def test_thresholds_descend_with_bucket(self):
        thresholds = weight_thresholds([[math.inf, 1.0, 2.0, 3.0, 4.0, 5.0, math.inf]])
        values = [thresholds[label] for label in LOD_BUCKETS]
        assert values == sorted(values, reverse=True)
        assert thresholds["max"] == 1.0

    @pytest.mark.unit
    def test_no_finite_weights(self):
        assert weight_thresholds([[math.inf, math.inf]]) == {label: 0.0 for label in LOD_BUCKETS}


class TestTopology:

    @pytest.mark.unit
    def test_shared_edge_stored_once(self):
        collection = FeatureCollection(
            features=(Feature(geometry=square(0, 0)), Feature(geometry=square(1, 0)))
        )
        topology = build_topology(collection)
        assert len(topology.arcs) == 3
        refs = [ref for f in topology.features for poly in f.polygons for ring in poly for ref in ring]
        assert any(ref < 0 for ref in refs)

    @pytest.mark.unit
    def test_isolated_ring_round_trips(self):
        collection = FeatureCollection(features=(Feature(geometry=square(3, 4)),))
        topology = build_topology(collection)
        out = simplify(topology, presimplify(topology), threshold=0.0)
        assert _coords(out.features[0]) == _coords(collection.features[0])

    @pytest.mark.unit
    def test_visvalingam_weights(self):
        points = [(0, 0), (1, 0.1), (2, 0), (3, 5), (4, 0)]
        weights = visvalingam_weights(points)
        assert weights[0] == math.inf
        assert weights[-1] == math.inf
        assert weights[1:4] == pytest.approx([0.1, 5.0, 10.0])

    @pytest.mark.unit
    def test_short_arc_weights_are_infinite(self):
        assert visvalingam_weights([(0, 0), (1, 1)]) == [math.inf, math.inf]


class TestSimplifier:

    @pytest.mark.unit
    def test_memoized_per_bucket(self, row_collection):
        lod = LODSimplifier(row_collection)
        assert isinstance(lod.state, Presimplified)
        first = lod.simplified_for(8000)
        assert lod.simplified_for(9000) is first
        assert lod.cached_buckets == ("coarse",)

    @pytest.mark.unit
    def test_every_bucket_served(self, row_collection):
        lod = LODSimplifier(row_collection)
        for resolution in (8000, 6000, 3000, 1500, 10):
            assert len(lod.simplified_for(resolution)) == 5
        assert set(lod.cached_buckets) == set(LOD_BUCKETS)

    @pytest.mark.unit
    def test_oldest_bucket_evicted(self, row_collection):
        lod = LODSimplifier(row_collection, cache_size=2)
        lod.simplified_for(8000)
        lod.simplified_for(6000)
        lod.simplified_for(10)
        assert lod.cached_buckets == ("low", "max")

    @pytest.mark.unit
    def test_max_bucket_keeps_every_position(self, row_collection):
        out = LODSimplifier(row_collection).simplified_for(10)
        for before, after in zip(row_collection, out):
            assert _coords(after) == _coords(before)
            assert after.properties == before.properties

    @pytest.mark.unit
    def test_shared_border_stays_coincident(self):
        collection = _zigzag_pair()
        lod = LODSimplifier(collection)
        for resolution in (8000, 6000, 3000, 1500, 10):
            left, right = lod.simplified_for(resolution).features
            left_border = {p for p in _coords(left) if p[0] >= 1.0}
            right_border = {p for p in _coords(right) if p[0] <= 1.1}
            assert left_border == right_border
            for feature in (left, right):
                assert len(feature.geometry["coordinates"][0]) >= 4

    @pytest.mark.unit
    def test_coarse_drops_points(self):
        lod = LODSimplifier(_zigzag_pair())
        coarse = lod.simplified_for(8000)
        full = lod.simplified_for(10)
        coarse_points = sum(len(_coords(f)) for f in coarse)
        full_points = sum(len(_coords(f)) for f in full)
        assert coarse_points < full_points

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "ring",
        [
            [[0, 0], [1, 0], [1, 1], [0, 1]],
            [[0, 0], [1, 0], [0, 0]],
            [[0, 0], [1, 0], [1, float("nan")], [0, 0]],
        ],
    )
    def test_degraded_serves_original(self, ring):
        collection = FeatureCollection(
            features=(Feature(geometry={"type": "Polygon", "coordinates": [ring]}),)
        )
        lod = LODSimplifier(collection)
        assert lod.degraded
        assert isinstance(lod.state, Degraded)
        assert lod.simplified_for(8000) is collection

    @pytest.mark.unit
    def test_invalid_settings(self, row_collection):
        with pytest.raises(ValueError):
            LODSimplifier(row_collection, cache_size=0)
        with pytest.raises(ValueError):
            LODSimplifier(row_collection, percentiles=(50.0,))
