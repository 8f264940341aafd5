"""Tests for choropleth.normalize and TopoJSON decoding."""

from __future__ import annotations

import pytest

from conftest import square, square_feature
from choropleth.normalize import SchemaError, flatten_geometry, normalize, parse_payload, InvalidJsonError

POINT = {"type": "Point", "coordinates": [0.5, 0.5]}
LINE = {"type": "LineString", "coordinates": [[0, 0], [1, 1]]}


def _collection(*features):
    return {"type": "FeatureCollection", "features": list(features)}


def _topology(objects, arcs, transform=None):
    topo = {"type": "Topology", "objects": objects, "arcs": arcs}
    if transform is not None:
        topo["transform"] = transform
    return topo


UNIT_ARC = [[0, 0], [1, 0], [1, 1], [0, 1], [0, 0]]


class TestFlattening:

    @pytest.mark.unit
    def test_point_and_polygon_collection_becomes_polygon(self):
        geometry = {"type": "GeometryCollection", "geometries": [POINT, square(0, 0)]}
        out = normalize(_collection({"type": "Feature", "geometry": geometry, "properties": {"id": 1}}))
        assert len(out) == 1
        assert out.features[0].geometry == square(0, 0)
        assert out.features[0].properties == {"id": 1}

    @pytest.mark.unit
    def test_non_polygonal_collection_is_dropped(self):
        geometry = {"type": "GeometryCollection", "geometries": [POINT, LINE]}
        out = normalize(
            _collection(
                {"type": "Feature", "geometry": geometry, "properties": {}},
                square_feature(2, 0, id=2),
            )
        )
        assert len(out) == 1
        assert out.features[0].get("id") == 2

    @pytest.mark.unit
    def test_several_polygons_aggregate_to_multipolygon(self):
        multi = {
            "type": "MultiPolygon",
            "coordinates": [square(4, 0)["coordinates"], square(6, 0)["coordinates"]],
        }
        geometry = {
            "type": "GeometryCollection",
            "geometries": [square(0, 0), LINE, {"type": "GeometryCollection", "geometries": [multi]}],
        }
        flat = flatten_geometry(geometry)
        assert flat["type"] == "MultiPolygon"
        assert len(flat["coordinates"]) == 3

    @pytest.mark.unit
    def test_non_polygonal_features_dropped(self):
        out = normalize(
            _collection(
                {"type": "Feature", "geometry": POINT, "properties": {}},
                {"type": "Feature", "geometry": None, "properties": {}},
                square_feature(0, 0),
            )
        )
        assert len(out) == 1

    @pytest.mark.unit
    def test_bare_feature_is_rejected(self):
        with pytest.raises(SchemaError, match="got 'Feature'"):
            normalize(square_feature(0, 0, code="X"))

    @pytest.mark.unit
    def test_null_properties_become_empty(self):
        out = normalize(_collection({"type": "Feature", "geometry": square(0, 0), "properties": None}))
        assert out.features[0].properties == {}

    @pytest.mark.unit
    def test_to_dict_round_trip_shape(self, row_payload):
        out = normalize(row_payload).to_dict()
        assert out["type"] == "FeatureCollection"
        assert [f["properties"]["shapeID"] for f in out["features"]] == list("ABCDE")


class TestSchemaErrors:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "payload",
        [
            [],
            "FeatureCollection",
            {"type": "Polygon", "coordinates": []},
            {"type": "FeatureCollection"},
            {"type": "FeatureCollection", "features": {}},
            {"type": "Topology", "objects": {}},
        ],
    )
    def test_rejected_payloads(self, payload):
        with pytest.raises(SchemaError):
            normalize(payload)

    @pytest.mark.unit
    def test_topology_without_objects(self):
        with pytest.raises(SchemaError):
            normalize(_topology({}, []))

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "geometry",
        [
            {"type": "Polygon", "coordinates": [[["0", "0"], ["1", "0"], ["1", "1"], ["0", "0"]]]},
            {"type": "Polygon", "coordinates": [[[0, 0], [1], [1, 1], [0, 0]]]},
            {"type": "Polygon", "coordinates": [[[0, 0], [True, 0], [1, 1], [0, 0]]]},
            {"type": "MultiPolygon", "coordinates": [[[[0, 0], [1, 0], [1, None], [0, 0]]]]},
            {"type": "MultiPolygon", "coordinates": ["not", "rings"]},
        ],
    )
    def test_non_numeric_positions_rejected(self, geometry):
        with pytest.raises(SchemaError):
            normalize(_collection({"type": "Feature", "geometry": geometry, "properties": {}}))

    @pytest.mark.unit
    def test_topology_with_bad_arc_reference(self):
        objects = {"a": {"type": "GeometryCollection", "geometries": [{"type": "Polygon", "arcs": [[5]]}]}}
        with pytest.raises(SchemaError):
            normalize(_topology(objects, [UNIT_ARC]))

    @pytest.mark.unit
    def test_parse_payload(self):
        assert parse_payload('{"type": "FeatureCollection", "features": []}')["type"] == "FeatureCollection"
        with pytest.raises(InvalidJsonError):
            parse_payload("{oops")
        with pytest.raises(InvalidJsonError):
            parse_payload("42")


class TestTopology:

    @pytest.mark.unit
    def test_decodes_plain_arcs(self):
        objects = {
            "regions": {
                "type": "GeometryCollection",
                "geometries": [{"type": "Polygon", "arcs": [[0]], "properties": {"code": "A"}}],
            }
        }
        out = normalize(_topology(objects, [UNIT_ARC]))
        assert len(out) == 1
        assert out.features[0].geometry["coordinates"] == [UNIT_ARC]
        assert out.features[0].get("code") == "A"

    @pytest.mark.unit
    def test_negative_reference_reverses_arc(self):
        objects = {"r": {"type": "Polygon", "arcs": [[-1]]}}
        out = normalize(_topology(objects, [UNIT_ARC]))
        assert out.features[0].geometry["coordinates"] == [list(reversed(UNIT_ARC))]

    @pytest.mark.unit
    def test_stitches_multiple_arcs(self):
        arcs = [[[0, 0], [1, 0], [1, 1]], [[1, 1], [0, 1], [0, 0]]]
        objects = {"r": {"type": "Polygon", "arcs": [[0, 1]]}}
        out = normalize(_topology(objects, arcs))
        assert out.features[0].geometry["coordinates"] == [UNIT_ARC]

    @pytest.mark.unit
    def test_quantized_arcs_are_delta_decoded(self):
        arcs = [[[0, 0], [2, 0], [0, 2], [-2, 0], [0, -2]]]
        transform = {"scale": [0.5, 0.5], "translate": [10, 20]}
        objects = {"r": {"type": "MultiPolygon", "arcs": [[[0]]]}}
        out = normalize(_topology(objects, arcs, transform))
        ring = out.features[0].geometry["coordinates"][0][0]
        assert ring == [[10, 20], [11, 20], [11, 21], [10, 21], [10, 20]]

    @pytest.mark.unit
    def test_nested_collection_in_topology_is_flattened(self):
        member = {
            "type": "GeometryCollection",
            "properties": {"code": "N"},
            "geometries": [{"type": "Point", "coordinates": [0, 0]}, {"type": "Polygon", "arcs": [[0]]}],
        }
        objects = {"r": {"type": "GeometryCollection", "geometries": [member]}}
        out = normalize(_topology(objects, [UNIT_ARC]))
        assert out.features[0].geometry["type"] == "Polygon"
        assert out.features[0].get("code") == "N"


class TestLayerSelection:

    def _two_layer_topology(self):
        objects = {
            "points": {
                "type": "GeometryCollection",
                "geometries": [{"type": "Point", "coordinates": [0, 0]}],
            },
            "regions": {
                "type": "GeometryCollection",
                "geometries": [
                    {"type": "Polygon", "arcs": [[0]], "properties": {"code": "A"}},
                    {"type": "Polygon", "arcs": [[-1]], "properties": {"code": "B"}},
                ],
            },
        }
        return _topology(objects, [UNIT_ARC])

    @pytest.mark.unit
    def test_first_layer_by_default(self):
        out = normalize(self._two_layer_topology())
        assert len(out) == 0

    @pytest.mark.unit
    def test_most_polygonal_layer_when_not_preferring_first(self):
        out = normalize(self._two_layer_topology(), prefer_first_layer=False)
        assert [f.get("code") for f in out] == ["A", "B"]

    @pytest.mark.unit
    def test_honored_preferred_name(self):
        out = normalize(
            self._two_layer_topology(),
            preferred_layer_name="regions",
            honor_preferred_name=True,
        )
        assert len(out) == 2

    @pytest.mark.unit
    def test_preferred_name_ignored_unless_honored(self):
        out = normalize(self._two_layer_topology(), preferred_layer_name="regions")
        assert len(out) == 0

    @pytest.mark.unit
    def test_missing_preferred_name_falls_back(self):
        out = normalize(
            self._two_layer_topology(),
            preferred_layer_name="nope",
            prefer_first_layer=False,
            honor_preferred_name=True,
        )
        assert len(out) == 2
