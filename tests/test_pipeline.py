"""End-to-end tests for choropleth.pipeline with local files and an in-memory fetcher."""

from __future__ import annotations

import asyncio
import dataclasses
import json

import pytest

from choropleth.cache import FreshResult, ResultCache
from choropleth.config import AppConfig, ClassificationConfig, DisplayConfig
from choropleth.fetch import HttpStatusError
from choropleth.pipeline import (
    BoundarySource,
    ChoroplethPipeline,
    ChoroplethRequest,
    PipelineReport,
    format_report_lines,
    project_extent,
)
from choropleth.models import BoundingBox

URL_A = "https://boundaries.example.org/a.geojson"
URL_B = "https://boundaries.example.org/b.geojson"


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeFetcher:
    """Serves queued payloads (or raises queued errors) per URL."""

    def __init__(self, responses, delays=None):
        self._responses = {url: list(items) for url, items in responses.items()}
        self._delays = delays or {}
        self.calls = []

    async def fetch_json_async(self, url):
        self.calls.append(url)
        await asyncio.sleep(self._delays.get(url, 0))
        item = self._responses[url].pop(0)
        if isinstance(item, Exception):
            raise item
        return FreshResult(data=item)


def _cfg(**overrides) -> AppConfig:
    return dataclasses.replace(AppConfig.default(), **overrides)


def _request(source, codes=("A", "B", "C"), values=(10, 30, 50), **kwargs):
    return ChoroplethRequest(
        source=source,
        join_values=list(codes),
        measure_values=list(values),
        join_key=kwargs.pop("join_key", "shapeISO"),
        **kwargs,
    )


@pytest.fixture
def boundary_file(tmp_path, row_payload):
    path = tmp_path / "adm1.geojson"
    path.write_text(json.dumps(row_payload), encoding="utf-8")
    return path


class TestRenderFromFile:

    @pytest.mark.unit
    def test_end_to_end(self, boundary_file):
        pipeline = ChoroplethPipeline(_cfg())
        result = asyncio.run(pipeline.render(_request(BoundarySource(path=boundary_file))))
        assert result is not None
        assert result.report.ok
        assert result.join.key == "shapeID"
        assert result.join.adopted
        assert any("shapeID" in info for info in result.report.infos)
        assert [f.get("shapeID") for f in result.collection] == ["A", "B", "C"]
        # Five requested classes cap at the three distinct values; three classes carry
        # four breaks (class count + 1), hence three colours and legend rows.
        assert len(result.legend) == 3
        breaks = [result.legend[0].lower] + [entry.upper for entry in result.legend]
        assert breaks == pytest.approx([10, 70 / 3, 110 / 3, 50])
        assert len(result.index) == 3

        fills = [result.fill_for(f) for f in result.collection]
        assert fills[0] == result.legend[0].color
        assert fills[-1] == result.legend[-1].color

        min_x, min_y, max_x, max_y = result.extent_3857
        assert min_x == pytest.approx(0.0, abs=1e-6)
        assert min_y == pytest.approx(0.0, abs=1e-6)
        assert max_x == pytest.approx(333958.4723798207, rel=1e-6)
        assert max_y > 0

    @pytest.mark.unit
    def test_geojson_output_carries_fill(self, boundary_file):
        pipeline = ChoroplethPipeline(_cfg())
        result = asyncio.run(pipeline.render(_request(BoundarySource(path=boundary_file))))
        payload = result.to_geojson(resolution=10)
        assert len(payload["features"]) == 3
        assert all(f["properties"]["fill"].startswith("#") for f in payload["features"])

    @pytest.mark.unit
    def test_unmatched_rows_warned(self, boundary_file):
        pipeline = ChoroplethPipeline(_cfg())
        result = asyncio.run(
            pipeline.render(
                _request(BoundarySource(path=boundary_file), codes=("A", "B", "C", "Z"), values=(1, 2, 3, 4))
            )
        )
        assert any("1 data codes have no boundary: Z" in w for w in result.report.warnings)
        assert "Z" not in result.values_by_code

    @pytest.mark.unit
    def test_grey_out_keeps_all_features(self, boundary_file):
        cfg = _cfg(display=DisplayConfig(grey_out_unmatched=True))
        result = asyncio.run(ChoroplethPipeline(cfg).render(_request(BoundarySource(path=boundary_file))))
        assert len(result.collection) == 5
        fills = {f.get("shapeID"): result.fill_for(f) for f in result.collection}
        assert fills["D"] == "#BDBDBD"
        assert fills["E"] == "#BDBDBD"
        assert fills["A"] != "#BDBDBD"

    @pytest.mark.unit
    def test_unique_classification_uses_stable_palette(self, boundary_file):
        cfg = _cfg(classification=ClassificationConfig(method="u", classes=3, color_ramp="TRAFFIC"))
        cfg = dataclasses.replace(cfg, palettes={**cfg.palettes, "TRAFFIC": ("#00ff00", "#ffff00", "#ff0000")})
        pipeline = ChoroplethPipeline(cfg)
        first = asyncio.run(
            pipeline.render(
                _request(BoundarySource(path=boundary_file), values=("low", "high", "low"), measure_id="risk")
            )
        )
        assert [entry.label for entry in first.legend] == ["high", "low"]
        high = first.color_fn("high")
        second = asyncio.run(
            pipeline.render(
                _request(BoundarySource(path=boundary_file), values=("mid", "high", "low"), measure_id="risk")
            )
        )
        assert second.color_fn("high") == high
        assert second.color_fn("mid") == "#ff0000"

    @pytest.mark.unit
    def test_no_match_reports_error(self, boundary_file):
        pipeline = ChoroplethPipeline(_cfg())
        result = asyncio.run(
            pipeline.render(_request(BoundarySource(path=boundary_file), codes=("X", "Y"), values=(1, 2)))
        )
        assert result is None
        assert not pipeline.last_report.ok
        assert "No boundaries matched" in pipeline.last_report.errors[0]

    @pytest.mark.unit
    def test_unknown_ramp_warns(self, boundary_file):
        cfg = _cfg(classification=ClassificationConfig(color_ramp="RAINBOW"))
        result = asyncio.run(ChoroplethPipeline(cfg).render(_request(BoundarySource(path=boundary_file))))
        assert any("RAINBOW" in w for w in result.report.warnings)

    @pytest.mark.unit
    def test_missing_file_reports_error(self, tmp_path):
        pipeline = ChoroplethPipeline(_cfg())
        result = asyncio.run(pipeline.render(_request(BoundarySource(path=tmp_path / "nope.geojson"))))
        assert result is None
        assert "Boundary file not found" in pipeline.last_report.errors[0]

    @pytest.mark.unit
    def test_non_numeric_positions_report_error(self, tmp_path):
        ring = [["0", "0"], ["1", "0"], ["1", "1"], ["0", "1"], ["0", "0"]]
        payload = {
            "type": "FeatureCollection",
            "features": [
                {"type": "Feature", "geometry": {"type": "Polygon", "coordinates": [ring]}, "properties": {"shapeISO": "A"}}
            ],
        }
        path = tmp_path / "strings.geojson"
        path.write_text(json.dumps(payload), encoding="utf-8")
        pipeline = ChoroplethPipeline(_cfg())
        assert asyncio.run(pipeline.render(_request(BoundarySource(path=path)))) is None
        assert "non-numeric position" in pipeline.last_report.errors[0]


class TestRemoteFailures:

    @pytest.mark.unit
    def test_transport_failure_keeps_previous_result(self, row_payload):
        clock = FakeClock()
        fetcher = FakeFetcher({URL_A: [row_payload, HttpStatusError("Service Unavailable", url=URL_A, status=503)]})
        pipeline = ChoroplethPipeline(_cfg(), fetcher=fetcher, cache=ResultCache(clock=clock))
        request = _request(BoundarySource(url=URL_A))

        first = asyncio.run(pipeline.render(request))
        clock.now += 7200
        second = asyncio.run(pipeline.render(request))

        assert second is not None
        assert second.collection is first.collection
        assert not second.report.ok
        assert "HTTP 503" in second.report.errors[0]
        assert "Keeping previously rendered boundaries" in second.report.warnings
        assert len(fetcher.calls) == 2

    @pytest.mark.unit
    def test_cached_payload_skips_fetch(self, row_payload):
        fetcher = FakeFetcher({URL_A: [row_payload]})
        pipeline = ChoroplethPipeline(_cfg(), fetcher=fetcher)
        request = _request(BoundarySource(url=URL_A))
        asyncio.run(pipeline.render(request))
        assert asyncio.run(pipeline.render(request)) is not None
        assert fetcher.calls == [URL_A]

    @pytest.mark.unit
    def test_failure_for_new_source_clears(self, row_payload):
        fetcher = FakeFetcher(
            {URL_A: [row_payload], URL_B: [HttpStatusError("Not Found", url=URL_B, status=404)]}
        )
        pipeline = ChoroplethPipeline(_cfg(), fetcher=fetcher)
        assert asyncio.run(pipeline.render(_request(BoundarySource(url=URL_A)))) is not None
        assert asyncio.run(pipeline.render(_request(BoundarySource(url=URL_B)))) is None
        assert "Boundary layer cleared for new configuration" in pipeline.last_report.warnings

    @pytest.mark.unit
    def test_insecure_url_rejected_without_fetch(self):
        fetcher = FakeFetcher({})
        pipeline = ChoroplethPipeline(_cfg(), fetcher=fetcher)
        result = asyncio.run(pipeline.render(_request(BoundarySource(url="http://boundaries.example.org/a.json"))))
        assert result is None
        assert fetcher.calls == []
        assert pipeline.last_report.errors

    @pytest.mark.unit
    def test_invalid_catalog_options(self):
        pipeline = ChoroplethPipeline(_cfg(), fetcher=FakeFetcher({}))
        source = BoundarySource(release="", iso3="KEN", admin_level="ADM1")
        assert asyncio.run(pipeline.render(_request(source))) is None
        assert pipeline.last_report.errors == ["Release type is required"]

    @pytest.mark.unit
    def test_superseded_render_is_discarded(self, row_payload):
        fetcher = FakeFetcher({URL_A: [row_payload], URL_B: [row_payload]}, delays={URL_A: 0.05})
        pipeline = ChoroplethPipeline(_cfg(), fetcher=fetcher)

        async def scenario():
            return await asyncio.gather(
                pipeline.render(_request(BoundarySource(url=URL_A))),
                pipeline.render(_request(BoundarySource(url=URL_B))),
            )

        slow, fast = asyncio.run(scenario())
        assert slow is None
        assert fast is not None

    @pytest.mark.unit
    def test_superseded_failure_leaves_newer_result(self, row_payload):
        clock = FakeClock()
        fetcher = FakeFetcher(
            {
                URL_A: [HttpStatusError("Service Unavailable", url=URL_A, status=503)],
                URL_B: [row_payload, HttpStatusError("Service Unavailable", url=URL_B, status=503)],
            },
            delays={URL_A: 0.05},
        )
        pipeline = ChoroplethPipeline(_cfg(), fetcher=fetcher, cache=ResultCache(clock=clock))

        async def scenario():
            return await asyncio.gather(
                pipeline.render(_request(BoundarySource(url=URL_A))),
                pipeline.render(_request(BoundarySource(url=URL_B))),
            )

        slow, fast = asyncio.run(scenario())
        assert slow is None
        assert fast is not None
        assert pipeline.last_report is fast.report
        assert pipeline.last_report.ok

        # The newer layer is still the one kept when its own refresh fails.
        clock.now += 7200
        retry = asyncio.run(pipeline.render(_request(BoundarySource(url=URL_B))))
        assert retry is not None
        assert retry.collection is fast.collection
        assert "Keeping previously rendered boundaries" in retry.report.warnings


class TestHelpers:

    @pytest.mark.unit
    def test_source_from_argument(self, tmp_path):
        assert BoundarySource.from_argument(URL_A).url == URL_A
        local = BoundarySource.from_argument(str(tmp_path / "a.json"))
        assert local.path is not None
        assert local.cache_key.startswith("file:")

    @pytest.mark.unit
    def test_catalog_cache_key(self):
        source = BoundarySource(release="gbOpen", iso3="ken", admin_level="adm1")
        assert source.cache_key == "geoboundaries:gbopen:KEN:ADM1"

    @pytest.mark.unit
    def test_report_lines(self):
        report = PipelineReport()
        report.add_info("joined")
        assert list(format_report_lines(report)) == ["[INFO] joined", "[OK] Render completed with no errors."]
        report.add_error("broken")
        assert list(format_report_lines(report))[-1] == "[ERROR] broken"

    @pytest.mark.unit
    def test_extent_clamps_poles(self):
        _, south, _, north = project_extent(BoundingBox(-180.0, -90.0, 180.0, 90.0))
        assert north == pytest.approx(20037508.34, rel=1e-6)
        assert south == pytest.approx(-20037508.34, rel=1e-6)
        assert project_extent(None) is None
