"""Boundary fetch, join, classification and LOD orchestration for one choropleth layer."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

from .cache import ResultCache
from .catalog import GeoBoundariesCatalog, validate_options
from .classify import ClassificationEngine, ClassificationMethod, select_color_ramp
from .config import AppConfig
from .fetch import (
    BoundaryFetcher,
    TransportError,
    catalog_key,
    custom_key,
    load_boundary_file,
    validate_boundary_url,
)
from .join import BoundaryKeyResolver, JoinDecision, JoinError, choose_join_key, normalize_join_value
from .lod import LODSimplifier
from .models import BoundingBox, Feature, FeatureCollection, LegendEntry
from .normalize import SchemaError, normalize
from .palette import StablePaletteAssigner
from .spatial import SpatialIndex, collection_bounds
from .util import format_code_list, is_number

# Web Mercator is undefined at the poles.
_MAX_MERCATOR_LAT = 85.05112878

_LOGGER = logging.getLogger("choropleth.pipeline")


@dataclass
class PipelineReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    infos: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)

    def add_info(self, msg: str) -> None:
        self.infos.append(msg)


def format_report_lines(report: PipelineReport) -> Iterable[str]:
    for info in report.infos:
        yield f"[INFO] {info}"
    for warning in report.warnings:
        yield f"[WARN] {warning}"
    for error in report.errors:
        yield f"[ERROR] {error}"
    if report.ok:
        yield "[OK] Render completed with no errors."


@dataclass(frozen=True, slots=True)
class BoundarySource:
    """Where boundary geometry comes from: a URL, a local file, or the catalog."""

    url: str | None = None
    path: Path | None = None
    release: str | None = None
    iso3: str | None = None
    admin_level: str | None = None
    layer_name: str | None = None
    prefer_first_layer: bool = True
    honor_preferred_name: bool = False

    @classmethod
    def from_argument(cls, value: str, **kwargs: Any) -> BoundarySource:
        if "://" in value:
            return cls(url=value.strip(), **kwargs)
        return cls(path=Path(value), **kwargs)

    @property
    def cache_key(self) -> str:
        if self.url is not None:
            return custom_key(self.url)
        if self.path is not None:
            return f"file:{self.path.resolve()}"
        return catalog_key(self.release or "", self.iso3 or "", self.admin_level or "")


@dataclass(frozen=True, slots=True)
class ChoroplethRequest:
    source: BoundarySource
    join_values: Sequence[Any]
    measure_values: Sequence[Any]
    join_key: str = "shapeISO"
    measure_id: str | None = None


@dataclass(frozen=True, slots=True)
class ChoroplethResult:
    """Inert hand-off for a renderer: geometry, colours, legend and extent."""

    collection: FeatureCollection
    color_fn: Callable[[Any], str]
    legend: tuple[LegendEntry, ...]
    extent_3857: tuple[float, float, float, float] | None
    join: JoinDecision
    lod: LODSimplifier
    index: SpatialIndex
    report: PipelineReport
    values_by_code: Mapping[str, Any] = field(default_factory=dict)
    unmatched_color: str | None = None

    def fill_for(self, feature: Feature) -> str | None:
        code = normalize_join_value(feature.get(self.join.key))
        if code is not None and code in self.values_by_code:
            return self.color_fn(self.values_by_code[code])
        return self.unmatched_color

    def to_geojson(self, resolution: float | None = None) -> dict[str, Any]:
        collection = self.collection if resolution is None else self.lod.simplified_for(resolution)
        features = []
        for feature in collection:
            payload = feature.to_dict()
            payload["properties"]["fill"] = self.fill_for(feature)
            features.append(payload)
        return {"type": "FeatureCollection", "features": features}


class ChoroplethPipeline:
    """Render choropleth layers, keeping palette and cache state between refreshes."""

    def __init__(
        self,
        cfg: AppConfig,
        *,
        fetcher: BoundaryFetcher | None = None,
        cache: ResultCache | None = None,
    ) -> None:
        self.cfg = cfg
        self.fetcher = fetcher or BoundaryFetcher(cfg.network)
        self.cache = cache or ResultCache(
            max_entries=cfg.cache.max_entries,
            default_ttl_ms=cfg.cache.expiry_ms,
        )
        self.catalog = GeoBoundariesCatalog(self.fetcher, catalog_cfg=cfg.catalog, cache_cfg=cfg.cache)
        self.resolver = BoundaryKeyResolver(cfg.join.candidate_keys)
        self.engine = ClassificationEngine(color_mode=cfg.classification.color_mode)
        ramp, self._ramp_warning = select_color_ramp(
            cfg.classification.color_ramp,
            cfg.classification.custom_ramp,
            cfg.palettes,
        )
        self.ramp = tuple(reversed(ramp)) if cfg.classification.invert else ramp
        self.palette = StablePaletteAssigner(self.ramp)
        self.last_report: PipelineReport | None = None
        self._generation = 0
        self._last_key: str | None = None
        self._last_result: ChoroplethResult | None = None

    async def load_payload(self, source: BoundarySource) -> Any:
        if source.url is not None:
            url = validate_boundary_url(source.url)
            return await self.cache.get_or_fetch(
                source.cache_key,
                lambda: self.fetcher.fetch_json_async(url),
                ttl_ms=self.cfg.cache.expiry_ms,
                respect_freshness_headers=True,
            )
        if source.path is not None:
            path = source.path
            return await self.cache.get_or_fetch(
                source.cache_key,
                lambda: asyncio.to_thread(load_boundary_file, path),
            )

        problem = validate_options(source.release or "", source.iso3 or "", source.admin_level or "")
        if problem:
            raise SchemaError(problem)
        url = await self.catalog.resolve_url(source.release or "", source.iso3 or "", source.admin_level or "")
        if url is None:
            raise SchemaError(
                f"No catalog boundary for {source.release}/{source.iso3}/{source.admin_level}"
            )
        return await self.cache.get_or_fetch(
            source.cache_key,
            lambda: self.fetcher.fetch_json_async(url),
            ttl_ms=self.cfg.cache.expiry_ms,
            respect_freshness_headers=True,
        )

    async def render(self, request: ChoroplethRequest) -> ChoroplethResult | None:
        self._generation += 1
        generation = self._generation
        key = request.source.cache_key
        report = PipelineReport()
        if self._ramp_warning:
            report.add_warning(self._ramp_warning)

        try:
            payload = await self.load_payload(request.source)
            if payload is None:
                raise SchemaError("Boundary source returned no data")
            collection = normalize(
                payload,
                preferred_layer_name=request.source.layer_name,
                prefer_first_layer=request.source.prefer_first_layer,
                honor_preferred_name=request.source.honor_preferred_name,
            )
            if generation != self._generation:
                _LOGGER.debug("discarding superseded render for %s", key)
                return None
            result = self._build(collection, request, report)
        except TransportError as exc:
            if generation != self._generation:
                _LOGGER.debug("discarding superseded failure for %s: %s", key, exc)
                return None
            status = f" (HTTP {exc.status})" if exc.status is not None else ""
            report.add_error(f"Could not fetch boundaries from {exc.url}{status}: {exc}")
            return self._fail(key, report)
        except (SchemaError, JoinError) as exc:
            if generation != self._generation:
                _LOGGER.debug("discarding superseded failure for %s: %s", key, exc)
                return None
            report.add_error(str(exc))
            return self._fail(key, report)

        self._last_key = key
        self._last_result = result
        self.last_report = report
        return result

    def _fail(self, key: str, report: PipelineReport) -> ChoroplethResult | None:
        self.last_report = report
        if self._last_result is not None and key == self._last_key:
            report.add_warning("Keeping previously rendered boundaries")
            return dataclasses.replace(self._last_result, report=report)
        if self._last_result is not None:
            report.add_warning("Boundary layer cleared for new configuration")
        self._last_key = key
        self._last_result = None
        return None

    def _build(
        self,
        collection: FeatureCollection,
        request: ChoroplethRequest,
        report: PipelineReport,
    ) -> ChoroplethResult:
        values_by_code: dict[str, Any] = {}
        for code, value in zip(request.join_values, request.measure_values):
            normalized = normalize_join_value(code)
            if normalized is not None:
                values_by_code[normalized] = value

        resolution = self.resolver.resolve(collection, request.join_key, values_by_code.keys())
        decision = choose_join_key(
            resolution,
            len(values_by_code),
            min_match_count=self.cfg.join.min_match_count,
            min_margin=self.cfg.join.min_margin,
        )
        if decision.adopted:
            report.add_info(f"Using boundary key '{decision.key}': {decision.reason}")
        if not decision.collection.features:
            raise JoinError(
                f"No boundaries matched the join values using '{request.join_key}' "
                f"or any of: {format_code_list(list(self.resolver.conventional_keys))}"
            )

        matched_codes = {normalize_join_value(f.get(decision.key)) for f in decision.collection}
        unmatched_rows = sorted(code for code in values_by_code if code not in matched_codes)
        if unmatched_rows:
            report.add_warning(
                f"{len(unmatched_rows)} data codes have no boundary: {format_code_list(unmatched_rows)}"
            )
        joined = {code: value for code, value in values_by_code.items() if code in matched_codes}

        color_fn, legend = self._classify(list(joined.values()), request.measure_id, report)

        display = self.cfg.display
        rendered = collection if display.grey_out_unmatched else decision.collection
        extent_source = decision.collection if decision.collection.features else collection
        lod = LODSimplifier(
            rendered,
            cache_size=self.cfg.lod.cache_size,
            percentiles=self.cfg.lod.percentiles,
        )
        if lod.degraded:
            report.add_warning("Geometry simplification unavailable; using full-detail boundaries")

        return ChoroplethResult(
            collection=rendered,
            color_fn=color_fn,
            legend=tuple(legend),
            extent_3857=project_extent(collection_bounds(extent_source)),
            join=decision,
            lod=lod,
            index=SpatialIndex.build(rendered),
            report=report,
            values_by_code=joined,
            unmatched_color=display.unmatched_color if display.grey_out_unmatched else None,
        )

    def _classify(
        self,
        values: Sequence[Any],
        measure_id: str | None,
        report: PipelineReport,
    ) -> tuple[Callable[[Any], str], list[LegendEntry]]:
        cls_cfg = self.cfg.classification
        method = ClassificationMethod.parse(cls_cfg.method)
        if not method.is_categorical:
            self.palette.track(method, measure_id)
            classification = self.engine.classify(values, method, cls_cfg.classes, self.ramp)
            for warning in classification.warnings:
                report.add_warning(warning)
            return classification.color_for, classification.legend(self.cfg.display.legend_decimals)

        assignment = self.palette.assign(values, cls_cfg.classes, method=method, measure_id=measure_id)
        distinct = {v if is_number(v) else str(v) for v in values if v is not None}
        if len(distinct) > 7:
            report.add_warning(f"{len(distinct)} unique values; only 7 receive distinct colours")
        legend = [
            LegendEntry(label=str(category), color=color, lower=category, upper=category)
            for category, color in zip(assignment.categories, assignment.colors)
        ]
        return assignment.color_for, legend


@lru_cache(maxsize=1)
def _web_mercator_transformer() -> Any:
    try:
        from pyproj import Transformer
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("pyproj is required for Web Mercator extents") from exc
    return Transformer.from_crs("EPSG:4326", "EPSG:3857", always_xy=True)


def project_extent(bounds: BoundingBox | None) -> tuple[float, float, float, float] | None:
    """Project a lon/lat bounding box to EPSG:3857 `(min_x, min_y, max_x, max_y)`."""
    if bounds is None:
        return None
    transformer = _web_mercator_transformer()
    min_lat = max(bounds.min_y, -_MAX_MERCATOR_LAT)
    max_lat = min(bounds.max_y, _MAX_MERCATOR_LAT)
    min_x, min_y = transformer.transform(bounds.min_x, min_lat)
    max_x, max_y = transformer.transform(bounds.max_x, max_lat)
    return (float(min_x), float(min_y), float(max_x), float(max_y))
