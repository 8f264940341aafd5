"""CLI entrypoint for the choropleth boundary pipeline."""

from __future__ import annotations

import argparse
import asyncio
import logging
import math
from pathlib import Path
from typing import Any, Sequence

from .classify import ClassificationEngine, select_color_ramp
from .config import AppConfig, load_config
from .pipeline import BoundarySource, ChoroplethPipeline, ChoroplethRequest, format_report_lines
from .util import setup_logging, write_json

LOGGER = logging.getLogger("choropleth.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="choropleth",
        description="Choropleth boundary join, classification and simplification pipeline.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", default=None, help="Path to YAML config (defaults are used when omitted).")
        p.add_argument("--verbose", action="store_true", help="Enable debug logs.")
        p.add_argument("--log-file", default=None, help="Also write logs to this file.")

    validate_p = subparsers.add_parser("validate-config", help="Load the config and print a summary.")
    add_common(validate_p)

    classify_p = subparsers.add_parser("classify", help="Classify a CSV column and print the legend.")
    add_common(classify_p)
    classify_p.add_argument("--values-csv", required=True, help="CSV file holding the values.")
    classify_p.add_argument("--column", required=True, help="Column to classify.")
    classify_p.add_argument("--method", default=None, help="q, e, l, k, j or u (overrides config).")
    classify_p.add_argument("--classes", type=int, default=None, help="Class count (overrides config).")

    render_p = subparsers.add_parser("render", help="Join data to boundaries and write GeoJSON + legend.")
    add_common(render_p)
    render_p.add_argument("--boundary", required=True, help="HTTPS URL or local boundary file.")
    render_p.add_argument("--layer", default=None, help="Preferred TopoJSON object name.")
    render_p.add_argument("--data-csv", required=True, help="CSV file with join codes and values.")
    render_p.add_argument("--key-column", required=True, help="CSV column holding boundary codes.")
    render_p.add_argument("--value-column", required=True, help="CSV column holding the measure.")
    render_p.add_argument("--join-key", default="shapeISO", help="Boundary property expected to match codes.")
    render_p.add_argument("--out", default="out", help="Output directory.")
    render_p.add_argument(
        "--resolution",
        type=float,
        default=None,
        help="Map resolution in metres/pixel; selects a simplified level of detail.",
    )

    return parser


def _load_and_setup(args: argparse.Namespace) -> AppConfig:
    setup_logging(Path(args.log_file) if args.log_file else None, verbose=args.verbose)
    if args.config is None:
        return AppConfig.default()
    return load_config(args.config)


def _read_csv_columns(path: Path, columns: Sequence[str], text_columns: Sequence[str] = ()) -> dict[str, list[Any]]:
    pd = _require_pandas()
    frame = pd.read_csv(path, dtype={name: str for name in text_columns})
    missing = [name for name in columns if name not in frame.columns]
    if missing:
        raise ValueError(f"CSV {path} is missing columns: {', '.join(missing)}")
    out: dict[str, list[Any]] = {}
    for name in columns:
        out[name] = [_clean_cell(value) for value in frame[name].tolist()]
    return out


def _clean_cell(value: Any) -> Any:
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


def _run_validate_config(cfg: AppConfig) -> int:
    source = str(cfg.source_path) if cfg.source_path is not None else "<defaults>"
    LOGGER.info("Config: %s", source)
    LOGGER.info(
        "Cache: expiry=%dms metadata=%dms max_entries=%d",
        cfg.cache.expiry_ms,
        cfg.cache.metadata_expiry_ms,
        cfg.cache.max_entries,
    )
    LOGGER.info("Network: timeout=%.1fs retries=%d", cfg.network.timeout_s, cfg.network.max_retries)
    LOGGER.info(
        "Join: min_match_count=%d min_margin=%d keys=%s",
        cfg.join.min_match_count,
        cfg.join.min_margin,
        ", ".join(cfg.join.candidate_keys),
    )
    LOGGER.info(
        "Classification: method=%s classes=%d ramp=%s mode=%s",
        cfg.classification.method,
        cfg.classification.classes,
        cfg.classification.color_ramp,
        cfg.classification.color_mode,
    )
    LOGGER.info("Palettes: %s", ", ".join(sorted(cfg.palettes)))
    _, warning = select_color_ramp(cfg.classification.color_ramp, cfg.classification.custom_ramp, cfg.palettes)
    if warning:
        LOGGER.warning(warning)
    LOGGER.info("[OK] Config is valid.")
    return 0


def _run_classify(cfg: AppConfig, *, values_csv: Path, column: str, method: str | None, classes: int | None) -> int:
    values = _read_csv_columns(values_csv, [column])[column]
    ramp, warning = select_color_ramp(cfg.classification.color_ramp, cfg.classification.custom_ramp, cfg.palettes)
    if warning:
        LOGGER.warning(warning)
    engine = ClassificationEngine(color_mode=cfg.classification.color_mode)
    classification = engine.classify(
        values,
        method or cfg.classification.method,
        classes or cfg.classification.classes,
        ramp,
        invert=cfg.classification.invert,
    )
    for message in classification.warnings:
        LOGGER.warning(message)
    for entry in classification.legend(cfg.display.legend_decimals):
        LOGGER.info("%s  %s", entry.color, entry.label)
    return 0


def _run_render(
    cfg: AppConfig,
    *,
    boundary: str,
    layer: str | None,
    data_csv: Path,
    key_column: str,
    value_column: str,
    join_key: str,
    out_dir: Path,
    resolution: float | None,
) -> int:
    columns = _read_csv_columns(data_csv, [key_column, value_column], text_columns=[key_column])
    request = ChoroplethRequest(
        source=BoundarySource.from_argument(boundary, layer_name=layer, honor_preferred_name=layer is not None),
        join_values=columns[key_column],
        measure_values=columns[value_column],
        join_key=join_key,
        measure_id=value_column,
    )
    pipeline = ChoroplethPipeline(cfg)
    result = asyncio.run(pipeline.render(request))
    report = result.report if result is not None else pipeline.last_report
    if report is not None:
        for line in format_report_lines(report):
            LOGGER.info(line)
    if result is None:
        return 1

    geojson_path = out_dir / "choropleth.geojson"
    legend_path = out_dir / "legend.json"
    write_json(geojson_path, result.to_geojson(resolution))
    write_json(
        legend_path,
        {
            "join_key": result.join.key,
            "extent_3857": list(result.extent_3857) if result.extent_3857 else None,
            "lod_bucket": result.lod.bucket_for(resolution) if resolution is not None else None,
            "entries": [entry.to_dict() for entry in result.legend],
        },
    )
    LOGGER.info("Choropleth GeoJSON written to %s", geojson_path)
    LOGGER.info("Legend written to %s", legend_path)
    return 0 if result.report.ok else 1


def _dispatch(args: argparse.Namespace) -> int:
    cfg = _load_and_setup(args)
    command = str(args.command)
    if command == "validate-config":
        return _run_validate_config(cfg)
    if command == "classify":
        return _run_classify(
            cfg,
            values_csv=Path(args.values_csv),
            column=str(args.column),
            method=args.method,
            classes=args.classes,
        )
    if command == "render":
        return _run_render(
            cfg,
            boundary=str(args.boundary),
            layer=args.layer,
            data_csv=Path(args.data_csv),
            key_column=str(args.key_column),
            value_column=str(args.value_column),
            join_key=str(args.join_key),
            out_dir=Path(args.out),
            resolution=args.resolution,
        )
    LOGGER.error("Unknown command: %s", command)
    return 2


def _require_pandas() -> Any:
    try:
        import pandas as pd
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("pandas is required to read CSV input") from exc
    return pd


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    return _dispatch(args)


if __name__ == "__main__":
    raise SystemExit(main())
