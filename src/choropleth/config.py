"""Typed configuration loader for `config.yaml`."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, cast

import yaml

_HEX_COLOR_RE = re.compile(r"^#([0-9A-Fa-f]{3}){1,2}$")

DEFAULT_COLOR_RAMPS: Mapping[str, tuple[str, ...]] = {
    "BLUE": ("#e1eef9", "#c7e1f5", "#64beeb", "#009edb", "#0074b7", "#00529c", "#002e6e"),
    "RED": ("#fcdee0", "#f9c0c7", "#f3859b", "#ed1846", "#a71f36", "#780b20", "#520000"),
    "GREEN": ("#e5f1d4", "#d1e39b", "#72bf44", "#338c46", "#006e4f", "#004d35", "#003425"),
    "ORANGE": ("#ffead5", "#fedcbd", "#f9a870", "#f58220", "#c15025", "#90371c", "#70200c"),
    "PURPLE": ("#e5d7ea", "#d3b6d7", "#bd8cbf", "#a066aa", "#763f98", "#582a8a", "#3e125b"),
    "YELLOW": ("#fff4bf", "#ffeb6c", "#ffde2f", "#ffcb05", "#cf9220", "#b06e2a", "#815017"),
    "SLATEGREY": ("#edeae8", "#dddad7", "#c5bfba", "#a99f96", "#71665e", "#493f38", "#1b1b1a"),
    "NEUTRALGREY": ("#f2f2f2", "#e6e6e6", "#bfbfbf", "#999999", "#737373", "#4d4d4d", "#262626"),
    "AZURECASCADE": ("#e6f5fb", "#99d8f1", "#4dbbe6", "#009edb", "#006f99", "#003f58"),
    "IPC": ("#cdfacd", "#fae61e", "#e67800", "#c80000", "#640000"),
    "SDGRED": ("#fce9eb", "#f5a7b1", "#ed6676", "#e5243b", "#a01929", "#5c0e18"),
    "SDGYELLOW": ("#fff9e7", "#fee79d", "#fdd554", "#fcc30b", "#b08908", "#654e04"),
    "SDGORANGE": ("#fff0e9", "#fec3a8", "#fe9666", "#fd6925", "#b14a1a", "#652a0f"),
    "SDGGREEN": ("#eef9ea", "#bbe6aa", "#89d36b", "#56c02b", "#3c861e", "#224d11"),
    "SDGDARKGREEN": ("#ecf2ec", "#b2cbb4", "#79a57c", "#3f7e44", "#2c5830", "#19321b"),
    "SDGNAVYBLUE": ("#e8edf0", "#a3b6c3", "#5e7f97", "#19486a", "#12324a", "#0a1d2a"),
}

DEFAULT_BOUNDARY_KEYS = ("hdx_pcode", "hdx_name", "shapeISO", "shapeID", "shapeGroup", "shapeName")
DEFAULT_MANIFEST_URL = "https://cdn.jsdelivr.net/gh/maplumi/geoboundaries-lite@v2025-08/data/index.json"


def _mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"Expected mapping for '{field_name}'")
    return cast(Mapping[str, Any], value)


def _str(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Expected non-empty string for '{field_name}'")
    return value.strip()


def _int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Expected integer for '{field_name}'")
    return value


def _float(value: Any, field_name: str) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    raise ValueError(f"Expected float for '{field_name}'")


def _bool(value: Any, field_name: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"Expected bool for '{field_name}'")
    return value


def _str_list(value: Any, field_name: str) -> tuple[str, ...]:
    if not isinstance(value, list):
        raise ValueError(f"Expected list for '{field_name}'")
    out: list[str] = []
    for idx, item in enumerate(value):
        out.append(_str(item, f"{field_name}[{idx}]"))
    return tuple(out)


def _hex_list(value: Any, field_name: str) -> tuple[str, ...]:
    colors = _str_list(value, field_name)
    for idx, color in enumerate(colors):
        if not _HEX_COLOR_RE.match(color):
            raise ValueError(f"Invalid hex color '{color}' for '{field_name}[{idx}]'")
    return colors


@dataclass(frozen=True, slots=True)
class CacheConfig:
    expiry_ms: int = 3_600_000
    metadata_expiry_ms: int = 1_800_000
    max_entries: int = 100

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> CacheConfig:
        defaults = cls()
        expiry_ms = _int(raw.get("expiry_ms", defaults.expiry_ms), "cache.expiry_ms")
        metadata_expiry_ms = _int(
            raw.get("metadata_expiry_ms", defaults.metadata_expiry_ms), "cache.metadata_expiry_ms"
        )
        max_entries = _int(raw.get("max_entries", defaults.max_entries), "cache.max_entries")
        if expiry_ms <= 0 or metadata_expiry_ms <= 0:
            raise ValueError("cache expiry values must be > 0")
        if max_entries < 1:
            raise ValueError("cache.max_entries must be >= 1")
        return cls(expiry_ms=expiry_ms, metadata_expiry_ms=metadata_expiry_ms, max_entries=max_entries)


@dataclass(frozen=True, slots=True)
class NetworkConfig:
    timeout_s: float = 10.0
    user_agent: str = "choropleth-pipeline/0.1"
    max_retries: int = 2
    retry_backoff_s: float = 1.0

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> NetworkConfig:
        defaults = cls()
        timeout_s = _float(raw.get("timeout_s", defaults.timeout_s), "network.timeout_s")
        max_retries = _int(raw.get("max_retries", defaults.max_retries), "network.max_retries")
        retry_backoff_s = _float(
            raw.get("retry_backoff_s", defaults.retry_backoff_s), "network.retry_backoff_s"
        )
        if timeout_s <= 0:
            raise ValueError("network.timeout_s must be > 0")
        if max_retries < 0:
            raise ValueError("network.max_retries must be >= 0")
        if retry_backoff_s <= 0:
            raise ValueError("network.retry_backoff_s must be > 0")
        return cls(
            timeout_s=timeout_s,
            user_agent=_str(raw.get("user_agent", defaults.user_agent), "network.user_agent"),
            max_retries=max_retries,
            retry_backoff_s=retry_backoff_s,
        )


@dataclass(frozen=True, slots=True)
class JoinConfig:
    min_match_count: int = 3
    min_margin: int = 2
    candidate_keys: tuple[str, ...] = DEFAULT_BOUNDARY_KEYS

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> JoinConfig:
        defaults = cls()
        min_match_count = _int(
            raw.get("min_match_count", defaults.min_match_count), "join.min_match_count"
        )
        min_margin = _int(raw.get("min_margin", defaults.min_margin), "join.min_margin")
        if min_match_count < 0 or min_margin < 0:
            raise ValueError("join thresholds must be >= 0")
        keys_raw = raw.get("candidate_keys")
        candidate_keys = (
            defaults.candidate_keys
            if keys_raw is None
            else _str_list(keys_raw, "join.candidate_keys")
        )
        return cls(min_match_count=min_match_count, min_margin=min_margin, candidate_keys=candidate_keys)


@dataclass(frozen=True, slots=True)
class ClassificationConfig:
    method: str = "q"
    classes: int = 5
    color_ramp: str = "BLUE"
    custom_ramp: str = ""
    invert: bool = False
    color_mode: str = "lab"

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> ClassificationConfig:
        defaults = cls()
        classes = _int(raw.get("classes", defaults.classes), "classification.classes")
        if classes < 1 or classes > 7:
            raise ValueError("classification.classes must be between 1 and 7")
        color_mode = _str(raw.get("color_mode", defaults.color_mode), "classification.color_mode").casefold()
        if color_mode not in {"lab", "rgb"}:
            raise ValueError("classification.color_mode must be one of: lab, rgb")
        custom_raw = raw.get("custom_ramp", defaults.custom_ramp)
        if not isinstance(custom_raw, str):
            raise ValueError("Expected string for 'classification.custom_ramp'")
        return cls(
            method=_str(raw.get("method", defaults.method), "classification.method"),
            classes=classes,
            color_ramp=_str(raw.get("color_ramp", defaults.color_ramp), "classification.color_ramp"),
            custom_ramp=custom_raw.strip(),
            invert=_bool(raw.get("invert", defaults.invert), "classification.invert"),
            color_mode=color_mode,
        )


@dataclass(frozen=True, slots=True)
class LodConfig:
    cache_size: int = 8
    percentiles: tuple[float, ...] = (80.0, 60.0, 40.0, 20.0, 0.0)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> LodConfig:
        defaults = cls()
        cache_size = _int(raw.get("cache_size", defaults.cache_size), "lod.cache_size")
        if cache_size < 1:
            raise ValueError("lod.cache_size must be >= 1")
        pct_raw = raw.get("percentiles")
        if pct_raw is None:
            percentiles = defaults.percentiles
        else:
            if not isinstance(pct_raw, list) or len(pct_raw) != 5:
                raise ValueError("Expected list of 5 numbers for 'lod.percentiles'")
            percentiles = tuple(
                _float(item, f"lod.percentiles[{idx}]") for idx, item in enumerate(pct_raw)
            )
            if any(p < 0 or p > 100 for p in percentiles):
                raise ValueError("lod.percentiles values must be between 0 and 100")
        return cls(cache_size=cache_size, percentiles=percentiles)


@dataclass(frozen=True, slots=True)
class CatalogConfig:
    manifest_url: str = DEFAULT_MANIFEST_URL

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> CatalogConfig:
        return cls(
            manifest_url=_str(raw.get("manifest_url", DEFAULT_MANIFEST_URL), "catalog.manifest_url")
        )


@dataclass(frozen=True, slots=True)
class DisplayConfig:
    grey_out_unmatched: bool = False
    unmatched_color: str = "#BDBDBD"
    legend_decimals: int = 2

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> DisplayConfig:
        defaults = cls()
        unmatched_color = _str(
            raw.get("unmatched_color", defaults.unmatched_color), "display.unmatched_color"
        )
        if not _HEX_COLOR_RE.match(unmatched_color):
            raise ValueError("display.unmatched_color must be a hex color")
        decimals = _int(raw.get("legend_decimals", defaults.legend_decimals), "display.legend_decimals")
        if decimals < 0:
            raise ValueError("display.legend_decimals must be >= 0")
        return cls(
            grey_out_unmatched=_bool(
                raw.get("grey_out_unmatched", defaults.grey_out_unmatched), "display.grey_out_unmatched"
            ),
            unmatched_color=unmatched_color,
            legend_decimals=decimals,
        )


@dataclass(frozen=True, slots=True)
class AppConfig:
    source_path: Path | None = None
    cache: CacheConfig = field(default_factory=CacheConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    join: JoinConfig = field(default_factory=JoinConfig)
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    lod: LodConfig = field(default_factory=LodConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    palettes: Mapping[str, tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_COLOR_RAMPS))

    @classmethod
    def default(cls) -> AppConfig:
        return cls()

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], source_path: Path | None = None) -> AppConfig:
        palettes: dict[str, tuple[str, ...]] = dict(DEFAULT_COLOR_RAMPS)
        for name, colors in _mapping(raw.get("palettes"), "palettes").items():
            key = _str(name, "palettes key").upper()
            ramp = _hex_list(colors, f"palettes.{key}")
            if not ramp:
                raise ValueError(f"Palette '{key}' must contain at least one color")
            palettes[key] = ramp
        return cls(
            source_path=source_path.resolve() if source_path is not None else None,
            cache=CacheConfig.from_mapping(_mapping(raw.get("cache"), "cache")),
            network=NetworkConfig.from_mapping(_mapping(raw.get("network"), "network")),
            join=JoinConfig.from_mapping(_mapping(raw.get("join"), "join")),
            classification=ClassificationConfig.from_mapping(
                _mapping(raw.get("classification"), "classification")
            ),
            lod=LodConfig.from_mapping(_mapping(raw.get("lod"), "lod")),
            catalog=CatalogConfig.from_mapping(_mapping(raw.get("catalog"), "catalog")),
            display=DisplayConfig.from_mapping(_mapping(raw.get("display"), "display")),
            palettes=palettes,
        )


def load_config(path: str | Path) -> AppConfig:
    """Load and validate the YAML config file into typed settings."""
    cfg_path = Path(path).resolve()
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")
    with cfg_path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ValueError("Top-level config must be a YAML mapping")
    return AppConfig.from_mapping(cast(Mapping[str, Any], raw), cfg_path)
