"""geoBoundaries catalog manifest lookup and boundary option validation."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from .cache import ResultCache
from .config import CacheConfig, CatalogConfig
from .fetch import BoundaryFetcher, TransportError
from .normalize import SchemaError

VALID_RELEASES = ("gbOpen", "gbHumanitarian", "gbAuthoritative")
VALID_ADMIN_LEVELS = ("ADM0", "ADM1", "ADM2", "ADM3", "ADM4", "ADM5", "ALL")
DEFAULT_ADMIN_LEVELS = ("ADM0", "ADM1", "ADM2", "ADM3")
ALL_COUNTRIES = "ALL"
ALL_COUNTRIES_URL = "https://geodata-bi.datauga.com/geoBoundariesCGAZ_ADM0.json"

_ENTRY_ARRAY_KEYS = ("entries", "index", "items", "files", "records", "data")
_ENTRY_FIELDS = ("release", "iso3", "level")
_CATALOG_CACHE_KEY = "geoboundaries:catalog:index"
_ABSOLUTE_URL_RE = re.compile(r"^https?://", re.IGNORECASE)

_ADMIN_LABELS = {
    "ADM0": "ADM0 (Country Borders)",
    "ADM1": "ADM1 (States/Provinces)",
    "ADM2": "ADM2 (Counties/Districts)",
    "ADM3": "ADM3 (Municipalities)",
}

_LOGGER = logging.getLogger("choropleth.catalog")


@dataclass(frozen=True, slots=True)
class CatalogItem:
    value: str
    display_name: str


def normalize_release(release: str) -> str:
    lowered = (release or "").casefold()
    if lowered in {r.casefold() for r in VALID_RELEASES}:
        return lowered
    return release or ""


def normalize_level(level: str) -> str:
    if not level:
        return ""
    suffix = level[3:] if level.upper().startswith("ADM") else level
    return f"admin{suffix}".casefold()


def data_base_url(manifest_url: str) -> str:
    return re.sub(r"index\.json$", "", manifest_url, flags=re.IGNORECASE)


def extract_entries(catalog: Any) -> list[Mapping[str, Any]]:
    """Find the manifest entry list whatever property name the manifest uses."""
    if not isinstance(catalog, Mapping):
        return []

    def _looks_like_entries(value: Any) -> bool:
        return (
            isinstance(value, list)
            and bool(value)
            and isinstance(value[0], Mapping)
            and all(name in value[0] for name in _ENTRY_FIELDS)
        )

    for key in _ENTRY_ARRAY_KEYS:
        if _looks_like_entries(catalog.get(key)):
            return list(catalog[key])
    for value in catalog.values():
        if _looks_like_entries(value):
            return list(value)
    return []


def validate_options(release: str, country: str, admin_level: str) -> str | None:
    """Return a user-facing message for an invalid combination, or None."""
    if not release:
        return "Release type is required"
    if not country:
        return "Country selection is required"
    if not admin_level:
        return "Administrative level is required"
    if release not in VALID_RELEASES:
        return f"Invalid release type: {release}"
    if admin_level not in VALID_ADMIN_LEVELS:
        return f"Invalid administrative level: {admin_level}"
    if country == ALL_COUNTRIES and admin_level != "ADM0":
        return "All Countries data is only available at ADM0 (country) level"
    return None


def admin_label(level: str) -> str:
    return _ADMIN_LABELS.get(level, level)


class GeoBoundariesCatalog:
    """Resolve boundary download URLs from the geoBoundaries-lite manifest."""

    def __init__(
        self,
        fetcher: BoundaryFetcher,
        *,
        catalog_cfg: CatalogConfig | None = None,
        cache_cfg: CacheConfig | None = None,
        cache: ResultCache | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.catalog_cfg = catalog_cfg or CatalogConfig()
        self.cache_cfg = cache_cfg or CacheConfig()
        self.cache = cache or ResultCache(
            max_entries=self.cache_cfg.max_entries,
            default_ttl_ms=self.cache_cfg.metadata_expiry_ms,
        )
        self.last_catalog: Mapping[str, Any] | None = None

    async def get_catalog(self) -> Mapping[str, Any] | None:
        """Fetch the manifest through the cache; None when it cannot be loaded."""
        url = self.catalog_cfg.manifest_url

        async def _produce() -> Any:
            try:
                return await self.fetcher.fetch_json_async(url)
            except (TransportError, SchemaError) as exc:
                _LOGGER.warning("Could not load boundary catalog from %s: %s", url, exc)
                return None

        result = await self.cache.get_or_fetch(
            _CATALOG_CACHE_KEY,
            _produce,
            ttl_ms=self.cache_cfg.metadata_expiry_ms,
            respect_freshness_headers=True,
        )
        if isinstance(result, Mapping):
            self.last_catalog = result
            return result
        return None

    async def resolve_url(self, release: str, iso3: str, admin_level: str) -> str | None:
        if iso3 == ALL_COUNTRIES:
            return ALL_COUNTRIES_URL
        if await self.get_catalog() is None:
            return None
        return self.resolve_url_sync(release, iso3, admin_level)

    def resolve_url_sync(self, release: str, iso3: str, admin_level: str) -> str | None:
        if self.last_catalog is None:
            return None
        rel = normalize_release(release)
        lvl = normalize_level(admin_level)
        iso = (iso3 or "").upper()
        for entry in extract_entries(self.last_catalog):
            if (
                str(entry.get("release") or "").casefold() == rel
                and str(entry.get("iso3") or "").upper() == iso
                and str(entry.get("level") or "").casefold() == lvl
            ):
                path = entry.get("relPath") or entry.get("path") or entry.get("file") or ""
                if not path:
                    return None
                if _ABSOLUTE_URL_RE.match(str(path)):
                    return str(path)
                return f"{data_base_url(self.catalog_cfg.manifest_url)}{path}"
        _LOGGER.debug("no catalog entry for %s/%s/%s", rel, iso, lvl)
        return None

    def country_items(self, fallback: Sequence[CatalogItem] = ()) -> list[CatalogItem]:
        countries = self._countries()
        if not countries:
            return list(fallback)
        ordered = sorted(countries, key=lambda c: str(c.get("name") or "").casefold())
        return [CatalogItem(ALL_COUNTRIES, "All Countries")] + [
            CatalogItem(str(c.get("iso3")), str(c.get("name") or c.get("iso3"))) for c in ordered
        ]

    def admin_level_items(self, iso3: str | None) -> list[CatalogItem]:
        if not iso3 or iso3 == ALL_COUNTRIES:
            return [CatalogItem("ADM0", admin_label("ADM0"))]
        country = next((c for c in self._countries() if c.get("iso3") == iso3), None)
        levels = list((country or {}).get("levels") or DEFAULT_ADMIN_LEVELS)
        levels = [lvl for lvl in levels if lvl != "ADM0"] or ["ADM1"]
        return [CatalogItem(lvl, admin_label(lvl)) for lvl in levels]

    def _countries(self) -> list[Mapping[str, Any]]:
        countries = (self.last_catalog or {}).get("countries")
        if not isinstance(countries, list):
            return []
        return [c for c in countries if isinstance(c, Mapping) and c.get("iso3")]
