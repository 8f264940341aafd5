"""Boundary payload retrieval over HTTPS with URL guards and retry."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import parse_qsl, urlsplit, urlunsplit

import requests

from .cache import FreshResult
from .config import NetworkConfig
from .normalize import InvalidJsonError, SchemaError, parse_payload

_RETRYABLE_HTTP_STATUS = {429, 500, 502, 503, 504}
_REDIRECT_PARAMS = frozenset(
    {
        "url",
        "redirect",
        "redirect_uri",
        "redirect_url",
        "next",
        "return",
        "returnurl",
        "return_to",
        "dest",
        "destination",
        "continue",
        "target",
    }
)
_JSON_SUFFIXES = {".json", ".geojson", ".topojson"}

_LOGGER = logging.getLogger("choropleth.fetch")


class TransportError(RuntimeError):
    """Boundary retrieval failed before a usable JSON body was obtained."""

    def __init__(self, message: str, *, url: str, status: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class InvalidUrlError(TransportError):
    pass


class InsecureUrlError(TransportError):
    pass


class OpenRedirectError(TransportError):
    pass


class FetchTimeoutError(TransportError):
    pass


class HttpStatusError(TransportError):
    pass


class BoundaryFileError(SchemaError):
    """A local boundary file is missing or could not be read."""


def validate_boundary_url(url: str) -> str:
    """Return the stripped URL or raise the matching TransportError."""
    candidate = (url or "").strip()
    try:
        parts = urlsplit(candidate)
    except ValueError as exc:
        raise InvalidUrlError(f"Malformed URL: {exc}", url=candidate) from exc
    if not parts.scheme or not parts.netloc or not parts.hostname:
        raise InvalidUrlError("URL must include a scheme and host", url=candidate)
    if parts.scheme.casefold() != "https":
        raise InsecureUrlError("Boundary URLs must use HTTPS", url=candidate)
    if _has_open_redirect(parts.hostname, parts.query):
        raise OpenRedirectError("URL carries a redirect parameter pointing off-origin", url=candidate)
    return candidate


def _has_open_redirect(hostname: str, query: str) -> bool:
    origin = hostname.casefold()
    for name, value in parse_qsl(query, keep_blank_values=True):
        if name.casefold() not in _REDIRECT_PARAMS:
            continue
        target = value.strip()
        if target.startswith("//"):
            target = "https:" + target
        target_host = urlsplit(target).hostname
        if target_host and target_host.casefold() != origin:
            return True
    return False


def custom_key(url: str) -> str:
    """Cache key for a user-supplied boundary URL: query and fragment stripped."""
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return "custom:" + url.strip()
    netloc = parts.netloc.casefold()
    path = parts.path or "/"
    return "custom:" + urlunsplit((parts.scheme.casefold(), netloc, path, "", ""))


def catalog_key(release: str, iso3: str, admin_level: str) -> str:
    return f"geoboundaries:{release.strip().casefold()}:{iso3.strip().upper()}:{admin_level.strip().upper()}"


def is_json_payload(data: Any) -> bool:
    return isinstance(data, (dict, list))


class BoundaryFetcher:
    """Fetch boundary JSON documents with bounded timeout and retries."""

    def __init__(self, cfg: NetworkConfig, *, session: requests.Session | None = None) -> None:
        self.cfg = cfg
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": cfg.user_agent, "Accept": "application/json"})
        self._max_retries = max(int(cfg.max_retries), 0)
        self._retry_backoff_s = max(float(cfg.retry_backoff_s), 0.01)

    def fetch_json(self, url: str) -> FreshResult[Any]:
        """Blocking fetch. Returns the JSON body plus its Cache-Control value."""
        safe_url = validate_boundary_url(url)
        response = self._request_get(safe_url)
        try:
            payload = response.json()
        except ValueError as exc:
            raise InvalidJsonError(f"Response from {safe_url} is not valid JSON") from exc
        if not is_json_payload(payload):
            raise InvalidJsonError(f"Response from {safe_url} must be a JSON object or array")
        return FreshResult(data=payload, freshness=response.headers.get("Cache-Control"))

    async def fetch_json_async(self, url: str) -> FreshResult[Any]:
        return await asyncio.to_thread(self.fetch_json, url)

    def _request_get(self, url: str) -> requests.Response:
        attempts = self._max_retries + 1
        for attempt in range(attempts):
            try:
                response = self._session.get(url, timeout=self.cfg.timeout_s)
            except requests.Timeout as exc:
                raise FetchTimeoutError(
                    f"Request timed out after {self.cfg.timeout_s:.0f}s", url=url
                ) from exc
            except requests.RequestException as exc:
                raise TransportError(f"Request failed: {exc}", url=url) from exc

            if response.status_code not in _RETRYABLE_HTTP_STATUS or attempt >= self._max_retries:
                if not 200 <= response.status_code < 300:
                    raise HttpStatusError(
                        f"Server responded with status {response.status_code}",
                        url=url,
                        status=response.status_code,
                    )
                return response

            delay_s = min(self._retry_backoff_s * (2**attempt), 30.0)
            _LOGGER.warning(
                "Retryable response %s for %s; retrying in %.1fs (%d/%d)",
                response.status_code,
                url,
                delay_s,
                attempt + 1,
                self._max_retries,
            )
            response.close()
            time.sleep(delay_s)
        raise TransportError("Retry attempts exhausted", url=url)


def load_boundary_file(path: Path) -> Any:
    """Read a local boundary dataset as a GeoJSON/TopoJSON mapping.

    JSON files are parsed directly; other vector formats go through GeoPandas.
    """
    if not path.exists():
        raise BoundaryFileError(f"Boundary file not found: {path}")
    if path.suffix.casefold() in _JSON_SUFFIXES:
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise BoundaryFileError(f"Could not read boundary file {path}: {exc}") from exc
        return parse_payload(text)
    gpd = _require_geopandas()
    try:
        frame = gpd.read_file(path)
    except (ImportError, OSError, ValueError, RuntimeError) as exc:
        # pyogrio and fiona raise RuntimeError or ValueError subclasses for unreadable sources.
        raise BoundaryFileError(f"Could not read boundary file {path}: {exc}") from exc
    if frame.crs is not None and frame.crs.to_epsg() != 4326:
        frame = frame.to_crs(epsg=4326)
    return _plain_mapping(frame.__geo_interface__)


def _plain_mapping(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _plain_mapping(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain_mapping(item) for item in value]
    return value


def _require_geopandas() -> Any:
    try:
        import geopandas as gpd
    except ImportError as exc:  # pragma: no cover
        raise BoundaryFileError("geopandas is required for non-JSON boundary files") from exc
    return gpd
