"""Class breaks, colour ramps and value-to-colour lookup for choropleth fills."""

from __future__ import annotations

import enum
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

import numpy as np
from matplotlib import colors as mcolors

from .config import DEFAULT_COLOR_RAMPS
from .models import ClassBreaks, LegendEntry
from .util import is_number

MAX_CATEGORIES = 7
FALLBACK_COLOR = "#000000"
DEFAULT_COLOR = "#009edb"
FALLBACK_RAMP = "AZURECASCADE"

_HEX_COLOR_RE = re.compile(r"^#([0-9A-Fa-f]{3}){1,2}$")

# CIE-LAB reference white (D65) and piecewise constants.
_XN, _YN, _ZN = 0.950470, 1.0, 1.088830
_T0 = 4.0 / 29.0
_T1 = 6.0 / 29.0
_T2 = 3.0 * _T1**2
_T3 = _T1**3
_RGB_TO_XYZ = np.array(
    [
        [0.4124564, 0.3575761, 0.1804375],
        [0.2126729, 0.7151522, 0.0721750],
        [0.0193339, 0.1191920, 0.9503041],
    ]
)
_XYZ_TO_RGB = np.array(
    [
        [3.2404542, -1.5371385, -0.4985314],
        [-0.9692660, 1.8760108, 0.0415560],
        [0.0556434, -0.2040259, 1.0572252],
    ]
)

_LOGGER = logging.getLogger("choropleth.classify")


class ClassificationMethod(str, enum.Enum):
    QUANTILE = "q"
    EQUAL_INTERVAL = "e"
    LOGARITHMIC = "l"
    KMEANS = "k"
    JENKS = "j"
    UNIQUE = "u"

    @classmethod
    def parse(cls, value: str | ClassificationMethod) -> ClassificationMethod:
        if isinstance(value, ClassificationMethod):
            return value
        token = str(value).strip().casefold().replace("-", "_").replace(" ", "_")
        if token in _METHOD_ALIASES:
            return _METHOD_ALIASES[token]
        raise ValueError(f"Unknown classification method '{value}'")

    @property
    def is_categorical(self) -> bool:
        return self is ClassificationMethod.UNIQUE


_METHOD_ALIASES: dict[str, ClassificationMethod] = {
    "q": ClassificationMethod.QUANTILE,
    "quantile": ClassificationMethod.QUANTILE,
    "e": ClassificationMethod.EQUAL_INTERVAL,
    "equal": ClassificationMethod.EQUAL_INTERVAL,
    "equal_interval": ClassificationMethod.EQUAL_INTERVAL,
    "l": ClassificationMethod.LOGARITHMIC,
    "log": ClassificationMethod.LOGARITHMIC,
    "logarithmic": ClassificationMethod.LOGARITHMIC,
    "k": ClassificationMethod.KMEANS,
    "kmeans": ClassificationMethod.KMEANS,
    "k_means": ClassificationMethod.KMEANS,
    "ckmeans": ClassificationMethod.KMEANS,
    "j": ClassificationMethod.JENKS,
    "jenks": ClassificationMethod.JENKS,
    "natural_breaks": ClassificationMethod.JENKS,
    "u": ClassificationMethod.UNIQUE,
    "unique": ClassificationMethod.UNIQUE,
    "categorical": ClassificationMethod.UNIQUE,
}


# --- break algorithms ---------------------------------------------------------


def limits(values: Sequence[float], method: ClassificationMethod, class_count: int) -> list[float]:
    """Interval limits for quantile, equal and log methods: `class_count + 1` breaks."""
    data = sorted(float(v) for v in values)
    if not data:
        return []
    low, high = data[0], data[-1]
    n = max(int(class_count), 1)
    out = [low]
    if method is ClassificationMethod.QUANTILE:
        for i in range(1, n):
            p = (len(data) - 1) * i / n
            pb = math.floor(p)
            if pb == p:
                out.append(data[pb])
            else:
                pr = p - pb
                out.append(data[pb] * (1 - pr) + data[pb + 1] * pr)
    elif method is ClassificationMethod.EQUAL_INTERVAL:
        out.extend(low + i * (high - low) / n for i in range(1, n))
    elif method is ClassificationMethod.LOGARITHMIC:
        if low <= 0:
            raise ValueError("Logarithmic classification needs values > 0")
        min_log, max_log = math.log10(low), math.log10(high)
        out.extend(10 ** (min_log + (i / n) * (max_log - min_log)) for i in range(1, n))
    else:
        raise ValueError(f"limits() does not handle method '{method.value}'")
    out.append(high)
    return out


def jenks(values: Sequence[float], class_count: int) -> list[float]:
    """Fisher-Jenks natural breaks minimising within-class variance."""
    data = sorted(float(v) for v in values)
    n = len(data)
    k = int(class_count)
    if k < 1 or k > n:
        raise ValueError("jenks needs 1 <= class_count <= number of values")

    lower = [[0] * (k + 1) for _ in range(n + 1)]
    variance = [[0.0] * (k + 1) for _ in range(n + 1)]
    for j in range(1, k + 1):
        lower[1][j] = 1
        for i in range(2, n + 1):
            variance[i][j] = math.inf

    for length in range(2, n + 1):
        total = sq_total = 0.0
        var_combined = 0.0
        for m in range(1, length + 1):
            lower_limit = length - m + 1
            val = data[lower_limit - 1]
            total += val
            sq_total += val * val
            var_combined = sq_total - (total * total) / m
            prev = lower_limit - 1
            if prev != 0:
                for j in range(2, k + 1):
                    candidate = var_combined + variance[prev][j - 1]
                    if variance[length][j] >= candidate:
                        lower[length][j] = lower_limit
                        variance[length][j] = candidate
        lower[length][1] = 1
        variance[length][1] = var_combined

    # Each break is the lowest value of its class; the last is the overall max.
    breaks = [0.0] * (k + 1)
    breaks[k] = data[-1]
    idx = n
    for count in range(k, 0, -1):
        breaks[count - 1] = data[lower[idx][count] - 1]
        idx = lower[idx][count] - 1
    return breaks


def ckmeans(values: Sequence[float], class_count: int) -> list[list[float]]:
    """Optimal 1-D k-means by dynamic programming over the sorted values."""
    data = np.sort(np.asarray(values, dtype=float))
    n = data.size
    k = int(class_count)
    if k < 1 or k > n:
        raise ValueError("ckmeans needs 1 <= class_count <= number of values")

    s1 = np.concatenate(([0.0], np.cumsum(data)))
    s2 = np.concatenate(([0.0], np.cumsum(data * data)))

    def cost(starts: np.ndarray, end: int) -> np.ndarray:
        size = end - starts + 1
        seg = s1[end + 1] - s1[starts]
        return (s2[end + 1] - s2[starts]) - seg * seg / size

    table = np.full((k, n), np.inf)
    backtrack = np.zeros((k, n), dtype=int)
    first = np.zeros(1, dtype=int)
    for i in range(n):
        table[0][i] = cost(first, i)[0]
    for c in range(1, k):
        for i in range(c, n):
            starts = np.arange(c, i + 1)
            totals = table[c - 1][starts - 1] + cost(starts, i)
            best = int(np.argmin(totals))
            table[c][i] = totals[best]
            backtrack[c][i] = starts[best]

    clusters: list[list[float]] = []
    end = n - 1
    for c in range(k - 1, -1, -1):
        start = int(backtrack[c][end]) if c > 0 else 0
        clusters.append(data[start : end + 1].tolist())
        end = start - 1
    clusters.reverse()
    return clusters


def _sort_categories(values: Iterable[Any]) -> list[Any]:
    distinct: list[Any] = []
    seen: set[Any] = set()
    for value in values:
        if value is None:
            continue
        marker = value if is_number(value) else str(value)
        if marker in seen:
            continue
        seen.add(marker)
        distinct.append(value)
    if all(is_number(v) for v in distinct):
        return sorted(distinct)
    return sorted(distinct, key=lambda v: (str(v).casefold(), str(v)))


def get_class_breaks(
    values: Iterable[Any],
    method: ClassificationMethod | str,
    class_count: int,
) -> list[Any]:
    """Ascending numeric breaks, or up to 7 ordered categories for unique."""
    method = ClassificationMethod.parse(method)
    if method.is_categorical:
        return _sort_categories(values)[: min(class_count or MAX_CATEGORIES, MAX_CATEGORIES)]

    numeric = [float(v) for v in values if is_number(v)]
    distinct = sorted(set(numeric))
    if len(distinct) <= 2:
        return distinct
    k = min(int(class_count), len(distinct))

    if method is ClassificationMethod.JENKS:
        return jenks(numeric, k)
    if method is ClassificationMethod.KMEANS:
        maxima = sorted(cluster[-1] for cluster in ckmeans(numeric, k))
        return [min(numeric), *maxima]
    return limits(numeric, method, k)


# --- colour ramps -------------------------------------------------------------


def _srgb_to_lab(rgb: np.ndarray) -> np.ndarray:
    linear = np.where(rgb <= 0.04045, rgb / 12.92, ((rgb + 0.055) / 1.055) ** 2.4)
    xyz = linear @ _RGB_TO_XYZ.T / np.array([_XN, _YN, _ZN])
    f = np.where(xyz > _T3, np.cbrt(xyz), xyz / _T2 + _T0)
    lightness = np.maximum(116.0 * f[..., 1] - 16.0, 0.0)
    return np.stack([lightness, 500.0 * (f[..., 0] - f[..., 1]), 200.0 * (f[..., 1] - f[..., 2])], axis=-1)


def _lab_to_srgb(lab: np.ndarray) -> np.ndarray:
    fy = (lab[..., 0] + 16.0) / 116.0
    f = np.stack([fy + lab[..., 1] / 500.0, fy, fy - lab[..., 2] / 200.0], axis=-1)
    xyz = np.where(f > _T1, f**3, _T2 * (f - _T0)) * np.array([_XN, _YN, _ZN])
    linear = xyz @ _XYZ_TO_RGB.T
    rgb = np.where(
        linear <= 0.00304,
        12.92 * linear,
        1.055 * np.power(np.maximum(linear, 0.0), 1 / 2.4) - 0.055,
    )
    return np.clip(rgb, 0.0, 1.0)


def mix_colors(a: str, b: str, t: float, color_mode: str = "lab") -> str:
    """Interpolate between two hex colours in LAB (default) or RGB."""
    ca = np.array(mcolors.to_rgb(a))
    cb = np.array(mcolors.to_rgb(b))
    if color_mode == "rgb":
        return mcolors.to_hex(np.clip(ca + (cb - ca) * t, 0.0, 1.0))
    la, lb = _srgb_to_lab(ca), _srgb_to_lab(cb)
    return mcolors.to_hex(_lab_to_srgb(la + (lb - la) * t))


def _ramp_scale(
    ramp: Sequence[str],
    domain: Sequence[float],
    color_mode: str,
) -> Callable[[float], str]:
    """Build a domain -> colour function over a ramp.

    When the domain has one entry per ramp colour the colours sit at the
    domain values; otherwise they are spaced evenly and multi-entry domains
    are mapped piecewise onto that spacing.
    """
    lo, hi = float(domain[0]), float(domain[-1])
    k = len(ramp)
    if len(domain) == k and lo != hi and k > 1:
        positions = [(float(d) - lo) / (hi - lo) for d in domain]
        t_breaks: list[float] | None = None
    else:
        positions = [c / (k - 1) for c in range(k)] if k > 1 else [0.0]
        t_breaks = None
        if len(domain) > 2 and lo != hi:
            t_breaks = [(float(d) - lo) / (hi - lo) for d in domain]
    t_out = [i / (len(domain) - 1) for i in range(len(domain))] if len(domain) > 1 else [0.0]

    def _map_domain(t: float) -> float:
        if t_breaks is None:
            return t
        for i in range(len(t_breaks) - 1):
            a, b = t_breaks[i], t_breaks[i + 1]
            if a <= t <= b and b > a:
                return t_out[i] + (t - a) / (b - a) * (t_out[i + 1] - t_out[i])
        return t

    def _color(value: float) -> str:
        t = (value - lo) / (hi - lo) if hi != lo else 1.0
        t = _map_domain(min(max(t, 0.0), 1.0))
        if k == 1 or t <= positions[0]:
            return mcolors.to_hex(ramp[0])
        if t >= positions[-1]:
            return mcolors.to_hex(ramp[-1])
        for i in range(k - 1):
            if positions[i] <= t <= positions[i + 1]:
                span = positions[i + 1] - positions[i]
                f = (t - positions[i]) / span if span > 0 else 0.0
                return mix_colors(ramp[i], ramp[i + 1], f, color_mode)
        return mcolors.to_hex(ramp[-1])

    return _color


def pad_colors(colors: Sequence[str], count: int) -> tuple[list[str], str | None]:
    out = list(colors[:count]) if len(colors) >= count else list(colors)
    if len(out) >= count:
        return out, None
    missing = count - len(out)
    out.extend([FALLBACK_COLOR] * missing)
    return out, f"Palette has {len(colors)} colours for {count} classes; padded {missing} with {FALLBACK_COLOR}"


def get_color_scale(
    breaks: Sequence[Any],
    method: ClassificationMethod | str,
    palette: Sequence[str],
    invert: bool,
    class_count: int,
    color_mode: str = "lab",
) -> list[str]:
    method = ClassificationMethod.parse(method)
    ramp = list(palette)[::-1] if invert else list(palette)
    if method.is_categorical:
        colors, _ = pad_colors(ramp[:MAX_CATEGORIES], MAX_CATEGORIES)
        return colors + [FALLBACK_COLOR]
    if not breaks or not ramp:
        return []
    scale = _ramp_scale(ramp, [float(b) for b in breaks], color_mode)
    lo, hi = float(breaks[0]), float(breaks[-1])
    n = max(int(class_count), 1)
    if n == 1:
        return [scale(lo if lo == hi else (lo + hi) / 2)]
    return [scale(lo + (i / (n - 1)) * (hi - lo)) for i in range(n)]


def color_for(
    value: Any,
    breaks: Sequence[Any],
    colors: Sequence[str],
    method: ClassificationMethod | str,
) -> str:
    method = ClassificationMethod.parse(method)
    if method.is_categorical:
        for idx, category in enumerate(breaks):
            if category == value:
                return colors[idx] if idx < MAX_CATEGORIES and idx < len(colors) else FALLBACK_COLOR
        return FALLBACK_COLOR

    if not is_number(value) or not breaks or not colors:
        return DEFAULT_COLOR
    if value < breaks[0]:
        return colors[0]
    if value > breaks[-1]:
        return colors[-1]
    for i in range(len(breaks) - 1):
        if breaks[i] <= value <= breaks[i + 1]:
            return colors[min(i, len(colors) - 1)]
    if len(breaks) == 1 and value == breaks[0]:
        return colors[0]
    return DEFAULT_COLOR


def select_color_ramp(
    name: str,
    custom_csv: str = "",
    palettes: Mapping[str, Sequence[str]] = DEFAULT_COLOR_RAMPS,
) -> tuple[tuple[str, ...], str | None]:
    """Resolve a named or custom ramp; falls back to AZURECASCADE with a warning."""
    key = (name or "").strip().upper()
    fallback = tuple(palettes.get(FALLBACK_RAMP, DEFAULT_COLOR_RAMPS[FALLBACK_RAMP]))
    if key == "CUSTOM":
        parts = [p.strip() for p in (custom_csv or "").split(",") if p.strip()]
        if parts and all(_HEX_COLOR_RE.match(p) for p in parts):
            return tuple(parts), None
        return fallback, f"Custom colour ramp '{custom_csv}' is invalid; using {FALLBACK_RAMP}"
    ramp = palettes.get(key)
    if ramp:
        return tuple(ramp), None
    return fallback, f"Unknown colour ramp '{name}'; using {FALLBACK_RAMP}"


# --- engine -------------------------------------------------------------------


def format_break(value: Any, decimals: int | None = None) -> str:
    if value is None:
        return ""
    if not is_number(value):
        return str(value)
    number = float(value)
    if decimals is not None:
        return f"{number:,.{decimals}f}"
    if number.is_integer():
        return f"{int(number):,}"
    return f"{number:.10f}".rstrip("0").rstrip(".")


@dataclass(frozen=True, slots=True)
class Classification:
    breaks: ClassBreaks
    colors: tuple[str, ...]
    method: ClassificationMethod
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def color_for(self, value: Any) -> str:
        return color_for(value, self.breaks.values, self.colors, self.method)

    def legend(self, decimals: int | None = None) -> list[LegendEntry]:
        values = self.breaks.values
        if self.method.is_categorical:
            return [
                LegendEntry(label=format_break(v, decimals), color=self.color_for(v), lower=v, upper=v)
                for v in values[:MAX_CATEGORIES]
            ]
        if not values or not self.colors:
            return []
        if len(values) == 2 and values[0] == values[1]:
            return [
                LegendEntry(
                    label=format_break(values[0], decimals),
                    color=self.colors[0],
                    lower=values[0],
                    upper=values[1],
                )
            ]
        entries: list[LegendEntry] = []
        for i in range(min(len(values) - 1, len(self.colors))):
            entries.append(
                LegendEntry(
                    label=f"{format_break(values[i], decimals)} - {format_break(values[i + 1], decimals)}",
                    color=self.colors[i],
                    lower=values[i],
                    upper=values[i + 1],
                )
            )
        return entries


class ClassificationEngine:
    """Turn a value column into breaks, colours and legend entries.

    Degenerate input never raises; problems are returned as warnings.
    """

    def __init__(self, color_mode: str = "lab") -> None:
        self.color_mode = color_mode

    def classify(
        self,
        values: Sequence[Any],
        method: ClassificationMethod | str,
        class_count: int,
        palette: Sequence[str],
        invert: bool = False,
    ) -> Classification:
        method = ClassificationMethod.parse(method)
        warnings: list[str] = []
        if method.is_categorical:
            return self._classify_unique(values, class_count, palette, invert, warnings)

        numeric = [float(v) for v in values if is_number(v)]
        skipped = sum(1 for v in values if v is not None) - len(numeric)
        if skipped:
            warnings.append(f"Ignored {skipped} non-numeric values")
        distinct = sorted(set(numeric))
        if not distinct:
            warnings.append("No numeric values to classify")
            return Classification(ClassBreaks((), method.value), (), method, tuple(warnings))

        if method is ClassificationMethod.LOGARITHMIC and distinct[0] <= 0:
            warnings.append("Logarithmic classification needs values > 0; using equal interval")
            method = ClassificationMethod.EQUAL_INTERVAL

        if len(distinct) == 1:
            value = distinct[0]
            breaks: list[Any] = [value, value]
            colors = get_color_scale(breaks, method, palette, invert, 1, self.color_mode)
            warnings.append("Only one distinct value; legend collapsed to a single class")
        elif len(distinct) == 2:
            breaks = distinct
            colors = get_color_scale(breaks, method, palette, invert, 1, self.color_mode)
            warnings.append("Only two distinct values; breaks are the values themselves")
        else:
            k = min(int(class_count), len(distinct))
            breaks = get_class_breaks(numeric, method, k)
            colors = get_color_scale(breaks, method, palette, invert, k, self.color_mode)

        _LOGGER.debug("classified %d values with '%s' into breaks %s", len(numeric), method.value, breaks)
        return Classification(
            breaks=ClassBreaks(tuple(breaks), method.value),
            colors=tuple(colors),
            method=method,
            warnings=tuple(warnings),
        )

    def _classify_unique(
        self,
        values: Sequence[Any],
        class_count: int,
        palette: Sequence[str],
        invert: bool,
        warnings: list[str],
    ) -> Classification:
        method = ClassificationMethod.UNIQUE
        categories = _sort_categories(values)
        if len(categories) > MAX_CATEGORIES:
            warnings.append(
                f"{len(categories)} unique values; only the first {MAX_CATEGORIES} get colours, "
                f"the rest use {FALLBACK_COLOR}"
            )
        breaks = get_class_breaks(values, method, class_count)
        _, pad_warning = pad_colors(palette, min(len(breaks), MAX_CATEGORIES))
        if pad_warning:
            warnings.append(pad_warning)
        colors = get_color_scale(breaks, method, palette, invert, len(breaks), self.color_mode)
        return Classification(
            breaks=ClassBreaks(tuple(breaks), method.value),
            colors=tuple(colors),
            method=method,
            warnings=tuple(warnings),
        )
