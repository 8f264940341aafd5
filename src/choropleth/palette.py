"""Categorical colour assignment that stays stable across data refreshes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from .classify import FALLBACK_COLOR, MAX_CATEGORIES, ClassificationMethod
from .util import is_number

_LOGGER = logging.getLogger("choropleth.palette")


@dataclass(frozen=True, slots=True)
class NumericWindow:
    """`slots` contiguous integer placeholders starting at `start`."""

    start: int
    slots: int

    @property
    def end(self) -> int:
        return self.start + self.slots - 1

    def contains(self, low: int, high: int) -> bool:
        return self.start <= low and high <= self.end

    def positions(self) -> range:
        return range(self.start, self.start + self.slots)


@dataclass(slots=True)
class StablePaletteState:
    categorical_color_map: dict[Any, str] = field(default_factory=dict)
    stable_category_order: list[Any] = field(default_factory=list)
    numeric_window: NumericWindow | None = None
    slots: int | None = None
    method: ClassificationMethod | None = None
    measure_id: str | None = None


@dataclass(frozen=True, slots=True)
class CategoricalAssignment:
    categories: tuple[Any, ...]
    colors: tuple[str, ...]
    lookup: Mapping[Any, str]

    def color_for(self, value: Any) -> str:
        return self.lookup.get(_category_key(value), FALLBACK_COLOR)


def _category_key(value: Any) -> Any:
    if is_number(value) and float(value).is_integer():
        return int(value)
    return value


def _is_integer_like(value: Any) -> bool:
    return is_number(value) and float(value).is_integer()


class StablePaletteAssigner:
    """Keep category colours fixed while the category set changes.

    Integer categories bind colours to a sliding window of placeholders;
    other categories use an append-only first-seen list. Both are capped at
    `min(requested_classes, 7)` colours.
    """

    def __init__(self, base_palette: Sequence[str], state: StablePaletteState | None = None) -> None:
        self.base_palette = tuple(base_palette)
        self.state = state if state is not None else StablePaletteState()

    def reset(self) -> None:
        method, measure_id = self.state.method, self.state.measure_id
        self.state = StablePaletteState(method=method, measure_id=measure_id)

    def track(self, method: ClassificationMethod | str, measure_id: str | None) -> bool:
        """Record the active method and measure; returns True when state was reset."""
        method = ClassificationMethod.parse(method)
        switched_in = method.is_categorical and self.state.method is not ClassificationMethod.UNIQUE
        changed_measure = self.state.measure_id is not None and measure_id != self.state.measure_id
        self.state.method = method
        self.state.measure_id = measure_id
        if switched_in or changed_measure:
            _LOGGER.debug("resetting stable palette (mode switch=%s, measure change=%s)", switched_in, changed_measure)
            self.reset()
            return True
        return False

    def _slot_colors(self, slots: int) -> list[str]:
        colors = list(self.base_palette[:slots])
        colors.extend([FALLBACK_COLOR] * (slots - len(colors)))
        return colors

    def reserve_window(self, start: int, slots: int) -> NumericWindow:
        window = NumericWindow(start=int(start), slots=int(slots))
        colors = self._slot_colors(window.slots)
        self.state.numeric_window = window
        self.state.stable_category_order = list(window.positions())
        self.state.categorical_color_map = dict(zip(window.positions(), colors))
        return window

    def slide_window(self, new_min: int, new_max: int) -> bool:
        """Move the window to cover `[new_min, new_max]`; False when it already does."""
        window = self.state.numeric_window
        if window is None:
            raise RuntimeError("slide_window called before reserve_window")
        if window.contains(new_min, new_max):
            return False
        if new_max - new_min + 1 > window.slots:
            start = new_min
        else:
            start = max(new_max - window.slots + 1, min(window.start, new_min))
            start = min(start, new_min)
        moved = NumericWindow(start=start, slots=window.slots)

        previous = self.state.categorical_color_map
        kept = {pos: previous[pos] for pos in moved.positions() if pos in previous}
        free = self._slot_colors(moved.slots)
        for color in kept.values():
            free.remove(color)
        color_map: dict[Any, str] = {}
        for pos in moved.positions():
            color_map[pos] = kept[pos] if pos in kept else free.pop(0)

        _LOGGER.debug("palette window moved from %d..%d to %d..%d", window.start, window.end, moved.start, moved.end)
        self.state.numeric_window = moved
        self.state.stable_category_order = list(moved.positions())
        self.state.categorical_color_map = color_map
        return True

    def assign(
        self,
        values: Iterable[Any],
        requested_classes: int,
        *,
        method: ClassificationMethod | str = ClassificationMethod.UNIQUE,
        measure_id: str | None = None,
    ) -> CategoricalAssignment:
        self.track(method, measure_id)
        slots = max(min(int(requested_classes), MAX_CATEGORIES), 1)
        if self.state.slots is not None and self.state.slots != slots:
            self.reset()
        self.state.slots = slots

        present = [v for v in values if v is not None]
        if not present:
            return CategoricalAssignment(categories=(), colors=(), lookup=dict(self.state.categorical_color_map))
        if all(_is_integer_like(v) for v in present):
            categories = self._assign_numeric(sorted({int(v) for v in present}), slots)
        else:
            categories = self._assign_text(present, slots)

        lookup = dict(self.state.categorical_color_map)
        colors = tuple(lookup.get(_category_key(c), FALLBACK_COLOR) for c in categories)
        return CategoricalAssignment(categories=tuple(categories), colors=colors, lookup=lookup)

    def _assign_numeric(self, distinct: list[int], slots: int) -> list[int]:
        if self.state.numeric_window is None:
            self.reserve_window(distinct[0], slots)
        else:
            self.slide_window(distinct[0], distinct[-1])
        return distinct

    def _assign_text(self, present: list[Any], slots: int) -> list[Any]:
        if self.state.numeric_window is not None:
            self.reset()
            self.state.slots = slots
        distinct = sorted(
            {v if is_number(v) else str(v) for v in present},
            key=lambda v: (str(v).casefold(), str(v)),
        )
        order = self.state.stable_category_order
        colors = self._slot_colors(slots)
        for value in distinct:
            if len(order) >= slots:
                break
            if value not in self.state.categorical_color_map:
                self.state.categorical_color_map[value] = colors[len(order)]
                order.append(value)
        return distinct

    def color_for(self, value: Any) -> str:
        return self.state.categorical_color_map.get(_category_key(value), FALLBACK_COLOR)
