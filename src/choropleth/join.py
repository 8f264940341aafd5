"""Join-key detection between boundary properties and tabular category codes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from .config import DEFAULT_BOUNDARY_KEYS
from .models import Feature, FeatureCollection

_LOGGER = logging.getLogger("choropleth.join")


class JoinError(ValueError):
    """No boundary feature matched the supplied join values under any key."""


@dataclass(frozen=True, slots=True)
class JoinResolution:
    used_key: str
    best_count: int
    original_key: str
    original_count: int
    filtered_by_used_key: FeatureCollection
    filtered_by_original: FeatureCollection
    match_counts: Mapping[str, int]


@dataclass(frozen=True, slots=True)
class JoinDecision:
    key: str
    collection: FeatureCollection
    adopted: bool
    reason: str


def normalize_join_value(value: Any) -> str | None:
    if value is None:
        return None
    return str(value).strip()


def _feature_matches(feature: Feature, key: str, valid: set[str]) -> bool:
    value = normalize_join_value(feature.get(key))
    return value is not None and value in valid


class BoundaryKeyResolver:
    """Score candidate property names by how many features they join."""

    def __init__(self, conventional_keys: Iterable[str] = DEFAULT_BOUNDARY_KEYS) -> None:
        self.conventional_keys = tuple(conventional_keys)

    def candidate_keys(self, candidate_key: str) -> list[str]:
        return list(dict.fromkeys([candidate_key, *self.conventional_keys]))

    def resolve(
        self,
        collection: FeatureCollection,
        candidate_key: str,
        valid_join_values: Iterable[Any],
    ) -> JoinResolution:
        valid = {v for v in (normalize_join_value(x) for x in valid_join_values) if v is not None}
        keys = self.candidate_keys(candidate_key)
        counts = {key: sum(1 for f in collection if _feature_matches(f, key, valid)) for key in keys}

        used_key = keys[0]
        for key in keys[1:]:
            if counts[key] > counts[used_key]:
                used_key = key

        _LOGGER.debug("join key match counts: %s", counts)
        return JoinResolution(
            used_key=used_key,
            best_count=counts[used_key],
            original_key=candidate_key,
            original_count=counts[candidate_key],
            filtered_by_used_key=collection.with_features(
                f for f in collection if _feature_matches(f, used_key, valid)
            ),
            filtered_by_original=collection.with_features(
                f for f in collection if _feature_matches(f, candidate_key, valid)
            ),
            match_counts=counts,
        )


def choose_join_key(
    resolution: JoinResolution,
    valid_value_count: int,
    min_match_count: int = 3,
    min_margin: int = 2,
) -> JoinDecision:
    """Decide whether the detected key should replace the caller's key.

    Both thresholds shrink to `valid_value_count` for small selections.
    """
    n = max(int(valid_value_count), 0)
    best = resolution.best_count
    original = resolution.original_count

    if resolution.used_key == resolution.original_key:
        return JoinDecision(
            key=resolution.original_key,
            collection=resolution.filtered_by_original,
            adopted=False,
            reason="supplied key is the best match",
        )
    if original == 0 and best > 0:
        reason = f"supplied key matched nothing; '{resolution.used_key}' matched {best}"
        adopted = True
    elif best >= min(min_match_count, n) and best - original >= min(min_margin, n):
        reason = f"'{resolution.used_key}' matched {best} vs {original} for supplied key"
        adopted = True
    else:
        reason = f"'{resolution.used_key}' matched {best} vs {original}; below adoption thresholds"
        adopted = False

    if adopted:
        _LOGGER.info(
            "Adopting join key '%s' over '%s': %s",
            resolution.used_key,
            resolution.original_key,
            reason,
        )
        return JoinDecision(
            key=resolution.used_key,
            collection=resolution.filtered_by_used_key,
            adopted=True,
            reason=reason,
        )
    return JoinDecision(
        key=resolution.original_key,
        collection=resolution.filtered_by_original,
        adopted=False,
        reason=reason,
    )
