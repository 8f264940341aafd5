"""Shared boundary fixtures."""

from __future__ import annotations

from typing import Any

import pytest

from choropleth.models import Feature, FeatureCollection


def square(x0: float, y0: float, size: float = 1.0) -> dict[str, Any]:
    return {
        "type": "Polygon",
        "coordinates": [
            [[x0, y0], [x0 + size, y0], [x0 + size, y0 + size], [x0, y0 + size], [x0, y0]]
        ],
    }


def square_feature(x0: float, y0: float, **properties: Any) -> dict[str, Any]:
    return {"type": "Feature", "geometry": square(x0, y0), "properties": properties}


@pytest.fixture
def row_payload() -> dict[str, Any]:
    """Five unit squares in a row keyed A..E under shapeID."""
    return {
        "type": "FeatureCollection",
        "features": [
            square_feature(float(i), 0.0, shapeID=code, shapeName=f"Region {code}")
            for i, code in enumerate("ABCDE")
        ],
    }


@pytest.fixture
def row_collection(row_payload: dict[str, Any]) -> FeatureCollection:
    return FeatureCollection(
        features=tuple(
            Feature(geometry=item["geometry"], properties=item["properties"])
            for item in row_payload["features"]
        )
    )
