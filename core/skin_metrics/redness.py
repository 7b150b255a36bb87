"""
core/skin_metrics/redness.py — Redness coverage from detector polygons.

The redness detector returns the red regions it found as polygons in the
coordinate space of the image it analyzed (``analysis_width`` ×
``analysis_height``). Coverage is the summed polygon area over the analyzed
area, as a percentage rounded to 2 decimals. Erythema is flagged above 10%.

Polygon area uses the shoelace formula over the closed vertex cycle::

    area = |Σ (x_i · y_{i+1} − x_{i+1} · y_i)| / 2

Pure: no I/O, no state.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

ERYTHEMA_THRESHOLD_PERCENT = 10.0


@dataclass(frozen=True)
class RednessMetrics:
    """Redness metrics for one image, echoing the raw detector fields."""

    redness_perc: float
    erythema: bool
    num_polygons: int = 0
    polygons: list[Any] = field(default_factory=list)
    analysis_width: int = 0
    analysis_height: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "num_polygons": self.num_polygons,
            "polygons": self.polygons,
            "analysis_width": self.analysis_width,
            "analysis_height": self.analysis_height,
            "redness_perc": self.redness_perc,
            "erythema": self.erythema,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


def polygon_area(vertices: Sequence[Sequence[float]]) -> float:
    """Area of a simple polygon given as ``[x, y]`` vertices.

    Fewer than three vertices give zero area.
    """
    n = len(vertices)
    if n < 3:
        return 0.0
    twice_area = 0.0
    for i in range(n):
        x_i, y_i = vertices[i][0], vertices[i][1]
        x_j, y_j = vertices[(i + 1) % n][0], vertices[(i + 1) % n][1]
        twice_area += x_i * y_j - x_j * y_i
    return abs(twice_area) / 2.0


def redness_percentage(
    polygons: Sequence[Sequence[Sequence[float]]],
    width: float,
    height: float,
) -> float:
    """Percentage of the analyzed region covered by polygons, 2 decimals.

    Returns 0.0 when the region has no area.
    """
    region = width * height
    if region <= 0:
        return 0.0
    covered = sum(polygon_area(p) for p in polygons)
    return round(covered / region * 100, 2)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _well_formed(polygons: Sequence[Any]) -> bool:
    """Every polygon is a list of ``[x, y]`` pairs of numbers."""
    for polygon in polygons:
        if not isinstance(polygon, (list, tuple)):
            return False
        for vertex in polygon:
            if not isinstance(vertex, (list, tuple)) or len(vertex) < 2:
                return False
            if not (_is_number(vertex[0]) and _is_number(vertex[1])):
                return False
    return True


def compute_redness_metrics(result: Mapping[str, Any] | None) -> RednessMetrics:
    """Compute redness coverage and erythema from a detector result.

    Args:
        result: Redness detector response (``polygons``, ``analysis_width``,
            ``analysis_height``, ``num_polygons``) or a fallback sentinel.

    Returns:
        RednessMetrics. Malformed input (polygons that are not lists of
        numeric ``[x, y]`` vertices, non-numeric dimensions) yields zero
        coverage with ``error="invalid_input"``; a zero-area region yields
        zero coverage.
    """
    if not isinstance(result, Mapping) or not isinstance(result.get("polygons"), list):
        logger.warning("Invalid redness result, returning default metrics")
        return RednessMetrics(redness_perc=0.0, erythema=False, error="invalid_input")

    polygons = result["polygons"]
    width = result.get("analysis_width") or 0
    height = result.get("analysis_height") or 0
    num_polygons = result.get("num_polygons", len(polygons)) or 0

    if not (_is_number(width) and _is_number(height) and _is_number(num_polygons)):
        logger.warning("Redness result has non-numeric dimensions, returning default metrics")
        return RednessMetrics(redness_perc=0.0, erythema=False, error="invalid_input")
    if not _well_formed(polygons):
        logger.warning("Redness result has malformed polygons, returning default metrics")
        return RednessMetrics(redness_perc=0.0, erythema=False, error="invalid_input")

    if width * height <= 0:
        logger.warning("Redness analysis area is zero, cannot compute percentage")

    perc = redness_percentage(polygons, width, height)
    erythema = perc > ERYTHEMA_THRESHOLD_PERCENT
    logger.info("Redness metrics: redness_perc=%.2f erythema=%s", perc, erythema)

    return RednessMetrics(
        redness_perc=perc,
        erythema=erythema,
        num_polygons=int(num_polygons),
        polygons=polygons,
        analysis_width=width,
        analysis_height=height,
        error=result.get("error"),
    )
