"""
core/scaling.py — Map detector coordinate spaces back onto the original image.

Each detector may resize the image before analysis, so its coordinates live in
its own ``analysis_width × analysis_height`` space. The acne detector echoes
the true image size, so it is the reference: a consumer multiplies a
detector's coordinates by that detector's factors to overlay every result on
one canonical image.

Pure: no I/O, no state.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ScalingFactors:
    """Multipliers from detector space to original-image space."""

    x: float = 1.0
    y: float = 1.0

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y}


def _positive(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def _ratio(original: float | None, analyzed: float | None) -> float:
    original, analyzed = _positive(original), _positive(analyzed)
    if original is None or analyzed is None:
        return 1.0
    return original / analyzed


def scaling_factors(
    original_width: float | None,
    original_height: float | None,
    analysis_width: float | None,
    analysis_height: float | None,
) -> ScalingFactors:
    """Compute ``original / analysis`` per axis.

    A zero, unknown or non-numeric dimension on either side yields a factor
    of 1.0.
    """
    return ScalingFactors(
        x=_ratio(original_width, analysis_width),
        y=_ratio(original_height, analysis_height),
    )


def _dimension(value: Any) -> int:
    return int(_positive(value) or 0)


def image_size(result: Mapping[str, Any] | None) -> tuple[int, int]:
    """Read ``image.width``/``image.height`` from a detector result.

    Absent, non-numeric or non-positive dimensions read as 0.
    """
    image = result.get("image") if isinstance(result, Mapping) else None
    if not isinstance(image, Mapping):
        return 0, 0
    return _dimension(image.get("width")), _dimension(image.get("height"))
