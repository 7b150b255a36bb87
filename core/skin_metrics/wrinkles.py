"""
core/skin_metrics/wrinkles.py — Wrinkle counts, confidence and severity.

Labels are the wrinkle detector's own class names (including its spelling of
``droppy_eyelid`` and ``tear_through``). ``background`` and any label outside
the allow-list are dropped before counting.

Severity ladder (first match wins):
    total == 0 or mean confidence < 0.3   → None
    total ≤ 3 and mean confidence < 0.6   → Mild
    total ≤ 8 or mean confidence < 0.7    → Moderate
    otherwise                             → Severe

Pure: no I/O, no state.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

WRINKLE_CLASSES: tuple[str, ...] = (
    "bunny_line",
    "crows_feet",
    "droppy_eyelid",
    "forehead",
    "frown",
    "marionette_line",
    "mental_crease",
    "nasolabial_fold",
    "neck_lines",
    "purse_string",
    "tear_through",
)

FOREHEAD_CLASSES: tuple[str, ...] = ("forehead",)

EXPRESSION_LINE_CLASSES: tuple[str, ...] = (
    "bunny_line",
    "frown",
    "marionette_line",
    "mental_crease",
    "nasolabial_fold",
    "neck_lines",
    "purse_string",
)

UNDER_EYE_CLASSES: tuple[str, ...] = ("crows_feet", "droppy_eyelid", "tear_through")

HIGH_CONFIDENCE = 0.5


@dataclass(frozen=True)
class WrinklesMetrics:
    """Wrinkle metrics for one image."""

    counts: dict[str, int]
    total_predictions: int
    high_confidence_predictions: int
    average_confidence: float
    severity: str
    has_forehead_wrinkles: bool
    has_expression_lines: bool
    has_under_eye_concerns: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "counts": dict(self.counts),
            "total_predictions": self.total_predictions,
            "high_confidence_predictions": self.high_confidence_predictions,
            "average_confidence": self.average_confidence,
            "severity": self.severity,
            "has_forehead_wrinkles": self.has_forehead_wrinkles,
            "has_expression_lines": self.has_expression_lines,
            "has_under_eye_concerns": self.has_under_eye_concerns,
        }


def wrinkle_severity(total: int, average_confidence: float) -> str:
    """Severity from detection count and mean confidence."""
    if total == 0 or average_confidence < 0.3:
        return "None"
    if total <= 3 and average_confidence < 0.6:
        return "Mild"
    if total <= 8 or average_confidence < 0.7:
        return "Moderate"
    return "Severe"


def _group_present(counts: Mapping[str, int], group: Iterable[str]) -> bool:
    return sum(counts[name] for name in group) > 0


def _confidence(value: Any) -> float | None:
    """Numeric confidence, 0.0 when absent, None when unusable."""
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        confidence = float(value)
    except ValueError:
        return None
    return confidence if math.isfinite(confidence) else None


def compute_wrinkles_metrics(
    predictions: Iterable[Mapping[str, Any]] | None = None,
) -> WrinklesMetrics:
    """Compute wrinkle metrics from detector predictions.

    Args:
        predictions: Detector predictions with ``class`` and ``confidence``.
            ``None`` is treated as no predictions. Entries that are not
            mappings, or whose confidence is not a number, are skipped.

    Returns:
        WrinklesMetrics for the image.
    """
    counts = {name: 0 for name in WRINKLE_CLASSES}
    total = 0
    high_confidence = 0
    confidence_sum = 0.0

    if not isinstance(predictions, Iterable) or isinstance(predictions, (str, bytes, Mapping)):
        predictions = ()

    for prediction in predictions:
        if not isinstance(prediction, Mapping):
            continue
        label = prediction.get("class")
        if not isinstance(label, str) or label not in counts:
            continue
        confidence = _confidence(prediction.get("confidence"))
        if confidence is None:
            logger.debug("Skipping wrinkle prediction with bad confidence: %r", prediction)
            continue
        counts[label] += 1
        total += 1
        confidence_sum += confidence
        if confidence > HIGH_CONFIDENCE:
            high_confidence += 1

    average = confidence_sum / total if total else 0.0
    severity = wrinkle_severity(total, average)

    metrics = WrinklesMetrics(
        counts=counts,
        total_predictions=total,
        high_confidence_predictions=high_confidence,
        average_confidence=round(average, 3),
        severity=severity,
        has_forehead_wrinkles=_group_present(counts, FOREHEAD_CLASSES),
        has_expression_lines=_group_present(counts, EXPRESSION_LINE_CLASSES),
        has_under_eye_concerns=_group_present(counts, UNDER_EYE_CLASSES),
    )
    logger.info(
        "Wrinkles metrics: total=%d high_conf=%d avg_conf=%.3f severity=%s",
        total,
        high_confidence,
        average,
        severity,
    )
    return metrics
