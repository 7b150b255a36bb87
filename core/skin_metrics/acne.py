"""
core/skin_metrics/acne.py — Acne lesion counts, severity and classification.

Input is the acne detector's prediction list; only the ``class`` label of each
prediction is used. Cosmetic labels (freckles, moles, post-acne marks) are not
lesions and never enter the count.

Classification cascade (first match wins):
    1. any nodules                       → "nodulo-cistica"
    2. any cysts                         → "cistica"
    3. any papules or pustules           → "papulopustolosa"
    4. comedones ≤ 2 and no microcysts   → "no-acne"
    5. comedones ≥ microcysts            → "comedonica"
    6. otherwise                         → "microcistica"

Pure: no I/O, no state.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

ACNE_CLASSES: tuple[str, ...] = (
    "Comedones",
    "Cysts",
    "Microcysts",
    "Nodules",
    "Papules",
    "Pustules",
)

EXCLUDED_CLASSES: frozenset[str] = frozenset(
    {"Freckles", "Mole", "Post-Acne Scar", "Post-Acne Spot"}
)

# Upper bound (inclusive) of each severity band, evaluated in order.
_SEVERITY_LADDER: tuple[tuple[int, str], ...] = (
    (0, "None"),
    (5, "Mild"),
    (20, "Moderate"),
)

_NO_ACNE_MAX_COMEDONES = 2


@dataclass(frozen=True)
class AcneMetrics:
    """Acne metrics for one image."""

    counts: dict[str, int]
    """Per-class lesion counts; all six classes are always present."""

    severity: str
    """One of None / Mild / Moderate / Severe."""

    classification: str
    """Clinical acne type (see module docstring)."""

    @property
    def total(self) -> int:
        """Total number of lesions across all classes."""
        return sum(self.counts.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "counts": dict(self.counts),
            "severity": self.severity,
            "classification": self.classification,
        }


def _predictions(predictions: Any) -> list[Mapping[str, Any]]:
    """Prediction entries that are mappings; anything else is dropped."""
    if not isinstance(predictions, Iterable) or isinstance(predictions, (str, bytes, Mapping)):
        return []
    return [p for p in predictions if isinstance(p, Mapping)]


def count_lesions(predictions: Iterable[Mapping[str, Any]]) -> dict[str, int]:
    """Count predictions into the six acne buckets.

    Excluded and unknown labels are ignored, as are malformed entries.
    """
    counts = {name: 0 for name in ACNE_CLASSES}
    for prediction in _predictions(predictions):
        label = prediction.get("class")
        if not isinstance(label, str) or label in EXCLUDED_CLASSES:
            continue
        if label in counts:
            counts[label] += 1
    return counts


def acne_severity(total: int) -> str:
    """Map a total lesion count to a severity band.

    0 → None, 1–5 → Mild, 6–20 → Moderate, >20 → Severe.
    """
    for upper, label in _SEVERITY_LADDER:
        if total <= upper:
            return label
    return "Severe"


def classify_acne(counts: Mapping[str, int]) -> str:
    """Apply the priority cascade to a set of class counts."""
    nodules = counts.get("Nodules", 0)
    cysts = counts.get("Cysts", 0)
    papules = counts.get("Papules", 0)
    pustules = counts.get("Pustules", 0)
    comedones = counts.get("Comedones", 0)
    microcysts = counts.get("Microcysts", 0)

    if nodules:
        return "nodulo-cistica"
    if cysts:
        return "cistica"
    if papules or pustules:
        return "papulopustolosa"
    if comedones <= _NO_ACNE_MAX_COMEDONES and not microcysts:
        return "no-acne"
    return "comedonica" if comedones >= microcysts else "microcistica"


def compute_acne_metrics(predictions: Iterable[Mapping[str, Any]] | None = None) -> AcneMetrics:
    """Compute counts, severity and classification from detector predictions.

    Args:
        predictions: Detector predictions, each with a ``class`` label.
            ``None`` is treated as no predictions.

    Returns:
        AcneMetrics for the image.
    """
    counts = count_lesions(predictions or ())
    return AcneMetrics(
        counts=counts,
        severity=acne_severity(sum(counts.values())),
        classification=classify_acne(counts),
    )
