"""
core/skin_metrics — Deterministic metrics derived from raw detector output.

Public API:
    compute_acne_metrics(predictions)     → AcneMetrics
    compute_redness_metrics(result)       → RednessMetrics
    compute_wrinkles_metrics(predictions) → WrinklesMetrics
    polygon_area(vertices)                → float
"""

from core.skin_metrics.acne import AcneMetrics, compute_acne_metrics
from core.skin_metrics.redness import RednessMetrics, compute_redness_metrics, polygon_area
from core.skin_metrics.wrinkles import WrinklesMetrics, compute_wrinkles_metrics

__all__ = [
    "AcneMetrics",
    "RednessMetrics",
    "WrinklesMetrics",
    "compute_acne_metrics",
    "compute_redness_metrics",
    "compute_wrinkles_metrics",
    "polygon_area",
]
