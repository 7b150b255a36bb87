"""Tests for core/skin_metrics/acne.py."""

from __future__ import annotations

import pytest

from core.skin_metrics.acne import (
    ACNE_CLASSES,
    acne_severity,
    classify_acne,
    compute_acne_metrics,
    count_lesions,
)


def _preds(*labels: str) -> list[dict]:
    return [{"class": label, "confidence": 0.9} for label in labels]


def _counts(**kwargs: int) -> dict[str, int]:
    counts = {name: 0 for name in ACNE_CLASSES}
    counts.update(kwargs)
    return counts


# ---------------------------------------------------------------------------
# Counting
# ---------------------------------------------------------------------------


class TestCountLesions:
    def test_all_buckets_present_for_empty_input(self) -> None:
        assert count_lesions([]) == _counts()

    def test_excluded_labels_never_counted(self) -> None:
        counts = count_lesions(_preds("Freckles", "Mole", "Post-Acne Scar", "Post-Acne Spot"))
        assert sum(counts.values()) == 0

    def test_unknown_labels_ignored(self) -> None:
        assert count_lesions(_preds("Blackhead", "Papules")) == _counts(Papules=1)

    def test_counts_per_class(self) -> None:
        counts = count_lesions(_preds("Papules", "Papules", "Pustules", "Comedones"))
        assert counts == _counts(Papules=2, Pustules=1, Comedones=1)

    def test_malformed_entries_skipped(self) -> None:
        predictions = [
            None,
            "Papules",
            3,
            {"class": ["Papules"]},
            {"class": None},
            *_preds("Nodules"),
        ]
        assert count_lesions(predictions) == _counts(Nodules=1)

    @pytest.mark.parametrize("predictions", [None, "Papules", {"class": "Papules"}, 42])
    def test_non_list_predictions(self, predictions) -> None:
        assert count_lesions(predictions) == _counts()


# ---------------------------------------------------------------------------
# Severity ladder
# ---------------------------------------------------------------------------


class TestSeverity:
    @pytest.mark.parametrize(
        ("total", "expected"),
        [(0, "None"), (1, "Mild"), (5, "Mild"), (6, "Moderate"), (20, "Moderate"), (21, "Severe")],
    )
    def test_thresholds(self, total: int, expected: str) -> None:
        assert acne_severity(total) == expected


# ---------------------------------------------------------------------------
# Classification cascade
# ---------------------------------------------------------------------------


class TestClassification:
    def test_nodules_win_over_everything(self) -> None:
        assert classify_acne(_counts(Nodules=1, Cysts=3, Papules=5)) == "nodulo-cistica"

    def test_cysts_without_nodules(self) -> None:
        assert classify_acne(_counts(Cysts=1, Papules=5)) == "cistica"

    def test_papules_or_pustules(self) -> None:
        assert classify_acne(_counts(Pustules=1, Comedones=10)) == "papulopustolosa"

    def test_few_comedones_is_no_acne(self) -> None:
        assert classify_acne(_counts(Comedones=2)) == "no-acne"

    def test_any_microcyst_prevents_no_acne(self) -> None:
        assert classify_acne(_counts(Microcysts=1)) == "microcistica"

    def test_tie_favours_comedones(self) -> None:
        assert classify_acne(_counts(Comedones=3, Microcysts=3)) == "comedonica"

    def test_more_microcysts(self) -> None:
        assert classify_acne(_counts(Comedones=3, Microcysts=4)) == "microcistica"


class TestComputeAcneMetrics:
    def test_papules_pustules_with_freckles(self) -> None:
        metrics = compute_acne_metrics(_preds("Papules", "Papules", "Pustules", "Freckles"))
        assert metrics.counts == _counts(Papules=2, Pustules=1)
        assert metrics.total == 3
        assert metrics.severity == "Mild"
        assert metrics.classification == "papulopustolosa"

    def test_none_input(self) -> None:
        metrics = compute_acne_metrics(None)
        assert metrics.severity == "None"
        assert metrics.classification == "no-acne"

    def test_to_dict_shape(self) -> None:
        data = compute_acne_metrics(_preds("Comedones")).to_dict()
        assert set(data) == {"counts", "severity", "classification"}
        assert set(data["counts"]) == set(ACNE_CLASSES)
