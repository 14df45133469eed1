"""Reduce per-class scores to a single inspection result."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from boxinspector.ml.errors import NoPredictionsError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from boxinspector.ml.classifier import PredictionEntry

DAMAGED_MARKER = "damaged"


@dataclass(frozen=True)
class InferenceResult:
    """Winning class, its confidence as a percentage, and the damage flag."""

    status: str
    confidence: float
    is_damaged: bool


def reduce(entries: Sequence[PredictionEntry]) -> InferenceResult:
    """Pick the highest-probability entry; ties go to the earliest one."""
    if not entries:
        raise NoPredictionsError("Classifier returned no predictions")

    best = entries[0]
    for entry in entries[1:]:
        if entry.probability > best.probability:
            best = entry

    return InferenceResult(
        status=best.label,
        confidence=round(best.probability * 100, 2),
        is_damaged=DAMAGED_MARKER in best.label.lower(),
    )
