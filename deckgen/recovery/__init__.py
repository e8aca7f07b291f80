"""JSON failure classification, repair and normalization."""

from deckgen.recovery.classifier import FailureClassifier, classify_json_failure
from deckgen.recovery.degeneration import DegenerationDetector
from deckgen.recovery.normalize import fallback_value, minimal_wrapper, normalize_output
from deckgen.recovery.repair import RepairFailedError, RepairOutcome, RepairPipeline

__all__ = [
    "DegenerationDetector",
    "FailureClassifier",
    "RepairFailedError",
    "RepairOutcome",
    "RepairPipeline",
    "classify_json_failure",
    "fallback_value",
    "minimal_wrapper",
    "normalize_output",
]
