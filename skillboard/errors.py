"""Error types raised by the fetch, reconcile and update-cycle layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict


class SkillboardError(Exception):
    """Base class for errors raised by this package."""


class UpstreamFetchError(SkillboardError):
    """An upstream HTTP call failed.

    `retryable` is True for rate limits and server errors (the retry layer
    already gave up on those), False for client errors and exhausted fallbacks.
    """

    def __init__(self, message: str, *, retryable: bool = False, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class DataQualityError(SkillboardError):
    """A response parsed but cannot be used (all-null primary field, series too short)."""


class GroundTruthUnavailableError(SkillboardError):
    """Every station-report source failed; nothing can be verified this cycle."""


@dataclass
class CycleDiagnostics:
    """Counters collected while one update cycle runs."""
    observations_stored: int = 0
    forecasts_stored: int = 0
    synthetic_stored: int = 0
    verifications_stored: int = 0
    dropped_before_issue: int = 0
    dropped_missing_primary: int = 0
    days_rolled_up: int = 0
    pruned_rows: int = 0
    models_failed: Dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "observations_stored": self.observations_stored,
            "forecasts_stored": self.forecasts_stored,
            "synthetic_stored": self.synthetic_stored,
            "verifications_stored": self.verifications_stored,
            "dropped_before_issue": self.dropped_before_issue,
            "dropped_missing_primary": self.dropped_missing_primary,
            "days_rolled_up": self.days_rolled_up,
            "pruned_rows": self.pruned_rows,
            "models_failed": dict(self.models_failed),
        }
