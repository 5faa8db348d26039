"""Composite scoring and leaderboard row construction.

For every composite variable in a bucket the consensus baseline is the mean
MAE across the models that report it. Each model's contribution is its MAE
divided by `max(baseline, threshold)`, and its overall score is the mean of
its contributions. A model that reports no composite variable is left off
the board. Lower is better.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence

from skillboard.domain import (
    MISSING_DATA_PENALTY_SCORE,
    OVERALL_SCORE,
    VERIFICATION_VARIABLES,
    LeaderboardRow,
    MissingVariablePolicy,
    ModelVariableStats,
    min_mae_threshold,
    model_ids,
)
from skillboard.models import SYNTHETIC_MODEL_IDS
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="scoring")


def ranked_model_ids() -> List[str]:
    """Models eligible for ranking: the catalogue plus the synthetic consensus models."""
    return model_ids() + list(SYNTHETIC_MODEL_IDS)


def _eligible(stats: Iterable[ModelVariableStats]) -> List[ModelVariableStats]:
    known = set(ranked_model_ids())
    return [s for s in stats if s.model_id in known and s.n > 0]


def normalization_denominators(stats: Sequence[ModelVariableStats]) -> Dict[str, float]:
    """max(consensus mean MAE, per-variable threshold) for each composite variable present."""
    maes: Dict[str, List[float]] = defaultdict(list)
    for s in stats:
        spec = VERIFICATION_VARIABLES.get(s.variable)
        if spec is not None and spec.composite:
            maes[s.variable].append(s.mae)
    return {
        variable: max(sum(values) / len(values), min_mae_threshold(variable))
        for variable, values in maes.items()
    }


def composite_rows(
    stats: Iterable[ModelVariableStats],
    policy: MissingVariablePolicy | str = MissingVariablePolicy.NO_PENALTY,
) -> List[LeaderboardRow]:
    """Rank models by normalized composite score."""
    policy = MissingVariablePolicy(policy)
    eligible = _eligible(stats)
    denominators = normalization_denominators(eligible)

    by_model: Dict[str, List[ModelVariableStats]] = defaultdict(list)
    for s in eligible:
        if s.variable in denominators:
            by_model[s.model_id].append(s)

    rows: List[LeaderboardRow] = []
    for model, model_stats in by_model.items():
        if not model_stats:
            continue
        contributions = [s.mae / denominators[s.variable] for s in model_stats]
        if policy == MissingVariablePolicy.FIXED_PENALTY:
            missing = len(denominators) - len(model_stats)
            contributions.extend([MISSING_DATA_PENALTY_SCORE] * missing)
        n_vars = len(model_stats)
        avg_mse = sum(s.mse for s in model_stats) / n_vars
        rows.append(
            LeaderboardRow(
                model=model,
                avg_mae=sum(contributions) / len(contributions),
                avg_rmse=avg_mse ** 0.5,
                avg_mse=avg_mse,
                avg_bias=sum(abs(s.bias) for s in model_stats) / n_vars,
                std_error=None,
                total_verifications=max(s.n for s in model_stats),
                variables_reported=n_vars,
            )
        )
    rows.sort(key=lambda r: (r.avg_mae, r.model))
    return rows


def variable_rows(stats: Iterable[ModelVariableStats], variable: str) -> List[LeaderboardRow]:
    """Rank models by raw MAE for a single variable."""
    rows = [
        LeaderboardRow(
            model=s.model_id,
            avg_mae=s.mae,
            avg_rmse=s.rmse,
            avg_mse=s.mse,
            avg_bias=s.bias,
            std_error=s.std_error,
            total_verifications=s.n,
            variables_reported=1,
        )
        for s in _eligible(stats)
        if s.variable == variable
    ]
    rows.sort(key=lambda r: (r.avg_mae, r.model))
    return rows


def leaderboard_rows(
    stats: Iterable[ModelVariableStats],
    variable: str = OVERALL_SCORE,
    policy: Optional[MissingVariablePolicy | str] = None,
) -> List[LeaderboardRow]:
    """Composite rows for `overall_score`, plain MAE ranking otherwise."""
    if variable == OVERALL_SCORE:
        return composite_rows(stats, policy or MissingVariablePolicy.NO_PENALTY)
    return variable_rows(stats, variable)
