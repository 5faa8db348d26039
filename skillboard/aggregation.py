"""Lead-time buckets and per-(model, variable) error statistics."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from skillboard.domain import (
    OUTLIER_ABS_ERROR_CEILING,
    VERIFICATION_VARIABLES,
    BucketInclusivity,
    ModelVariableStats,
)
from skillboard.models import DailyStatAccumulator, VerificationRecord
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="aggregation")

# Upper edges (hours) of the default buckets.
BUCKET_EDGES: Tuple[Tuple[str, int], ...] = (
    ("24h", 24),
    ("48h", 48),
    ("72h", 72),
    ("5day", 120),
    ("7day", 168),
    ("10day", 240),
    ("16day", 384),
)
DEFAULT_BUCKET = "24h"


@dataclass(frozen=True)
class LeadTimeBucket:
    """A lead-time range in hours.

    `half_open` buckets hold `[lower, upper)`; `closed` buckets hold
    `[lower, upper]`.
    """
    name: str
    lower: float
    upper: float
    inclusivity: BucketInclusivity = BucketInclusivity.HALF_OPEN

    def contains(self, lead_time_hours: float) -> bool:
        if lead_time_hours < self.lower:
            return False
        if self.inclusivity == BucketInclusivity.CLOSED:
            return lead_time_hours <= self.upper
        return lead_time_hours < self.upper


def default_buckets(inclusivity: BucketInclusivity | str = BucketInclusivity.HALF_OPEN) -> List[LeadTimeBucket]:
    """The standard horizon buckets as a disjoint partition of whole lead hours.

    Half-open: 24h = [0, 24), 48h = [24, 48), ...
    Closed:    24h = [0, 24], 48h = [25, 48], ...
    """
    inclusivity = BucketInclusivity(inclusivity)
    buckets: List[LeadTimeBucket] = []
    previous = None
    for name, edge in BUCKET_EDGES:
        if previous is None:
            lower = 0
        elif inclusivity == BucketInclusivity.CLOSED:
            lower = previous + 1
        else:
            lower = previous
        buckets.append(LeadTimeBucket(name=name, lower=lower, upper=edge, inclusivity=inclusivity))
        previous = edge
    return buckets


def _overlaps(a: LeadTimeBucket, b: LeadTimeBucket) -> bool:
    lo = max(a.lower, b.lower)
    hi = min(a.upper, b.upper)
    if lo < hi:
        return True
    # touching edges only collide when both buckets keep that edge
    return lo == hi and a.contains(lo) and b.contains(lo)


def validate_disjoint(buckets: Sequence[LeadTimeBucket]) -> None:
    """Raise ValueError when bucket names repeat, a bucket is empty, or two buckets overlap."""
    names = [b.name for b in buckets]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate bucket names: {names}")
    for b in buckets:
        if b.upper < b.lower or (b.upper == b.lower and not b.contains(b.lower)):
            raise ValueError(f"Bucket {b.name} is empty: [{b.lower}, {b.upper}]")
    for i, a in enumerate(buckets):
        for b in buckets[i + 1:]:
            if _overlaps(a, b):
                raise ValueError(f"Buckets {a.name} and {b.name} overlap")


def classify_lead_time(lead_time_hours: float, buckets: Sequence[LeadTimeBucket]) -> Optional[LeadTimeBucket]:
    """Return the bucket owning this lead time, or None if it falls outside every bucket."""
    for b in buckets:
        if b.contains(lead_time_hours):
            return b
    return None


def bucket_by_name(name: str, buckets: Sequence[LeadTimeBucket]) -> Optional[LeadTimeBucket]:
    for b in buckets:
        if b.name == name:
            return b
    return None


def is_outlier(record: VerificationRecord) -> bool:
    """Absolute errors beyond the ceiling are rejected unless the variable is exempt."""
    spec = VERIFICATION_VARIABLES.get(record.variable)
    if spec is not None and spec.outlier_exempt:
        return False
    return abs(record.absolute_error) > OUTLIER_ABS_ERROR_CEILING


def accumulate(
    records: Iterable[VerificationRecord],
    bucket: LeadTimeBucket,
    *,
    day: Optional[str] = None,
) -> Dict[Tuple[str, str], DailyStatAccumulator]:
    """Fold the in-bucket, non-outlier records into one accumulator per (model, variable)."""
    out: Dict[Tuple[str, str], DailyStatAccumulator] = {}
    for r in records:
        if not bucket.contains(r.lead_time_hours) or is_outlier(r):
            continue
        key = (r.model_id, r.variable)
        acc = out.get(key) or DailyStatAccumulator.empty(day, r.model_id, r.variable, bucket.name)
        out[key] = acc.observe(r)
    return out


def stats_from_accumulator(acc: DailyStatAccumulator) -> Optional[ModelVariableStats]:
    n = acc.count
    if n == 0:
        return None
    mae = acc.sum_abs_error / n
    mse = acc.sum_sq_error / n
    std_error = None
    if n >= 2:
        variance = max((acc.sum_abs_error_sq - n * mae * mae) / (n - 1), 0.0)
        std_error = math.sqrt(variance) / math.sqrt(n)
    return ModelVariableStats(
        model_id=acc.model_id,
        variable=acc.variable,
        mae=mae,
        mse=mse,
        rmse=math.sqrt(mse),
        bias=acc.sum_bias / n,
        std_error=std_error,
        n=n,
    )


def _finish(accumulators: Dict[Tuple[str, str], DailyStatAccumulator]) -> List[ModelVariableStats]:
    stats = [stats_from_accumulator(accumulators[k]) for k in sorted(accumulators)]
    return [s for s in stats if s is not None]


def aggregate_records(
    records: Iterable[VerificationRecord],
    bucket: LeadTimeBucket,
    *,
    variable: Optional[str] = None,
) -> List[ModelVariableStats]:
    """Statistics straight from verification records (the live path)."""
    if variable is not None:
        records = (r for r in records if r.variable == variable)
    return _finish(accumulate(records, bucket))


def aggregate_accumulators(
    accumulators: Iterable[DailyStatAccumulator],
    *,
    variable: Optional[str] = None,
) -> List[ModelVariableStats]:
    """Statistics from daily accumulators (the rollup path); merges across days."""
    merged: Dict[Tuple[str, str], DailyStatAccumulator] = {}
    for acc in accumulators:
        if variable is not None and acc.variable != variable:
            continue
        key = (acc.model_id, acc.variable)
        merged[key] = merged[key] + acc if key in merged else acc
    return _finish(merged)
