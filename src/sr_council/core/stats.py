"""Derivation of missing outcome statistics.

Meta-analysis needs a standard error (or SD) per outcome. Articles often report only
one of the two, or only a mean difference with a p value. These helpers back-fill the
missing value and flag the outcome as derived.

All functions are pure. They never raise for degenerate inputs, they return 0 instead.
"""

from __future__ import annotations

import math
from statistics import NormalDist

from sr_council.core.schemas import OutcomeResult

_STANDARD_NORMAL = NormalDist()


def standard_error_from_sd(sd: float, n: int) -> float:
    """SE = SD / sqrt(n). Returns 0 when n <= 0."""
    if n <= 0:
        return 0.0
    return sd / math.sqrt(n)


def sd_from_standard_error(se: float, n: int) -> float:
    """SD = SE * sqrt(n). Returns 0 when n <= 0."""
    if n <= 0:
        return 0.0
    return se * math.sqrt(n)


def z_from_p(p: float) -> float:
    """Two-tailed critical z value for a p value, i.e. the inverse normal of 1 - p/2.

    `statistics.NormalDist.inv_cdf` implements Wichura's AS241 (PPND16) algorithm,
    accurate to about 1e-16.

    Returns 0 for p outside the open interval (0, 1).

    Examples:
        >>> round(z_from_p(0.05), 2)
        1.96
    """
    if not 0.0 < p < 1.0:
        return 0.0
    return _STANDARD_NORMAL.inv_cdf(1.0 - p / 2.0)


def standard_error_from_mean_difference(mean_difference: float, p: float) -> float:
    """SE of a mean difference from its two-tailed p value, |MD / z|.

    Returns 0 if no z value can be computed for ``p``.
    """
    z = z_from_p(p)
    if z == 0.0:
        return 0.0
    return abs(mean_difference / z)


def derive_missing_stats(outcome: OutcomeResult) -> OutcomeResult:
    """Back-fill one missing dispersion statistic of the intervention arm.

    - SE missing, SD and n present: SE is computed from SD.
    - otherwise SD missing, SE and n present: SD is computed from SE.

    Only ``intervention_n > 0`` is used. Existing values are never overwritten and an
    incoming ``is_derived=True`` is kept. Returns a new `OutcomeResult`, the input is
    not modified. Applying it twice gives the same result as applying it once.
    """
    n = outcome.intervention_n
    if n is None or n <= 0:
        return outcome

    sd = outcome.intervention_sd
    se = outcome.std_error

    if se is None and sd is not None:
        return outcome.model_copy(
            update={"std_error": standard_error_from_sd(sd, n), "is_derived": True}
        )
    if sd is None and se is not None:
        return outcome.model_copy(
            update={
                "intervention_sd": sd_from_standard_error(se, n),
                "is_derived": True,
            }
        )
    return outcome
