"""Posterior summaries — treatment probabilities and their contrasts, no prints.

For every retained draw the per-treatment probability of a focal offspring is

    p_Control        = expit(Intercept)
    p_Female_limited = expit(Intercept + b_treatment[Female_limited])
    p_Male_limited   = expit(Intercept + b_treatment[Male_limited])

at the reference block, reference marker, and zero group deviations.
Differences and ratios are formed draw by draw, so every interval below
reflects the joint posterior rather than independently summarized margins.
Ratio draws whose control probability is exactly 0 are excluded and counted.
"""

from __future__ import annotations

from typing import Any

import arviz as az
import numpy as np
import polars as pl
from numpy.typing import ArrayLike, NDArray
from scipy.special import expit
from scipy.special import logit as _logit

from sexlimited.config import CI_LEVEL, CONTROL_LEVEL, TREATMENT_CONTRASTS, TREATMENT_LEVELS

# (name, numerator, subtrahend)
DIFFERENCES: tuple[tuple[str, str, str], ...] = (
    ("female_minus_control", "Female_limited", "Control"),
    ("male_minus_control", "Male_limited", "Control"),
    ("female_minus_male", "Female_limited", "Male_limited"),
)

# (name, numerator, denominator)
RATIOS: tuple[tuple[str, str, str], ...] = (
    ("female_over_control", "Female_limited", "Control"),
    ("male_over_control", "Male_limited", "Control"),
)

FIXED_EFFECT_VARS = (
    "Intercept",
    "b_treatment",
    "b_block",
    "b_marker",
    "phi",
    "sd_population",
    "sd_rearing_vial",
)

_TAIL = (1.0 - CI_LEVEL) / 2.0 * 100.0


def inverse_logit(x: ArrayLike) -> NDArray[np.floating]:
    """Logistic function 1 / (1 + exp(-x)), stable for large |x|."""
    return expit(np.asarray(x, dtype=np.float64))


def logit(p: ArrayLike) -> NDArray[np.floating]:
    """log(p / (1 - p)); -inf at 0 and +inf at 1."""
    return _logit(np.asarray(p, dtype=np.float64))


def _flat(idata: az.InferenceData, var: str, **sel: str) -> NDArray[np.floating]:
    da = idata.posterior[var]
    if sel:
        da = da.sel(sel)
    return da.transpose("chain", "draw").values.reshape(-1)


def extract_treatment_draws(idata: az.InferenceData) -> dict[str, NDArray[np.floating]]:
    """Per-draw probability for each treatment, flattened over chains."""
    intercept = _flat(idata, "Intercept")
    draws = {CONTROL_LEVEL: inverse_logit(intercept)}
    for level in TREATMENT_CONTRASTS:
        b = _flat(idata, "b_treatment", treatment_contrast=level)
        draws[level] = inverse_logit(intercept + b)
    return draws


def compute_contrast_draws(probs: dict[str, NDArray[np.floating]]) -> dict[str, Any]:
    """Per-draw differences and ratios between treatment probabilities.

    Returns dict with:
      - differences: {name: array} (same length as the input draws)
      - ratios: {name: array}, NaN where the denominator is exactly 0
      - excluded: {name: boolean mask of the excluded ratio draws}
      - n_excluded: {name: int}
    """
    differences = {name: probs[a] - probs[b] for name, a, b in DIFFERENCES}

    ratios: dict[str, NDArray[np.floating]] = {}
    excluded: dict[str, NDArray[np.bool_]] = {}
    for name, num, den in RATIOS:
        zero = probs[den] == 0.0
        safe_den = np.where(zero, 1.0, probs[den])
        ratios[name] = np.where(zero, np.nan, probs[num] / safe_den)
        excluded[name] = zero

    return {
        "differences": differences,
        "ratios": ratios,
        "excluded": excluded,
        "n_excluded": {name: int(mask.sum()) for name, mask in excluded.items()},
    }


def summarize_draws(
    x: ArrayLike,
    exclude: ArrayLike | None = None,
) -> dict[str, float | int]:
    """Mean and central 95% percentile interval of a draw vector.

    ``exclude`` is a boolean mask of draws to leave out.
    """
    values = np.asarray(x, dtype=np.float64)
    if exclude is not None:
        values = values[~np.asarray(exclude, dtype=bool)]
    if values.size == 0:
        nan = float("nan")
        return {"mean": nan, "ci_lower": nan, "ci_upper": nan, "n_draws": 0}
    lower, upper = np.percentile(values, [_TAIL, 100.0 - _TAIL])
    return {
        "mean": float(values.mean()),
        "ci_lower": float(lower),
        "ci_upper": float(upper),
        "n_draws": int(values.size),
    }


def summarize_treatments(probs: dict[str, NDArray[np.floating]]) -> pl.DataFrame:
    """One row per treatment: mean probability and 95% interval."""
    rows = [{"treatment": level, **summarize_draws(probs[level])} for level in TREATMENT_LEVELS]
    return pl.DataFrame(rows)


def summarize_contrasts(contrasts: dict[str, Any]) -> pl.DataFrame:
    """One row per contrast. Ratio rows report how many draws were excluded."""
    rows = []
    for name, a, b in DIFFERENCES:
        rows.append(
            {
                "contrast": name,
                "kind": "difference",
                "comparison": f"{a} - {b}",
                **summarize_draws(contrasts["differences"][name]),
                "n_excluded": 0,
            }
        )
    for name, a, b in RATIOS:
        rows.append(
            {
                "contrast": name,
                "kind": "ratio",
                "comparison": f"{a} / {b}",
                **summarize_draws(contrasts["ratios"][name], exclude=contrasts["excluded"][name]),
                "n_excluded": contrasts["n_excluded"][name],
            }
        )
    return pl.DataFrame(rows)


def summarize_posterior(idata: az.InferenceData) -> dict[str, Any]:
    """Treatment and contrast tables, both computed from one set of draws."""
    probs = extract_treatment_draws(idata)
    contrasts = compute_contrast_draws(probs)
    return {
        "probs": probs,
        "contrasts": contrasts,
        "treatments": summarize_treatments(probs),
        "contrast_table": summarize_contrasts(contrasts),
        "n_draws": len(probs[CONTROL_LEVEL]),
    }


def summarize_fixed_effects(idata: az.InferenceData) -> pl.DataFrame:
    """Coefficient table: mean, SD, 95% interval, R-hat, bulk ESS.

    Vector-valued coefficients get one row per level, e.g.
    ``b_treatment[Female_limited]``.
    """
    rows = []
    for var in FIXED_EFFECT_VARS:
        if var not in idata.posterior:
            continue
        da = idata.posterior[var]
        extra = [d for d in da.dims if d not in ("chain", "draw")]
        if extra:
            dim = extra[0]
            items = [(f"{var}[{label}]", da.sel({dim: label})) for label in da[dim].values]
        else:
            items = [(var, da)]

        for name, sub in items:
            arr = sub.transpose("chain", "draw").values
            flat = arr.reshape(-1)
            lower, upper = np.percentile(flat, [_TAIL, 100.0 - _TAIL])
            rows.append(
                {
                    "parameter": name,
                    "mean": float(flat.mean()),
                    "sd": float(flat.std()),
                    "ci_lower": float(lower),
                    "ci_upper": float(upper),
                    "r_hat": float(az.rhat(arr)),
                    "ess_bulk": float(az.ess(arr, method="bulk")),
                }
            )
    return pl.DataFrame(rows)
