"""Model diagnostics — pure data logic, no prints.

Convergence (R-hat, bulk ESS, divergent transitions, E-BFMI), pointwise
beta-binomial log-likelihood, PSIS-LOO with Pareto-k flags, and posterior
predictive checks. Everything here reads the fitted InferenceData and the
model's index arrays; the only change ever made to a fitted model is the
attached ``log_likelihood`` group and its LOO attributes.

Non-fatal findings are emitted as ``DiagnosticWarning`` through ``warnings``.
"""

from __future__ import annotations

import warnings
from typing import Any

import arviz as az
import numpy as np
import polars as pl
import xarray as xr
from numpy.typing import NDArray
from scipy.special import expit

from sexlimited.config import (
    EBFMI_THRESHOLD,
    ESS_THRESHOLD,
    MAX_DIVERGENT_FRACTION,
    PARETO_K_THRESHOLD,
    PPC_N_REPS,
    PPC_P_LOWER,
    PPC_P_UPPER,
    RANDOM_SEED,
    RHAT_THRESHOLD,
)
from sexlimited.errors import ConvergenceError, DiagnosticWarning

try:
    from analysis.likelihood import CountLikelihood, get_likelihood
except ModuleNotFoundError:
    from likelihood import CountLikelihood, get_likelihood  # type: ignore[no-redef]

# Posterior variables checked for convergence (non-centered z_* and the
# unshifted phi_excess are sampler internals)
_MONITORED_PREFIXES = ("Intercept", "b_", "phi", "sd_", "r_")
_INTERNAL_VARS = ("phi_excess",)


def monitored_vars(idata: az.InferenceData) -> list[str]:
    return [
        v
        for v in idata.posterior.data_vars
        if v.startswith(_MONITORED_PREFIXES) and v not in _INTERNAL_VARS
    ]


# ── Convergence ─────────────────────────────────────────────────────────────


def summarize_convergence(
    idata: az.InferenceData,
    var_names: list[str] | None = None,
) -> dict[str, Any]:
    """Collect convergence diagnostics for the monitored parameters.

    Returns dict with per-variable ``rhat_max`` / ``ess_bulk_min`` (under
    ``per_var``), overall ``rhat_max``, ``ess_bulk_min``, ``divergences``,
    ``divergent_fraction``, ``ebfmi`` (per chain, empty when energy was not
    recorded), and the individual ``*_ok`` flags plus ``all_ok``.
    """
    if var_names is None:
        var_names = monitored_vars(idata)

    rhat = az.rhat(idata, var_names=var_names)
    ess = az.ess(idata, var_names=var_names, method="bulk")

    per_var: dict[str, dict[str, float]] = {}
    for var in var_names:
        per_var[var] = {
            "rhat_max": float(np.max(rhat[var].values)),
            "ess_bulk_min": float(np.min(ess[var].values)),
        }

    if per_var:
        rhat_max = float(np.max([d["rhat_max"] for d in per_var.values()]))
        ess_min = float(np.min([d["ess_bulk_min"] for d in per_var.values()]))
    else:
        rhat_max = ess_min = float("nan")

    n_chains = idata.posterior.sizes["chain"]
    n_draws = idata.posterior.sizes["draw"]
    if hasattr(idata, "sample_stats") and "diverging" in idata.sample_stats:
        divergences = int(idata.sample_stats["diverging"].sum().values)
    else:
        divergences = 0
    divergent_fraction = divergences / (n_chains * n_draws)

    if hasattr(idata, "sample_stats") and "energy" in idata.sample_stats:
        ebfmi = [float(v) for v in az.bfmi(idata)]
    else:
        ebfmi = []

    # NaN R-hat in any element (a stuck or single chain) counts as a failure
    rhat_ok = bool(np.isfinite(rhat_max) and rhat_max < RHAT_THRESHOLD)
    ess_ok = bool(np.isfinite(ess_min) and ess_min >= ESS_THRESHOLD)
    div_ok = divergent_fraction <= MAX_DIVERGENT_FRACTION
    bfmi_ok = all(v > EBFMI_THRESHOLD for v in ebfmi)

    return {
        "per_var": per_var,
        "rhat_max": rhat_max,
        "ess_bulk_min": ess_min,
        "divergences": divergences,
        "divergent_fraction": divergent_fraction,
        "ebfmi": ebfmi,
        "n_chains": n_chains,
        "n_draws": n_draws,
        "rhat_ok": rhat_ok,
        "ess_ok": ess_ok,
        "divergences_ok": div_ok,
        "ebfmi_ok": bfmi_ok,
        "all_ok": rhat_ok and ess_ok and div_ok,
        "rhat_threshold": RHAT_THRESHOLD,
        "ess_threshold": ESS_THRESHOLD,
        "max_divergent_fraction": MAX_DIVERGENT_FRACTION,
    }


def convergence_failures(diag: dict[str, Any]) -> list[str]:
    """Human-readable list of the failed convergence criteria."""
    failures = []
    if not diag["divergences_ok"]:
        failures.append(
            f"{diag['divergences']} divergent transitions "
            f"({diag['divergent_fraction']:.2%} > {diag['max_divergent_fraction']:.0%})"
        )
    if not diag["rhat_ok"]:
        bad = [v for v, d in diag["per_var"].items() if not d["rhat_max"] < RHAT_THRESHOLD]
        failures.append(
            f"R-hat {diag['rhat_max']:.4f} >= {diag['rhat_threshold']} ({', '.join(bad)})"
        )
    if not diag["ess_ok"]:
        bad = [v for v, d in diag["per_var"].items() if not d["ess_bulk_min"] >= ESS_THRESHOLD]
        failures.append(
            f"bulk ESS {diag['ess_bulk_min']:.0f} < {diag['ess_threshold']} ({', '.join(bad)})"
        )
    return failures


def check_convergence(
    idata: az.InferenceData,
    sex: str | None = None,
    *,
    raise_on_failure: bool = True,
) -> dict[str, Any]:
    """Gate a fit on its convergence diagnostics.

    Raises ConvergenceError (stage ``fit``) when any criterion fails. With
    ``raise_on_failure=False`` the failure is emitted as a DiagnosticWarning
    instead. A low E-BFMI is always only a warning.
    """
    diag = summarize_convergence(idata)
    failures = convergence_failures(diag)
    if failures:
        msg = "Sampler did not converge: " + "; ".join(failures)
        if raise_on_failure:
            raise ConvergenceError(msg, sex=sex, stage="fit", diagnostics=diag)
        warnings.warn(DiagnosticWarning(msg, sex=sex, stage="fit"), stacklevel=2)
    if not diag["ebfmi_ok"]:
        low = ", ".join(f"{v:.2f}" for v in diag["ebfmi"])
        msg = f"Low E-BFMI (< {EBFMI_THRESHOLD}) in at least one chain: {low}"
        warnings.warn(DiagnosticWarning(msg, sex=sex, stage="fit"), stacklevel=2)
    return diag


# ── Linear Predictor and Log-Likelihood ─────────────────────────────────────


def _draws(idata: az.InferenceData, var: str) -> NDArray[np.floating]:
    """Posterior values with (chain, draw) leading."""
    da = idata.posterior[var]
    return da.transpose("chain", "draw", ...).values


def compute_linear_predictor(
    idata: az.InferenceData,
    data: dict[str, Any],
) -> NDArray[np.floating]:
    """Logit-scale linear predictor for every draw and observation.

    eta = Intercept + b_treatment[t] + b_block[b] + b_marker[m]
          + r_population[p] + r_rearing_vial[v]

    Reference levels contribute zero. Returns shape (chain, draw, n_obs).
    """
    eta = _draws(idata, "Intercept")[..., None] + np.zeros(data["n_obs"])

    for factor, spec in data["fixed"].items():
        if not spec["contrasts"]:
            continue
        b = _draws(idata, f"b_{factor}")
        b_full = np.concatenate([np.zeros(b.shape[:2] + (1,)), b], axis=-1)
        eta = eta + b_full[..., spec["idx"]]

    for factor, spec in data["groups"].items():
        r = _draws(idata, f"r_{factor}")
        eta = eta + r[..., spec["idx"]]

    return eta


def compute_log_likelihood(
    idata: az.InferenceData,
    data: dict[str, Any],
    likelihood: CountLikelihood | None = None,
) -> xr.Dataset:
    """Pointwise beta-binomial log-likelihood from the posterior.

    Returns xarray Dataset with variable ``y`` of shape (chain, draw, obs_id).
    """
    likelihood = likelihood or get_likelihood("beta_binomial")
    mu = expit(compute_linear_predictor(idata, data))
    phi = _draws(idata, "phi")[..., None]

    log_lik = likelihood.logp(data["y"], data["n"], mu, phi)

    n_chains, n_draws = log_lik.shape[0], log_lik.shape[1]
    return xr.Dataset(
        {"y": (["chain", "draw", "obs_id"], log_lik)},
        coords={
            "chain": idata.posterior["chain"].values[:n_chains],
            "draw": idata.posterior["draw"].values[:n_draws],
            "obs_id": np.arange(data["n_obs"]),
        },
    )


def add_log_likelihood_to_idata(
    idata: az.InferenceData,
    log_lik_dataset: xr.Dataset,
) -> az.InferenceData:
    """Attach (or replace) the log_likelihood group; returns a new object."""
    new = idata.copy()
    if "log_likelihood" in new.groups():
        new.log_likelihood = log_lik_dataset
        return new
    return new + az.InferenceData(log_likelihood=log_lik_dataset)


# ── LOO-CV ──────────────────────────────────────────────────────────────────


def compute_loo(idata: az.InferenceData) -> az.ELPDData:
    """Compute LOO-CV using PSIS (Pareto-smoothed importance sampling).

    Requires log_likelihood group in idata.
    """
    return az.loo(idata, pointwise=True)


def attach_loo_attrs(idata: az.InferenceData, loo_result: az.ELPDData) -> None:
    """Record elpd / SE / p_loo on the log_likelihood group (in place)."""
    idata.log_likelihood.attrs["loo_elpd"] = float(loo_result.elpd_loo)
    idata.log_likelihood.attrs["loo_se"] = float(loo_result.se)
    idata.log_likelihood.attrs["loo_p"] = float(loo_result.p_loo)


def summarize_pareto_k(
    loo_result: az.ELPDData,
    *,
    threshold: float = PARETO_K_THRESHOLD,
    sex: str | None = None,
    warn: bool = True,
) -> dict[str, Any]:
    """Count observations in each Pareto k diagnostic category.

    Categories (Vehtari et al. 2017):
      good:       k < 0.5  (reliable)
      ok:         0.5 <= k < 0.7  (marginal)
      bad:        0.7 <= k < 1.0  (unreliable, higher variance)
      very_bad:   k >= 1.0  (PSIS fails)

    Observations with k strictly above ``threshold`` are flagged; their
    positions are returned in ``flagged_idx`` and a DiagnosticWarning is emitted.
    """
    k_values = np.asarray(loo_result.pareto_k.values, dtype=np.float64)
    flagged = np.flatnonzero(k_values > threshold)

    summary = {
        "good": int(np.sum(k_values < 0.5)),
        "ok": int(np.sum((k_values >= 0.5) & (k_values < 0.7))),
        "bad": int(np.sum((k_values >= 0.7) & (k_values < 1.0))),
        "very_bad": int(np.sum(k_values >= 1.0)),
        "total": len(k_values),
        "max_k": float(np.nanmax(k_values)) if len(k_values) else float("nan"),
        "mean_k": float(np.nanmean(k_values)) if len(k_values) else float("nan"),
        "threshold": threshold,
        "n_flagged": int(len(flagged)),
        "flagged_idx": [int(i) for i in flagged],
        "elpd_loo": float(loo_result.elpd_loo),
        "se": float(loo_result.se),
        "p_loo": float(loo_result.p_loo),
    }

    if warn and summary["n_flagged"] > 0:
        msg = (
            f"{summary['n_flagged']} of {summary['total']} observations have "
            f"Pareto k > {threshold} (max {summary['max_k']:.2f}); LOO is unreliable for them"
        )
        warnings.warn(DiagnosticWarning(msg, sex=sex, stage="loo"), stacklevel=2)
    return summary


def pareto_k_table(
    loo_result: az.ELPDData,
    data: dict[str, Any],
    *,
    threshold: float = PARETO_K_THRESHOLD,
) -> pl.DataFrame:
    """One row per vial: counts, Pareto k, pointwise elpd, flag. Worst k first."""
    return pl.DataFrame(
        {
            "vial_id": data["vial_ids"],
            "total_focal": data["y"],
            "total_all": data["n"],
            "pareto_k": np.asarray(loo_result.pareto_k.values, dtype=np.float64),
            "elpd_loo_i": np.asarray(loo_result.loo_i.values, dtype=np.float64),
        }
    ).with_columns(
        (pl.col("pareto_k") > threshold).alias("flagged")
    ).sort("pareto_k", descending=True)


# ── Posterior Predictive Checks ─────────────────────────────────────────────


def _ppc_statistics(y: NDArray, n: NDArray) -> dict[str, NDArray | float]:
    """Test statistics on the focal proportion; works on (n_obs,) or (n_reps, n_obs)."""
    prop = y / n
    return {
        "mean_prop": prop.mean(axis=-1),
        "sd_prop": prop.std(axis=-1),
        "zero_frac": (y == 0).mean(axis=-1),
    }


def _bayesian_p(replicated: NDArray, observed: float) -> float:
    """P(T_rep > T_obs) with ties counted half."""
    return float(np.mean(replicated > observed) + 0.5 * np.mean(replicated == observed))


def run_ppc(
    idata: az.InferenceData,
    data: dict[str, Any],
    *,
    n_reps: int = PPC_N_REPS,
    sex: str | None = None,
    seed: int = RANDOM_SEED,
    likelihood: CountLikelihood | None = None,
) -> dict[str, Any]:
    """Posterior predictive check battery.

    Draws ``n_reps`` posterior samples without replacement, replicates the
    outcome vector from each, and compares mean / SD of the focal proportion
    and the fraction of all-zero vials against the observed data.

    Returns dict with:
      - observed: {stat: value}
      - replicated: {stat: array of n_reps}
      - p_values: {stat: Bayesian p-value}
      - coverage: fraction of vials inside their 95% predictive interval
      - y_obs, y_rep (n_reps, n_obs), lower, upper
      - n_reps, n_obs
    A DiagnosticWarning is emitted for every p-value outside [0.025, 0.975].
    """
    likelihood = likelihood or get_likelihood("beta_binomial")
    y_obs = np.asarray(data["y"], dtype=np.int64)
    n = np.asarray(data["n"], dtype=np.int64)

    eta = compute_linear_predictor(idata, data)
    n_chains, n_draws = eta.shape[0], eta.shape[1]
    eta_flat = eta.reshape(n_chains * n_draws, -1)
    phi_flat = _draws(idata, "phi").reshape(-1)

    rng = np.random.default_rng(seed)
    n_reps = min(n_reps, len(phi_flat))
    sel = rng.choice(len(phi_flat), size=n_reps, replace=False)

    mu = expit(eta_flat[sel])
    y_rep = likelihood.random(n, mu, phi_flat[sel][:, None], rng)

    observed = {k: float(v) for k, v in _ppc_statistics(y_obs, n).items()}
    replicated = _ppc_statistics(y_rep, n)
    p_values = {k: _bayesian_p(replicated[k], observed[k]) for k in observed}

    lower = np.percentile(y_rep, 2.5, axis=0)
    upper = np.percentile(y_rep, 97.5, axis=0)
    covered = (y_obs >= lower) & (y_obs <= upper)

    for stat, p in p_values.items():
        if not PPC_P_LOWER <= p <= PPC_P_UPPER:
            msg = (
                f"Posterior predictive p-value for {stat} is {p:.3f} "
                f"(outside [{PPC_P_LOWER}, {PPC_P_UPPER}])"
            )
            warnings.warn(DiagnosticWarning(msg, sex=sex, stage="ppc"), stacklevel=2)

    return {
        "observed": observed,
        "replicated": replicated,
        "p_values": p_values,
        "coverage": float(covered.mean()),
        "y_obs": y_obs,
        "y_rep": y_rep,
        "lower": lower,
        "upper": upper,
        "n_reps": n_reps,
        "n_obs": len(y_obs),
    }


def ppc_table(ppc: dict[str, Any]) -> pl.DataFrame:
    """Observed vs replicated statistics, for the report."""
    rows = []
    for stat, obs in ppc["observed"].items():
        rep = ppc["replicated"][stat]
        rows.append(
            {
                "statistic": stat,
                "observed": obs,
                "replicated_mean": float(np.mean(rep)),
                "replicated_lower": float(np.percentile(rep, 2.5)),
                "replicated_upper": float(np.percentile(rep, 97.5)),
                "bayesian_p": ppc["p_values"][stat],
            }
        )
    return pl.DataFrame(rows)
