"""Beta-binomial fitness model — design indices, PyMC graph, sampling, fit cache.

One model per sex:

    logit(mu_i) = Intercept
                  + b_treatment[t_i] + b_block[b_i] + b_marker[m_i]   (reference-coded)
                  + r_population[p_i] + r_rearing_vial[v_i]            (partial pooling)
    phi         = 2 + phi_excess,  phi_excess ~ Exponential(1)
    total_focal_i ~ BetaBinomial(total_all_i, mu_i * phi, (1 - mu_i) * phi)

Reference levels (Control, first block, first marker) are absorbed into the
intercept. Group-level deviations are non-centered: r = sd * z, z ~ Normal(0, 1).

Fitted InferenceData is cached as NetCDF, keyed by FitConfig + data fingerprint.
"""

from __future__ import annotations

import sys
import time
from dataclasses import dataclass
from pathlib import Path

import arviz as az
import numpy as np
import polars as pl
import pymc as pm
import pytensor.tensor as pt

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from sexlimited.config import EBFMI_THRESHOLD, MARKER_LEVELS, TREATMENT_LEVELS
from sexlimited.errors import FormatError

try:
    from analysis.likelihood import PHI_LOWER_BOUND, get_likelihood
except ModuleNotFoundError:
    from likelihood import PHI_LOWER_BOUND, get_likelihood  # type: ignore[no-redef]

try:
    from analysis.model_spec import FitConfig, PriorSpec
except ModuleNotFoundError:
    from model_spec import FitConfig, PriorSpec  # type: ignore[no-redef]

try:
    from analysis.fitness_data import data_fingerprint
except ModuleNotFoundError:
    from fitness_data import data_fingerprint  # type: ignore[no-redef]

try:
    from analysis.diagnostics_data import check_convergence
except ModuleNotFoundError:
    from diagnostics_data import check_convergence  # type: ignore[no-redef]

# Fixed enumerations fix the level order (and hence the reference level)
_FIXED_LEVEL_ORDER: dict[str, tuple[str, ...]] = {
    "treatment": TREATMENT_LEVELS,
    "marker": MARKER_LEVELS,
}


def _natural_key(value: str) -> tuple[int, float | str]:
    """Sort '2' before '10'; numeric labels before text labels."""
    try:
        return (0, float(value))
    except ValueError:
        return (1, value)


def _ordered_levels(column: pl.Series, factor: str) -> list[str]:
    present = set(column.unique().to_list())
    if factor in _FIXED_LEVEL_ORDER:
        return [lv for lv in _FIXED_LEVEL_ORDER[factor] if lv in present]
    return sorted(present, key=_natural_key)


# ── Phase 1: Prepare model data ─────────────────────────────────────────────


def prepare_model_data(df: pl.DataFrame, config: FitConfig) -> dict:
    """Convert one sex's table into index arrays for the model graph.

    Vials with no offspring at all carry no information about the focal share
    and are dropped (the count is reported as ``n_dropped_zero_total``).

    Returns a dict with:
    - y, n: focal and total offspring counts (int64)
    - fixed: {factor: {levels, reference, contrasts, idx}}
    - groups: {factor: {levels, idx}}
    - vial_ids, n_obs, sex, n_dropped_zero_total
    """
    sex = config.sex
    sub = df.filter(pl.col("sex") == sex) if "sex" in df.columns else df
    n_before = sub.height
    sub = sub.filter(pl.col("total_all") > 0)
    n_dropped = n_before - sub.height

    if sub.height == 0:
        raise FormatError("No vials with offspring to model", sex=sex, stage="prepare")

    present = set(sub["treatment"].unique().to_list())
    missing = [t for t in TREATMENT_LEVELS if t not in present]
    if missing:
        msg = f"Treatment levels absent from data: {', '.join(missing)}"
        raise FormatError(msg, sex=sex, stage="prepare")

    fixed: dict[str, dict] = {}
    for factor in config.fixed_effects:
        levels = _ordered_levels(sub[factor], factor)
        lookup = {lv: i for i, lv in enumerate(levels)}
        fixed[factor] = {
            "levels": levels,
            "reference": levels[0],
            "contrasts": levels[1:],
            "idx": np.array([lookup[v] for v in sub[factor].to_list()], dtype=np.int64),
        }

    groups: dict[str, dict] = {}
    for factor in config.group_effects:
        levels = sorted(set(sub[factor].to_list()), key=_natural_key)
        lookup = {lv: i for i, lv in enumerate(levels)}
        groups[factor] = {
            "levels": levels,
            "idx": np.array([lookup[v] for v in sub[factor].to_list()], dtype=np.int64),
        }

    return {
        "sex": sex,
        "y": sub["total_focal"].to_numpy().astype(np.int64),
        "n": sub["total_all"].to_numpy().astype(np.int64),
        "vial_ids": sub["vial_id"].to_list(),
        "n_obs": sub.height,
        "n_dropped_zero_total": n_dropped,
        "fixed": fixed,
        "groups": groups,
    }


# ── Phase 2: Build and sample ───────────────────────────────────────────────


def build_dispersion(prior: PriorSpec, lower: float = PHI_LOWER_BOUND):
    """Dispersion phi with a hard lower bound.

    For an Exponential prior the bound is a shift (memorylessness makes
    2 + Exponential(lam) exactly the Exponential truncated at 2); other
    families go through ``pm.Truncated``.
    """
    if prior.distribution == "exponential":
        phi_excess = prior.build("phi_excess")
        return pm.Deterministic("phi", lower + phi_excess)
    return pm.Truncated("phi", prior.dist(), lower=lower)


def build_fitness_graph(data: dict, config: FitConfig) -> pm.Model:
    """Build the beta-binomial regression graph (no sampling)."""
    priors = config.priors
    likelihood = get_likelihood(config.likelihood)

    coords: dict[str, list] = {"obs_id": list(range(data["n_obs"]))}
    for factor, spec in data["fixed"].items():
        if spec["contrasts"]:
            coords[f"{factor}_contrast"] = spec["contrasts"]
    for factor, spec in data["groups"].items():
        coords[factor] = spec["levels"]

    with pm.Model(coords=coords) as model:
        intercept = priors.intercept.build("Intercept")
        eta = intercept + pt.zeros(data["n_obs"])

        # --- Reference-coded fixed effects ---
        for factor, spec in data["fixed"].items():
            if not spec["contrasts"]:
                print(f"  {factor}: single level ({spec['reference']}) — term dropped")
                continue
            b = priors.fixed.build(f"b_{factor}", dims=f"{factor}_contrast")
            b_full = pt.concatenate([pt.zeros(1), b])
            eta = eta + b_full[spec["idx"]]

        # --- Non-centered group-level deviations ---
        for factor, spec in data["groups"].items():
            sd = priors.group_sd.build(f"sd_{factor}")
            z = pm.Normal(f"z_{factor}", mu=0, sigma=1, dims=factor)
            r = pm.Deterministic(f"r_{factor}", sd * z, dims=factor)
            eta = eta + r[spec["idx"]]

        mu = pm.math.invlogit(eta)
        phi = build_dispersion(priors.phi)

        likelihood.register("y", mu=mu, phi=phi, n=data["n"], observed=data["y"], dims="obs_id")

    return model


def sample_fitness_model(model: pm.Model, config: FitConfig) -> tuple[az.InferenceData, float]:
    """Sample with PyMC NUTS (default) or nutpie.

    PyMC honours target_accept and max_treedepth. nutpie tunes its own step
    size, so those two settings are reported and not applied.

    Returns (InferenceData, sampling_time_seconds).
    """
    s = config.sampler
    print(f"  Sampling: {s.describe()}")

    t0 = time.time()
    if s.sampler == "nutpie":
        import nutpie

        print(
            f"  Note: target_accept={s.target_accept}, max_treedepth={s.max_treedepth} "
            "not applied (nutpie uses adaptive dual averaging)"
        )
        print("  Compiling model with nutpie...")
        compiled = nutpie.compile_pymc_model(model)
        idata = nutpie.sample(
            compiled,
            draws=s.draws,
            tune=s.warmup,
            chains=s.chains,
            seed=s.seed,
            progress_bar=True,
            store_divergences=True,
        )
    else:
        with model:
            idata = pm.sample(
                draws=s.draws,
                tune=s.warmup,
                chains=s.chains,
                cores=s.cores,
                random_seed=s.seed,
                nuts={"target_accept": s.target_accept, "max_treedepth": s.max_treedepth},
                compute_convergence_checks=False,
                progressbar=True,
            )
    sampling_time = time.time() - t0

    print(f"  Sampling complete in {sampling_time:.1f}s")
    return idata, sampling_time


# ── Phase 3: Fit with cache ─────────────────────────────────────────────────


@dataclass
class FitResult:
    """Outcome of one fitting run for one sex."""

    config: FitConfig
    data: dict
    idata: az.InferenceData
    convergence: dict
    cache_path: Path | None
    from_cache: bool
    sampling_time: float


def load_cached_fit(path: Path, cache_key: str) -> az.InferenceData | None:
    """Load a cached fit if it exists and was written for the same key."""
    if not path.exists():
        return None
    idata = az.from_netcdf(str(path))
    stored = idata.posterior.attrs.get("cache_key")
    if stored != cache_key:
        print(f"  Cache file {path.name} has a different key — ignoring")
        return None
    return idata


def fit_fitness_model(
    df: pl.DataFrame,
    config: FitConfig,
    cache_dir: Path | None = None,
    *,
    refit: bool = False,
    allow_unconverged: bool = False,
) -> FitResult:
    """Fit (or load) the model for ``config.sex`` and gate it on convergence.

    Raises ConvergenceError unless ``allow_unconverged`` is set, in which case
    the failure is downgraded to a DiagnosticWarning.
    """
    sex_df = df.filter(pl.col("sex") == config.sex)
    data = prepare_model_data(sex_df, config)
    print(
        f"  {config.sex}: {data['n_obs']} vials modelled"
        f" ({data['n_dropped_zero_total']} without offspring dropped)"
    )
    for factor, spec in data["groups"].items():
        print(f"    {factor}: {len(spec['levels'])} levels")

    fingerprint = data_fingerprint(sex_df)
    cache_key = config.cache_key(fingerprint)
    cache_path = config.cache_path(cache_dir, fingerprint) if cache_dir is not None else None

    idata = None
    if cache_path is not None and not refit:
        idata = load_cached_fit(cache_path, cache_key)
        if idata is not None:
            print(f"  Cache hit: {cache_path}")

    from_cache = idata is not None
    sampling_time = 0.0
    if idata is None:
        model = build_fitness_graph(data, config)
        idata, sampling_time = sample_fitness_model(model, config)
        idata.posterior.attrs["cache_key"] = cache_key
        idata.posterior.attrs["sex"] = config.sex
        idata.posterior.attrs["formula"] = config.formula
        if cache_path is not None:
            cache_path.parent.mkdir(parents=True, exist_ok=True)
            idata.to_netcdf(str(cache_path))
            print(f"  Cached fit: {cache_path}")

    convergence = check_convergence(idata, config.sex, raise_on_failure=not allow_unconverged)
    print_convergence(convergence)

    return FitResult(
        config=config,
        data=data,
        idata=idata,
        convergence=convergence,
        cache_path=cache_path,
        from_cache=from_cache,
        sampling_time=sampling_time,
    )


def print_convergence(diag: dict) -> None:
    """Console summary of the convergence checks."""
    for var, d in diag["per_var"].items():
        status = "OK" if d["rhat_max"] < diag["rhat_threshold"] else "WARNING"
        print(
            f"  {var:<20} R-hat max = {d['rhat_max']:.4f}  "
            f"ESS min = {d['ess_bulk_min']:>7.0f}  {status}"
        )
    div_status = "OK" if diag["divergences_ok"] else "WARNING"
    print(
        f"  Divergences: {diag['divergences']} ({diag['divergent_fraction']:.2%})  {div_status}"
    )
    for i, v in enumerate(diag["ebfmi"]):
        print(f"  E-BFMI chain {i}: {v:.3f}  {'OK' if v > EBFMI_THRESHOLD else 'WARNING'}")
    print(f"  Convergence: {'PASSED' if diag['all_ok'] else 'FAILED'}")
