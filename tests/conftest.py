"""Shared fixtures for the fitness-analysis tests.

Provides a validated synthetic assay table, the female model's index arrays,
and a factory for synthetic posterior InferenceData shaped like a real fit
(so diagnostics and summaries can be tested without running the sampler).
"""

import sys
from pathlib import Path

import arviz as az
import numpy as np
import polars as pl
import pytest
import xarray as xr

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.fitness_data import prepare_fitness_table
from analysis.fitness_model import prepare_model_data
from analysis.model_spec import FitConfig
from analysis.synthetic import make_synthetic_fitness_data

# ── Data fixtures ────────────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def raw_assay() -> pl.DataFrame:
    """Un-normalized synthetic assay table: 12 populations x 3 blocks x 2 sexes."""
    return make_synthetic_fitness_data(seed=7)


@pytest.fixture(scope="session")
def fitness_df(raw_assay: pl.DataFrame) -> pl.DataFrame:
    """The synthetic table after the full loader chain."""
    return prepare_fitness_table(raw_assay)


@pytest.fixture(scope="session")
def female_data(fitness_df: pl.DataFrame) -> dict:
    """Female model index arrays (72 vials)."""
    return prepare_model_data(fitness_df, FitConfig(sex="Female"))


# ── Synthetic posterior ──────────────────────────────────────────────────────


def _posterior_idata(
    data: dict,
    *,
    n_chains: int = 4,
    n_draws: int = 500,
    seed: int = 0,
    intercept: float = 0.0,
    treatment_effects: tuple[float, float] = (0.4, -0.2),
    chain_shift: float = 0.0,
    divergent_fraction: float = 0.0,
) -> az.InferenceData:
    rng = np.random.default_rng(seed)
    shape = (n_chains, n_draws)
    fixed = data["fixed"]
    groups = data["groups"]

    chain_offset = chain_shift * np.arange(n_chains)[:, None]
    variables = {
        "Intercept": (["chain", "draw"], rng.normal(intercept, 0.05, shape) + chain_offset),
        "b_treatment": (
            ["chain", "draw", "treatment_contrast"],
            rng.normal(np.array(treatment_effects), 0.05, (*shape, 2)),
        ),
        "b_block": (
            ["chain", "draw", "block_contrast"],
            rng.normal(0.0, 0.05, (*shape, len(fixed["block"]["contrasts"]))),
        ),
        "b_marker": (
            ["chain", "draw", "marker_contrast"],
            rng.normal(0.0, 0.05, (*shape, len(fixed["marker"]["contrasts"]))),
        ),
    }
    phi_excess = np.abs(rng.normal(28.0, 2.0, shape))
    variables["phi_excess"] = (["chain", "draw"], phi_excess)
    variables["phi"] = (["chain", "draw"], phi_excess + 2.0)
    for factor, spec in groups.items():
        sd = np.abs(rng.normal(0.15, 0.02, shape))
        z = rng.normal(0.0, 1.0, (*shape, len(spec["levels"])))
        variables[f"sd_{factor}"] = (["chain", "draw"], sd)
        variables[f"z_{factor}"] = (["chain", "draw", factor], z)
        variables[f"r_{factor}"] = (["chain", "draw", factor], sd[..., None] * z)

    coords = {
        "chain": np.arange(n_chains),
        "draw": np.arange(n_draws),
        "treatment_contrast": fixed["treatment"]["contrasts"],
        "block_contrast": fixed["block"]["contrasts"],
        "marker_contrast": fixed["marker"]["contrasts"],
    }
    for factor, spec in groups.items():
        coords[factor] = spec["levels"]
    posterior = xr.Dataset(variables, coords=coords)

    diverging = np.zeros(shape, dtype=bool)
    n_div = int(round(divergent_fraction * n_chains * n_draws))
    diverging.reshape(-1)[:n_div] = True
    sample_stats = xr.Dataset(
        {
            "diverging": (["chain", "draw"], diverging),
            "energy": (["chain", "draw"], rng.normal(0.0, 1.0, shape)),
        },
        coords={"chain": np.arange(n_chains), "draw": np.arange(n_draws)},
    )
    return az.InferenceData(posterior=posterior, sample_stats=sample_stats)


@pytest.fixture
def idata_factory():
    """Build a synthetic posterior for a given model-data dict."""
    return _posterior_idata


@pytest.fixture
def female_idata(female_data: dict) -> az.InferenceData:
    """Well-mixed synthetic posterior for the female model: 4 chains x 500 draws."""
    return _posterior_idata(female_data)
