"""
Tests for model diagnostics in analysis/03_diagnostics/diagnostics_data.py.

Uses synthetic posterior InferenceData (see conftest) so no sampling is needed:
convergence gating, pointwise log-likelihood, Pareto-k summaries, and PPCs.

Run: uv run pytest tests/test_diagnostics.py -v
"""

import sys
import warnings
from pathlib import Path
from types import SimpleNamespace

import numpy as np
import polars as pl
import pytest
import xarray as xr
from scipy.special import expit

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.diagnostics_data import (
    add_log_likelihood_to_idata,
    attach_loo_attrs,
    check_convergence,
    compute_linear_predictor,
    compute_log_likelihood,
    compute_loo,
    convergence_failures,
    monitored_vars,
    pareto_k_table,
    ppc_table,
    run_ppc,
    summarize_convergence,
    summarize_pareto_k,
)
from analysis.likelihood import BetaBinomialLikelihood
from sexlimited.errors import ConvergenceError, DiagnosticWarning

# ── Fixtures ────────────────────────────────────────────────────────────────


def _fake_loo(k_values: list[float]) -> SimpleNamespace:
    """Stand-in for az.ELPDData with just the fields the summaries read."""
    k = np.asarray(k_values, dtype=float)
    return SimpleNamespace(
        pareto_k=xr.DataArray(k, dims="obs_id"),
        loo_i=xr.DataArray(-np.arange(len(k), dtype=float), dims="obs_id"),
        elpd_loo=-123.4,
        se=5.6,
        p_loo=7.8,
    )


def _manual_eta(idata, data: dict, obs: int) -> np.ndarray:
    """Linear predictor for a single observation, level by level."""
    post = idata.posterior
    eta = post["Intercept"].values.copy()
    for factor, spec in data["fixed"].items():
        level = spec["levels"][spec["idx"][obs]]
        if level != spec["reference"]:
            eta += post[f"b_{factor}"].sel({f"{factor}_contrast": level}).values
    for factor, spec in data["groups"].items():
        level = spec["levels"][spec["idx"][obs]]
        eta += post[f"r_{factor}"].sel({factor: level}).values
    return eta


# ── Convergence ──────────────────────────────────────────────────────────────


class TestConvergence:
    def test_monitored_vars_skip_internals(self, female_idata):
        names = monitored_vars(female_idata)
        assert "Intercept" in names
        assert "phi" in names
        assert "r_population" in names
        assert "phi_excess" not in names
        assert not any(n.startswith("z_") for n in names)

    def test_well_mixed_posterior_passes(self, female_idata):
        diag = summarize_convergence(female_idata)
        assert diag["all_ok"]
        assert diag["rhat_max"] < 1.01
        assert diag["ess_bulk_min"] >= 400
        assert diag["divergences"] == 0
        assert len(diag["ebfmi"]) == 4
        assert convergence_failures(diag) == []

    def test_check_returns_diagnostics(self, female_idata):
        with warnings.catch_warnings():
            warnings.simplefilter("error", DiagnosticWarning)
            diag = check_convergence(female_idata, "Female")
        assert diag["n_chains"] == 4
        assert diag["n_draws"] == 500

    def test_divergences_raise(self, female_data, idata_factory):
        idata = idata_factory(female_data, divergent_fraction=0.02)
        with pytest.raises(ConvergenceError, match="divergent") as exc:
            check_convergence(idata, "Female")
        assert exc.value.sex == "Female"
        assert exc.value.stage == "fit"
        assert str(exc.value).startswith("[Female/fit] ")
        assert exc.value.diagnostics["divergences"] == 40

    def test_divergences_at_limit_pass(self, female_data, idata_factory):
        idata = idata_factory(female_data, divergent_fraction=0.01)
        assert summarize_convergence(idata)["divergences_ok"]

    def test_split_chains_fail_rhat(self, female_data, idata_factory):
        idata = idata_factory(female_data, chain_shift=0.5)
        diag = summarize_convergence(idata)
        assert not diag["rhat_ok"]
        assert not diag["all_ok"]
        with pytest.raises(ConvergenceError, match="R-hat.*Intercept"):
            check_convergence(idata, "Male")

    def test_nan_rhat_in_one_element_fails(self, female_data, idata_factory):
        idata = idata_factory(female_data)
        # a stuck level: constant across every chain and draw
        idata.posterior["r_population"][:, :, 0] = 0.3
        diag = summarize_convergence(idata)
        assert np.isnan(diag["per_var"]["r_population"]["rhat_max"])
        assert np.isnan(diag["rhat_max"])
        assert not diag["rhat_ok"]
        assert not diag["all_ok"]
        with pytest.raises(ConvergenceError, match="R-hat.*r_population"):
            check_convergence(idata, "Female")

    def test_failure_downgraded_to_warning(self, female_data, idata_factory):
        idata = idata_factory(female_data, chain_shift=0.5)
        with pytest.warns(DiagnosticWarning, match="did not converge"):
            diag = check_convergence(idata, "Female", raise_on_failure=False)
        assert not diag["all_ok"]


# ── Log-likelihood ───────────────────────────────────────────────────────────


class TestLogLikelihood:
    def test_linear_predictor_shape(self, female_idata, female_data):
        eta = compute_linear_predictor(female_idata, female_data)
        assert eta.shape == (4, 500, female_data["n_obs"])

    @pytest.mark.parametrize("obs", [0, 17, 71])
    def test_linear_predictor_matches_manual(self, female_idata, female_data, obs):
        eta = compute_linear_predictor(female_idata, female_data)
        np.testing.assert_allclose(eta[..., obs], _manual_eta(female_idata, female_data, obs))

    def test_log_likelihood_values(self, female_idata, female_data):
        ll = compute_log_likelihood(female_idata, female_data)
        assert ll["y"].dims == ("chain", "draw", "obs_id")
        assert ll["y"].shape == (4, 500, female_data["n_obs"])

        mu = expit(_manual_eta(female_idata, female_data, 5)[1, 10])
        phi = float(female_idata.posterior["phi"].values[1, 10])
        expected = BetaBinomialLikelihood().logp(
            female_data["y"][5], female_data["n"][5], mu, phi
        )
        assert float(ll["y"].values[1, 10, 5]) == pytest.approx(float(expected))
        assert np.all(ll["y"].values <= 0.0)

    def test_add_log_likelihood_is_copy(self, female_idata, female_data):
        ll = compute_log_likelihood(female_idata, female_data)
        new = add_log_likelihood_to_idata(female_idata, ll)
        assert "log_likelihood" in new.groups()
        assert "log_likelihood" not in female_idata.groups()

    def test_add_log_likelihood_replaces(self, female_idata, female_data):
        ll = compute_log_likelihood(female_idata, female_data)
        first = add_log_likelihood_to_idata(female_idata, ll)
        second = add_log_likelihood_to_idata(first, ll * 0.0)
        assert float(np.abs(second.log_likelihood["y"].values).max()) == 0.0


# ── LOO / Pareto k ───────────────────────────────────────────────────────────


class TestParetoK:
    def test_flags_strictly_above_threshold(self):
        with pytest.warns(DiagnosticWarning, match="2 of 4 observations"):
            summary = summarize_pareto_k(_fake_loo([0.1, 0.7, 0.8, 1.2]), sex="Female")
        assert summary["n_flagged"] == 2
        assert summary["flagged_idx"] == [2, 3]
        assert summary["max_k"] == pytest.approx(1.2)

    def test_categories_partition(self):
        k = [0.1, 0.49, 0.5, 0.69, 0.7, 0.99, 1.0, 3.0]
        summary = summarize_pareto_k(_fake_loo(k), warn=False)
        assert (summary["good"], summary["ok"], summary["bad"], summary["very_bad"]) == (
            2,
            2,
            2,
            2,
        )
        assert summary["good"] + summary["ok"] + summary["bad"] + summary["very_bad"] == 8
        assert summary["n_flagged"] <= summary["total"]

    def test_no_warning_when_all_good(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error", DiagnosticWarning)
            summary = summarize_pareto_k(_fake_loo([0.1, 0.2, 0.3]))
        assert summary["n_flagged"] == 0
        assert summary["elpd_loo"] == pytest.approx(-123.4)

    def test_warning_carries_stage(self):
        with pytest.warns(DiagnosticWarning) as record:
            summarize_pareto_k(_fake_loo([0.9]), sex="Male")
        warning = record[0].message
        assert warning.sex == "Male"
        assert warning.stage == "loo"

    def test_table_sorted_worst_first(self):
        data = {"vial_ids": ["a", "b", "c"], "y": np.array([1, 2, 3]), "n": np.array([5, 5, 5])}
        table = pareto_k_table(_fake_loo([0.2, 0.9, 0.5]), data)
        assert table["vial_id"].to_list() == ["b", "c", "a"]
        assert table["flagged"].to_list() == [True, False, False]

    def test_loo_on_posterior(self, female_idata, female_data):
        idata = add_log_likelihood_to_idata(
            female_idata, compute_log_likelihood(female_idata, female_data)
        )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            loo = compute_loo(idata)
        attach_loo_attrs(idata, loo)
        assert len(loo.pareto_k) == female_data["n_obs"]
        assert idata.log_likelihood.attrs["loo_elpd"] == pytest.approx(float(loo.elpd_loo))
        summary = summarize_pareto_k(loo, warn=False)
        assert summary["n_flagged"] <= female_data["n_obs"]


# ── Posterior predictive checks ──────────────────────────────────────────────


class TestPPC:
    def _run(self, idata, data, **kwargs):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", DiagnosticWarning)
            return run_ppc(idata, data, **kwargs)

    def test_shapes_and_bounds(self, female_idata, female_data):
        ppc = self._run(female_idata, female_data, n_reps=200)
        assert ppc["y_rep"].shape == (200, female_data["n_obs"])
        assert (ppc["y_rep"] >= 0).all()
        assert (ppc["y_rep"] <= female_data["n"]).all()
        assert set(ppc["p_values"]) == {"mean_prop", "sd_prop", "zero_frac"}
        assert all(0.0 <= p <= 1.0 for p in ppc["p_values"].values())
        assert 0.0 <= ppc["coverage"] <= 1.0

    def test_seeded_deterministic(self, female_idata, female_data):
        a = self._run(female_idata, female_data, n_reps=50, seed=3)
        b = self._run(female_idata, female_data, n_reps=50, seed=3)
        np.testing.assert_array_equal(a["y_rep"], b["y_rep"])

    def test_reps_capped_at_draws(self, female_data, idata_factory):
        idata = idata_factory(female_data, n_chains=2, n_draws=30)
        ppc = self._run(idata, female_data, n_reps=500)
        assert ppc["n_reps"] == 60

    def test_misfit_warns(self, female_idata, female_data):
        zeros = {**female_data, "y": np.zeros_like(female_data["y"])}
        with pytest.warns(DiagnosticWarning, match="mean_prop"):
            ppc = run_ppc(female_idata, zeros, n_reps=100, sex="Female")
        assert ppc["p_values"]["mean_prop"] == pytest.approx(1.0)
        assert ppc["observed"]["zero_frac"] == 1.0

    def test_table(self, female_idata, female_data):
        table = ppc_table(self._run(female_idata, female_data, n_reps=100))
        assert table["statistic"].to_list() == ["mean_prop", "sd_prop", "zero_frac"]
        assert isinstance(table, pl.DataFrame)
        assert (table["replicated_lower"] <= table["replicated_upper"]).all()
