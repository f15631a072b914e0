"""
Sex-Limited Inheritance — Beta-Binomial Fitness Analysis

Fits one Bayesian beta-binomial regression per sex to competitive-fitness
assay counts, checks convergence, runs PSIS-LOO and posterior predictive
checks, and reports per-treatment fitness with draw-wise contrasts
(Female-limited vs Control, Male-limited vs Control, Female- vs Male-limited).

Usage:
  uv run python analysis/sex_limited.py --data data/fitness_assay.csv
  uv run python analysis/sex_limited.py --synthetic --draws 500 --tune 500 --chains 2

Outputs (in results/<dataset>/sex_limited/<date>/):
  - data/:   Parquet summary tables per sex
  - plots/:  PNG figures (treatment and contrast posteriors, PPC, Pareto k)
  - filtering_manifest.json, run_info.json, run_log.txt
  - sex_limited_report.html
"""

from __future__ import annotations

import argparse
import sys
import warnings
from pathlib import Path

import polars as pl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sexlimited.config import (
    ANALYSIS_NAME,
    CACHE_DIR,
    MAX_TREEDEPTH,
    N_CHAINS,
    N_DRAWS,
    N_WARMUP,
    PPC_N_REPS,
    RANDOM_SEED,
    RESULTS_ROOT,
    SEX_ALIASES,
    SEX_LEVELS,
    TARGET_ACCEPT,
)
from sexlimited.errors import ConvergenceError, DiagnosticWarning, FormatError

try:
    from analysis.run_context import RunContext, dataset_name, save_manifest
except ModuleNotFoundError:
    from run_context import RunContext, dataset_name, save_manifest  # type: ignore[no-redef]

try:
    from analysis.fitness_data import load_fitness_data, split_by_sex, summarize_design
except ModuleNotFoundError:
    from fitness_data import (  # type: ignore[no-redef]
        load_fitness_data,
        split_by_sex,
        summarize_design,
    )

try:
    from analysis.synthetic import write_synthetic_csv
except ModuleNotFoundError:
    from synthetic import write_synthetic_csv  # type: ignore[no-redef]

try:
    from analysis.model_spec import FORMULA, FitConfig, ModelPriors, SamplerSettings
except ModuleNotFoundError:
    from model_spec import (  # type: ignore[no-redef]
        FORMULA,
        FitConfig,
        ModelPriors,
        SamplerSettings,
    )

try:
    from analysis.fitness_model import fit_fitness_model
except ModuleNotFoundError:
    from fitness_model import fit_fitness_model  # type: ignore[no-redef]

try:
    from analysis.diagnostics_data import (
        add_log_likelihood_to_idata,
        attach_loo_attrs,
        compute_log_likelihood,
        compute_loo,
        pareto_k_table,
        ppc_table,
        run_ppc,
        summarize_pareto_k,
    )
except ModuleNotFoundError:
    from diagnostics_data import (  # type: ignore[no-redef]
        add_log_likelihood_to_idata,
        attach_loo_attrs,
        compute_log_likelihood,
        compute_loo,
        pareto_k_table,
        ppc_table,
        run_ppc,
        summarize_pareto_k,
    )

try:
    from analysis.posterior_summary import summarize_fixed_effects, summarize_posterior
except ModuleNotFoundError:
    from posterior_summary import (  # type: ignore[no-redef]
        summarize_fixed_effects,
        summarize_posterior,
    )

try:
    from analysis.fitness_plots import (
        plot_contrast_posteriors,
        plot_cross_sex_contrasts,
        plot_pareto_k,
        plot_ppc,
        plot_treatment_posteriors,
    )
except ModuleNotFoundError:
    from fitness_plots import (  # type: ignore[no-redef]
        plot_contrast_posteriors,
        plot_cross_sex_contrasts,
        plot_pareto_k,
        plot_ppc,
        plot_treatment_posteriors,
    )

try:
    from analysis.fitness_report import build_fitness_report
except ModuleNotFoundError:
    from fitness_report import build_fitness_report  # type: ignore[no-redef]

# ── Primer ───────────────────────────────────────────────────────────────────

PRIMER = """\
# Sex-Limited Inheritance: Beta-Binomial Fitness Analysis

## Purpose

Tests for intralocus sexual conflict. Replicate populations had their autosomes
inherited only through females (Female_limited), only through males
(Male_limited), or through both sexes (Control). Competitive fitness of each
population's flies was then assayed against a marked competitor strain.

## Method

For each sex separately:

1. **Model.** `total_focal | trials(total_all) ~ treatment + block + marker +
   (1 | population) + (1 | rearing_vial)` with a beta-binomial likelihood
   (mean mu on the logit scale, dispersion phi >= 2).
2. **Priors.** Intercept Normal(0, 1); fixed effects Normal(0, 1.5);
   phi Exponential(1) above its lower bound of 2; group SDs HalfStudentT(3, 2.5).
3. **Sampling.** 4 chains x 4000 iterations (2000 warmup), target_accept 0.95,
   max_treedepth 10, seed 2. Fits are cached by sex, model, and data.
4. **Diagnostics.** R-hat, bulk ESS, divergences, E-BFMI; PSIS-LOO with
   Pareto k > 0.7 flagged; posterior predictive checks.
5. **Contrasts.** Per-draw probabilities expit(Intercept + b_treatment) give
   differences (FL - C, ML - C, FL - ML) and ratios (FL / C, ML / C) with
   2.5% / 97.5% percentile intervals.

## Outputs

| File | Description |
|------|-------------|
| `data/treatments_{sex}.parquet` | Per-treatment probability summaries |
| `data/contrasts_{sex}.parquet` | Differences and ratios (with excluded-draw counts) |
| `data/coefficients_{sex}.parquet` | Coefficient table with R-hat and ESS |
| `data/pareto_k_{sex}.parquet` | Per-vial Pareto k |
| `data/ppc_{sex}.parquet` | Posterior predictive statistics |
| `plots/treatment_posteriors_{sex}.png` | Posterior per treatment |
| `plots/contrast_posteriors_{sex}.png` | Posterior of each contrast |
| `plots/ppc_{sex}.png` | Posterior predictive checks |
| `plots/pareto_k_{sex}.png` | PSIS-LOO diagnostics |
| `plots/contrasts_by_sex.png` | Both sexes side by side |

## Interpretation Guide

- The conflict signature is opposite signs: female_minus_control > 0 for
  females and < 0 for males (and the reverse for male_minus_control).
- An interval that excludes 0 (differences) or 1 (ratios) is credible at 95%.
- Flagged Pareto k values mark influential vials; check them before trusting LOO.
"""


# ── Helpers ──────────────────────────────────────────────────────────────────


def _sex_arg(value: str) -> str:
    level = SEX_ALIASES.get(value.strip().lower())
    if level is None:
        msg = f"unknown sex {value!r}; use female or male"
        raise argparse.ArgumentTypeError(msg)
    return level


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sex-limited inheritance fitness analysis")
    parser.add_argument("--data", type=Path, default=None, help="Fitness assay CSV/TSV")
    parser.add_argument(
        "--synthetic",
        action="store_true",
        help="Run on a generated dataset with known treatment effects",
    )
    parser.add_argument(
        "--sex",
        nargs="+",
        type=_sex_arg,
        default=list(SEX_LEVELS),
        help="Sexes to analyse (default: both)",
    )
    parser.add_argument("--draws", type=int, default=N_DRAWS, help="Retained draws per chain")
    parser.add_argument("--tune", type=int, default=N_WARMUP, help="Warmup iterations per chain")
    parser.add_argument("--chains", type=int, default=N_CHAINS)
    parser.add_argument("--cores", type=int, default=None)
    parser.add_argument("--seed", type=int, default=RANDOM_SEED)
    parser.add_argument("--target-accept", type=float, default=TARGET_ACCEPT)
    parser.add_argument("--max-treedepth", type=int, default=MAX_TREEDEPTH)
    parser.add_argument("--sampler", choices=["pymc", "nutpie"], default="pymc")
    parser.add_argument("--cache-dir", type=Path, default=CACHE_DIR)
    parser.add_argument("--refit", action="store_true", help="Ignore cached fits")
    parser.add_argument("--skip-loo", action="store_true", help="Skip PSIS-LOO")
    parser.add_argument("--n-reps", type=int, default=PPC_N_REPS, help="PPC replicates")
    parser.add_argument(
        "--allow-unconverged",
        action="store_true",
        help="Report unconverged fits with a warning instead of failing",
    )
    parser.add_argument("--results-root", type=Path, default=RESULTS_ROOT)
    args = parser.parse_args(argv)
    if args.data is None and not args.synthetic:
        parser.error("one of --data or --synthetic is required")
    if args.draws < 1 or args.tune < 0 or args.chains < 1 or args.n_reps < 1:
        parser.error("--draws, --chains and --n-reps must be positive, --tune non-negative")
    args.sex = list(dict.fromkeys(args.sex))
    return args


def sampler_settings(args: argparse.Namespace) -> SamplerSettings:
    return SamplerSettings(
        chains=args.chains,
        iterations=args.draws + args.tune,
        warmup=args.tune,
        target_accept=args.target_accept,
        max_treedepth=args.max_treedepth,
        seed=args.seed,
        sampler=args.sampler,
        cores=args.cores,
    )


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")


def _print_table(
    df: pl.DataFrame,
    value_cols: tuple[str, ...] = ("mean", "ci_lower", "ci_upper"),
) -> None:
    label_col = df.columns[0]
    for row in df.iter_rows(named=True):
        values = "  ".join(f"{row[c]:>8.4f}" for c in value_cols)
        extra = f"  (excluded {row['n_excluded']})" if row.get("n_excluded") else ""
        print(f"    {row[label_col]:<22} {values}{extra}")


# ── Per-sex pipeline ─────────────────────────────────────────────────────────


def run_sex_pipeline(
    df: pl.DataFrame,
    sex: str,
    args: argparse.Namespace,
    plots_dir: Path,
    data_dir: Path,
) -> dict:
    """Fit, diagnose, and summarize one sex. Raises FormatError / ConvergenceError."""
    slug = sex.lower()
    config = FitConfig(sex=sex, priors=ModelPriors(), sampler=sampler_settings(args))

    print_header(f"FIT — {sex}")
    fit = fit_fitness_model(
        df,
        config,
        args.cache_dir,
        refit=args.refit,
        allow_unconverged=args.allow_unconverged,
    )
    idata = fit.idata

    print_header(f"DIAGNOSTICS — {sex}")
    loo_summary = None
    k_table = None
    if args.skip_loo:
        print("  PSIS-LOO skipped (--skip-loo)")
    else:
        idata = add_log_likelihood_to_idata(idata, compute_log_likelihood(idata, fit.data))
        loo = compute_loo(idata)
        attach_loo_attrs(idata, loo)
        loo_summary = summarize_pareto_k(loo, sex=sex)
        k_table = pareto_k_table(loo, fit.data)
        print(
            f"  ELPD (LOO): {loo_summary['elpd_loo']:.1f} (SE {loo_summary['se']:.1f}), "
            f"p_loo = {loo_summary['p_loo']:.1f}"
        )
        print(
            f"  Pareto k: good={loo_summary['good']} ok={loo_summary['ok']} "
            f"bad={loo_summary['bad']} very_bad={loo_summary['very_bad']} "
            f"(flagged {loo_summary['n_flagged']} of {loo_summary['total']})"
        )
        k_table.write_parquet(data_dir / f"pareto_k_{slug}.parquet")
        plot_pareto_k(k_table, sex, plots_dir)

    ppc = run_ppc(idata, fit.data, n_reps=args.n_reps, sex=sex, seed=args.seed)
    ppc_df = ppc_table(ppc)
    for row in ppc_df.iter_rows(named=True):
        print(
            f"  PPC {row['statistic']:<10} observed={row['observed']:.4f}  "
            f"replicated={row['replicated_mean']:.4f}  p={row['bayesian_p']:.3f}"
        )
    print(f"  PPC 95% interval coverage: {ppc['coverage']:.1%}")
    ppc_df.write_parquet(data_dir / f"ppc_{slug}.parquet")
    plot_ppc(ppc, sex, plots_dir)

    print_header(f"POSTERIOR SUMMARY — {sex}")
    summary = summarize_posterior(idata)
    fixed = summarize_fixed_effects(idata)
    print(f"  Treatment probabilities ({summary['n_draws']} draws):")
    _print_table(summary["treatments"])
    print("  Contrasts:")
    _print_table(summary["contrast_table"])

    summary["treatments"].write_parquet(data_dir / f"treatments_{slug}.parquet")
    summary["contrast_table"].write_parquet(data_dir / f"contrasts_{slug}.parquet")
    fixed.write_parquet(data_dir / f"coefficients_{slug}.parquet")

    plot_treatment_posteriors(summary["probs"], sex, plots_dir)
    plot_contrast_posteriors(summary["contrasts"], sex, plots_dir)

    return {
        "fit": fit,
        "convergence": fit.convergence,
        "loo": loo_summary,
        "k_table": k_table,
        "ppc": ppc,
        "ppc_table": ppc_df,
        "summary": summary,
        "fixed_effects": fixed,
    }


def _manifest_entry(res: dict) -> dict:
    fit = res["fit"]
    conv = res["convergence"]
    entry = {
        "status": "ok",
        "n_obs": fit.data["n_obs"],
        "n_dropped_zero_total": fit.data["n_dropped_zero_total"],
        "from_cache": fit.from_cache,
        "cache_path": fit.cache_path,
        "sampling_time_s": round(fit.sampling_time, 1),
        "rhat_max": conv["rhat_max"],
        "ess_bulk_min": conv["ess_bulk_min"],
        "divergences": conv["divergences"],
        "converged": conv["all_ok"],
        "ppc_p_values": res["ppc"]["p_values"],
        "ppc_coverage": res["ppc"]["coverage"],
        "ratio_draws_excluded": res["summary"]["contrasts"]["n_excluded"],
        "warnings": res.get("warnings", []),
    }
    if res["loo"] is not None:
        entry["loo_elpd"] = res["loo"]["elpd_loo"]
        entry["pareto_k_flagged"] = res["loo"]["n_flagged"]
    return entry


# ── Main ─────────────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    dataset = "synthetic" if args.synthetic else dataset_name(args.data)

    with RunContext(
        dataset=dataset,
        analysis_name=ANALYSIS_NAME,
        params=vars(args),
        results_root=args.results_root,
        primer=PRIMER,
        report_title="Sex-Limited Inheritance Fitness Report",
    ) as ctx:
        print(f"Sex-limited inheritance fitness analysis — dataset {dataset}")
        print(f"Output:   {ctx.run_dir}")
        print(f"Cache:    {args.cache_dir}")

        # ── Load data ──
        print_header("LOADING DATA")
        data_path = args.data
        if args.synthetic:
            data_path = write_synthetic_csv(ctx.data_dir / "synthetic_input.csv", seed=args.seed)
            print(f"  Synthetic dataset written to {data_path}")
        try:
            df = load_fitness_data(data_path)
        except FormatError as e:
            print(f"  ERROR: {e}")
            save_manifest(
                {"analysis": ANALYSIS_NAME, "dataset": dataset, "error": str(e)},
                ctx.run_dir,
            )
            ctx.failed = True
            return 1

        design = summarize_design(df)
        per_sex = split_by_sex(df)
        print(f"  {df.height} vials, {df['population'].n_unique()} populations")
        for sex, sub in per_sex.items():
            print(f"  {sex}: {sub.height} vials")

        sex_results: dict[str, dict] = {}
        failures: dict[str, str] = {}
        manifest: dict = {
            "analysis": ANALYSIS_NAME,
            "dataset": dataset,
            "input": str(data_path),
            "n_vials": df.height,
            "sexes": {},
        }

        for sex in args.sex:
            if sex not in per_sex:
                failures[sex] = f"no {sex.lower()} vials in the input"
                print(f"  {sex}: no vials — skipped")
                manifest["sexes"][sex] = {
                    "status": "failed",
                    "stage": "load",
                    "error": failures[sex],
                }
                continue
            with warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter("always", DiagnosticWarning)
                try:
                    res = run_sex_pipeline(df, sex, args, ctx.plots_dir, ctx.data_dir)
                except (FormatError, ConvergenceError) as e:
                    print(f"  ERROR: {e}")
                    failures[sex] = str(e)
                    manifest["sexes"][sex] = {
                        "status": "failed",
                        "stage": e.stage,
                        "error": e.detail,
                    }
                    res = None
            notes = []
            for w in caught:
                if issubclass(w.category, DiagnosticWarning):
                    print(f"  WARNING: {w.message}")
                    notes.append(str(w.message))
                else:
                    warnings.showwarning(w.message, w.category, w.filename, w.lineno)
            if res is not None:
                res["warnings"] = notes
                sex_results[sex] = res
                manifest["sexes"][sex] = _manifest_entry(res)

        if len(sex_results) > 1:
            print_header("CROSS-SEX COMPARISON")
            plot_cross_sex_contrasts(
                {sex: res["summary"]["contrast_table"] for sex, res in sex_results.items()},
                ctx.plots_dir,
            )

        # ── Report ──
        print_header("REPORT")
        settings = {"Formula": FORMULA, "Sampler": sampler_settings(args).describe()}
        settings.update(ModelPriors().describe())
        build_fitness_report(
            ctx.report,
            sex_results=sex_results,
            failures=failures,
            design=design,
            plots_dir=ctx.plots_dir,
            settings=settings,
        )

        print_header("FILTERING MANIFEST")
        manifest["failed_sexes"] = sorted(failures)
        path = save_manifest(manifest, ctx.run_dir)
        print(f"  Saved: {path.name}")

        if failures:
            ctx.failed = True
            print(f"\n  {len(failures)} of {len(args.sex)} sex pipelines failed")
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
