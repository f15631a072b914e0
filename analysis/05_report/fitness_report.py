"""Sex-limited fitness HTML report builder.

Each section is a small function that formats a polars DataFrame with
make_gt() or embeds a saved figure. Per-sex sections are added only for sexes
whose pipeline completed; failed sexes get a short failure note instead.

Usage (called from sex_limited.py):
    from analysis.fitness_report import build_fitness_report
    build_fitness_report(ctx.report, sex_results=..., failures=..., ...)
"""

from __future__ import annotations

from pathlib import Path

import polars as pl

try:
    from analysis.report import FigureSection, ReportBuilder, TableSection, TextSection, make_gt
except ModuleNotFoundError:
    from report import (  # type: ignore[no-redef]
        FigureSection,
        ReportBuilder,
        TableSection,
        TextSection,
        make_gt,
    )

from sexlimited.config import CI_LEVEL, PARETO_K_THRESHOLD

CONTRAST_LABELS = {
    "female_minus_control": "Female-limited − Control",
    "male_minus_control": "Male-limited − Control",
    "female_minus_male": "Female-limited − Male-limited",
    "female_over_control": "Female-limited / Control",
    "male_over_control": "Male-limited / Control",
}


def build_fitness_report(
    report: ReportBuilder,
    *,
    sex_results: dict[str, dict],
    failures: dict[str, str],
    design: pl.DataFrame | None,
    plots_dir: Path,
    settings: dict[str, str],
) -> None:
    """Add every section of the fitness report to the ReportBuilder."""
    _add_overview(report)
    if design is not None:
        _add_design_table(report, design)

    for sex, res in sex_results.items():
        slug = sex.lower()
        _add_fixed_effects(report, res["fixed_effects"], sex)
        _add_treatment_table(report, res["summary"]["treatments"], sex)
        _add_contrast_table(report, res["summary"]["contrast_table"], sex)
        _add_figure(
            report,
            plots_dir / f"treatment_posteriors_{slug}.png",
            f"fig-treatments-{slug}",
            f"{sex} Treatment Posteriors",
            "Posterior density of the focal-offspring probability per treatment "
            "(reference block and marker, average population and rearing vial).",
        )
        _add_figure(
            report,
            plots_dir / f"contrast_posteriors_{slug}.png",
            f"fig-contrasts-{slug}",
            f"{sex} Contrast Posteriors",
            "Differences and ratios computed draw by draw. Dashed lines mark no effect.",
        )
        _add_convergence_table(report, res["convergence"], sex)
        if res.get("loo") is not None:
            _add_loo_table(report, res["loo"], res["k_table"], sex)
            _add_figure(
                report,
                plots_dir / f"pareto_k_{slug}.png",
                f"fig-pareto-k-{slug}",
                f"{sex} Pareto k",
                f"Vials above k = {PARETO_K_THRESHOLD} are influential; "
                "their LOO contributions are unreliable.",
            )
        if res.get("ppc_table") is not None:
            _add_ppc_table(report, res["ppc_table"], res["ppc"]["coverage"], sex)
            _add_figure(
                report,
                plots_dir / f"ppc_{slug}.png",
                f"fig-ppc-{slug}",
                f"{sex} Posterior Predictive Checks",
                "Grey: replicated statistics. Red: observed value.",
            )
        if res.get("warnings"):
            _add_warnings(report, res["warnings"], sex)

    if len(sex_results) > 1:
        _add_figure(
            report,
            plots_dir / "contrasts_by_sex.png",
            "fig-cross-sex",
            "Contrasts by Sex",
            "Intralocus sexual conflict predicts opposite signs for the two sexes.",
        )

    for sex, message in failures.items():
        _add_failure(report, sex, message)

    _add_analysis_parameters(report, settings)

    print(f"  Report: {len(report.section_ids)} sections added")


# ── Private section builders ─────────────────────────────────────────────────


def _add_overview(report: ReportBuilder) -> None:
    report.add(
        TextSection(
            id="overview",
            title="What This Report Shows",
            html=(
                "<p>Autosomes were propagated for many generations through only one sex "
                "(female-limited or male-limited) or through both (control). If genes "
                "that benefit one sex harm the other, female-limited genomes should raise "
                "female fitness and lower male fitness, and male-limited genomes the "
                "reverse.</p>"
                "<p>Fitness is measured as the share of offspring produced by the focal "
                "fly against a marked competitor. One beta-binomial regression is fitted "
                "per sex, and the per-treatment probabilities and their differences and "
                "ratios are computed from the same posterior draws.</p>"
            ),
        )
    )


def _add_design_table(report: ReportBuilder, design: pl.DataFrame) -> None:
    html = make_gt(
        design,
        title="Experimental Design",
        subtitle="Assay vials per sex and treatment",
        column_labels={
            "sex": "Sex",
            "treatment": "Treatment",
            "n_vials": "Vials",
            "n_populations": "Populations",
            "total_focal": "Focal Offspring",
            "total_all": "All Offspring",
            "mean_prop_focal": "Mean Focal Share",
        },
        number_formats={"mean_prop_focal": ".3f", "total_focal": ",.0f", "total_all": ",.0f"},
        source_note="Mean focal share excludes vials with no offspring.",
    )
    report.add(TableSection(id="design", title="Experimental Design", html=html))


def _add_fixed_effects(report: ReportBuilder, df: pl.DataFrame, sex: str) -> None:
    html = make_gt(
        df,
        title=f"{sex} — Model Coefficients",
        subtitle="Logit scale; reference levels absorbed into the intercept",
        column_labels={
            "parameter": "Parameter",
            "mean": "Mean",
            "sd": "SD",
            "ci_lower": "2.5%",
            "ci_upper": "97.5%",
            "r_hat": "R-hat",
            "ess_bulk": "Bulk ESS",
        },
        number_formats={
            "mean": ".3f",
            "sd": ".3f",
            "ci_lower": ".3f",
            "ci_upper": ".3f",
            "r_hat": ".3f",
            "ess_bulk": ",.0f",
        },
    )
    report.add(
        TableSection(id=f"coefficients-{sex.lower()}", title=f"{sex} Coefficients", html=html)
    )


def _add_treatment_table(report: ReportBuilder, df: pl.DataFrame, sex: str) -> None:
    html = make_gt(
        df,
        title=f"{sex} — Fitness by Treatment",
        subtitle="Posterior probability that an offspring is the focal fly's",
        column_labels={
            "treatment": "Treatment",
            "mean": "Mean",
            "ci_lower": "2.5%",
            "ci_upper": "97.5%",
            "n_draws": "Draws",
        },
        number_formats={"mean": ".3f", "ci_lower": ".3f", "ci_upper": ".3f", "n_draws": ",.0f"},
        source_note=f"{CI_LEVEL:.0%} equal-tailed credible intervals.",
    )
    report.add(
        TableSection(id=f"treatments-{sex.lower()}", title=f"{sex} Treatment Estimates", html=html)
    )


def _add_contrast_table(report: ReportBuilder, df: pl.DataFrame, sex: str) -> None:
    display = df.with_columns(
        pl.col("contrast").replace(CONTRAST_LABELS)
    ).select("contrast", "kind", "mean", "ci_lower", "ci_upper", "n_draws", "n_excluded")
    html = make_gt(
        display,
        title=f"{sex} — Treatment Contrasts",
        subtitle="Differences and ratios of per-draw probabilities",
        column_labels={
            "contrast": "Contrast",
            "kind": "Type",
            "mean": "Mean",
            "ci_lower": "2.5%",
            "ci_upper": "97.5%",
            "n_draws": "Draws Used",
            "n_excluded": "Draws Excluded",
        },
        number_formats={"mean": ".3f", "ci_lower": ".3f", "ci_upper": ".3f", "n_draws": ",.0f"},
        source_note=(
            "Ratio draws with a control probability of exactly 0 are excluded and counted."
        ),
    )
    report.add(
        TableSection(id=f"contrasts-{sex.lower()}", title=f"{sex} Contrasts", html=html)
    )


def _add_convergence_table(report: ReportBuilder, diag: dict, sex: str) -> None:
    rows = [
        {"parameter": var, "rhat_max": d["rhat_max"], "ess_bulk_min": d["ess_bulk_min"]}
        for var, d in diag["per_var"].items()
    ]
    html = make_gt(
        pl.DataFrame(rows),
        title=f"{sex} — Convergence",
        subtitle=(
            f"{diag['divergences']} divergent transitions "
            f"({diag['divergent_fraction']:.2%}); "
            f"{'all checks passed' if diag['all_ok'] else 'CHECKS FAILED'}"
        ),
        column_labels={
            "parameter": "Parameter",
            "rhat_max": "Max R-hat",
            "ess_bulk_min": "Min Bulk ESS",
        },
        number_formats={"rhat_max": ".4f", "ess_bulk_min": ",.0f"},
        source_note=(
            f"Thresholds: R-hat < {diag['rhat_threshold']}, bulk ESS >= "
            f"{diag['ess_threshold']}, divergent fraction <= "
            f"{diag['max_divergent_fraction']:.0%}."
        ),
    )
    report.add(
        TableSection(id=f"convergence-{sex.lower()}", title=f"{sex} Convergence", html=html)
    )


def _add_loo_table(
    report: ReportBuilder,
    loo: dict,
    k_table: pl.DataFrame,
    sex: str,
) -> None:
    summary = pl.DataFrame(
        {
            "Metric": [
                "ELPD (LOO)",
                "SE",
                "p_loo",
                "k < 0.5",
                "0.5 <= k < 0.7",
                "0.7 <= k < 1",
                "k >= 1",
                "Flagged vials",
            ],
            "Value": [
                f"{loo['elpd_loo']:.1f}",
                f"{loo['se']:.1f}",
                f"{loo['p_loo']:.1f}",
                str(loo["good"]),
                str(loo["ok"]),
                str(loo["bad"]),
                str(loo["very_bad"]),
                f"{loo['n_flagged']} of {loo['total']}",
            ],
        }
    )
    html = make_gt(summary, title=f"{sex} — PSIS-LOO")
    flagged = k_table.filter(pl.col("flagged"))
    if flagged.height > 0:
        html += make_gt(
            flagged.drop("flagged"),
            title="Influential Vials",
            subtitle=f"Pareto k > {loo['threshold']}",
            number_formats={"pareto_k": ".2f", "elpd_loo_i": ".2f"},
        )
    report.add(TableSection(id=f"loo-{sex.lower()}", title=f"{sex} LOO", html=html))


def _add_ppc_table(report: ReportBuilder, df: pl.DataFrame, coverage: float, sex: str) -> None:
    html = make_gt(
        df,
        title=f"{sex} — Posterior Predictive Checks",
        subtitle=f"{coverage:.1%} of vials inside their 95% predictive interval",
        column_labels={
            "statistic": "Statistic",
            "observed": "Observed",
            "replicated_mean": "Replicated Mean",
            "replicated_lower": "2.5%",
            "replicated_upper": "97.5%",
            "bayesian_p": "Bayesian p",
        },
        number_formats={
            "observed": ".3f",
            "replicated_mean": ".3f",
            "replicated_lower": ".3f",
            "replicated_upper": ".3f",
            "bayesian_p": ".3f",
        },
        source_note="p-values outside [0.025, 0.975] indicate a misfit in that statistic.",
    )
    report.add(TableSection(id=f"ppc-{sex.lower()}", title=f"{sex} PPC", html=html))


def _add_figure(
    report: ReportBuilder,
    path: Path,
    section_id: str,
    title: str,
    caption: str,
) -> None:
    if path.exists():
        report.add(FigureSection.from_file(section_id, title, path, caption=caption))


def _add_warnings(report: ReportBuilder, messages: list[str], sex: str) -> None:
    items = "".join(f"<li>{m}</li>" for m in messages)
    report.add(
        TextSection(
            id=f"warnings-{sex.lower()}",
            title=f"{sex} Diagnostic Warnings",
            html=f"<ul>{items}</ul>",
        )
    )


def _add_failure(report: ReportBuilder, sex: str, message: str) -> None:
    report.add(
        TextSection(
            id=f"failure-{sex.lower()}",
            title=f"{sex} — Analysis Failed",
            html=(
                f"<p><strong>The {sex.lower()} pipeline stopped:</strong> {message}</p>"
                "<p>No estimates are reported for this sex. The other sex is unaffected.</p>"
            ),
        )
    )


def _add_analysis_parameters(report: ReportBuilder, settings: dict[str, str]) -> None:
    df = pl.DataFrame({"Parameter": list(settings), "Value": list(settings.values())})
    html = make_gt(df, title="Analysis Parameters")
    report.add(TableSection(id="analysis-params", title="Analysis Parameters", html=html))
