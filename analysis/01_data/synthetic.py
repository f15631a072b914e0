"""Synthetic fitness-assay datasets with known, injected treatment effects.

Generates a table in the same schema as the real assay export: 12 populations
(4 per treatment, markers alternating within treatment) x 3 blocks x both
sexes, with beta-binomial focal-offspring counts. Used by the end-to-end tests
and by ``sex_limited.py --synthetic`` for a dry run of the whole pipeline.
"""

from __future__ import annotations

from pathlib import Path

import numpy as np
import polars as pl
from scipy.special import expit

from sexlimited.config import MARKER_LEVELS, SEX_LEVELS, TREATMENT_LEVELS

SYNTHETIC_SEED = 2024

# Sexual-conflict pattern: each sex does best after inheritance through its own sex
DEFAULT_EFFECTS: dict[tuple[str, str], float] = {
    ("Female", "Control"): 0.0,
    ("Female", "Female_limited"): 0.6,
    ("Female", "Male_limited"): -0.3,
    ("Male", "Control"): 0.0,
    ("Male", "Female_limited"): -0.3,
    ("Male", "Male_limited"): 0.6,
}


def make_synthetic_fitness_data(
    *,
    n_populations_per_treatment: int = 4,
    n_blocks: int = 3,
    vials_per_cell: int = 2,
    mean_offspring: float = 80.0,
    baseline_logit: float = 0.0,
    effects: dict[tuple[str, str], float] | None = None,
    block_sd: float = 0.1,
    population_sd: float = 0.15,
    rearing_vial_sd: float = 0.1,
    phi: float = 30.0,
    zero_focal_population: str | None = None,
    seed: int = SYNTHETIC_SEED,
) -> pl.DataFrame:
    """Simulate one assay table for both sexes.

    Each (block, population) pair gets ``vials_per_cell`` rearing vials; every
    rearing vial supplies one female-assay and one male-assay vial, so rearing
    vials are shared across sexes but never across blocks.

    Args:
        effects: Logit-scale treatment effect per (sex, treatment).
            Defaults to DEFAULT_EFFECTS.
        phi: Beta-binomial dispersion of the focal-offspring count.
        zero_focal_population: Population id whose focal offspring are all zero.
        seed: Seed for numpy's default_rng.

    Returns an un-normalized DataFrame in the input-file schema.
    """
    effects = DEFAULT_EFFECTS if effects is None else effects
    rng = np.random.default_rng(seed)

    populations: list[tuple[str, str, str]] = []
    for treatment in TREATMENT_LEVELS:
        for k in range(n_populations_per_treatment):
            pop_id = f"{treatment[0]}{k + 1}"
            marker = MARKER_LEVELS[k % len(MARKER_LEVELS)]
            populations.append((pop_id, treatment, marker))

    block_dev = rng.normal(0.0, block_sd, n_blocks)
    marker_dev = {
        m: (0.0 if i == 0 else rng.normal(0.0, 0.1)) for i, m in enumerate(MARKER_LEVELS)
    }
    pop_dev = {p[0]: rng.normal(0.0, population_sd) for p in populations}

    rows: list[dict] = []
    vial_counter = 0
    for b in range(n_blocks):
        block = str(b + 1)
        for pop_id, treatment, marker in populations:
            for v in range(vials_per_cell):
                rearing_vial = f"RV{block}-{pop_id}-{v + 1}"
                rv_dev = rng.normal(0.0, rearing_vial_sd)
                for sex in SEX_LEVELS:
                    vial_counter += 1
                    eta = (
                        baseline_logit
                        + effects.get((sex, treatment), 0.0)
                        + block_dev[b]
                        + marker_dev[marker]
                        + pop_dev[pop_id]
                        + rv_dev
                    )
                    mu = float(expit(eta))
                    total = int(rng.poisson(mean_offspring))
                    p = rng.beta(mu * phi, (1.0 - mu) * phi)
                    focal = int(rng.binomial(total, p))
                    if pop_id == zero_focal_population:
                        focal = 0
                    competitor = total - focal
                    focal_female = int(rng.binomial(focal, 0.5))
                    competitor_female = int(rng.binomial(competitor, 0.5))
                    rows.append(
                        {
                            "vial_id": f"V{vial_counter:04d}",
                            "block": block,
                            "population": pop_id,
                            "treatment": treatment,
                            "marker": marker,
                            "sex": sex,
                            "rearing_vial": rearing_vial,
                            "focal_female": focal_female,
                            "focal_male": focal - focal_female,
                            "competitor_female": competitor_female,
                            "competitor_male": competitor - competitor_female,
                        }
                    )

    return pl.DataFrame(rows)


def write_synthetic_csv(path: Path, **kwargs: object) -> Path:
    """Write a synthetic dataset to CSV and return the path."""
    df = make_synthetic_fitness_data(**kwargs)  # type: ignore[arg-type]
    path.parent.mkdir(parents=True, exist_ok=True)
    df.write_csv(path)
    return path
