"""Fitness-assay data loading — pure transformation, no prints.

Reads the experiment's delimited table (one row per assay vial), normalizes
column names and categorical levels to the fixed enumerations in
``sexlimited.config``, computes the derived offspring totals, and validates the
design invariants. Every problem with the input is raised as ``FormatError``.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

import polars as pl

from sexlimited.config import (
    COLUMN_ALIASES,
    COUNT_COLUMNS,
    DERIVED_COLUMNS,
    ID_COLUMNS,
    MARKER_ALIASES,
    MARKER_LEVELS,
    REQUIRED_COLUMNS,
    SEX_ALIASES,
    SEX_LEVELS,
    TREATMENT_ALIASES,
    TREATMENT_LEVELS,
)
from sexlimited.errors import FormatError

# Cap on offending ids quoted in an error message
_MAX_REPORTED = 5


def _canonical_key(raw: str) -> str:
    """Lower-case, trim, and unify separators: 'Focal Female' → 'focal_female'."""
    return raw.strip().lower().replace("-", "_").replace(" ", "_").replace(".", "_")


def _quote(values: list) -> str:
    shown = ", ".join(str(v) for v in values[:_MAX_REPORTED])
    more = len(values) - _MAX_REPORTED
    return f"{shown} (+{more} more)" if more > 0 else shown


def read_table(path: Path) -> pl.DataFrame:
    """Read a delimited table with every column as a string.

    Tab-separated for .tsv/.tab/.txt, comma-separated otherwise.
    """
    path = Path(path)
    if not path.exists():
        raise FormatError(f"Input file not found: {path}")
    separator = "\t" if path.suffix.lower() in (".tsv", ".tab", ".txt") else ","
    try:
        return pl.read_csv(path, separator=separator, infer_schema_length=0)
    except (pl.exceptions.ComputeError, pl.exceptions.NoDataError) as e:
        raise FormatError(f"Could not parse {path.name}: {e}") from e


def normalize_columns(df: pl.DataFrame) -> pl.DataFrame:
    """Rename header spellings to the canonical column names.

    Raises FormatError listing every required column still missing afterwards.
    """
    rename: dict[str, str] = {}
    for col in df.columns:
        key = _canonical_key(col)
        if key not in REQUIRED_COLUMNS:
            key = COLUMN_ALIASES.get(key.replace("_", ""), COLUMN_ALIASES.get(key, key))
        if key != col:
            rename[col] = key
    final = [rename.get(c, c) for c in df.columns]
    clashes = sorted({c for c in final if final.count(c) > 1})
    if clashes:
        msg = f"Several headers map to the same column: {', '.join(clashes)}"
        raise FormatError(msg)
    df = df.rename(rename)

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise FormatError(f"Missing required columns: {', '.join(missing)}")
    return df


def _map_levels(
    df: pl.DataFrame,
    column: str,
    aliases: dict[str, str],
    levels: tuple[str, ...],
) -> pl.DataFrame:
    """Map free-text categorical values onto a fixed enumeration."""
    lookup = {_canonical_key(level): level for level in levels}
    lookup.update(aliases)

    raw = df[column].to_list()
    mapped: list[str | None] = []
    unknown: list[str] = []
    for value in raw:
        if value is None:
            unknown.append("<missing>")
            mapped.append(None)
            continue
        key = _canonical_key(value)
        level = lookup.get(key, lookup.get(key.replace("_", "")))
        if level is None:
            unknown.append(value)
        mapped.append(level)

    if unknown:
        msg = (
            f"Unknown {column} values: {_quote(sorted(set(unknown)))}. "
            f"Expected one of: {', '.join(levels)}"
        )
        raise FormatError(msg)
    return df.with_columns(pl.Series(column, mapped, dtype=pl.Utf8))


def normalize_levels(df: pl.DataFrame) -> pl.DataFrame:
    """Normalize treatment, marker, and sex labels; trim the free-form id columns."""
    free_form = [c for c in ID_COLUMNS if c not in ("treatment", "marker", "sex")]
    df = df.with_columns([pl.col(c).str.strip_chars() for c in free_form])

    for col in free_form:
        blank = df.filter(pl.col(col).is_null() | (pl.col(col) == ""))
        if blank.height > 0:
            raise FormatError(f"{blank.height} rows have an empty {col}")

    df = _map_levels(df, "treatment", TREATMENT_ALIASES, TREATMENT_LEVELS)
    df = _map_levels(df, "marker", MARKER_ALIASES, MARKER_LEVELS)
    df = _map_levels(df, "sex", SEX_ALIASES, SEX_LEVELS)
    return df


def parse_counts(df: pl.DataFrame) -> pl.DataFrame:
    """Cast the four offspring-count columns to non-negative Int64.

    Raises FormatError on missing, non-numeric, fractional, or negative counts.
    """
    for col in COUNT_COLUMNS:
        text = df[col].str.strip_chars()
        numeric = text.cast(pl.Float64, strict=False)

        missing_mask = text.is_null() | (text == "")
        if missing_mask.any():
            ids = df.filter(missing_mask)["vial_id"].to_list()
            raise FormatError(f"Missing {col} count for vials: {_quote(ids)}")

        bad_mask = numeric.is_null() | numeric.is_nan() | numeric.is_infinite()
        if bad_mask.any():
            ids = df.filter(bad_mask)["vial_id"].to_list()
            raise FormatError(f"Non-numeric {col} count for vials: {_quote(ids)}")

        frac_mask = numeric != numeric.floor()
        if frac_mask.any():
            ids = df.filter(frac_mask)["vial_id"].to_list()
            raise FormatError(f"Fractional {col} count for vials: {_quote(ids)}")

        neg_mask = numeric < 0
        if neg_mask.any():
            ids = df.filter(neg_mask)["vial_id"].to_list()
            raise FormatError(f"Negative {col} count for vials: {_quote(ids)}")

        df = df.with_columns(numeric.cast(pl.Int64).alias(col))
    return df


def add_derived_totals(df: pl.DataFrame) -> pl.DataFrame:
    """Add total_focal, total_competitor, total_all, and prop_focal.

    prop_focal is null for vials with no offspring at all.
    """
    df = df.with_columns(
        (pl.col("focal_female") + pl.col("focal_male")).alias("total_focal"),
        (pl.col("competitor_female") + pl.col("competitor_male")).alias("total_competitor"),
    )
    df = df.with_columns((pl.col("total_focal") + pl.col("total_competitor")).alias("total_all"))
    return df.with_columns(
        pl.when(pl.col("total_all") > 0)
        .then(pl.col("total_focal") / pl.col("total_all"))
        .otherwise(None)
        .alias("prop_focal")
    )


def validate_invariants(df: pl.DataFrame) -> None:
    """Check the experimental-design invariants.

    - Each population has exactly one treatment and one marker.
    - A rearing vial never spans two blocks.
    - Vial ids are unique.
    """
    per_pop = df.group_by("population").agg(
        pl.col("treatment").n_unique().alias("n_treatment"),
        pl.col("marker").n_unique().alias("n_marker"),
    )
    bad_treatment = per_pop.filter(pl.col("n_treatment") > 1)["population"].sort().to_list()
    if bad_treatment:
        raise FormatError(
            f"Populations assigned to more than one treatment: {_quote(bad_treatment)}"
        )
    bad_marker = per_pop.filter(pl.col("n_marker") > 1)["population"].sort().to_list()
    if bad_marker:
        raise FormatError(f"Populations carrying more than one marker: {_quote(bad_marker)}")

    per_vial = df.group_by("rearing_vial").agg(pl.col("block").n_unique().alias("n_block"))
    bad_vials = per_vial.filter(pl.col("n_block") > 1)["rearing_vial"].sort().to_list()
    if bad_vials:
        raise FormatError(f"Rearing vials shared between blocks: {_quote(bad_vials)}")

    dup = df.filter(pl.col("vial_id").is_duplicated())["vial_id"].unique().sort().to_list()
    if dup:
        raise FormatError(f"Duplicate vial ids: {_quote(dup)}")


def prepare_fitness_table(raw: pl.DataFrame) -> pl.DataFrame:
    """Run the full normalization chain; every column is first read as text."""
    df = normalize_columns(raw.with_columns(pl.all().cast(pl.Utf8)))
    if df.height == 0:
        raise FormatError("Input table has no rows")
    df = normalize_levels(df)
    df = parse_counts(df)
    df = add_derived_totals(df)
    validate_invariants(df)
    extra = [c for c in df.columns if c not in REQUIRED_COLUMNS + DERIVED_COLUMNS]
    return df.select(*REQUIRED_COLUMNS, *DERIVED_COLUMNS, *extra)


def load_fitness_data(path: Path) -> pl.DataFrame:
    """Load the fitness-assay table into a validated polars DataFrame."""
    return prepare_fitness_table(read_table(path))


def split_by_sex(df: pl.DataFrame) -> dict[str, pl.DataFrame]:
    """Split into per-sex tables, in SEX_LEVELS order, skipping absent sexes."""
    return {
        sex: df.filter(pl.col("sex") == sex)
        for sex in SEX_LEVELS
        if df.filter(pl.col("sex") == sex).height > 0
    }


def data_fingerprint(df: pl.DataFrame) -> str:
    """Stable sha256 over the model-relevant columns, used in fit cache keys."""
    canonical = df.select(*REQUIRED_COLUMNS).write_csv()
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def summarize_design(df: pl.DataFrame) -> pl.DataFrame:
    """Vial counts and mean focal proportion per sex x treatment, for the report."""
    return (
        df.group_by("sex", "treatment")
        .agg(
            pl.len().alias("n_vials"),
            pl.col("population").n_unique().alias("n_populations"),
            pl.col("total_focal").sum().alias("total_focal"),
            pl.col("total_all").sum().alias("total_all"),
            pl.col("prop_focal").mean().alias("mean_prop_focal"),
        )
        .sort("sex", "treatment")
    )
