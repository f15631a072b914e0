"""Configuration constants for the sex-limited inheritance fitness analysis."""

from pathlib import Path

try:
    from importlib.metadata import version as _pkg_version

    PACKAGE_VERSION = _pkg_version("sexlimited")
except Exception:
    PACKAGE_VERSION = "dev"

# ── Fixed enumerations ───────────────────────────────────────────────────────

# Reference level first: the intercept absorbs Control, and treatment effects
# are contrasts against it.
TREATMENT_LEVELS = ("Control", "Female_limited", "Male_limited")
CONTROL_LEVEL = TREATMENT_LEVELS[0]
TREATMENT_CONTRASTS = TREATMENT_LEVELS[1:]

MARKER_LEVELS = ("DsRed", "GFP")
SEX_LEVELS = ("Female", "Male")

TREATMENT_ALIASES: dict[str, str] = {
    "control": "Control",
    "c": "Control",
    "ctrl": "Control",
    "female_limited": "Female_limited",
    "femalelimited": "Female_limited",
    "fl": "Female_limited",
    "male_limited": "Male_limited",
    "malelimited": "Male_limited",
    "ml": "Male_limited",
}

MARKER_ALIASES: dict[str, str] = {
    "dsred": "DsRed",
    "red": "DsRed",
    "rfp": "DsRed",
    "gfp": "GFP",
    "green": "GFP",
}

SEX_ALIASES: dict[str, str] = {
    "female": "Female",
    "f": "Female",
    "male": "Male",
    "m": "Male",
}

# ── Input columns ────────────────────────────────────────────────────────────

ID_COLUMNS = ("vial_id", "block", "population", "treatment", "marker", "sex", "rearing_vial")
COUNT_COLUMNS = ("focal_female", "focal_male", "competitor_female", "competitor_male")
REQUIRED_COLUMNS = ID_COLUMNS + COUNT_COLUMNS
DERIVED_COLUMNS = ("total_focal", "total_competitor", "total_all", "prop_focal")

# Header spellings seen in exported spreadsheets
COLUMN_ALIASES: dict[str, str] = {
    "vial": "vial_id",
    "vialid": "vial_id",
    "id": "vial_id",
    "pop": "population",
    "line": "population",
    "rearing": "rearing_vial",
    "rearingvial": "rearing_vial",
    "focalfemale": "focal_female",
    "focalmale": "focal_male",
    "competitorfemale": "competitor_female",
    "competitormale": "competitor_male",
}

# ── Paths ────────────────────────────────────────────────────────────────────

RESULTS_ROOT = Path("results")
CACHE_DIR = Path("fits")
ANALYSIS_NAME = "sex_limited"

# ── Sampler defaults ─────────────────────────────────────────────────────────

N_CHAINS = 4
N_ITER = 4000
N_WARMUP = 2000
N_DRAWS = N_ITER - N_WARMUP  # retained per chain → 8000 total
TARGET_ACCEPT = 0.95
MAX_TREEDEPTH = 10
RANDOM_SEED = 2

# ── Convergence thresholds ───────────────────────────────────────────────────

RHAT_THRESHOLD = 1.01
ESS_THRESHOLD = 400
MAX_DIVERGENT_FRACTION = 0.01
EBFMI_THRESHOLD = 0.3

# ── Diagnostics ──────────────────────────────────────────────────────────────

PARETO_K_THRESHOLD = 0.7
PPC_N_REPS = 500
PPC_P_LOWER = 0.025
PPC_P_UPPER = 0.975
CI_LEVEL = 0.95
