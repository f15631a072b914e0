"""Analysis pipeline for the sex-limited inheritance fitness experiment.

Pipeline phases (in order, run once per sex):
  01_data        — Load and validate the fitness-assay table
  02_model       — Beta-binomial likelihood, priors, PyMC model + fit cache
  03_diagnostics — Convergence, PSIS-LOO, posterior predictive checks
  04_summary     — Treatment probabilities, differences, ratios
  05_report      — Figures and HTML report sections

Shared infrastructure at root: run_context.py, report.py, sex_limited.py (CLI)

Uses a PEP 302 meta-path finder so that ``from analysis.fitness_data import X``
transparently loads ``analysis.01_data.fitness_data``.  Zero import changes needed.
"""

from __future__ import annotations

import importlib
import sys
import types
from importlib.abc import MetaPathFinder
from importlib.machinery import ModuleSpec

_MODULE_MAP: dict[str, str] = {
    "fitness_data": "01_data",
    "synthetic": "01_data",
    "likelihood": "02_model",
    "model_spec": "02_model",
    "fitness_model": "02_model",
    "diagnostics_data": "03_diagnostics",
    "posterior_summary": "04_summary",
    "fitness_plots": "05_report",
    "fitness_report": "05_report",
}


class _AliasLoader:
    """Loader that imports the real module and registers it under the alias."""

    def __init__(self, real_name: str) -> None:
        self.real_name = real_name

    def create_module(self, spec: ModuleSpec) -> types.ModuleType | None:
        return None  # use default semantics

    def exec_module(self, module: types.ModuleType) -> None:
        real = importlib.import_module(self.real_name)
        # Copy all attributes from the real module into the alias
        module.__dict__.update(real.__dict__)
        module.__file__ = real.__file__
        module.__loader__ = real.__loader__
        if hasattr(real, "__path__"):
            module.__path__ = real.__path__


class _AnalysisRedirectFinder(MetaPathFinder):
    """Redirect ``analysis.<name>`` imports to ``analysis.<NN_subdir>.<name>``."""

    def find_spec(
        self,
        fullname: str,
        path: object = None,
        target: types.ModuleType | None = None,
    ) -> ModuleSpec | None:
        parts = fullname.split(".")
        if len(parts) == 2 and parts[0] == "analysis" and parts[1] in _MODULE_MAP:
            name = parts[1]
            subpkg = _MODULE_MAP[name]
            real = f"analysis.{subpkg}.{name}"
            return ModuleSpec(fullname, _AliasLoader(real))
        return None


sys.meta_path.insert(0, _AnalysisRedirectFinder())
