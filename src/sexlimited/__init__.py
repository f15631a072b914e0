"""Sex-limited inheritance fitness analysis - beta-binomial models of fly fitness assays."""

__version__ = "2026.10.18"

from sexlimited.errors import ConvergenceError as ConvergenceError
from sexlimited.errors import DiagnosticWarning as DiagnosticWarning
from sexlimited.errors import FormatError as FormatError
