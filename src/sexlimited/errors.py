"""Error taxonomy for the fitness pipeline.

Fatal errors (``FormatError``, ``ConvergenceError``) stop the affected sex's
pipeline; ``DiagnosticWarning`` is surfaced to the operator and the run continues.
Every error carries the sex and stage it came from so a failure can be acted on
without re-running the whole pipeline.
"""


def _prefix(sex: str | None, stage: str | None) -> str:
    parts = [p for p in (sex, stage) if p]
    return f"[{'/'.join(parts)}] " if parts else ""


class FormatError(ValueError):
    """Input table is malformed: missing columns, bad counts, broken invariants."""

    def __init__(self, message: str, *, sex: str | None = None, stage: str | None = "load") -> None:
        self.sex = sex
        self.stage = stage
        self.detail = message
        super().__init__(f"{_prefix(sex, stage)}{message}")


class ConvergenceError(RuntimeError):
    """Sampler diagnostics indicate the posterior cannot be trusted."""

    def __init__(
        self,
        message: str,
        *,
        sex: str | None = None,
        stage: str | None = "fit",
        diagnostics: dict | None = None,
    ) -> None:
        self.sex = sex
        self.stage = stage
        self.detail = message
        self.diagnostics = diagnostics or {}
        super().__init__(f"{_prefix(sex, stage)}{message}")


class DiagnosticWarning(UserWarning):
    """Non-fatal diagnostic: influential observations or predictive mismatch."""

    def __init__(
        self, message: str, *, sex: str | None = None, stage: str | None = "diagnostics"
    ) -> None:
        self.sex = sex
        self.stage = stage
        self.detail = message
        super().__init__(f"{_prefix(sex, stage)}{message}")
