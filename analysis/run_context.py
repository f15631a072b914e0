"""Run context for structured analysis output.

Every run of the pipeline gets:
  - Output directories: results/<dataset>/<analysis>/<YYMMDD>/plots/ + data/
  - Console log capture (run_log.txt)
  - Run metadata (run_info.json): git hash, timestamps, parameters, outcome
  - A `latest` symlink to the most recent successful run
  - The HTML report, plus a convenience symlink at results/<dataset>/

Usage:
    with RunContext(
        dataset="assay_2024",
        analysis_name="sex_limited",
        params=vars(args),
        primer=PRIMER,            # Markdown written to results/<dataset>/sex_limited/README.md
    ) as ctx:
        df.write_parquet(ctx.data_dir / "contrasts_female.parquet")
        save_fig(fig, ctx.plots_dir / "ppc_female.png")
        save_manifest(manifest, ctx.run_dir)
"""

from __future__ import annotations

import io
import json
import re
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import TextIO

from sexlimited.config import PACKAGE_VERSION, RESULTS_ROOT


class _TeeStream:
    """Duplicates writes to the original stream and an in-memory buffer.

    print() output still reaches the console while being captured for run_log.txt.
    """

    def __init__(self, original: io.TextIOBase) -> None:
        self._original = original
        self._buffer = io.StringIO()

    def write(self, data: str) -> int:
        self._original.write(data)
        self._buffer.write(data)
        return len(data)

    def flush(self) -> None:
        self._original.flush()

    def getvalue(self) -> str:
        return self._buffer.getvalue()


def dataset_name(path: Path | str) -> str:
    """Directory-safe dataset label from an input file name.

    Examples:
        "data/Fitness Assay 2024.csv" -> "fitness_assay_2024"
        "assay.tsv"                   -> "assay"
    """
    stem = Path(path).stem.strip().lower()
    slug = re.sub(r"[^a-z0-9]+", "_", stem).strip("_")
    return slug or "dataset"


def _git_commit_hash() -> str:
    """Current git commit hash, or 'unknown' outside a repository."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except (FileNotFoundError, subprocess.TimeoutExpired):
        pass
    return "unknown"


def _format_elapsed(seconds: float) -> str:
    """Format elapsed seconds into a human-readable string.

    Examples: "3.2s", "1m 45s", "1h 12m 5s"
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m {secs}s"


def _next_run_label(analysis_dir: Path, today: str) -> str:
    """Unique run label for today: "261018", then "261018.1", "261018.2", ..."""
    if not (analysis_dir / today).exists() or (analysis_dir / today).is_symlink():
        return today
    n = 1
    while (analysis_dir / f"{today}.{n}").exists():
        n += 1
    return f"{today}.{n}"


def _replace_symlink(link: Path, target: Path | str) -> None:
    if link.is_symlink() or link.exists():
        link.unlink()
    link.symlink_to(target)


def save_manifest(manifest: dict, run_dir: Path, name: str = "filtering_manifest.json") -> Path:
    """Write the run manifest (per-sex outcomes, counts, diagnostics) as JSON."""
    path = run_dir / name
    with open(path, "w") as f:
        json.dump(manifest, f, indent=2, default=str)
    return path


class RunContext:
    """Context manager that sets up structured output for an analysis run.

    Attributes:
        dataset: Dataset label (directory name under the results root).
        analysis_name: Name of the analysis (e.g. "sex_limited").
        params: Script parameters recorded in run_info.json.
        run_dir: Root of this run's output (results/<dataset>/<analysis>/<date>/).
        plots_dir: Directory for PNG plots.
        data_dir: Directory for parquet summary tables.
        report: ReportBuilder that is written on exit if it has sections.
    """

    def __init__(
        self,
        dataset: str,
        analysis_name: str,
        params: dict | None = None,
        results_root: Path | None = None,
        primer: str | None = None,
        report_title: str | None = None,
    ) -> None:
        self.dataset = dataset
        self.analysis_name = analysis_name
        self.params = params or {}

        root = Path(results_root) if results_root is not None else RESULTS_ROOT
        today = datetime.now().astimezone().strftime("%y%m%d")
        self._dataset_root = root / dataset
        self._analysis_dir = self._dataset_root / analysis_name
        self._run_label = _next_run_label(self._analysis_dir, today)
        self.run_dir = self._analysis_dir / self._run_label
        self.plots_dir = self.run_dir / "plots"
        self.data_dir = self.run_dir / "data"

        self._today = today
        self._primer = primer
        self._tee: _TeeStream | None = None
        self._original_stdout: TextIO | None = None
        self._start_time: datetime | None = None
        self.failed = False

        self.report = self._init_report(report_title)

    def __enter__(self) -> RunContext:
        self.setup()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.finalize(failed=exc_type is not None or self.failed)

    def _init_report(self, title: str | None) -> object:
        try:
            from analysis.report import ReportBuilder
        except ModuleNotFoundError:
            from report import ReportBuilder  # type: ignore[no-redef]
        return ReportBuilder(
            title=title or f"{self.analysis_name.replace('_', ' ').title()} Report",
            dataset=self.dataset,
        )

    def setup(self) -> None:
        """Create directories, write the primer, and start log capture."""
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.plots_dir.mkdir(exist_ok=True)
        self.data_dir.mkdir(exist_ok=True)

        if self._primer:
            (self._analysis_dir / "README.md").write_text(self._primer, encoding="utf-8")

        self._original_stdout = sys.stdout
        self._tee = _TeeStream(sys.stdout)
        sys.stdout = self._tee  # type: ignore[assignment]
        self._start_time = datetime.now().astimezone()

    def finalize(self, *, failed: bool = False) -> None:
        """Write run_log.txt, run_info.json, the report, and update `latest`."""
        # Restore stdout first so the metadata writes are not captured
        log_text = self._tee.getvalue() if self._tee is not None else ""
        if self._original_stdout is not None:
            sys.stdout = self._original_stdout  # type: ignore[assignment]

        (self.run_dir / "run_log.txt").write_text(log_text, encoding="utf-8")

        end_time = datetime.now().astimezone()
        elapsed_seconds = (end_time - self._start_time).total_seconds() if self._start_time else 0.0
        run_info = {
            "analysis": self.analysis_name,
            "dataset": self.dataset,
            "run_date": self._today,
            "run_label": self._run_label,
            "timestamp_start": self._start_time.isoformat() if self._start_time else None,
            "timestamp_end": end_time.isoformat(),
            "elapsed_seconds": round(elapsed_seconds, 1),
            "elapsed_display": _format_elapsed(elapsed_seconds),
            "git_commit": _git_commit_hash(),
            "python_version": sys.version,
            "package_version": PACKAGE_VERSION,
            "failed": failed,
            "params": self.params,
        }
        with open(self.run_dir / "run_info.json", "w") as f:
            json.dump(run_info, f, indent=2, default=str)

        print(f"\n{self.analysis_name.upper()} completed in {run_info['elapsed_display']}")

        if self.report is not None and self.report.has_sections:
            self.report.git_hash = run_info["git_commit"]
            self.report.elapsed_display = run_info["elapsed_display"]
            report_name = f"{self.analysis_name}_report.html"
            self.report.write(self.run_dir / report_name)
            _replace_symlink(
                self._dataset_root / report_name,
                Path(self.analysis_name) / "latest" / report_name,
            )

        # Failed runs leave `latest` alone so it keeps pointing at complete results
        if not failed:
            _replace_symlink(self._analysis_dir / "latest", self._run_label)
