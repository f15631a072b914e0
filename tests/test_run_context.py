"""
Tests for analysis run context infrastructure in analysis/run_context.py.

Covers _TeeStream output capture, dataset labels, run labels, elapsed-time
formatting, git hash retrieval, manifests, and the RunContext lifecycle
(directory creation, log capture, run metadata, symlinks, report output).

Run: uv run pytest tests/test_run_context.py -v
"""

import io
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.report import TextSection
from analysis.run_context import (
    RunContext,
    _format_elapsed,
    _git_commit_hash,
    _next_run_label,
    _TeeStream,
    dataset_name,
    save_manifest,
)

# ── _TeeStream ───────────────────────────────────────────────────────────────


class TestTeeStream:
    """Duplicates output to original stream and internal buffer."""

    def test_write_returns_length(self):
        tee = _TeeStream(io.StringIO())
        assert tee.write("hello") == 5

    def test_write_goes_to_both(self):
        original = io.StringIO()
        tee = _TeeStream(original)
        tee.write("hello ")
        tee.write("world")
        assert original.getvalue() == "hello world"
        assert tee.getvalue() == "hello world"

    def test_flush_does_not_raise(self):
        _TeeStream(io.StringIO()).flush()

    def test_empty_write(self):
        tee = _TeeStream(io.StringIO())
        assert tee.write("") == 0
        assert tee.getvalue() == ""


# ── dataset_name() ───────────────────────────────────────────────────────────


class TestDatasetName:
    def test_spaces_and_case(self):
        assert dataset_name("data/Fitness Assay 2024.csv") == "fitness_assay_2024"

    def test_plain_stem(self):
        assert dataset_name(Path("assay.tsv")) == "assay"

    def test_punctuation_collapsed(self):
        assert dataset_name("run--1 (final).csv") == "run_1_final"

    def test_fallback(self):
        assert dataset_name("___.csv") == "dataset"


# ── _next_run_label() ────────────────────────────────────────────────────────


class TestNextRunLabel:
    """Unique run labels avoid clobbering same-day results."""

    def test_first_run_returns_bare_date(self, tmp_path):
        assert _next_run_label(tmp_path, "261018") == "261018"

    def test_second_run_returns_dot_1(self, tmp_path):
        (tmp_path / "261018").mkdir()
        assert _next_run_label(tmp_path, "261018") == "261018.1"

    def test_gap_fills_next_available(self, tmp_path):
        (tmp_path / "261018").mkdir()
        (tmp_path / "261018.1").mkdir()
        (tmp_path / "261018.3").mkdir()
        assert _next_run_label(tmp_path, "261018") == "261018.2"

    def test_symlink_not_counted_as_existing(self, tmp_path):
        target = tmp_path / "something"
        target.mkdir()
        (tmp_path / "261018").symlink_to(target)
        assert _next_run_label(tmp_path, "261018") == "261018"

    def test_nonexistent_analysis_dir(self, tmp_path):
        assert _next_run_label(tmp_path / "missing", "261018") == "261018"


# ── _format_elapsed() ────────────────────────────────────────────────────────


class TestFormatElapsed:
    """Human-readable elapsed time formatting."""

    def test_seconds_only(self):
        assert _format_elapsed(3.2) == "3.2s"

    def test_minutes_and_seconds(self):
        assert _format_elapsed(105) == "1m 45s"

    def test_hours_minutes_seconds(self):
        assert _format_elapsed(4325) == "1h 12m 5s"

    def test_just_under_one_minute(self):
        assert _format_elapsed(59.9) == "59.9s"


# ── _git_commit_hash() ───────────────────────────────────────────────────────


class TestGitCommitHash:
    def test_returns_hex_or_unknown(self):
        result = _git_commit_hash()
        assert isinstance(result, str)
        if result != "unknown":
            assert len(result) == 40
            assert all(c in "0123456789abcdef" for c in result)


# ── save_manifest() ──────────────────────────────────────────────────────────


class TestSaveManifest:
    def test_writes_json(self, tmp_path):
        path = save_manifest({"sexes": {"Female": {"status": "ok"}}}, tmp_path)
        assert path == tmp_path / "filtering_manifest.json"
        assert json.loads(path.read_text())["sexes"]["Female"]["status"] == "ok"

    def test_non_json_values_stringified(self, tmp_path):
        path = save_manifest({"data": tmp_path / "assay.csv"}, tmp_path, name="m.json")
        assert json.loads(path.read_text())["data"] == str(tmp_path / "assay.csv")


# ── RunContext ───────────────────────────────────────────────────────────────


def _ctx(tmp_path: Path, **kwargs) -> RunContext:
    return RunContext(dataset="assay", analysis_name="test", results_root=tmp_path, **kwargs)


class TestRunContext:
    """Context manager for structured analysis output."""

    def test_setup_creates_directories(self, tmp_path):
        ctx = _ctx(tmp_path)
        ctx.setup()
        assert ctx.plots_dir.exists()
        assert ctx.data_dir.exists()
        assert ctx.run_dir.parent == tmp_path / "assay" / "test"
        ctx.finalize()

    def test_finalize_writes_run_info(self, tmp_path):
        ctx = _ctx(tmp_path, params={"flag": True})
        ctx.setup()
        ctx.finalize()
        data = json.loads((ctx.run_dir / "run_info.json").read_text())
        assert data["analysis"] == "test"
        assert data["dataset"] == "assay"
        assert data["params"]["flag"] is True
        assert data["failed"] is False
        assert data["elapsed_seconds"] >= 0
        assert "git_commit" in data
        assert "python_version" in data
        assert data["package_version"]

    def test_finalize_writes_run_log(self, tmp_path):
        ctx = _ctx(tmp_path)
        ctx.setup()
        print("test log line")
        ctx.finalize()
        log = (ctx.run_dir / "run_log.txt").read_text()
        assert "test log line" in log

    def test_stdout_restored_after_finalize(self, tmp_path):
        original = sys.stdout
        ctx = _ctx(tmp_path)
        ctx.setup()
        assert sys.stdout is not original
        ctx.finalize()
        assert sys.stdout is original

    def test_latest_symlink(self, tmp_path):
        with _ctx(tmp_path) as ctx:
            pass
        latest = tmp_path / "assay" / "test" / "latest"
        assert latest.is_symlink()
        assert latest.resolve() == ctx.run_dir.resolve()

    def test_exception_marks_failed_and_keeps_latest(self, tmp_path):
        with _ctx(tmp_path) as first:
            pass
        with pytest.raises(RuntimeError), _ctx(tmp_path) as second:
            raise RuntimeError("boom")
        info = json.loads((second.run_dir / "run_info.json").read_text())
        assert info["failed"] is True
        latest = tmp_path / "assay" / "test" / "latest"
        assert latest.resolve() == first.run_dir.resolve()

    def test_failed_flag_without_exception(self, tmp_path):
        with _ctx(tmp_path) as ctx:
            ctx.failed = True
        info = json.loads((ctx.run_dir / "run_info.json").read_text())
        assert info["failed"] is True
        assert not (tmp_path / "assay" / "test" / "latest").exists()

    def test_consecutive_runs_get_separate_dirs(self, tmp_path):
        with _ctx(tmp_path) as first:
            pass
        with _ctx(tmp_path) as second:
            pass
        assert first.run_dir != second.run_dir
        assert second.run_dir.name == f"{first.run_dir.name}.1"

    def test_primer_written(self, tmp_path):
        with _ctx(tmp_path, primer="# Primer\nText."):
            pass
        readme = tmp_path / "assay" / "test" / "README.md"
        assert readme.read_text() == "# Primer\nText."

    def test_no_primer_no_readme(self, tmp_path):
        with _ctx(tmp_path):
            pass
        assert not (tmp_path / "assay" / "test" / "README.md").exists()

    def test_empty_report_not_written(self, tmp_path):
        with _ctx(tmp_path) as ctx:
            pass
        assert not (ctx.run_dir / "test_report.html").exists()

    def test_report_written_with_symlink(self, tmp_path):
        with _ctx(tmp_path, report_title="Fitness") as ctx:
            ctx.report.add(TextSection(id="notes", title="Notes", html="<p>hello</p>"))
        report = ctx.run_dir / "test_report.html"
        assert report.exists()
        html = report.read_text()
        assert "Fitness" in html
        assert "hello" in html
        link = tmp_path / "assay" / "test_report.html"
        assert link.is_symlink()
        assert link.resolve() == report.resolve()
