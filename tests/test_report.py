"""
Tests for the HTML report system in analysis/report.py.

Covers section rendering (Table, Figure, Text), format parsing, ReportBuilder
assembly, and the make_gt helper.

Run: uv run pytest tests/test_report.py -v
"""

import base64
import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import polars as pl
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.report import (
    FigureSection,
    ReportBuilder,
    TableSection,
    TextSection,
    _decimals_from_fmt,
    make_gt,
)

# ── Fixtures ────────────────────────────────────────────────────────────────

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


@pytest.fixture
def contrast_df() -> pl.DataFrame:
    return pl.DataFrame(
        {
            "contrast": ["female_minus_control", "female_over_control"],
            "mean": [0.0812, 1.2034],
            "ci_lower": [0.0213, 1.0451],
            "ci_upper": [0.1398, 1.3877],
            "n_excluded": [0, 0],
        }
    )


# ── _decimals_from_fmt() ─────────────────────────────────────────────────────


class TestDecimalsFromFmt:
    @pytest.mark.parametrize(
        "fmt,expected",
        [(".3f", 3), (",.1f", 1), (".0f", 0), ("d", 0), (",.0f", 0)],
    )
    def test_parse(self, fmt, expected):
        assert _decimals_from_fmt(fmt) == expected


# ── Sections ─────────────────────────────────────────────────────────────────


class TestSections:
    def test_table_render(self):
        html = TableSection(id="t1", title="Table", html="<table></table>").render()
        assert '<div class="table-container" id="t1">' in html
        assert "<table></table>" in html
        assert "caption" not in html

    def test_table_caption(self):
        html = TableSection(id="t1", title="T", html="<table/>", caption="Posterior means").render()
        assert '<p class="caption">Posterior means</p>' in html

    def test_text_render(self):
        html = TextSection(id="warn", title="Warnings", html="<ul><li>k</li></ul>").render()
        assert '<div class="text-container" id="warn">' in html

    def test_frozen(self):
        section = TextSection(id="s", title="S", html="<p>a</p>")
        with pytest.raises(AttributeError):
            section.html = "<p>b</p>"  # type: ignore[misc]

    def test_figure_from_file(self, tmp_path):
        path = tmp_path / "ppc_female.png"
        path.write_bytes(PNG_BYTES)
        section = FigureSection.from_file("ppc-female", "PPC", path, caption="Female")
        assert base64.b64decode(section.image_data) == PNG_BYTES
        html = section.render()
        assert 'alt="PPC"' in html
        assert "data:image/png;base64," in html
        assert "Female" in html

    def test_figure_from_figure(self):
        fig, ax = plt.subplots()
        ax.plot([0, 1], [0, 1])
        section = FigureSection.from_figure("line", "Line", fig)
        plt.close(fig)
        assert base64.b64decode(section.image_data).startswith(b"\x89PNG")


# ── ReportBuilder ────────────────────────────────────────────────────────────


class TestReportBuilder:
    """Assembles sections into a single HTML file."""

    def test_has_sections(self):
        report = ReportBuilder(title="Test")
        assert report.has_sections is False
        report.add(TextSection(id="s1", title="S1", html="<p>Hi</p>"))
        assert report.has_sections is True
        assert report.section_ids == ["s1"]

    def test_header_metadata(self):
        report = ReportBuilder(
            title="Fitness Report",
            dataset="assay_2024",
            git_hash="0123456789abcdef" * 2 + "01234567",
            elapsed_display="2m 15s",
        )
        report.add(TextSection(id="s1", title="S", html="<p>Hi</p>"))
        html = report.render()
        assert "<title>Fitness Report</title>" in html
        assert "Dataset: <strong>assay_2024</strong>" in html
        assert "Runtime: 2m 15s" in html
        assert "<code>01234567</code>" in html

    def test_optional_metadata_omitted(self):
        report = ReportBuilder(title="Test", git_hash="unknown")
        report.add(TextSection(id="s1", title="S", html="<p>Hi</p>"))
        html = report.render()
        assert "Runtime:" not in html
        assert "Git:" not in html
        assert "Dataset:" not in html

    def test_toc_and_numbering(self):
        report = ReportBuilder(title="Test")
        report.add(TextSection(id="overview", title="Overview", html="<p>1</p>"))
        report.add(TextSection(id="contrasts", title="Contrasts", html="<p>2</p>"))
        html = report.render()
        assert 'href="#overview"' in html
        assert 'id="section-contrasts"' in html
        assert '<span class="section-number">2.</span>Contrasts' in html
        assert html.index("Overview") < html.index("Contrasts")

    def test_write(self, tmp_path):
        report = ReportBuilder(title="Test")
        report.add(TableSection(id="t", title="T", html="<table>DATA</table>"))
        path = tmp_path / "report.html"
        report.write(path)
        content = path.read_text()
        assert content.startswith("<!DOCTYPE html>")
        assert "<table>DATA</table>" in content
        assert content.rstrip().endswith("</html>")


# ── make_gt() ────────────────────────────────────────────────────────────────


class TestMakeGt:
    """great_tables helper for APA-style tables."""

    def test_returns_html(self, contrast_df):
        html = make_gt(contrast_df, title="Contrasts", subtitle="Female")
        assert isinstance(html, str)
        assert "Contrasts" in html
        assert "Female" in html

    def test_rejects_non_polars(self):
        with pytest.raises(TypeError, match="polars DataFrame"):
            make_gt({"mean": [1.0]})

    def test_column_labels_and_formats(self, contrast_df):
        html = make_gt(
            contrast_df,
            column_labels={"ci_lower": "2.5%", "ci_upper": "97.5%", "not_a_column": "x"},
            number_formats={"mean": ".3f", "missing": ".1f"},
        )
        assert "2.5%" in html
        assert "97.5%" in html
        assert "0.081" in html
        assert "0.0812" not in html

    def test_source_note(self, contrast_df):
        html = make_gt(contrast_df, source_note="Draws with zero control excluded from ratios")
        assert "Draws with zero control excluded from ratios" in html
