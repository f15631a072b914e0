"""Self-contained HTML report for the fitness analysis.

Sections are rendered independently and assembled into one HTML file with a
table of contents; plots are embedded as base64 PNG so the report can be
mailed or archived as a single file.

Three section types:
  - TableSection: pre-rendered HTML, normally from ``make_gt()`` (great_tables).
  - FigureSection: embedded PNG, from a file on disk or an in-memory figure.
  - TextSection: raw HTML block (methods notes, warnings, primer text).

Usage:
    from analysis.report import ReportBuilder, TableSection, FigureSection, make_gt

    report = ReportBuilder(title="Sex-Limited Fitness Report", dataset="assay_2024")
    report.add(TableSection(id="contrasts-female", title="Contrasts", html=make_gt(df)))
    report.add(FigureSection.from_file("ppc-female", "PPC (Female)", path))
    report.write(Path("report.html"))
"""

from __future__ import annotations

import base64
import io
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from jinja2 import Environment

# ── Section Types ─────────────────────────────────────────────────────────────


def _wrap(css_class: str, section_id: str, body: str, caption: str | None) -> str:
    parts = [f'<div class="{css_class}" id="{section_id}">', body]
    if caption:
        parts.append(f'<p class="caption">{caption}</p>')
    parts.append("</div>")
    return "\n".join(parts)


@dataclass(frozen=True)
class TableSection:
    """Pre-rendered table HTML."""

    id: str
    title: str
    html: str
    caption: str | None = None

    def render(self) -> str:
        return _wrap("table-container", self.id, self.html, self.caption)


@dataclass(frozen=True)
class FigureSection:
    """A base64-embedded PNG figure."""

    id: str
    title: str
    image_data: str
    caption: str | None = None

    @classmethod
    def from_file(
        cls,
        id: str,
        title: str,
        path: Path,
        caption: str | None = None,
    ) -> FigureSection:
        """Embed a PNG already written to disk."""
        b64 = base64.b64encode(Path(path).read_bytes()).decode("ascii")
        return cls(id=id, title=title, image_data=b64, caption=caption)

    @classmethod
    def from_figure(
        cls,
        id: str,
        title: str,
        fig: object,
        caption: str | None = None,
        dpi: int = 150,
    ) -> FigureSection:
        """Embed an in-memory matplotlib Figure."""
        buf = io.BytesIO()
        fig.savefig(  # type: ignore[union-attr]
            buf, format="png", dpi=dpi, bbox_inches="tight", facecolor="white"
        )
        b64 = base64.b64encode(buf.getvalue()).decode("ascii")
        return cls(id=id, title=title, image_data=b64, caption=caption)

    def render(self) -> str:
        img = f'<img src="data:image/png;base64,{self.image_data}" alt="{self.title}" />'
        return _wrap("figure-container", self.id, img, self.caption)


@dataclass(frozen=True)
class TextSection:
    """A raw HTML block."""

    id: str
    title: str
    html: str
    caption: str | None = None

    def render(self) -> str:
        return _wrap("text-container", self.id, self.html, self.caption)


SectionType = TableSection | FigureSection | TextSection


# ── make_gt Helper ────────────────────────────────────────────────────────────


def make_gt(
    df: object,
    title: str | None = None,
    subtitle: str | None = None,
    column_labels: dict[str, str] | None = None,
    number_formats: dict[str, str] | None = None,
    source_note: str | None = None,
) -> str:
    """Render a polars DataFrame as an APA-style great_tables HTML table.

    Args:
        df: A polars DataFrame to display.
        title: Table title.
        subtitle: Smaller line under the title.
        column_labels: Column name -> display label.
        number_formats: Column name -> format spec such as ".3f" or ",.0f".
        source_note: Footnote under the table.

    Returns:
        HTML string with inline CSS.
    """
    import great_tables as gt_mod
    import polars as pl

    if not isinstance(df, pl.DataFrame):
        msg = f"make_gt expects a polars DataFrame, got {type(df).__name__}"
        raise TypeError(msg)

    tbl = gt_mod.GT(df)
    if title:
        tbl = tbl.tab_header(title=title, subtitle=subtitle)
    if column_labels:
        tbl = tbl.cols_label(**{k: v for k, v in column_labels.items() if k in df.columns})
    for col_name, fmt in (number_formats or {}).items():
        if col_name in df.columns:
            tbl = tbl.fmt_number(
                columns=col_name,
                decimals=_decimals_from_fmt(fmt),
                use_seps="," in fmt,
            )
    if source_note:
        tbl = tbl.tab_source_note(source_note)

    rule = {"style": "solid", "color": "#222222"}
    tbl = tbl.tab_options(
        table_border_top_style=rule["style"],
        table_border_top_width="2px",
        table_border_top_color=rule["color"],
        table_border_bottom_style=rule["style"],
        table_border_bottom_width="2px",
        table_border_bottom_color=rule["color"],
        column_labels_border_bottom_style=rule["style"],
        column_labels_border_bottom_width="1px",
        column_labels_border_bottom_color=rule["color"],
        table_width="100%",
        table_font_size="13px",
        heading_title_font_size="15px",
        heading_subtitle_font_size="12px",
        source_notes_font_size="11px",
    )
    return tbl.as_raw_html(inline_css=True)


def _decimals_from_fmt(fmt: str) -> int:
    """'.3f' -> 3, ',.0f' -> 0, anything else -> 0."""
    m = re.search(r"\.(\d+)f", fmt)
    return int(m.group(1)) if m else 0


# ── ReportBuilder ─────────────────────────────────────────────────────────────


@dataclass
class ReportBuilder:
    """Collects sections and writes one HTML document."""

    title: str = "Analysis Report"
    dataset: str = ""
    git_hash: str = ""
    elapsed_display: str = ""
    _sections: list[SectionType] = field(default_factory=list)

    def add(self, section: SectionType) -> None:
        self._sections.append(section)

    @property
    def has_sections(self) -> bool:
        return bool(self._sections)

    @property
    def section_ids(self) -> list[str]:
        return [s.id for s in self._sections]

    def render(self) -> str:
        """Render all sections into a complete HTML document."""
        sections = [
            {"number": i, "id": s.id, "title": s.title, "content": s.render()}
            for i, s in enumerate(self._sections, 1)
        ]
        generated_at = datetime.now().astimezone().strftime("%Y-%m-%d %H:%M %Z")
        return _get_template().render(
            title=self.title,
            dataset=self.dataset,
            git_hash=self.git_hash,
            elapsed_display=self.elapsed_display,
            generated_at=generated_at,
            sections=sections,
            css=REPORT_CSS,
        )

    def write(self, path: Path) -> None:
        Path(path).write_text(self.render(), encoding="utf-8")


# ── Template & CSS ────────────────────────────────────────────────────────────


REPORT_CSS = """\
body {
  font-family: Georgia, "Times New Roman", serif;
  max-width: 1040px;
  margin: 0 auto;
  padding: 24px 28px;
  color: #202020;
  line-height: 1.45;
}
header { border-bottom: 2px solid #202020; margin-bottom: 20px; padding-bottom: 8px; }
header h1 { font-size: 23px; margin: 0 0 4px 0; }
header .meta { font-size: 12px; color: #555; }
header .meta span { margin-right: 14px; }
nav.toc { background: #f6f6f4; border: 1px solid #ddd; padding: 12px 18px; margin-bottom: 28px; }
nav.toc h2 { font-size: 14px; margin: 0 0 6px 0; }
nav.toc ol { margin: 0; padding-left: 20px; column-count: 2; }
nav.toc li { font-size: 13px; }
nav.toc a { color: #1f5f8b; text-decoration: none; }
section.report-section { margin-bottom: 32px; }
section.report-section h2 { font-size: 17px; border-bottom: 1px solid #444; padding-bottom: 3px; }
.section-number { color: #888; font-weight: normal; margin-right: 6px; }
.table-container { overflow-x: auto; margin-bottom: 10px; }
.figure-container { text-align: center; margin: 10px 0; }
.figure-container img { max-width: 100%; height: auto; }
.text-container { margin-bottom: 10px; }
.caption { font-size: 12px; color: #666; font-style: italic; text-align: center; }
footer { margin-top: 40px; border-top: 1px solid #ccc; font-size: 11px; color: #888; }
@media print { nav.toc { display: none; } }"""

REPORT_TEMPLATE = """\
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <title>{{ title }}</title>
  <style>{{ css }}</style>
</head>
<body>
  <header>
    <h1>{{ title }}</h1>
    <div class="meta">
      {% if dataset %}<span>Dataset: <strong>{{ dataset }}</strong></span>{% endif %}
      <span>Generated: {{ generated_at }}</span>
      {% if elapsed_display %}<span>Runtime: {{ elapsed_display }}</span>{% endif %}
      {% if git_hash and git_hash != "unknown" %}<span>Git: <code>{{ git_hash[:8] }}</code></span>{% endif %}
    </div>
  </header>
  <nav class="toc">
    <h2>Contents</h2>
    <ol>
      {% for s in sections %}<li><a href="#{{ s.id }}">{{ s.title }}</a></li>
      {% endfor %}
    </ol>
  </nav>
  {% for s in sections %}
  <section class="report-section" id="section-{{ s.id }}">
    <h2><span class="section-number">{{ s.number }}.</span>{{ s.title }}</h2>
    {{ s.content }}
  </section>
  {% endfor %}
  <footer>{{ title }}{% if dataset %} | {{ dataset }}{% endif %} | {{ generated_at }}</footer>
</body>
</html>"""


def _get_template():
    """Compiled Jinja2 template."""
    return Environment(autoescape=False).from_string(REPORT_TEMPLATE)
