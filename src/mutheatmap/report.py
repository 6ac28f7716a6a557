from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from jinja2 import Template

from .colors import ColoredMatrix
from .errors import ParseIssue

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>Mutation heatmap report</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code, pre { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    h1, h2, h3 { margin-top: 1.2em; }
    table { border-collapse: collapse; margin-top: 0.6em; }
    th, td { border: 1px solid #ddd; padding: 6px 8px; }
    th { background: #f2f2f2; text-align: left; }
    .grid { display: grid; grid-template-columns: 1fr 1fr; gap: 16px; }
    .card { border: 1px solid #ddd; border-radius: 8px; padding: 12px; }
    .small { color: #666; font-size: 0.9em; }
    .swatch { display: inline-block; width: 14px; height: 14px; border: 1px solid #999; vertical-align: middle; }
    img { max-width: 100%; height: auto; border: 1px solid #eee; border-radius: 6px; }
  </style>
</head>
<body>

<h1>Mutation heatmap report</h1>
<p class="small">Generated: {{ generated_at }}</p>

<div class="grid">
  <div class="card">
    <h3>Inputs</h3>
    <table>
      {% for key, value in inputs.items() %}
      <tr><th>{{ key }}</th><td><code>{{ value }}</code></td></tr>
      {% endfor %}
    </table>
  </div>
  <div class="card">
    <h3>Matrix</h3>
    <table>
      <tr><th>Sites (rows)</th><td>{{ stats.num_rows }}</td></tr>
      <tr><th>Samples (columns)</th><td>{{ stats.num_cols }}</td></tr>
      <tr><th>Occupied cells</th><td>{{ stats.nnz }}</td></tr>
      <tr><th>Density</th><td>{{ "%.4f"|format(stats.density) }}</td></tr>
      <tr><th>Events</th><td>{{ stats.events }}</td></tr>
      <tr><th>Granularity</th><td>{{ stats.granularity }}</td></tr>
      {% if stats.genome_length %}<tr><th>Genome length</th><td>{{ stats.genome_length }}</td></tr>{% endif %}
    </table>
  </div>
</div>

<h2>Colour scale</h2>
<p>Value: <code>{{ scale.value }}</code>, domain: <code>{{ scale.domain }}</code>,
   range {{ scale.vmin }} to {{ scale.vmax }}.</p>
<table>
  <tr><th>Colour</th><th>Intensity</th><th>Value</th></tr>
  {% for stop in legend %}
  <tr><td><span class="swatch" style="background: {{ stop.color }}"></span> <code>{{ stop.color }}</code></td>
      <td>{{ "%.2f"|format(stop.intensity) }}</td><td>{{ stop.label }}</td></tr>
  {% endfor %}
</table>

<h2>Heatmap</h2>
{% if heatmap %}
<img src="{{ heatmap }}" alt="mutation heatmap">
{% else %}
<p class="small">No image was rendered.</p>
{% endif %}

<h2>Most frequent sites</h2>
{% if top_sites %}
<table>
  <tr><th>Site</th><th>Samples</th><th>Occurrences</th><th>Features</th></tr>
  {% for s in top_sites %}
  <tr><td><code>{{ s.label }}</code></td><td>{{ s.samples }}</td><td>{{ s.total }}</td><td>{{ s.genes }}</td></tr>
  {% endfor %}
</table>
{% else %}
<p class="small">No mutations were observed.</p>
{% endif %}

<h2>Parse issues ({{ n_issues }})</h2>
{% if issues %}
<table>
  <tr><th>Row</th><th>Sample</th><th>Token</th><th>Message</th></tr>
  {% for i in issues %}
  <tr><td>{{ i.row_number }}</td><td>{{ i.sample_id or "" }}</td><td><code>{{ i.token or "" }}</code></td><td>{{ i.message }}</td></tr>
  {% endfor %}
</table>
{% if n_issues > issues|length %}<p class="small">Showing the first {{ issues|length }}; see <code>parse_issues.tsv</code>.</p>{% endif %}
{% else %}
<p class="small">None.</p>
{% endif %}

<h2>Outputs</h2>
<ul>
  {% for name in outputs %}
  <li><code>{{ name }}</code></li>
  {% endfor %}
</ul>

<hr>
<p class="small">mutheatmap {{ version }}</p>
</body>
</html>"""
)


def top_sites(colored: ColoredMatrix, annotation=None, limit: int = 20) -> List[Dict[str, Any]]:
    """Sites ranked by number of samples carrying them (ties keep row order)."""
    m = colored.matrix
    per_site = m.sample_counts()
    totals = m.occurrence_totals()
    ranked = sorted(range(m.num_rows), key=lambda r: (-int(per_site[r]), r))[:limit]
    out = []
    for r in ranked:
        site = m.sites[r]
        genes = ", ".join(annotation.names_for_range(site.position, site.end)) if annotation else ""
        out.append({"label": site.label(), "samples": int(per_site[r]), "total": int(totals[r]), "genes": genes})
    return out


def render_report(
    *,
    outdir: str | Path,
    version: str,
    colored: ColoredMatrix,
    inputs: Dict[str, Any],
    issues: Sequence[ParseIssue],
    events: int,
    annotation=None,
    heatmap: Optional[str] = None,
    outputs: Sequence[str] = (),
    max_issues: int = 200,
) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    m = colored.matrix
    stats = {
        "num_rows": m.num_rows,
        "num_cols": m.num_cols,
        "nnz": m.nnz,
        "density": m.density,
        "events": events,
        "granularity": m.granularity.value,
        "genome_length": m.genome_length,
    }
    scale = {
        "value": colored.scale.value.value,
        "domain": type(colored.scale.domain).__name__,
        "vmin": f"{colored.vmin:g}",
        "vmax": f"{colored.vmax:g}",
    }
    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        inputs=inputs,
        stats=stats,
        scale=scale,
        legend=colored.legend() if m.nnz else [],
        heatmap=heatmap,
        top_sites=top_sites(colored, annotation),
        issues=list(issues)[:max_issues],
        n_issues=len(issues),
        outputs=list(outputs),
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    logger.info("Report written: %s", out_path)
    return out_path
