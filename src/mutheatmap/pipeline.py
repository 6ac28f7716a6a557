"""End-to-end runs: inputs -> parse -> matrix -> colours -> layout -> files."""

from __future__ import annotations

import csv
import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from . import __version__
from .annotation import AnnotationIndex, build_annotation_index
from .colors import ColoredMatrix, map_colors
from .config import HeatmapConfig
from .errors import ParseIssue
from .layout import SceneGraph, layout
from .matrix import MutationMatrix, build_matrix
from .parser import ParseReport, RecordSchema, parse_records
from .render import render_scene
from .report import render_report
from .tables import (
    read_gff3_features,
    read_mutation_table,
    read_sample_order,
    read_vcf_rows,
    write_amino_acid_table,
    write_mutation_table,
)
from .utils import ensure_outdir, write_json
from .validation import check_sample_order, check_table_header, check_vcf_index

logger = logging.getLogger(__name__)

# Parse issues logged one by one before switching to a summary line.
MAX_LOGGED_ISSUES = 20

ISSUE_COLUMNS = ("row", "sample", "token", "severity", "message")


@contextmanager
def _step_log(name: str, timings: Dict[str, float]):
    t0 = time.perf_counter()
    logger.info("Step %s: started", name)
    try:
        yield
    finally:
        dt = time.perf_counter() - t0
        timings[name] = round(dt, 4)
        logger.info("Step %s: %.2f s", name, dt)


class Cancelled(Exception):
    """Raised between stages when the caller's cancel event is set."""


def _checkpoint(cancel: Optional[threading.Event], stage: str) -> None:
    if cancel is not None and cancel.is_set():
        logger.warning("Cancelled before stage %s", stage)
        raise Cancelled(stage)


def plan_outputs(outdir: str | Path, config: HeatmapConfig) -> Dict[str, Path]:
    outdir_p = Path(outdir)
    plan = {f"heatmap_{fmt}": outdir_p / f"heatmap.{fmt}" for fmt in config.output_formats}
    plan.update(
        {
            "mutations": outdir_p / "mutations.tsv.gz",
            "amino_acids": outdir_p / "amino_acids.tsv.gz",
            "scene": outdir_p / "scene.json",
            "parse_issues": outdir_p / "parse_issues.tsv",
            "summary": outdir_p / "summary.json",
            "report": outdir_p / "report.html",
        }
    )
    return plan


def validate_inputs(
    *,
    table: Optional[str | Path],
    vcf: Optional[str | Path],
    gff: Optional[str | Path],
    schema: RecordSchema,
) -> None:
    """Cheap checks before any parsing; raises ValueError with a hint."""
    if (table is None) == (vcf is None):
        raise ValueError("Provide exactly one of a mutation table or a VCF")
    if table is not None:
        check_table_header(table, schema)
    if vcf is not None:
        check_vcf_index(vcf)
    if gff is not None and not Path(gff).exists():
        raise ValueError(f"Annotation file does not exist: {gff}")


def load_rows(
    *,
    table: Optional[str | Path],
    vcf: Optional[str | Path],
    schema: RecordSchema,
) -> Iterable[Mapping[str, Optional[str]]]:
    if table is not None:
        return read_mutation_table(table)
    if vcf is not None:
        field = "mutations" if "mutations" in schema.mutation_fields else schema.mutation_fields[0]
        return read_vcf_rows(vcf, sample_field=schema.sample_field, mutation_field=field)
    raise ValueError("Provide exactly one of a mutation table or a VCF")


def log_issues(issues: Sequence[ParseIssue]) -> None:
    for issue in issues[:MAX_LOGGED_ISSUES]:
        logger.warning(
            "Row %d (sample %s) token %r: %s", issue.row_number, issue.sample_id, issue.token, issue.message
        )
    if len(issues) > MAX_LOGGED_ISSUES:
        logger.warning("... %d more parse issue(s); see parse_issues.tsv", len(issues) - MAX_LOGGED_ISSUES)


def write_parse_issues(path: str | Path, issues: Sequence[ParseIssue]) -> Path:
    path = Path(path)
    with open(path, "wt", encoding="utf-8", newline="") as f:
        w = csv.writer(f, delimiter="\t", lineterminator="\n")
        w.writerow(ISSUE_COLUMNS)
        for i in issues:
            w.writerow([i.row_number, i.sample_id or "", i.token or "", i.severity, i.message])
    return path


def aggregate(
    rows: Iterable[Mapping[str, Optional[str]]],
    config: HeatmapConfig,
    *,
    sample_order: Optional[Sequence[str]] = None,
    progress: bool = False,
) -> Tuple[ParseReport, MutationMatrix]:
    """Parse every row and build the matrix (raises IngestionAborted / BuildError)."""
    report = parse_records(
        rows,
        schema=config.schema,
        policy=config.policy,
        workers=config.workers,
        chunk_size=config.chunk_size,
        progress=progress,
        genome_length=config.genome_length,
    )
    log_issues(report.issues)
    unaligned = report.unaligned_samples()
    if unaligned and not config.genome_length:
        logger.warning(
            "%d sample(s) did not align (empty alignment end) but no genome length is set; "
            "they are not marked missing: %s",
            len(unaligned),
            ", ".join(unaligned[:10]),
        )
    observed = report.sample_order()
    if sample_order is not None:
        check_sample_order(sample_order, observed)
        order = list(sample_order)
    else:
        order = observed
    matrix = build_matrix(
        order,
        report.iter_events(),
        granularity=config.granularity,
        genome_length=config.genome_length,
        missing=report.missing_ranges(),
    )
    logger.info(
        "Aggregated %d events from %d samples into %d sites (%d occupied cells, density %.4g)",
        report.event_count,
        len(observed),
        matrix.num_rows,
        matrix.nnz,
        matrix.density,
    )
    return report, matrix


def run_extract(
    *,
    outdir: str | Path,
    config: HeatmapConfig,
    table: Optional[str | Path] = None,
    vcf: Optional[str | Path] = None,
    gff: Optional[str | Path] = None,
    sample_order: Optional[str | Path] = None,
    progress: bool = False,
) -> Path:
    """Parse and aggregate only; write the long table and the parse issues."""
    outdir_p = ensure_outdir(outdir)
    order = read_sample_order(sample_order) if sample_order is not None else None
    rows = load_rows(table=table, vcf=vcf, schema=config.schema)
    report, matrix = aggregate(rows, config, sample_order=order, progress=progress)
    annotation = build_annotation_index(read_gff3_features(gff)) if gff is not None else None
    out = outdir_p / "mutations.tsv.gz"
    write_mutation_table(matrix, out, annotation=annotation)
    write_amino_acid_table(report.iter_aa_changes(), outdir_p / "amino_acids.tsv.gz", annotation=annotation)
    write_parse_issues(outdir_p / "parse_issues.tsv", report.issues)
    return out


def run_heatmap(
    *,
    outdir: str | Path,
    config: Optional[HeatmapConfig] = None,
    table: Optional[str | Path] = None,
    vcf: Optional[str | Path] = None,
    gff: Optional[str | Path] = None,
    sample_order: Optional[str | Path] = None,
    resume: bool = False,
    progress: bool = False,
    cancel: Optional[threading.Event] = None,
) -> Path:
    """Run every stage and write the heatmap images, tables, scene and report.

    Returns
    -------
    Path
        The HTML report.

    Raises
    ------
    Cancelled
        When ``cancel`` is set; raised only between stages.
    """
    config = config or HeatmapConfig()
    t0 = time.time()
    outdir_p = ensure_outdir(Path(outdir).expanduser().resolve())
    plan = plan_outputs(outdir_p, config)

    if resume and plan["summary"].exists():
        logger.info("Resume enabled: summary.json already exists in %s", outdir_p)
        return plan["report"]

    timings: Dict[str, float] = {}

    _checkpoint(cancel, "read")
    with _step_log("read", timings):
        order = read_sample_order(sample_order) if sample_order is not None else None
        annotation = build_annotation_index(read_gff3_features(gff)) if gff is not None else AnnotationIndex()
        rows = load_rows(table=table, vcf=vcf, schema=config.schema)

    _checkpoint(cancel, "aggregate")
    with _step_log("aggregate", timings):
        report, matrix = aggregate(rows, config, sample_order=order, progress=progress)

    _checkpoint(cancel, "colors")
    with _step_log("colors", timings):
        colored: ColoredMatrix = map_colors(matrix, config.color)

    _checkpoint(cancel, "layout")
    with _step_log("layout", timings):
        scene: SceneGraph = layout(colored, annotation, config.layout)

    _checkpoint(cancel, "render")
    images: List[Path] = []
    with _step_log("render", timings):
        for fmt in config.output_formats:
            images.append(render_scene(scene, plan[f"heatmap_{fmt}"], dpi=config.dpi))

    _checkpoint(cancel, "write")
    with _step_log("write", timings):
        write_mutation_table(matrix, plan["mutations"], annotation=annotation)
        n_aa = write_amino_acid_table(report.iter_aa_changes(), plan["amino_acids"], annotation=annotation)
        write_json(plan["scene"], scene.to_dict())
        write_parse_issues(plan["parse_issues"], report.issues)

        inputs = {
            "table": str(table) if table is not None else None,
            "vcf": str(vcf) if vcf is not None else None,
            "gff": str(gff) if gff is not None else None,
            "sample_order": str(sample_order) if sample_order is not None else None,
        }
        shown = [p for p in images if p.suffix in (".png", ".svg")]
        report_path = render_report(
            outdir=outdir_p,
            version=__version__,
            colored=colored,
            inputs={k: v for k, v in inputs.items() if v is not None},
            issues=report.issues,
            events=report.event_count,
            annotation=annotation,
            heatmap=shown[0].name if shown else None,
            outputs=[p.name for p in plan.values()],
        )

        summary: Dict[str, Any] = {
            "version": __version__,
            "inputs": inputs,
            "matrix": {
                "num_rows": matrix.num_rows,
                "num_cols": matrix.num_cols,
                "nnz": matrix.nnz,
                "density": matrix.density,
                "events": report.event_count,
            },
            "amino_acid_changes": n_aa,
            "unaligned_samples": len(report.unaligned_samples()),
            "features": len(annotation),
            "parse_issues": len(report.issues),
            "color": {"vmin": colored.vmin, "vmax": colored.vmax},
            "outputs": {k: str(v) for k, v in plan.items()},
            "timings": timings,
            "runtime_seconds": float(time.time() - t0),
            "config": config.to_dict(),
        }
        write_json(plan["summary"], summary)

    logger.info("Heatmap complete. Report: %s", report_path)
    return report_path
