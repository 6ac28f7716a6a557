from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .colors import FrequencyMode
from .config import HeatmapConfig, apply_overrides, load_config
from .layout import RowSizing
from .models import SiteGranularity
from .parser import ParsePolicy
from .pipeline import plan_outputs, run_extract, run_heatmap, validate_inputs
from .render import SUPPORTED_FORMATS
from .toy_data import make_toy_data


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _log_path(outdir: Path, name: str) -> Path:
    return outdir / "logs" / name


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    sys.stderr.write(f"{err.__class__.__name__}: {err}\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _choices(enum_cls) -> list[str]:
    return [m.value for m in enum_cls]


def _add_input_args(p: argparse.ArgumentParser) -> None:
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("--table", type=_path_exists, help="Mutation table (.tsv/.csv, optionally .gz), e.g. nextclade.tsv.")
    src.add_argument("--vcf", type=_path_exists, help="Multi-sample VCF (.vcf/.vcf.gz); one column per VCF sample.")
    p.add_argument("--gff", type=_path_exists, default=None, help="GFF3 gene annotation for the feature track.")
    p.add_argument("--outdir", required=True, help="Output directory.")
    p.add_argument("--config", type=_path_exists, default=None, help="JSON config file (see show-config).")
    p.add_argument(
        "--sample-order",
        type=_path_exists,
        default=None,
        help="File with one sample id per line; fixes the column order.",
    )
    p.add_argument("--policy", choices=_choices(ParsePolicy), default=None, help="Malformed token handling.")
    p.add_argument("--workers", type=int, default=None, help="Parse worker processes (default from config: 1).")
    p.add_argument(
        "--granularity",
        choices=_choices(SiteGranularity),
        default=None,
        help="Row key: full allele (default) or position only.",
    )
    p.add_argument("--genome-length", type=int, default=None, help="Reject mutations beyond this coordinate.")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="mutheatmap",
        description=(
            "mutheatmap: mutation-frequency heatmaps (sites x samples) from per-sample mutation "
            "calls and a gene annotation."
        ),
    )
    p.add_argument("--version", action="version", version=f"mutheatmap {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # quickstart
    # -----------------
    sub.add_parser(
        "quickstart",
        help="Print ready-to-run recipes for common scenarios.",
    )

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a tiny mutation table, GFF3 and VCF for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # plot
    # -----------------
    pl = sub.add_parser(
        "plot",
        help="Aggregate mutations and draw the heatmap (images, long table, report).",
    )
    _add_input_args(pl)
    pl.add_argument("--value", choices=_choices(FrequencyMode), default=None, help="What a cell encodes.")
    pl.add_argument("--domain", choices=["linear", "quantile"], default=None, help="Colour scale domain.")
    pl.add_argument("--buckets", type=int, default=None, help="Number of quantile buckets (implies --domain quantile).")
    pl.add_argument("--vmin", type=float, default=None, help="Linear domain minimum (default: data minimum).")
    pl.add_argument("--vmax", type=float, default=None, help="Linear domain maximum (default: data maximum).")
    pl.add_argument("--row-sizing", choices=_choices(RowSizing), default=None, help="Row band heights.")
    pl.add_argument("--label-codons", action="store_true", default=None, help="Append GENE:codon to site labels.")
    pl.add_argument(
        "--format",
        dest="formats",
        nargs="+",
        choices=list(SUPPORTED_FORMATS),
        default=None,
        help="Image formats to write (default: png svg).",
    )
    pl.add_argument("--dry-run", action="store_true", help="Validate inputs and print planned outputs.")
    pl.add_argument("--resume", action="store_true", help="Skip when summary.json already exists.")

    # -----------------
    # extract
    # -----------------
    e = sub.add_parser(
        "extract",
        help="Parse and aggregate only; write the long tables (mutations.tsv.gz, amino_acids.tsv.gz).",
    )
    _add_input_args(e)

    # -----------------
    # show-config
    # -----------------
    s = sub.add_parser(
        "show-config",
        help="Print the effective configuration as JSON (defaults + --config).",
    )
    s.add_argument("--config", type=_path_exists, default=None, help="JSON config file to merge.")

    return p


def _effective_config(args: argparse.Namespace) -> HeatmapConfig:
    config = load_config(args.config)
    return apply_overrides(
        config,
        policy=args.policy,
        granularity=args.granularity,
        genome_length=args.genome_length,
        workers=args.workers,
        value=getattr(args, "value", None),
        domain=getattr(args, "domain", None),
        buckets=getattr(args, "buckets", None),
        vmin=getattr(args, "vmin", None),
        vmax=getattr(args, "vmax", None),
        row_sizing=getattr(args, "row_sizing", None),
        label_codons=getattr(args, "label_codons", None),
        output_formats=getattr(args, "formats", None),
    )


# -----------------

def cmd_quickstart() -> int:
    lines = [
        "mutheatmap quickstart (copy/paste):",
        "",
        "1) Nextclade table + gene annotation:",
        "   mutheatmap plot \\",
        "     --table nextclade.tsv \\",
        "     --gff genes.gff3 \\",
        "     --outdir results/",
        "   Outputs: results/heatmap.png, results/heatmap.svg, results/report.html,",
        "            results/mutations.tsv.gz, results/summary.json",
        "",
        "2) Multi-sample VCF, sample fraction on a quantile scale:",
        "   mutheatmap plot \\",
        "     --vcf cohort.vcf.gz \\",
        "     --gff genes.gff3 \\",
        "     --value sample-fraction --domain quantile --buckets 5 \\",
        "     --outdir cohort_heatmap/",
        "",
        "3) Long table only (no drawing), strict parsing:",
        "   mutheatmap extract \\",
        "     --table nextclade.tsv \\",
        "     --policy strict \\",
        "     --outdir extracted/",
        "",
        "Tip: `mutheatmap make-toy-data --outdir toy/` writes inputs for all three recipes;",
        "use --dry-run to validate inputs first.",
    ]
    print("\n".join(lines))
    return 0


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    summary = make_toy_data(outdir=outdir)
    print(json.dumps(summary, indent=2))
    return 0


def cmd_plot(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "plot.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    logger = logging.getLogger("mutheatmap")
    logger.info("mutheatmap %s", __version__)

    try:
        config = _effective_config(args)
        validate_inputs(table=args.table, vcf=args.vcf, gff=args.gff, schema=config.schema)

        if args.dry_run:
            print("Dry-run: inputs look OK.")
            print(f"Policy: {config.policy.value}; value: {config.color.value.value}; workers: {config.workers}")
            print("Planned outputs:")
            for name, path in plan_outputs(outdir, config).items():
                print(f"  {name} -> {path}")
            return 0

        report_path = run_heatmap(
            outdir=outdir,
            config=config,
            table=args.table,
            vcf=args.vcf,
            gff=args.gff,
            sample_order=args.sample_order,
            resume=bool(args.resume),
            progress=args.verbose > 0,
        )
        print(str(report_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=None if args.dry_run else log_path)


def cmd_extract(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "extract.log")
    _setup_logging(args.verbose, logfile=log_path)

    try:
        config = _effective_config(args)
        validate_inputs(table=args.table, vcf=args.vcf, gff=args.gff, schema=config.schema)
        out = run_extract(
            outdir=outdir,
            config=config,
            table=args.table,
            vcf=args.vcf,
            gff=args.gff,
            sample_order=args.sample_order,
            progress=args.verbose > 0,
        )
        print(str(out))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_show_config(args: argparse.Namespace) -> int:
    try:
        config = load_config(args.config)
    except Exception as e:
        return _handle_error(e)
    print(json.dumps(config.to_dict(), indent=2, sort_keys=True))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "quickstart":
        return cmd_quickstart()
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "plot":
        return cmd_plot(args)
    if args.cmd == "extract":
        return cmd_extract(args)
    if args.cmd == "show-config":
        return cmd_show_config(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
