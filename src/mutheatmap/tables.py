"""Readers and writers around the core: delimited tables, GFF3, VCF and the long table."""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence
from urllib.parse import unquote

import pysam

from .annotation import AnnotationIndex
from .matrix import MutationMatrix
from .models import AminoAcidChange, Feature, Strand
from .parser import event_from_vcf_alleles, format_event
from .utils import open_textmaybe_gzip, plain_suffix

logger = logging.getLogger(__name__)

# Tried in order; some published SARS-CoV-2 GFFs carry a leading space in the key.
GFF_NAME_ATTRIBUTES = ("Name", "gene_name", " gene_name", "gene")

# genes, aa_start and aa_end are ";"-joined and aligned per overlapping gene.
LONG_TABLE_COLUMNS = ("sample", "position", "end", "kind", "ref", "alt", "count", "genes", "aa_start", "aa_end")

AMINO_ACID_COLUMNS = ("sample", "gene", "kind", "ref", "alt", "aa_start", "aa_end", "position", "end")


def detect_delimiter(path: str | Path) -> str:
    """``,`` for .csv(.gz), tab for everything else (.tsv, .txt, ...)."""
    return "," if plain_suffix(path) == ".csv" else "\t"


def read_mutation_table(path: str | Path, delimiter: Optional[str] = None) -> Iterator[Dict[str, Optional[str]]]:
    """Yield the rows of a delimited (optionally gzipped) table as dicts keyed by header."""
    delim = delimiter or detect_delimiter(path)
    with open_textmaybe_gzip(path, "rt") as f:
        reader = csv.DictReader(f, delimiter=delim)
        if reader.fieldnames is None:
            return
        for row in reader:
            yield row


def _gff_attributes(field: str) -> Dict[str, str]:
    attrs: Dict[str, str] = {}
    for part in field.split(";"):
        if not part.strip() or "=" not in part:
            continue
        key, _, value = part.partition("=")
        value = unquote(value.strip())
        attrs.setdefault(key, value)
        attrs.setdefault(key.strip(), value)
    return attrs


def read_gff3_features(
    path: str | Path,
    feature_types: Optional[Sequence[str]] = ("gene",),
    seqid: Optional[str] = None,
) -> List[Feature]:
    """Read named features from a GFF3 file.

    Records of other types (``feature_types=None`` keeps all), other sequences
    or without any of ``GFF_NAME_ATTRIBUTES`` are skipped. Parsing stops at a
    ``##FASTA`` section.
    """
    wanted = set(feature_types) if feature_types is not None else None
    features: List[Feature] = []
    skipped_unnamed = 0
    with open_textmaybe_gzip(path, "rt") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.rstrip("\r\n")
            if line.startswith("##FASTA"):
                break
            if not line or line.startswith("#"):
                continue
            cols = line.split("\t")
            if len(cols) != 9:
                raise ValueError(f"{path}:{lineno}: expected 9 tab-separated GFF3 columns, got {len(cols)}")
            if seqid is not None and cols[0] != seqid:
                continue
            if wanted is not None and cols[2] not in wanted:
                continue
            attrs = _gff_attributes(cols[8])
            name = next((attrs[k] for k in GFF_NAME_ATTRIBUTES if attrs.get(k)), None)
            if name is None:
                skipped_unnamed += 1
                continue
            try:
                start, end = int(cols[3]), int(cols[4])
            except ValueError:
                raise ValueError(f"{path}:{lineno}: start/end are not integers") from None
            features.append(
                Feature(name=name, start=start, end=end, strand=Strand.parse(cols[6]), feature_type=cols[2])
            )
    if skipped_unnamed:
        logger.info("Skipped %d GFF3 records without a name attribute", skipped_unnamed)
    logger.info("Read %d features from %s", len(features), path)
    return features


def read_vcf_rows(
    path: str | Path,
    samples: Optional[Sequence[str]] = None,
    include_filtered: bool = False,
    sample_field: str = "seqName",
    mutation_field: str = "mutations",
) -> Iterator[Dict[str, str]]:
    """Turn a multi-sample VCF into one raw row per sample.

    Every non-reference allele in a sample's GT becomes a canonical token.
    Complex alleles that cannot be normalised are passed through as
    ``REFposALT`` so the parser reports them like any other malformed token.
    Rows come out in VCF header sample order.
    """
    vcf = pysam.VariantFile(str(path))
    header_samples = list(vcf.header.samples)
    if samples is None:
        chosen = header_samples
    else:
        missing = [s for s in samples if s not in vcf.header.samples]
        if missing:
            vcf.close()
            raise ValueError(f"Samples not found in VCF: {missing} (VCF has {header_samples})")
        wanted = set(samples)
        chosen = [s for s in header_samples if s in wanted]

    tokens: Dict[str, List[str]] = {s: [] for s in chosen}
    stats = {"records": 0, "filtered": 0, "symbolic": 0}
    try:
        for rec in vcf:
            stats["records"] += 1
            if not include_filtered:
                filt = list(rec.filter.keys())
                if filt and filt != ["PASS"]:
                    stats["filtered"] += 1
                    continue
            alleles = rec.alleles or ()
            for s in chosen:
                gt = rec.samples[s].get("GT") or ()
                for idx in sorted({a for a in gt if a is not None and a > 0}):
                    alt = alleles[idx]
                    if alt in {"*", "."} or alt.startswith("<"):
                        stats["symbolic"] += 1
                        continue
                    try:
                        ev = event_from_vcf_alleles(s, int(rec.pos), rec.ref, alt)
                        tokens[s].append(format_event(ev))
                    except ValueError:
                        tokens[s].append(f"{rec.ref}{rec.pos}{alt}")
    finally:
        vcf.close()

    logger.info(
        "VCF %s: %d records, %d filtered, %d symbolic alleles skipped, %d samples",
        path,
        stats["records"],
        stats["filtered"],
        stats["symbolic"],
        len(chosen),
    )
    for s in chosen:
        yield {sample_field: s, mutation_field: ",".join(tokens[s])}


def read_sample_order(path: str | Path) -> List[str]:
    """One sample id per line; blank lines and ``#`` comments are ignored."""
    out: List[str] = []
    with open_textmaybe_gzip(path, "rt") as f:
        for line in f:
            text = line.split("#", 1)[0].strip()
            if text:
                out.append(text)
    return out


def write_mutation_table(
    matrix: MutationMatrix,
    path: str | Path,
    annotation: Optional[AnnotationIndex] = None,
) -> int:
    """Write one row per occupied cell; returns the number of rows written."""
    delim = "," if plain_suffix(path) == ".csv" else "\t"
    n = 0
    with open_textmaybe_gzip(path, "wt") as f:
        w = csv.writer(f, delimiter=delim, lineterminator="\n")
        w.writerow(LONG_TABLE_COLUMNS)
        for rec in matrix.iter_long_records():
            names: List[str] = []
            starts: List[str] = []
            ends: List[str] = []
            if annotation:
                for feat, first, last in annotation.codon_ranges(int(rec["position"]), int(rec["end"])):
                    if feat.name in names:
                        continue
                    names.append(feat.name)
                    starts.append(str(first))
                    ends.append(str(last))
            w.writerow(
                [
                    rec["sample"],
                    rec["position"],
                    rec["end"],
                    rec["kind"],
                    rec["ref"],
                    rec["alt"],
                    rec["count"],
                    ";".join(names),
                    ";".join(starts),
                    ";".join(ends),
                ]
            )
            n += 1
    logger.info("Wrote %d long-table rows to %s", n, path)
    return n


def write_amino_acid_table(
    changes: Iterable[AminoAcidChange],
    path: str | Path,
    annotation: Optional[AnnotationIndex] = None,
) -> int:
    """Write one row per amino-acid change, placed on the genome through ``annotation``.

    ``position``/``end`` stay empty when the gene is not annotated or the codons
    fall outside it.
    """
    delim = "," if plain_suffix(path) == ".csv" else "\t"
    n = 0
    unplaced = 0
    with open_textmaybe_gzip(path, "wt") as f:
        w = csv.writer(f, delimiter=delim, lineterminator="\n")
        w.writerow(AMINO_ACID_COLUMNS)
        for ch in changes:
            span = annotation.nucleotide_span(ch.gene, ch.aa_start, ch.aa_end) if annotation else None
            if span is None:
                unplaced += 1
            lo, hi = span if span is not None else ("", "")
            w.writerow([ch.sample_id, ch.gene, ch.kind.value, ch.ref, ch.alt, ch.aa_start, ch.aa_end, lo, hi])
            n += 1
    if annotation and unplaced:
        logger.warning("%d amino-acid change(s) name a gene or codon missing from the annotation", unplaced)
    logger.info("Wrote %d amino-acid rows to %s", n, path)
    return n
