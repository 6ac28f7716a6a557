from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List, Tuple

import pysam

from .utils import ensure_outdir, write_json

TOY_GENOME_LENGTH = 300

# (name, start, end, strand)
TOY_GENES: List[Tuple[str, int, int, str]] = [
    ("ORF1", 10, 150, "+"),
    ("S", 160, 240, "+"),
    ("N", 250, 295, "-"),
]


def _toy_reference(length: int, seed: int) -> str:
    rng = random.Random(seed)
    return "".join(rng.choice("ACGT") for _ in range(length))


def _other_base(base: str) -> str:
    for alt in ["A", "C", "G", "T"]:
        if alt != base:
            return alt
    return "A"


def _write_gff3(path: Path, contig: str) -> None:
    lines = ["##gff-version 3", f"##sequence-region {contig} 1 {TOY_GENOME_LENGTH}"]
    for name, start, end, strand in TOY_GENES:
        lines.append(
            "\t".join([contig, "toy", "gene", str(start), str(end), ".", strand, ".", f"ID=gene-{name};Name={name}"])
        )
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def make_toy_data(*, outdir: str | Path, n_samples: int = 8, seed: int = 7) -> Dict[str, str]:
    """Create a tiny nextclade-style table, GFF3, multi-sample VCF and sample order.

    The outputs include:
    - mutations.tsv (seqName, substitutions, deletions, insertions, missing)
    - genes.gff3
    - mutations.vcf.gz (+ .tbi), the same calls as a VCF
    - samples.txt

    One row carries the malformed token ``12Xfoo`` to exercise the
    skip-and-warn policy.

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)
    rng = random.Random(seed)
    contig = "toy"
    ref = _toy_reference(TOY_GENOME_LENGTH, seed)

    hotspots = [25, 61, 170, 171, 205, 262]
    samples = [f"sample{i + 1:02d}" for i in range(n_samples)]

    rows: List[Dict[str, str]] = []
    calls: Dict[str, List[Tuple[int, str, str]]] = {}
    for k, sample in enumerate(samples):
        subs: List[Tuple[int, str, str]] = []
        for pos in hotspots:
            if rng.random() < 0.5:
                subs.append((pos, ref[pos - 1], _other_base(ref[pos - 1])))
        dels: List[Tuple[int, int]] = [(100, 102)] if k % 3 == 0 else []
        ins: List[Tuple[int, str]] = [(220, "AT")] if k % 4 == 1 else []

        sub_tokens = [f"{r}{p}{a}" for p, r, a in subs]
        if k == 2:
            sub_tokens.append("12Xfoo")
        rows.append(
            {
                "seqName": sample,
                "substitutions": ",".join(sub_tokens),
                "deletions": ",".join(f"{a}-{b}" for a, b in dels),
                "insertions": ",".join(f"{p}:{s}" for p, s in ins),
                "missing": "1-30" if k % 2 == 0 else "",
            }
        )

        vcf_calls = [(p, r, a) for p, r, a in subs]
        for a, b in dels:
            vcf_calls.append((a - 1, ref[a - 2 : b], ref[a - 2]))
        for p, s in ins:
            vcf_calls.append((p, ref[p - 1], ref[p - 1] + s))
        calls[sample] = vcf_calls

    table_path = outdir_p / "mutations.tsv"
    cols = ["seqName", "substitutions", "deletions", "insertions", "missing"]
    lines = ["\t".join(cols)] + ["\t".join(r[c] for c in cols) for r in rows]
    table_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    gff_path = outdir_p / "genes.gff3"
    _write_gff3(gff_path, contig)

    order_path = outdir_p / "samples.txt"
    order_path.write_text("# toy sample order\n" + "\n".join(samples) + "\n", encoding="utf-8")

    # Build VCF: one record per distinct (pos, ref, alt), genotypes per sample.
    vcf_path = outdir_p / "mutations.vcf"
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.contigs.add(contig, length=TOY_GENOME_LENGTH)
    header.formats.add("GT", number=1, type="String", description="Genotype")
    for sample in samples:
        header.add_sample(sample)

    variants = sorted({c for cs in calls.values() for c in cs})
    with pysam.VariantFile(str(vcf_path), "w", header=header) as vcf:
        for pos, r, a in variants:
            rec = vcf.new_record(
                contig=contig,
                start=pos - 1,
                stop=pos - 1 + len(r),
                alleles=(r, a),
                qual=60,
                filter="PASS",
            )
            for sample in samples:
                rec.samples[sample]["GT"] = (1,) if (pos, r, a) in calls[sample] else (0,)
            vcf.write(rec)

    vcf_gz = outdir_p / "mutations.vcf.gz"
    pysam.tabix_compress(str(vcf_path), str(vcf_gz), force=True)
    pysam.tabix_index(str(vcf_gz), preset="vcf", force=True)
    vcf_path.unlink()

    summary = {
        "table": str(table_path),
        "gff": str(gff_path),
        "vcf": str(vcf_gz),
        "sample_order": str(order_path),
        "genome_length": str(TOY_GENOME_LENGTH),
        "outdir": str(outdir_p),
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
