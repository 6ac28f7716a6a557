import gzip
from pathlib import Path

import pysam

from mutheatmap.annotation import AnnotationIndex
from mutheatmap.matrix import build_matrix
from mutheatmap.models import AminoAcidChange, AminoAcidKind, Feature, MutationEvent, MutationKind, Strand
from mutheatmap.parser import parse_records
from mutheatmap.tables import (
    detect_delimiter,
    read_gff3_features,
    read_mutation_table,
    read_sample_order,
    read_vcf_rows,
    write_amino_acid_table,
    write_mutation_table,
)


def _make_vcf(path: Path) -> Path:
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.contigs.add("MN908947.3", length=100)
    header.filters.add("LowQual", None, None, "Low quality")
    header.formats.add("GT", number=1, type="String", description="Genotype")
    for s in ("S1", "S2"):
        header.add_sample(s)

    vcf_path = path / "cohort.vcf"
    with pysam.VariantFile(str(vcf_path), "w", header=header) as vcf:
        records = [
            (4, ("A", "T"), "PASS", [(0, 1), (0, 0)]),
            (9, ("ACG", "A"), "PASS", [(0, 0), (1, 1)]),
            (20, ("G", "C"), "LowQual", [(1, 1), (0, 0)]),
        ]
        for start, alleles, filt, gts in records:
            rec = vcf.new_record(
                contig="MN908947.3",
                start=start,
                stop=start + len(alleles[0]),
                alleles=alleles,
                qual=50,
                filter=filt,
            )
            rec.samples["S1"]["GT"] = gts[0]
            rec.samples["S2"]["GT"] = gts[1]
            vcf.write(rec)
    return vcf_path


def test_detect_delimiter() -> None:
    assert detect_delimiter("a.csv") == ","
    assert detect_delimiter("a.CSV.gz") == ","
    assert detect_delimiter("nextclade.tsv") == "\t"
    assert detect_delimiter("calls.txt.gz") == "\t"


def test_read_gzipped_table(tmp_path: Path) -> None:
    p = tmp_path / "nextclade.tsv.gz"
    with gzip.open(p, "wt", encoding="utf-8") as f:
        f.write("seqName\tsubstitutions\n")
        f.write("s1\tC241T,A23403G\n")
    rows = list(read_mutation_table(p))
    assert rows == [{"seqName": "s1", "substitutions": "C241T,A23403G"}]


def test_read_gff3(tmp_path: Path) -> None:
    p = tmp_path / "genes.gff3"
    p.write_text(
        "##gff-version 3\n"
        "chr\tsrc\tgene\t266\t21555\t.\t+\t.\tID=gene-ORF1ab;Name=ORF1ab\n"
        "chr\tsrc\tgene\t21563\t25384\t.\t+\t.\tID=gene-S; gene_name=S\n"
        "chr\tsrc\tgene\t28274\t29533\t.\t-\t.\tID=gene-N;gene=N\n"
        "chr\tsrc\tgene\t29558\t29674\t.\t+\t.\tID=unnamed\n"
        "chr\tsrc\tCDS\t266\t13483\t.\t+\t0\tName=nsp\n"
        "##FASTA\n"
        ">chr\nACGT\n",
        encoding="utf-8",
    )
    feats = read_gff3_features(p)
    assert [f.name for f in feats] == ["ORF1ab", "S", "N"]
    assert feats[2].strand is Strand.MINUS
    assert feats[1].start == 21563

    all_types = read_gff3_features(p, feature_types=None)
    assert "nsp" in [f.name for f in all_types]


def test_read_vcf_rows(tmp_path: Path) -> None:
    vcf = _make_vcf(tmp_path)
    rows = list(read_vcf_rows(vcf))
    assert rows == [
        {"seqName": "S1", "mutations": "A5T"},
        {"seqName": "S2", "mutations": "11-12del:CG"},
    ]
    report = parse_records(rows)
    assert report.issues == ()
    assert report.event_count == 2

    with_filtered = list(read_vcf_rows(vcf, samples=["S1"], include_filtered=True))
    assert with_filtered == [{"seqName": "S1", "mutations": "A5T,G21C"}]


def test_sample_order_file(tmp_path: Path) -> None:
    p = tmp_path / "samples.txt"
    p.write_text("# header\nB\n\nA  # trailing comment\nC\n", encoding="utf-8")
    assert read_sample_order(p) == ["B", "A", "C"]


def test_write_long_table(tmp_path: Path) -> None:
    events = [
        ("A", MutationEvent("A", 10, 1, MutationKind.SUBSTITUTION, "C", "T")),
        ("B", MutationEvent("B", 10, 1, MutationKind.SUBSTITUTION, "C", "T")),
        ("B", MutationEvent("B", 60, 3, MutationKind.DELETION)),
    ]
    m = build_matrix(["A", "B"], events)
    idx = AnnotationIndex([Feature("ORF1", 1, 50), Feature("S", 55, 100)])
    out = tmp_path / "mutations.tsv.gz"
    assert write_mutation_table(m, out, annotation=idx) == 3
    with gzip.open(out, "rt", encoding="utf-8") as f:
        lines = f.read().splitlines()
    assert lines[0] == "sample\tposition\tend\tkind\tref\talt\tcount\tgenes\taa_start\taa_end"
    assert lines[1] == "A\t10\t10\tsubstitution\tC\tT\t1\tORF1\t4\t4"
    assert lines[3] == "B\t60\t62\tdeletion\t\t\t1\tS\t2\t3"


def test_long_table_codons_on_both_strands(tmp_path: Path) -> None:
    events = [
        ("A", MutationEvent("A", 20, 1, MutationKind.SUBSTITUTION, "G", "A")),
        ("A", MutationEvent("A", 28, 6, MutationKind.DELETION)),
    ]
    m = build_matrix(["A"], events)
    idx = AnnotationIndex([Feature("P", 10, 30, Strand.PLUS), Feature("M", 25, 45, Strand.MINUS)])
    out = tmp_path / "long.tsv"
    write_mutation_table(m, out, annotation=idx)
    rows = [line.split("\t") for line in out.read_text(encoding="utf-8").splitlines()[1:]]
    # 20 sits in codon 4 of P; 28-33 spans codon 7 of P and codons 5-6 of M counted from 45.
    assert rows[0][7:] == ["P", "4", "4"]
    assert rows[1][7:] == ["P;M", "7;5", "7;6"]


def test_write_amino_acid_table(tmp_path: Path) -> None:
    changes = [
        AminoAcidChange("A", "S", AminoAcidKind.SUBSTITUTION, 2, 2, ref="D", alt="G"),
        AminoAcidChange("A", "N", AminoAcidKind.FRAMESHIFT, 1, 2),
        AminoAcidChange("B", "ORF9", AminoAcidKind.DELETION, 1, 1, ref="H"),
    ]
    idx = AnnotationIndex([Feature("S", 55, 100, Strand.PLUS), Feature("N", 200, 230, Strand.MINUS)])
    out = tmp_path / "amino_acids.tsv.gz"
    assert write_amino_acid_table(changes, out, annotation=idx) == 3
    with gzip.open(out, "rt", encoding="utf-8") as f:
        lines = f.read().splitlines()
    assert lines[0] == "sample\tgene\tkind\tref\talt\taa_start\taa_end\tposition\tend"
    assert lines[1] == "A\tS\taa-substitution\tD\tG\t2\t2\t58\t60"
    assert lines[2] == "A\tN\tframeshift\t\t\t1\t2\t225\t230"
    assert lines[3] == "B\tORF9\taa-deletion\tH\t\t1\t1\t\t"
