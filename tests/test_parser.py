import pytest

from mutheatmap.errors import IngestionAborted, MalformedMutationToken, MissingFieldError
from mutheatmap.models import AminoAcidChange, AminoAcidKind, MutationEvent, MutationKind
from mutheatmap.parser import (
    ParsePolicy,
    RecordSchema,
    event_from_vcf_alleles,
    format_event,
    parse_aa_token,
    parse_ranges,
    parse_record,
    parse_records,
    parse_token,
)


def test_parse_substitution_is_case_insensitive():
    ev = parse_token(" c5t ", sample_id="A")
    assert ev == MutationEvent("A", 5, 1, MutationKind.SUBSTITUTION, "C", "T")
    mnp = parse_token("AC10GT", sample_id="A")
    assert mnp.length == 2 and mnp.end == 11


def test_parse_deletion_forms():
    assert parse_token("123-125del", sample_id="s").length == 3
    assert parse_token("123del", sample_id="s").end == 123
    withref = parse_token("123-124del:ac", sample_id="s")
    assert withref.ref_allele == "AC"
    bare_range = parse_token("123-125", sample_id="s")
    assert bare_range.kind is MutationKind.DELETION and bare_range.length == 3
    hinted = parse_token("123", sample_id="s", kind_hint=MutationKind.DELETION)
    assert hinted.kind is MutationKind.DELETION and hinted.length == 1
    with pytest.raises(ValueError):
        parse_token("123", sample_id="s")


def test_parse_insertion_forms():
    a = parse_token("123ins:acgt", sample_id="s")
    b = parse_token("123:ACGT", sample_id="s")
    assert a == b
    assert a.kind is MutationKind.INSERTION and a.length == 0 and a.alt_allele == "ACGT"


@pytest.mark.parametrize("token", ["12Xfoo", "AC12G", "0del", "5-3del", "12del:AC", "12ins:", "del"])
def test_malformed_tokens_raise_value_error(token):
    with pytest.raises(ValueError):
        parse_token(token, sample_id="s")


def test_format_then_parse_returns_same_event():
    events = [
        MutationEvent("s", 5, 1, MutationKind.SUBSTITUTION, "C", "T"),
        MutationEvent("s", 5, 2, MutationKind.SUBSTITUTION, "CA", "TG"),
        MutationEvent("s", 40, 0, MutationKind.INSERTION, "", "GGA"),
        MutationEvent("s", 7, 1, MutationKind.DELETION),
        MutationEvent("s", 7, 3, MutationKind.DELETION, "ACG"),
    ]
    for ev in events:
        assert parse_token(format_event(ev), sample_id="s") == ev


def test_parse_ranges():
    assert parse_ranges("1-54, 29837-29903,100") == ((1, 54), (29837, 29903), (100, 100))
    with pytest.raises(ValueError):
        parse_ranges("5-1")


def test_skip_and_warn_keeps_valid_tokens():
    rows = [
        {"seqName": "A", "substitutions": "C5T"},
        {"seqName": "D", "substitutions": "C5T,12Xfoo,G7A"},
    ]
    report = parse_records(rows, policy=ParsePolicy.SKIP_AND_WARN)
    d = [r for r in report.records if r.sample_id == "D"][0]
    assert [e.position for e in d.events] == [5, 7]
    assert len(report.issues) == 1
    issue = report.issues[0]
    assert issue.row_number == 2
    assert issue.sample_id == "D"
    assert issue.token == "12Xfoo"


def test_strict_collects_every_failing_row():
    rows = [
        {"seqName": "A", "substitutions": "bogus"},
        {"seqName": "B", "substitutions": "C5T"},
        {"seqName": "C", "substitutions": "C5T,also-bogus"},
    ]
    with pytest.raises(IngestionAborted) as exc:
        parse_records(rows, policy=ParsePolicy.STRICT)
    assert [i.row_number for i in exc.value.issues] == [1, 3]
    assert "also-bogus" in str(exc.value)


def test_strict_parse_record_raises_typed_error():
    with pytest.raises(MalformedMutationToken) as exc:
        parse_record({"seqName": "A", "substitutions": "nope"}, row_number=4, policy=ParsePolicy.STRICT)
    assert exc.value.row_number == 4
    assert exc.value.token == "nope"


def test_missing_fields():
    with pytest.raises(MissingFieldError):
        parse_record({"substitutions": "C5T"}, row_number=1)
    with pytest.raises(MissingFieldError):
        parse_record({"seqName": "A", "clade": "20A"}, row_number=1)

    report = parse_records([{"seqName": "A", "clade": "20A"}, {"seqName": "B", "substitutions": "C5T"}])
    assert [r.sample_id for r in report.records] == ["B"]
    assert report.issues[0].row_number == 1


def test_nextclade_columns_and_missing_ranges():
    row = {
        "seqName": "s1",
        "substitutions": "C241T,A23403G",
        "deletions": "11288-11296,21765",
        "insertions": "22204:GAGCCAGAA",
        "missing": "1-54,29837-29903",
    }
    rec = parse_record(row, row_number=1)
    kinds = sorted(e.kind.value for e in rec.events)
    assert kinds == ["deletion", "deletion", "insertion", "substitution", "substitution"]
    assert rec.missing == ((1, 54), (29837, 29903))


def test_custom_schema():
    schema = RecordSchema(sample_field="strain", mutation_fields=("aa",), token_delimiter=";", missing_field=None)
    rec = parse_record({"strain": "x", "aa": "C5T; 9del"}, row_number=1, schema=schema)
    assert len(rec.events) == 2


def test_duplicate_samples_merge_with_warning():
    rows = [{"seqName": "A", "substitutions": "C5T"}, {"seqName": "A", "substitutions": "G7A"}]
    report = parse_records(rows)
    assert report.sample_order() == ["A"]
    assert len(list(report.iter_events())) == 2
    assert any("repeats row 1" in i.message for i in report.issues)


def test_parallel_parse_matches_serial():
    rows = [{"seqName": f"s{i}", "substitutions": f"C{i + 1}T,bad{i}"} for i in range(9)]
    serial = parse_records(rows, chunk_size=2)
    parallel = parse_records(rows, chunk_size=2, workers=3)
    assert parallel.records == serial.records
    assert parallel.issues == serial.issues


def test_vcf_allele_normalisation():
    snv = event_from_vcf_alleles("s", 10, "A", "g")
    assert (snv.kind, snv.position, snv.ref_allele, snv.alt_allele) == (MutationKind.SUBSTITUTION, 10, "A", "G")

    dele = event_from_vcf_alleles("s", 10, "ACG", "A")
    assert (dele.kind, dele.position, dele.length, dele.ref_allele) == (MutationKind.DELETION, 11, 2, "CG")

    ins = event_from_vcf_alleles("s", 10, "A", "ATT")
    assert (ins.kind, ins.position, ins.alt_allele) == (MutationKind.INSERTION, 10, "TT")

    mnp = event_from_vcf_alleles("s", 10, "ACG", "TCA")
    assert mnp.kind is MutationKind.SUBSTITUTION and mnp.length == 3

    with pytest.raises(ValueError):
        event_from_vcf_alleles("s", 10, "AC", "TGG")
    with pytest.raises(ValueError):
        event_from_vcf_alleles("s", 10, "A", "<DEL>")


def test_parse_amino_acid_tokens():
    sub = parse_aa_token("S:d614g", sample_id="s", kind=AminoAcidKind.SUBSTITUTION)
    assert sub == AminoAcidChange("s", "S", AminoAcidKind.SUBSTITUTION, 614, 614, ref="D", alt="G")
    stop = parse_aa_token("ORF8:Q27*", sample_id="s", kind=AminoAcidKind.SUBSTITUTION)
    assert stop.alt == "*" and stop.label() == "ORF8:Q27*"

    dele = parse_aa_token("S:H69-", sample_id="s", kind=AminoAcidKind.DELETION)
    assert (dele.gene, dele.ref, dele.aa_start, dele.aa_end) == ("S", "H", 69, 69)

    ins = parse_aa_token("S:214:EPE", sample_id="s", kind=AminoAcidKind.INSERTION)
    assert (ins.aa_start, ins.alt) == (214, "EPE")

    fs = parse_aa_token("ORF1a:123-125", sample_id="s", kind=AminoAcidKind.FRAMESHIFT)
    assert (fs.gene, fs.aa_start, fs.aa_end) == ("ORF1a", 123, 125)
    assert fs.label() == "ORF1a:123-125"


@pytest.mark.parametrize(
    "token, kind",
    [
        ("D614G", AminoAcidKind.SUBSTITUTION),
        ("S:614", AminoAcidKind.SUBSTITUTION),
        ("S:H69", AminoAcidKind.DELETION),
        ("S:214", AminoAcidKind.INSERTION),
        ("N:9-3", AminoAcidKind.FRAMESHIFT),
        ("N:0", AminoAcidKind.FRAMESHIFT),
    ],
)
def test_malformed_amino_acid_tokens(token, kind):
    with pytest.raises(ValueError):
        parse_aa_token(token, sample_id="s", kind=kind)


def test_amino_acid_columns_are_kept_apart_from_nucleotide_events():
    row = {
        "seqName": "s1",
        "substitutions": "A23403G",
        "aaSubstitutions": "S:D614G,ORF1b:P314L",
        "aaDeletions": "S:H69-,S:V70-",
        "aaInsertions": "",
        "frameShifts": "nope",
    }
    rec = parse_record(row, row_number=4)
    assert len(rec.events) == 1
    assert [c.label() for c in rec.aa_changes] == ["S:D614G", "ORF1b:P314L", "S:H69-", "S:V70-"]
    assert [i.token for i in rec.issues] == ["nope"]

    report = parse_records([row])
    assert len(list(report.iter_aa_changes())) == 4

    with pytest.raises(MalformedMutationToken):
        parse_record(row, row_number=4, policy=ParsePolicy.STRICT)


def test_empty_alignment_end_marks_the_whole_genome_missing():
    rows = [
        {"seqName": "ok", "substitutions": "C5T", "alignmentEnd": "29800", "missing": "1-54"},
        {"seqName": "failed", "substitutions": "", "alignmentEnd": "", "missing": ""},
    ]
    report = parse_records(rows, genome_length=29903)
    assert report.missing_ranges() == {"ok": ((1, 54),), "failed": ((1, 29903),)}
    assert report.unaligned_samples() == ["failed"]

    # Without a genome length the row is still flagged but nothing is marked.
    report = parse_records(rows)
    assert report.missing_ranges() == {"ok": ((1, 54),)}
    assert report.unaligned_samples() == ["failed"]

    no_column = parse_record({"seqName": "x", "substitutions": ""}, row_number=1, genome_length=100)
    assert no_column.missing == () and not no_column.unaligned


def test_default_mutation_columns():
    schema = RecordSchema()
    assert schema.mutation_fields == ("mutations", "substitutions", "deletions", "insertions")
    rec = parse_record({"seqName": "vcf", "mutations": "C5T,7del,9ins:AA"}, row_number=1, schema=schema)
    assert [e.kind for e in rec.events] == [MutationKind.SUBSTITUTION, MutationKind.DELETION, MutationKind.INSERTION]
