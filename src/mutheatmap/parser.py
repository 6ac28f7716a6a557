"""Record parser: raw per-sample rows -> normalised mutation events.

Token grammar (case-insensitive, alleles are upper-cased):

============================  ==============================================
``A123T`` / ``AC123GT``       substitution of equal-length ref -> alt at 123
``123-125del`` / ``123del``   deletion of 123..125 (or of base 123)
``123-125del:ACG``            deletion carrying the deleted reference bases
``123ins:ACGT``               insertion of ACGT after base 123
``123-125``                   deletion (nextclade ``deletions`` column form)
``123:ACGT``                  insertion (nextclade ``insertions`` column form)
``123``                       single-base deletion, only in a deletions column
============================  ==============================================

Amino-acid columns carry ``GENE:`` prefixed codon coordinates:

============================  ==============================================
``S:D614G``                   ``aaSubstitutions``, stop codons as ``*``
``S:H69-``                    ``aaDeletions``, one codon per token
``S:214:EPE``                 ``aaInsertions``, residues after codon 214
``ORF1a:123-125``             ``frameShifts``, codon range or single codon
============================  ==============================================

``format_event`` writes the canonical form (first four rows) and
``parse_token(format_event(e))`` returns ``e`` for every kind.
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from tqdm import tqdm

from .errors import IngestionAborted, MalformedMutationToken, MissingFieldError, ParseError, ParseIssue
from .models import AminoAcidChange, AminoAcidKind, MutationEvent, MutationKind
from .utils import chunked

logger = logging.getLogger(__name__)

_SUB_RE = re.compile(r"^([A-Z]+)(\d+)([A-Z]+)$")
_DEL_RE = re.compile(r"^(\d+)(?:-(\d+))?DEL(?::([A-Z]+))?$")
_INS_RE = re.compile(r"^(\d+)(?:INS)?:([A-Z]+)$")
_RANGE_RE = re.compile(r"^(\d+)-(\d+)$")
_POS_RE = re.compile(r"^(\d+)$")
_AA_SUB_RE = re.compile(r"^([A-Z*])(\d+)([A-Z*])$")
_AA_DEL_RE = re.compile(r"^([A-Z*])(\d+)-$")
_AA_INS_RE = re.compile(r"^(\d+):([A-Z*]+)$")
_AA_RANGE_RE = re.compile(r"^(\d+)(?:-(\d+))?$")

Range = Tuple[int, int]


class ParsePolicy(Enum):
    STRICT = "strict"
    SKIP_AND_WARN = "skip-and-warn"


def _default_kind_hints() -> Dict[str, MutationKind]:
    return {
        "substitutions": MutationKind.SUBSTITUTION,
        "deletions": MutationKind.DELETION,
        "insertions": MutationKind.INSERTION,
    }


def _default_aa_fields() -> Dict[str, AminoAcidKind]:
    return {
        "aaSubstitutions": AminoAcidKind.SUBSTITUTION,
        "aaDeletions": AminoAcidKind.DELETION,
        "aaInsertions": AminoAcidKind.INSERTION,
        "frameShifts": AminoAcidKind.FRAMESHIFT,
    }


@dataclass(frozen=True)
class RecordSchema:
    """Which columns of a raw row hold the sample id and the mutation tokens."""

    sample_field: str = "seqName"
    mutation_fields: Tuple[str, ...] = ("mutations", "substitutions", "deletions", "insertions")
    token_delimiter: str = ","
    missing_field: Optional[str] = "missing"
    kind_hints: Dict[str, MutationKind] = field(default_factory=_default_kind_hints)
    aa_fields: Dict[str, AminoAcidKind] = field(default_factory=_default_aa_fields)
    # Present but empty means the sequence did not align at all.
    alignment_end_field: Optional[str] = "alignmentEnd"


DEFAULT_SCHEMA = RecordSchema()


@dataclass(frozen=True)
class ParsedRecord:
    row_number: int
    sample_id: str
    events: Tuple[MutationEvent, ...]
    issues: Tuple[ParseIssue, ...] = ()
    missing: Tuple[Range, ...] = ()
    aa_changes: Tuple[AminoAcidChange, ...] = ()
    unaligned: bool = False


def _deletion(sample_id: str, start: int, end: int, ref: str = "") -> MutationEvent:
    if end < start:
        raise ValueError(f"deletion end {end} precedes start {start}")
    return MutationEvent(
        sample_id=sample_id,
        position=start,
        length=end - start + 1,
        kind=MutationKind.DELETION,
        ref_allele=ref,
    )


def parse_token(
    token: str,
    *,
    sample_id: str,
    kind_hint: Optional[MutationKind] = None,
) -> MutationEvent:
    """Parse one mutation token. Raises ValueError with a reason when malformed."""
    text = token.strip().upper()
    if not text:
        raise ValueError("empty token")

    m = _SUB_RE.match(text)
    if m:
        ref, pos, alt = m.group(1), int(m.group(2)), m.group(3)
        if len(ref) != len(alt):
            raise ValueError("substitution ref and alt lengths differ")
        return MutationEvent(
            sample_id=sample_id,
            position=pos,
            length=len(ref),
            kind=MutationKind.SUBSTITUTION,
            ref_allele=ref,
            alt_allele=alt,
        )

    m = _DEL_RE.match(text)
    if m:
        start = int(m.group(1))
        end = int(m.group(2)) if m.group(2) else start
        return _deletion(sample_id, start, end, m.group(3) or "")

    m = _INS_RE.match(text)
    if m:
        return MutationEvent(
            sample_id=sample_id,
            position=int(m.group(1)),
            length=0,
            kind=MutationKind.INSERTION,
            alt_allele=m.group(2),
        )

    m = _RANGE_RE.match(text)
    if m:
        return _deletion(sample_id, int(m.group(1)), int(m.group(2)))

    m = _POS_RE.match(text)
    if m and kind_hint is MutationKind.DELETION:
        pos = int(m.group(1))
        return _deletion(sample_id, pos, pos)

    raise ValueError("does not match the substitution, deletion or insertion grammar")


def format_event(event: MutationEvent) -> str:
    """Serialise an event back into the canonical token grammar."""
    if event.kind is MutationKind.SUBSTITUTION:
        return f"{event.ref_allele}{event.position}{event.alt_allele}"
    if event.kind is MutationKind.INSERTION:
        return f"{event.position}ins:{event.alt_allele}"
    if event.length == 1:
        token = f"{event.position}del"
    else:
        token = f"{event.position}-{event.end}del"
    if event.ref_allele:
        token += f":{event.ref_allele}"
    return token


def parse_aa_token(token: str, *, sample_id: str, kind: AminoAcidKind) -> AminoAcidChange:
    """Parse one ``GENE:...`` amino-acid token of a column holding ``kind`` changes.

    The gene name keeps its case; residues are upper-cased.
    """
    gene, sep, rest = token.strip().partition(":")
    gene = gene.strip()
    if not sep or not gene:
        raise ValueError("amino-acid token needs a GENE: prefix")
    text = rest.strip().upper()

    if kind is AminoAcidKind.SUBSTITUTION:
        m = _AA_SUB_RE.match(text)
        if m:
            codon = int(m.group(2))
            return AminoAcidChange(sample_id, gene, kind, codon, codon, ref=m.group(1), alt=m.group(3))
    elif kind is AminoAcidKind.DELETION:
        m = _AA_DEL_RE.match(text)
        if m:
            codon = int(m.group(2))
            return AminoAcidChange(sample_id, gene, kind, codon, codon, ref=m.group(1))
    elif kind is AminoAcidKind.INSERTION:
        m = _AA_INS_RE.match(text)
        if m:
            codon = int(m.group(1))
            return AminoAcidChange(sample_id, gene, kind, codon, codon, alt=m.group(2))
    elif kind is AminoAcidKind.FRAMESHIFT:
        m = _AA_RANGE_RE.match(text)
        if m:
            start = int(m.group(1))
            end = int(m.group(2)) if m.group(2) else start
            return AminoAcidChange(sample_id, gene, kind, start, end)
    raise ValueError(f"does not match the {kind.value} grammar")


def parse_ranges(value: str, delimiter: str = ",") -> Tuple[Range, ...]:
    """Parse ``1-54,29837-29903`` style inclusive ranges (single positions allowed)."""
    out: List[Range] = []
    for raw in value.split(delimiter):
        text = raw.strip()
        if not text:
            continue
        m = _RANGE_RE.match(text)
        if m:
            lo, hi = int(m.group(1)), int(m.group(2))
        elif _POS_RE.match(text):
            lo = hi = int(text)
        else:
            raise ValueError(f"invalid range {text!r}")
        if lo < 1 or hi < lo:
            raise ValueError(f"invalid range {text!r}")
        out.append((lo, hi))
    return tuple(out)


def event_from_vcf_alleles(sample_id: str, pos: int, ref: str, alt: str) -> MutationEvent:
    """Normalise one VCF (pos, ref, alt) triple into an event.

    Shared flanking bases are trimmed; anchored indels become insertions after,
    or deletions starting at, the first differing base.
    """
    ref = ref.upper()
    alt = alt.upper()
    if alt in {"", ".", "*"} or alt.startswith("<"):
        raise ValueError(f"symbolic or missing ALT allele {alt!r} is not supported")

    while len(ref) > 1 and len(alt) > 1 and ref[-1] == alt[-1]:
        ref, alt = ref[:-1], alt[:-1]
    while ref and alt and ref[0] == alt[0]:
        ref, alt = ref[1:], alt[1:]
        pos += 1

    if not ref and not alt:
        raise ValueError("ALT allele equals REF")
    if ref and alt:
        if len(ref) != len(alt):
            raise ValueError(f"complex allele {ref}>{alt} cannot be represented")
        return MutationEvent(
            sample_id=sample_id,
            position=pos,
            length=len(ref),
            kind=MutationKind.SUBSTITUTION,
            ref_allele=ref,
            alt_allele=alt,
        )
    if alt:
        return MutationEvent(
            sample_id=sample_id,
            position=pos - 1,
            length=0,
            kind=MutationKind.INSERTION,
            alt_allele=alt,
        )
    return _deletion(sample_id, pos, pos + len(ref) - 1, ref)


def parse_record(
    row: Mapping[str, Optional[str]],
    *,
    row_number: int,
    schema: RecordSchema = DEFAULT_SCHEMA,
    policy: ParsePolicy = ParsePolicy.SKIP_AND_WARN,
    genome_length: Optional[int] = None,
) -> ParsedRecord:
    """Turn one raw row into a ParsedRecord.

    Under ``STRICT`` the first malformed token raises MalformedMutationToken;
    under ``SKIP_AND_WARN`` it becomes a ParseIssue and the row's valid tokens
    are kept. A missing sample or mutation field always raises.

    A row whose alignment-end column is present but empty did not align; with
    a known ``genome_length`` the whole genome is recorded as missing.
    """
    sample_id = (row.get(schema.sample_field) or "").strip()
    if not sample_id:
        raise MissingFieldError(schema.sample_field, row_number=row_number)

    present = [f for f in schema.mutation_fields if f in row]
    if not present:
        raise MissingFieldError(
            "|".join(schema.mutation_fields), row_number=row_number, sample_id=sample_id
        )

    events: List[MutationEvent] = []
    aa_changes: List[AminoAcidChange] = []
    issues: List[ParseIssue] = []

    def malformed(token: str, e: ValueError) -> None:
        err = MalformedMutationToken(token, row_number=row_number, sample_id=sample_id, reason=str(e))
        if policy is ParsePolicy.STRICT:
            raise err from e
        issues.append(ParseIssue(row_number=row_number, sample_id=sample_id, token=token, message=str(err)))

    for name in present:
        value = row.get(name) or ""
        hint = schema.kind_hints.get(name)
        for raw in value.split(schema.token_delimiter):
            token = raw.strip()
            if not token:
                continue
            try:
                events.append(parse_token(token, sample_id=sample_id, kind_hint=hint))
            except ValueError as e:
                malformed(token, e)

    for name, aa_kind in schema.aa_fields.items():
        value = row.get(name) or ""
        for raw in value.split(schema.token_delimiter):
            token = raw.strip()
            if not token:
                continue
            try:
                aa_changes.append(parse_aa_token(token, sample_id=sample_id, kind=aa_kind))
            except ValueError as e:
                malformed(token, e)

    missing: Tuple[Range, ...] = ()
    if schema.missing_field:
        value = row.get(schema.missing_field) or ""
        if value.strip():
            try:
                missing = parse_ranges(value, schema.token_delimiter)
            except ValueError as e:
                malformed(value, ValueError(f"missing ranges: {e}"))

    end_field = schema.alignment_end_field
    unaligned = bool(end_field) and end_field in row and not (row.get(end_field) or "").strip()
    if unaligned and genome_length:
        missing = ((1, int(genome_length)),)

    return ParsedRecord(
        row_number=row_number,
        sample_id=sample_id,
        events=tuple(events),
        issues=tuple(issues),
        missing=missing,
        aa_changes=tuple(aa_changes),
        unaligned=unaligned,
    )


@dataclass(frozen=True)
class ParseReport:
    """Outcome of the ingestion stage: parsed rows in input order plus all issues."""

    records: Tuple[ParsedRecord, ...]
    issues: Tuple[ParseIssue, ...]

    def sample_order(self) -> List[str]:
        seen: Dict[str, None] = {}
        for rec in self.records:
            seen.setdefault(rec.sample_id, None)
        return list(seen)

    def iter_events(self) -> Iterator[Tuple[str, MutationEvent]]:
        for rec in self.records:
            for ev in rec.events:
                yield rec.sample_id, ev

    def missing_ranges(self) -> Dict[str, Tuple[Range, ...]]:
        out: Dict[str, List[Range]] = {}
        for rec in self.records:
            if rec.missing:
                out.setdefault(rec.sample_id, []).extend(rec.missing)
        return {k: tuple(v) for k, v in out.items()}

    def iter_aa_changes(self) -> Iterator[AminoAcidChange]:
        for rec in self.records:
            yield from rec.aa_changes

    def unaligned_samples(self) -> List[str]:
        return [rec.sample_id for rec in self.records if rec.unaligned]

    @property
    def event_count(self) -> int:
        return sum(len(rec.events) for rec in self.records)


def _parse_chunk(
    chunk: Sequence[Tuple[int, Mapping[str, Optional[str]]]],
    schema: RecordSchema,
    policy: ParsePolicy,
    genome_length: Optional[int] = None,
) -> Tuple[List[ParsedRecord], List[ParseIssue]]:
    records: List[ParsedRecord] = []
    issues: List[ParseIssue] = []
    severity = "error" if policy is ParsePolicy.STRICT else "warning"
    for row_number, row in chunk:
        try:
            rec = parse_record(row, row_number=row_number, schema=schema, policy=policy, genome_length=genome_length)
        except ParseError as err:
            issues.append(ParseIssue.from_error(err, severity=severity))
            continue
        records.append(rec)
        issues.extend(rec.issues)
    return records, issues


def _duplicate_sample_issues(records: Sequence[ParsedRecord]) -> List[ParseIssue]:
    first_row: Dict[str, int] = {}
    issues: List[ParseIssue] = []
    for rec in records:
        if rec.sample_id in first_row:
            issues.append(
                ParseIssue(
                    row_number=rec.row_number,
                    sample_id=rec.sample_id,
                    token=None,
                    message=(
                        f"Sample {rec.sample_id!r} repeats row {first_row[rec.sample_id]}; "
                        "mutations are merged into one column"
                    ),
                )
            )
        else:
            first_row[rec.sample_id] = rec.row_number
    return issues


def parse_records(
    rows: Iterable[Mapping[str, Optional[str]]],
    *,
    schema: RecordSchema = DEFAULT_SCHEMA,
    policy: ParsePolicy = ParsePolicy.SKIP_AND_WARN,
    workers: int = 1,
    chunk_size: int = 2000,
    progress: bool = False,
    genome_length: Optional[int] = None,
) -> ParseReport:
    """Parse all rows, optionally across worker processes.

    Rows are numbered from 1 in input order. Chunk results are slotted back by
    chunk index, so the report never depends on worker completion order.

    Raises
    ------
    IngestionAborted
        Under ``STRICT`` when any row failed; carries every failing row.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")

    chunks = list(chunked(enumerate(rows, start=1), chunk_size))
    results: List[Optional[Tuple[List[ParsedRecord], List[ParseIssue]]]] = [None] * len(chunks)

    if workers > 1 and len(chunks) > 1:
        logger.debug("Parsing %d chunks with %d worker processes", len(chunks), workers)
        with ProcessPoolExecutor(max_workers=int(workers)) as ex:
            fut_to_idx = {
                ex.submit(_parse_chunk, chunk, schema, policy, genome_length): i for i, chunk in enumerate(chunks)
            }
            iterator = as_completed(fut_to_idx)
            if progress:
                iterator = tqdm(iterator, total=len(fut_to_idx), unit="chunk", desc="Parsing records")
            for fut in iterator:
                results[fut_to_idx[fut]] = fut.result()
    else:
        indexed: Iterable[Tuple[int, Sequence[Tuple[int, Mapping[str, Optional[str]]]]]] = enumerate(chunks)
        if progress:
            indexed = tqdm(indexed, total=len(chunks), unit="chunk", desc="Parsing records")
        for i, chunk in indexed:
            results[i] = _parse_chunk(chunk, schema, policy, genome_length)

    records: List[ParsedRecord] = []
    issues: List[ParseIssue] = []
    for i, res in enumerate(results):
        if res is None:
            raise RuntimeError(f"Parse chunk {i} produced no result")
        records.extend(res[0])
        issues.extend(res[1])

    if policy is ParsePolicy.STRICT and issues:
        raise IngestionAborted(sorted(issues, key=lambda x: x.row_number))

    issues.extend(_duplicate_sample_issues(records))
    issues.sort(key=lambda x: x.row_number)
    return ParseReport(records=tuple(records), issues=tuple(issues))
