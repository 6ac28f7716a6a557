from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

IUPAC_NUCLEOTIDES = frozenset("ACGTURYSWKMBDHVN")


class MutationKind(Enum):
    """Closed set of nucleotide change kinds.

    Member order defines the discriminant used as the secondary row-sort key.
    """

    SUBSTITUTION = "substitution"
    INSERTION = "insertion"
    DELETION = "deletion"

    @property
    def rank(self) -> int:
        return _KIND_RANK[self]


_KIND_RANK = {kind: i for i, kind in enumerate(MutationKind)}


class Strand(Enum):
    PLUS = "+"
    MINUS = "-"
    UNKNOWN = "."

    @classmethod
    def parse(cls, value: Optional[str]) -> "Strand":
        if value == "+":
            return cls.PLUS
        if value == "-":
            return cls.MINUS
        return cls.UNKNOWN


class SiteGranularity(Enum):
    """Aggregation key used for heatmap rows."""

    ALLELE = "allele"  # (position, kind, ref, alt, length)
    POSITION = "position"  # (position)


def _check_alleles(value: str, what: str) -> None:
    bad = set(value) - IUPAC_NUCLEOTIDES
    if bad:
        raise ValueError(f"{what} contains non-nucleotide characters: {''.join(sorted(bad))}")


@dataclass(frozen=True)
class MutationEvent:
    """One observed change in one sample.

    Coordinates are 1-based. ``position`` is the first affected reference base
    for substitutions and deletions, and the base *after which* the sequence is
    inserted for insertions.

    Attributes
    ----------
    sample_id:
        Sample identifier (unique per input row).
    position:
        1-based genomic coordinate (start coordinate for multi-base events).
    length:
        Reference bases affected: len(ref) for substitutions, the deleted span for
        deletions and 0 for insertions.
    kind:
        Substitution, insertion or deletion.
    ref_allele, alt_allele:
        Upper-case IUPAC sequences. ``alt_allele`` is empty for deletions,
        ``ref_allele`` is empty for insertions and may be empty for deletions whose
        bases were not reported.
    """

    sample_id: str
    position: int
    length: int
    kind: MutationKind
    ref_allele: str = ""
    alt_allele: str = ""

    def __post_init__(self) -> None:
        if self.position < 1:
            raise ValueError(f"position must be >= 1, got {self.position}")
        if self.length < 0:
            raise ValueError(f"length must be >= 0, got {self.length}")
        _check_alleles(self.ref_allele, "ref_allele")
        _check_alleles(self.alt_allele, "alt_allele")

        if self.kind is MutationKind.SUBSTITUTION:
            if not (self.length == len(self.ref_allele) == len(self.alt_allele) >= 1):
                raise ValueError(
                    "substitution requires length == len(ref_allele) == len(alt_allele) >= 1"
                )
        elif self.kind is MutationKind.INSERTION:
            if self.length != 0 or self.ref_allele or not self.alt_allele:
                raise ValueError("insertion requires length 0, empty ref_allele and a non-empty alt_allele")
        elif self.kind is MutationKind.DELETION:
            if self.length < 1 or self.alt_allele:
                raise ValueError("deletion requires length >= 1 and an empty alt_allele")
            if self.ref_allele and len(self.ref_allele) != self.length:
                raise ValueError("deletion ref_allele must be empty or match length")

    @property
    def end(self) -> int:
        """Last reference base touched by the event (inclusive)."""
        return self.position + max(self.length, 1) - 1


@dataclass(frozen=True)
class Feature:
    """One annotated gene/region with inclusive 1-based coordinates."""

    name: str
    start: int
    end: int
    strand: Strand = Strand.UNKNOWN
    feature_type: str = "gene"

    def __post_init__(self) -> None:
        if self.start < 1 or self.start > self.end:
            raise ValueError(f"Feature {self.name!r} needs 1 <= start <= end, got {self.start}-{self.end}")

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def contains(self, position: int) -> bool:
        return self.start <= position <= self.end

    def overlaps(self, start: int, end: int) -> bool:
        return self.start <= end and start <= self.end

    def codon_at(self, position: int) -> Optional[int]:
        """1-based codon number of ``position`` within this feature.

        Minus-strand features count codons from ``end``; features with unknown
        strand are read as plus strand.
        """
        if not self.contains(position):
            return None
        if self.strand is Strand.MINUS:
            return (self.end - position) // 3 + 1
        return (position - self.start) // 3 + 1

    def codon_span(self, codon: int) -> Tuple[int, int]:
        """Inclusive nucleotide range of a 1-based codon (clipped to the feature)."""
        if codon < 1:
            raise ValueError(f"codon must be >= 1, got {codon}")
        if self.strand is Strand.MINUS:
            hi = self.end - (codon - 1) * 3
            lo = hi - 2
        else:
            lo = self.start + (codon - 1) * 3
            hi = lo + 2
        if hi < self.start or lo > self.end:
            raise ValueError(f"codon {codon} lies outside feature {self.name!r}")
        return max(lo, self.start), min(hi, self.end)


@dataclass(frozen=True)
class MutationSite:
    """Aggregation key of one heatmap row.

    With position granularity ``kind`` is None and the alleles are empty.
    """

    position: int
    kind: Optional[MutationKind] = None
    ref_allele: str = ""
    alt_allele: str = ""
    length: int = 1

    @classmethod
    def from_event(cls, event: MutationEvent, granularity: SiteGranularity) -> "MutationSite":
        if granularity is SiteGranularity.POSITION:
            return cls(position=event.position)
        # Deletions are keyed by span; reported reference bases are optional.
        ref = "" if event.kind is MutationKind.DELETION else event.ref_allele
        return cls(
            position=event.position,
            kind=event.kind,
            ref_allele=ref,
            alt_allele=event.alt_allele,
            length=event.length,
        )

    @property
    def sort_key(self) -> Tuple[int, int, str, str, int]:
        rank = self.kind.rank if self.kind is not None else -1
        return (self.position, rank, self.ref_allele, self.alt_allele, self.length)

    @property
    def end(self) -> int:
        return self.position + max(self.length, 1) - 1

    def label(self) -> str:
        if self.kind is None:
            return str(self.position)
        if self.kind is MutationKind.SUBSTITUTION:
            return f"{self.ref_allele}{self.position}{self.alt_allele}"
        if self.kind is MutationKind.INSERTION:
            return f"{self.position}ins:{self.alt_allele}"
        if self.length == 1:
            return f"{self.position}del"
        return f"{self.position}-{self.end}del"


class AminoAcidKind(Enum):
    """Protein-level change kinds reported by nextclade's ``aa*`` and ``frameShifts`` columns."""

    SUBSTITUTION = "aa-substitution"
    DELETION = "aa-deletion"
    INSERTION = "aa-insertion"
    FRAMESHIFT = "frameshift"


@dataclass(frozen=True)
class AminoAcidChange:
    """One change against a named gene, in 1-based codon coordinates.

    Insertions sit after ``aa_start``; frameshifts may span several codons.
    """

    sample_id: str
    gene: str
    kind: AminoAcidKind
    aa_start: int
    aa_end: int
    ref: str = ""
    alt: str = ""

    def __post_init__(self) -> None:
        if not self.gene:
            raise ValueError("amino-acid change needs a gene name")
        if self.aa_start < 1 or self.aa_end < self.aa_start:
            raise ValueError(f"codon range must satisfy 1 <= start <= end, got {self.aa_start}-{self.aa_end}")

    def label(self) -> str:
        if self.kind is AminoAcidKind.SUBSTITUTION:
            return f"{self.gene}:{self.ref}{self.aa_start}{self.alt}"
        if self.kind is AminoAcidKind.DELETION:
            return f"{self.gene}:{self.ref}{self.aa_start}-"
        if self.kind is AminoAcidKind.INSERTION:
            return f"{self.gene}:{self.aa_start}:{self.alt}"
        if self.aa_start == self.aa_end:
            return f"{self.gene}:{self.aa_start}"
        return f"{self.gene}:{self.aa_start}-{self.aa_end}"
