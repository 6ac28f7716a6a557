from __future__ import annotations

import logging
from collections import Counter
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .models import Feature

logger = logging.getLogger(__name__)


class AnnotationIndex:
    """Immutable interval index over annotated features.

    Features are kept sorted by start together with a running maximum of their
    ends. A query binary-searches the last feature starting at or before the
    query end, then scans backwards until the running maximum end drops below
    the query start: ``O(log n + k)`` for the usual non-nested gene layouts.
    """

    __slots__ = ("_features", "_starts", "_ends", "_max_ends")

    def __init__(self, features: Iterable[Feature] = ()) -> None:
        feats = sorted(features, key=lambda f: (f.start, f.end, f.name))
        self._features: Tuple[Feature, ...] = tuple(feats)
        self._starts = np.array([f.start for f in feats], dtype=np.int64)
        self._ends = np.array([f.end for f in feats], dtype=np.int64)
        self._max_ends = np.maximum.accumulate(self._ends) if len(feats) else self._ends.copy()
        for arr in (self._starts, self._ends, self._max_ends):
            arr.flags.writeable = False

    @classmethod
    def build(cls, features: Iterable[Feature]) -> "AnnotationIndex":
        return cls(features)

    @property
    def features(self) -> Tuple[Feature, ...]:
        return self._features

    def __len__(self) -> int:
        return len(self._features)

    def __bool__(self) -> bool:
        return bool(self._features)

    def overlapping(self, start: int, end: int) -> List[Feature]:
        """All features intersecting the inclusive range [start, end], in start order."""
        if end < start or not self._features:
            return []
        hi = int(np.searchsorted(self._starts, end, side="right"))
        found: List[Feature] = []
        i = hi - 1
        while i >= 0 and self._max_ends[i] >= start:
            if self._ends[i] >= start:
                found.append(self._features[i])
            i -= 1
        found.reverse()
        return found

    def lookup(self, position: int) -> List[Feature]:
        """All features whose [start, end] contains ``position``."""
        return self.overlapping(position, position)

    def codon_labels(self, position: int) -> List[str]:
        """``NAME:codon`` for each feature covering ``position``."""
        out: List[str] = []
        for feat in self.lookup(position):
            codon = feat.codon_at(position)
            if codon is not None:
                out.append(f"{feat.name}:{codon}")
        return out

    def codon_ranges(self, start: int, end: int) -> List[Tuple[Feature, int, int]]:
        """``(feature, first codon, last codon)`` for each feature overlapping [start, end].

        The range is clipped to the feature; on the minus strand codons still come
        back as ``first <= last``.
        """
        out: List[Tuple[Feature, int, int]] = []
        for feat in self.overlapping(start, end):
            a = feat.codon_at(max(start, feat.start))
            b = feat.codon_at(min(end, feat.end))
            out.append((feat, min(a, b), max(a, b)))
        return out

    def nucleotide_span(self, gene: str, aa_start: int, aa_end: int) -> Optional[Tuple[int, int]]:
        """Inclusive nucleotide range of codons ``aa_start..aa_end`` of the first feature named ``gene``.

        None when the gene is not annotated or the codons run past its end.
        """
        for feat in self.find(gene):
            n_codons = (feat.length + 2) // 3
            if aa_start < 1 or aa_end > n_codons:
                return None
            lo_a, hi_a = feat.codon_span(aa_start)
            lo_b, hi_b = feat.codon_span(aa_end)
            return min(lo_a, lo_b), max(hi_a, hi_b)
        return None

    def names_for_range(self, start: int, end: int) -> List[str]:
        seen: List[str] = []
        for feat in self.overlapping(start, end):
            if feat.name not in seen:
                seen.append(feat.name)
        return seen

    def find(self, name: str) -> List[Feature]:
        return [f for f in self._features if f.name == name]

    def __repr__(self) -> str:
        return f"AnnotationIndex({len(self._features)} features)"


def build_annotation_index(features: Sequence[Feature]) -> AnnotationIndex:
    """Build the index, logging duplicated feature names (allowed, but usually unintended)."""
    index = AnnotationIndex(features)
    counts = Counter(f.name for f in index.features)
    dupes = sorted(n for n, c in counts.items() if c > 1)
    if dupes:
        logger.info("Annotation contains repeated feature names: %s", ", ".join(dupes[:10]))
    return index
