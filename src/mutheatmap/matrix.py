from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np

from .errors import InvalidPositionError, UnknownSampleError
from .models import MutationEvent, MutationSite, SiteGranularity

logger = logging.getLogger(__name__)

Range = Tuple[int, int]


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.flags.writeable = False
    return arr


def _merge_ranges(ranges: Iterable[Range]) -> Tuple[Range, ...]:
    out: List[List[int]] = []
    for lo, hi in sorted(ranges):
        if out and lo <= out[-1][1] + 1:
            out[-1][1] = max(out[-1][1], hi)
        else:
            out.append([lo, hi])
    return tuple((lo, hi) for lo, hi in out)


class MutationMatrix:
    """Frozen sparse (site x sample) occurrence matrix in CSR layout.

    Rows are MutationSites sorted by ``MutationSite.sort_key``; columns are
    samples in the order given to the builder. Absent cells are zero.
    """

    __slots__ = (
        "_sites",
        "_samples",
        "_indptr",
        "_indices",
        "_counts",
        "_positions",
        "_missing",
        "granularity",
        "genome_length",
    )

    def __init__(
        self,
        *,
        sites: Sequence[MutationSite],
        samples: Sequence[str],
        indptr: np.ndarray,
        indices: np.ndarray,
        counts: np.ndarray,
        granularity: SiteGranularity = SiteGranularity.ALLELE,
        genome_length: Optional[int] = None,
        missing: Optional[Mapping[int, Sequence[Range]]] = None,
    ) -> None:
        self._sites: Tuple[MutationSite, ...] = tuple(sites)
        self._samples: Tuple[str, ...] = tuple(samples)
        self._indptr = _readonly(np.asarray(indptr, dtype=np.int64))
        self._indices = _readonly(np.asarray(indices, dtype=np.int64))
        self._counts = _readonly(np.asarray(counts, dtype=np.int64))
        self._positions = _readonly(np.array([s.position for s in self._sites], dtype=np.int64))
        self._missing: Dict[int, Tuple[Range, ...]] = {
            int(col): _merge_ranges(ranges) for col, ranges in (missing or {}).items() if ranges
        }
        self.granularity = granularity
        self.genome_length = genome_length

    # -- shape --------------------------------------------------------------

    @property
    def sites(self) -> Tuple[MutationSite, ...]:
        return self._sites

    @property
    def samples(self) -> Tuple[str, ...]:
        return self._samples

    @property
    def indptr(self) -> np.ndarray:
        return self._indptr

    @property
    def indices(self) -> np.ndarray:
        return self._indices

    @property
    def counts(self) -> np.ndarray:
        return self._counts

    @property
    def missing(self) -> Mapping[int, Tuple[Range, ...]]:
        return dict(self._missing)

    @property
    def num_rows(self) -> int:
        return len(self._sites)

    @property
    def num_cols(self) -> int:
        return len(self._samples)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.num_rows, self.num_cols

    @property
    def nnz(self) -> int:
        return int(self._counts.shape[0])

    @property
    def density(self) -> float:
        cells = self.num_rows * self.num_cols
        return self.nnz / cells if cells else 0.0

    def positions(self) -> np.ndarray:
        return self._positions

    # -- cell access --------------------------------------------------------

    def _check(self, row: int, col: int) -> None:
        if not (0 <= row < self.num_rows and 0 <= col < self.num_cols):
            raise IndexError(f"cell ({row}, {col}) outside matrix of shape {self.shape}")

    def cell_index(self, row: int, col: int) -> Optional[int]:
        """Position of a cell in the stored arrays, or None when absent."""
        self._check(row, col)
        lo, hi = int(self._indptr[row]), int(self._indptr[row + 1])
        j = lo + int(np.searchsorted(self._indices[lo:hi], col))
        if j < hi and self._indices[j] == col:
            return j
        return None

    def get(self, row: int, col: int) -> int:
        """Occurrence count of a cell; 0 when absent."""
        j = self.cell_index(row, col)
        return int(self._counts[j]) if j is not None else 0

    def row_cells(self, row: int) -> Tuple[np.ndarray, np.ndarray]:
        """(column indices, counts) of the occupied cells of one row."""
        lo, hi = int(self._indptr[row]), int(self._indptr[row + 1])
        return self._indices[lo:hi], self._counts[lo:hi]

    def row_ids(self) -> np.ndarray:
        """Row index of every stored cell, aligned with ``indices``/``counts``."""
        return np.repeat(np.arange(self.num_rows, dtype=np.int64), np.diff(self._indptr))

    def iter_cells(self) -> Iterator[Tuple[int, int, int]]:
        for row in range(self.num_rows):
            lo, hi = int(self._indptr[row]), int(self._indptr[row + 1])
            for j in range(lo, hi):
                yield row, int(self._indices[j]), int(self._counts[j])

    def column_index(self, sample_id: str) -> int:
        try:
            return self._samples.index(sample_id)
        except ValueError:
            raise KeyError(sample_id) from None

    # -- summaries ----------------------------------------------------------

    def sample_counts(self) -> np.ndarray:
        """Number of samples carrying each site (row)."""
        return np.diff(self._indptr)

    def occurrence_totals(self) -> np.ndarray:
        """Summed occurrence counts per site (row)."""
        return np.bincount(self.row_ids(), weights=self._counts, minlength=self.num_rows).astype(np.int64)

    def sample_burden(self) -> np.ndarray:
        """Number of occupied sites per sample (column)."""
        return np.bincount(self._indices, minlength=self.num_cols).astype(np.int64)

    # -- missing data -------------------------------------------------------

    def is_missing(self, row: int, col: int) -> bool:
        """True when the site position of ``row`` falls in a no-coverage range of ``col``."""
        self._check(row, col)
        pos = int(self._positions[row])
        return any(lo <= pos <= hi for lo, hi in self._missing.get(col, ()))

    def missing_cells(self) -> List[Tuple[int, int]]:
        """Absent cells whose site lies in a no-coverage range, sorted by (row, col)."""
        out: Set[Tuple[int, int]] = set()
        for col, ranges in self._missing.items():
            for lo, hi in ranges:
                r0 = int(np.searchsorted(self._positions, lo, side="left"))
                r1 = int(np.searchsorted(self._positions, hi, side="right"))
                for row in range(r0, r1):
                    if self.get(row, col) == 0:
                        out.add((row, col))
        return sorted(out)

    # -- export -------------------------------------------------------------

    def to_dense(self) -> np.ndarray:
        dense = np.zeros(self.shape, dtype=np.int64)
        dense[self.row_ids(), self._indices] = self._counts
        return dense

    def iter_long_records(self) -> Iterator[Dict[str, object]]:
        """One dict per occupied cell, ordered by site then sample."""
        for row, col, count in self.iter_cells():
            site = self._sites[row]
            yield {
                "sample": self._samples[col],
                "position": site.position,
                "end": site.end,
                "kind": site.kind.value if site.kind is not None else "",
                "ref": site.ref_allele,
                "alt": site.alt_allele,
                "site": site.label(),
                "count": count,
            }

    def __repr__(self) -> str:
        return f"MutationMatrix(rows={self.num_rows}, cols={self.num_cols}, nnz={self.nnz})"


class MatrixBuilder:
    """Single-pass aggregator from events into a MutationMatrix.

    Rows are allocated in first-seen order into a dict keyed by MutationSite and
    only sorted on ``freeze()``, so the final row order depends on the set of
    observed keys alone. Partial builders over different shards combine with
    ``merge`` in any order.
    """

    def __init__(
        self,
        sample_order: Sequence[str],
        *,
        granularity: SiteGranularity = SiteGranularity.ALLELE,
        genome_length: Optional[int] = None,
    ) -> None:
        if genome_length is not None and genome_length < 1:
            raise ValueError("genome_length must be >= 1")
        self._samples: Tuple[str, ...] = tuple(sample_order)
        self._columns: Dict[str, int] = {}
        for i, sample in enumerate(self._samples):
            if sample in self._columns:
                raise ValueError(f"Duplicate sample id in sample order: {sample!r}")
            self._columns[sample] = i
        self.granularity = granularity
        self.genome_length = genome_length
        self._cells: Dict[MutationSite, Dict[int, int]] = {}
        self._missing: Dict[int, List[Range]] = {}
        self.events_seen = 0

    @property
    def samples(self) -> Tuple[str, ...]:
        return self._samples

    def _column(self, sample_id: str) -> int:
        col = self._columns.get(sample_id)
        if col is None:
            raise UnknownSampleError(sample_id)
        return col

    def add(self, sample_id: str, event: MutationEvent) -> None:
        col = self._column(sample_id)
        if self.genome_length is not None and event.end > self.genome_length:
            raise InvalidPositionError(
                sample_id=sample_id,
                position=event.position,
                end=event.end,
                genome_length=self.genome_length,
            )
        site = MutationSite.from_event(event, self.granularity)
        row = self._cells.get(site)
        if row is None:
            row = self._cells[site] = {}
        row[col] = row.get(col, 0) + 1
        self.events_seen += 1

    def update(self, events: Iterable[Tuple[str, MutationEvent]]) -> "MatrixBuilder":
        for sample_id, event in events:
            self.add(sample_id, event)
        return self

    def add_missing(self, sample_id: str, ranges: Iterable[Range]) -> None:
        col = self._column(sample_id)
        self._missing.setdefault(col, []).extend((int(lo), int(hi)) for lo, hi in ranges)

    def merge(self, other: "MatrixBuilder") -> "MatrixBuilder":
        """Fold another partial builder's counts into this one (order-independent)."""
        if other.samples != self._samples:
            raise ValueError("Cannot merge builders with different sample orders")
        if other.granularity is not self.granularity:
            raise ValueError("Cannot merge builders with different site granularity")
        for site, cells in other._cells.items():
            row = self._cells.get(site)
            if row is None:
                row = self._cells[site] = {}
            for col, count in cells.items():
                row[col] = row.get(col, 0) + count
        for col, ranges in other._missing.items():
            self._missing.setdefault(col, []).extend(ranges)
        self.events_seen += other.events_seen
        return self

    def freeze(self) -> MutationMatrix:
        sites = sorted(self._cells, key=lambda s: s.sort_key)
        indptr = np.zeros(len(sites) + 1, dtype=np.int64)
        indices: List[int] = []
        counts: List[int] = []
        for i, site in enumerate(sites):
            cells = self._cells[site]
            for col in sorted(cells):
                indices.append(col)
                counts.append(cells[col])
            indptr[i + 1] = len(indices)

        matrix = MutationMatrix(
            sites=sites,
            samples=self._samples,
            indptr=indptr,
            indices=np.array(indices, dtype=np.int64),
            counts=np.array(counts, dtype=np.int64),
            granularity=self.granularity,
            genome_length=self.genome_length,
            missing=self._missing,
        )
        logger.debug(
            "Froze matrix: %d sites x %d samples, %d occupied cells from %d events",
            matrix.num_rows,
            matrix.num_cols,
            matrix.nnz,
            self.events_seen,
        )
        return matrix


def build_matrix(
    sample_order: Sequence[str],
    events: Iterable[Tuple[str, MutationEvent]],
    *,
    granularity: SiteGranularity = SiteGranularity.ALLELE,
    genome_length: Optional[int] = None,
    missing: Optional[Mapping[str, Sequence[Range]]] = None,
) -> MutationMatrix:
    """Aggregate ``(sample_id, event)`` pairs into a frozen matrix.

    Raises UnknownSampleError / InvalidPositionError; no partial matrix is
    returned on error.
    """
    builder = MatrixBuilder(sample_order, granularity=granularity, genome_length=genome_length)
    builder.update(events)
    for sample_id, ranges in (missing or {}).items():
        builder.add_missing(sample_id, ranges)
    return builder.freeze()


def build_matrix_sharded(
    sample_order: Sequence[str],
    shards: Iterable[Iterable[Tuple[str, MutationEvent]]],
    *,
    granularity: SiteGranularity = SiteGranularity.ALLELE,
    genome_length: Optional[int] = None,
    missing: Optional[Mapping[str, Sequence[Range]]] = None,
) -> MutationMatrix:
    """Build one partial builder per shard and merge them by key."""
    total = MatrixBuilder(sample_order, granularity=granularity, genome_length=genome_length)
    for shard in shards:
        part = MatrixBuilder(sample_order, granularity=granularity, genome_length=genome_length)
        part.update(shard)
        total.merge(part)
    for sample_id, ranges in (missing or {}).items():
        total.add_missing(sample_id, ranges)
    return total.freeze()
