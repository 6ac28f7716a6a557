import random

import numpy as np
import pytest

from mutheatmap.errors import InvalidPositionError, UnknownSampleError
from mutheatmap.matrix import MatrixBuilder, build_matrix, build_matrix_sharded
from mutheatmap.models import MutationEvent, MutationKind, SiteGranularity


def sub(sample: str, pos: int, ref: str = "C", alt: str = "T") -> MutationEvent:
    return MutationEvent(sample, pos, len(ref), MutationKind.SUBSTITUTION, ref, alt)


def dele(sample: str, pos: int, length: int = 1) -> MutationEvent:
    return MutationEvent(sample, pos, length, MutationKind.DELETION)


def ins(sample: str, pos: int, alt: str = "A") -> MutationEvent:
    return MutationEvent(sample, pos, 0, MutationKind.INSERTION, "", alt)


def pairs(events):
    return [(e.sample_id, e) for e in events]


def test_two_samples_share_one_site():
    m = build_matrix(["A", "B", "C"], pairs([sub("A", 5), sub("B", 5)]), genome_length=10)
    assert m.shape == (1, 3)
    assert m.get(0, 0) == 1
    assert m.get(0, 1) == 1
    assert m.get(0, 2) == 0
    assert m.cell_index(0, 2) is None
    assert m.sites[0].label() == "C5T"


def test_unknown_sample_aborts():
    with pytest.raises(UnknownSampleError) as exc:
        build_matrix(["A", "B"], pairs([sub("A", 5), sub("Z", 6)]))
    assert exc.value.sample_id == "Z"


def test_position_beyond_genome_aborts():
    with pytest.raises(InvalidPositionError) as exc:
        build_matrix(["A"], pairs([dele("A", 9, 3)]), genome_length=10)
    assert exc.value.end == 11


def test_row_order_tie_break():
    events = [
        dele("A", 10),
        ins("A", 10, "G"),
        sub("A", 10, "A", "T"),
        sub("A", 10, "A", "G"),
        dele("A", 9, 3),
        dele("A", 10, 2),
    ]
    m = build_matrix(["A"], pairs(events))
    assert [s.label() for s in m.sites] == ["9-11del", "A10G", "A10T", "10ins:G", "10del", "10-11del"]


def test_row_order_does_not_depend_on_input_order():
    events = [sub("A", 5), sub("B", 5), dele("C", 3, 2), ins("A", 8), sub("C", 5, "C", "G"), sub("B", 1, "A", "G")]
    events += [sub("A", 5)]
    ref = build_matrix(["A", "B", "C"], pairs(events))
    rng = random.Random(11)
    for _ in range(10):
        shuffled = events[:]
        rng.shuffle(shuffled)
        m = build_matrix(["A", "B", "C"], pairs(shuffled))
        assert m.sites == ref.sites
        assert np.array_equal(m.indptr, ref.indptr)
        assert np.array_equal(m.indices, ref.indices)
        assert np.array_equal(m.counts, ref.counts)


def test_nnz_counts_distinct_site_sample_pairs():
    events = [sub("A", 5), sub("A", 5), sub("B", 5), dele("A", 7), dele("A", 7, 2)]
    m = build_matrix(["A", "B"], pairs(events))
    assert m.nnz == 4
    assert m.get(0, 0) == 2
    assert m.occurrence_totals().tolist() == [3, 1, 1]
    assert m.sample_counts().tolist() == [2, 1, 1]
    assert m.sample_burden().tolist() == [3, 1]
    assert m.to_dense().tolist() == [[2, 1], [1, 0], [1, 0]]


def test_sharded_merge_is_order_independent():
    samples = ["A", "B", "C"]
    shards = [
        pairs([sub("A", 5), dele("B", 9)]),
        pairs([sub("C", 5), ins("A", 2)]),
        pairs([sub("A", 5), sub("B", 1, "G", "A")]),
    ]
    single = build_matrix(samples, [p for s in shards for p in s])
    for order in ([0, 1, 2], [2, 0, 1], [1, 2, 0]):
        merged = build_matrix_sharded(samples, [shards[i] for i in order])
        assert merged.sites == single.sites
        assert np.array_equal(merged.counts, single.counts)
        assert np.array_equal(merged.indices, single.indices)


def test_builder_rejects_bad_inputs():
    with pytest.raises(ValueError):
        MatrixBuilder(["A", "A"])
    a = MatrixBuilder(["A", "B"])
    with pytest.raises(ValueError):
        a.merge(MatrixBuilder(["B", "A"]))
    with pytest.raises(ValueError):
        a.merge(MatrixBuilder(["A", "B"], granularity=SiteGranularity.POSITION))


def test_position_granularity_collapses_alleles():
    events = [sub("A", 10, "A", "G"), dele("B", 10), sub("B", 12)]
    m = build_matrix(["A", "B"], pairs(events), granularity=SiteGranularity.POSITION)
    assert [s.label() for s in m.sites] == ["10", "12"]
    assert m.to_dense().tolist() == [[1, 1], [0, 1]]


def test_deletion_with_and_without_bases_share_a_row():
    bare = MutationEvent("A", 123, 3, MutationKind.DELETION)
    with_bases = MutationEvent("B", 123, 3, MutationKind.DELETION, "ACG")
    m = build_matrix(["A", "B"], pairs([bare, with_bases]))
    assert m.num_rows == 1
    assert m.sites[0].label() == "123-125del"
    assert m.to_dense().tolist() == [[1, 1]]


def test_frozen_arrays_are_read_only():
    m = build_matrix(["A"], pairs([sub("A", 5)]))
    with pytest.raises(ValueError):
        m.counts[0] = 7
    with pytest.raises(ValueError):
        m.indptr[0] = 1


def test_missing_ranges_mark_absent_cells_only():
    events = [sub("A", 5), sub("C", 8)]
    m = build_matrix(["A", "B", "C"], pairs(events), missing={"B": [(1, 6)], "C": [(7, 9)]})
    assert m.is_missing(0, 1)
    assert not m.is_missing(1, 1)
    assert m.missing_cells() == [(0, 1)]


def test_empty_inputs():
    m = build_matrix([], [])
    assert m.shape == (0, 0)
    assert m.nnz == 0
    assert m.density == 0.0
    m = build_matrix(["A", "B"], [])
    assert m.shape == (0, 2)
    assert m.sample_burden().tolist() == [0, 0]


def test_get_out_of_range_raises():
    m = build_matrix(["A"], pairs([sub("A", 5)]))
    with pytest.raises(IndexError):
        m.get(1, 0)


def test_long_records():
    m = build_matrix(["A", "B"], pairs([sub("B", 5), dele("A", 7, 3)]))
    recs = list(m.iter_long_records())
    assert recs[0]["sample"] == "B" and recs[0]["site"] == "C5T"
    assert recs[1]["end"] == 9 and recs[1]["kind"] == "deletion"
