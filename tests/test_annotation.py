import random

import pytest

from mutheatmap.annotation import AnnotationIndex, build_annotation_index
from mutheatmap.models import Feature, Strand


def test_empty_index_returns_nothing():
    idx = AnnotationIndex()
    assert len(idx) == 0
    assert not idx
    assert idx.lookup(5) == []
    assert idx.overlapping(1, 100) == []
    assert idx.codon_labels(5) == []


def test_lookup_finds_nested_features_in_start_order():
    big = Feature("ORF1ab", 1, 1000)
    small = Feature("nsp1", 10, 20)
    after = Feature("nsp2", 30, 40)
    idx = AnnotationIndex.build([after, small, big])
    assert idx.lookup(35) == [big, after]
    assert idx.lookup(15) == [big, small]
    assert idx.lookup(1001) == []
    assert idx.overlapping(18, 32) == [big, small, after]


def test_index_matches_brute_force():
    rng = random.Random(3)
    feats = []
    for i in range(60):
        start = rng.randint(1, 900)
        feats.append(Feature(f"f{i}", start, start + rng.randint(0, 120)))
    idx = AnnotationIndex(feats)
    for _ in range(200):
        lo = rng.randint(1, 1000)
        hi = lo + rng.randint(0, 30)
        expected = sorted(
            (f for f in feats if f.start <= hi and lo <= f.end),
            key=lambda f: (f.start, f.end, f.name),
        )
        assert idx.overlapping(lo, hi) == expected


def test_index_is_read_only():
    idx = AnnotationIndex([Feature("a", 1, 10)])
    assert isinstance(idx.features, tuple)
    with pytest.raises(ValueError):
        idx._starts[0] = 5


def test_codons_on_both_strands():
    spike = Feature("S", 21563, 25384, Strand.PLUS)
    assert spike.codon_at(21563) == 1
    assert spike.codon_at(21565) == 1
    assert spike.codon_at(21566) == 2
    assert spike.codon_at(21562) is None
    assert spike.codon_span(2) == (21566, 21568)

    n = Feature("N", 100, 199, Strand.MINUS)
    assert n.codon_at(199) == 1
    assert n.codon_at(196) == 2
    assert n.codon_span(1) == (197, 199)

    idx = AnnotationIndex([spike, n])
    assert idx.codon_labels(21566) == ["S:2"]


def test_build_annotation_index_allows_repeated_names():
    idx = build_annotation_index([Feature("g", 1, 10), Feature("g", 50, 60)])
    assert len(idx.find("g")) == 2
    assert idx.names_for_range(1, 60) == ["g"]


def test_codon_ranges_and_nucleotide_spans():
    plus = Feature("P", 10, 30, Strand.PLUS)
    minus = Feature("M", 25, 45, Strand.MINUS)
    idx = AnnotationIndex([plus, minus])

    assert idx.codon_ranges(10, 15) == [(plus, 1, 2)]
    assert idx.codon_ranges(28, 33) == [(plus, 7, 7), (minus, 5, 6)]
    assert idx.codon_ranges(50, 60) == []

    assert idx.nucleotide_span("P", 1, 2) == (10, 15)
    assert idx.nucleotide_span("M", 1, 1) == (43, 45)
    assert idx.nucleotide_span("M", 7, 7) == (25, 27)
    assert idx.nucleotide_span("M", 8, 8) is None
    assert idx.nucleotide_span("ORF9", 1, 1) is None
