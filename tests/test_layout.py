import json

import numpy as np
import pytest

from mutheatmap.annotation import AnnotationIndex
from mutheatmap.colors import ColorScaleConfig, ColoredMatrix, map_colors
from mutheatmap.errors import LayoutError
from mutheatmap.layout import (
    FeatureBox,
    LayoutConfig,
    Line,
    Rect,
    RowSizing,
    Text,
    band_ranges,
    layout,
    row_heights,
)
from mutheatmap.matrix import MutationMatrix, build_matrix
from mutheatmap.models import Feature, MutationEvent, MutationKind, MutationSite


def colored_for(positions_by_sample, samples=("A", "B"), missing=None):
    events = []
    for sample, positions in positions_by_sample.items():
        for pos in positions:
            events.append((sample, MutationEvent(sample, pos, 1, MutationKind.SUBSTITUTION, "C", "T")))
    return map_colors(build_matrix(list(samples), events, missing=missing))


def test_contiguous_rows_in_one_feature_give_one_box():
    colored = colored_for({"A": [10], "B": [20]})
    scene = layout(colored, AnnotationIndex([Feature("ORF1", 1, 100)]), LayoutConfig())
    boxes = list(scene.iter_items(FeatureBox))
    assert len(boxes) == 1
    box = boxes[0]
    assert box.name == "ORF1"
    cells = sorted(scene.group("cells").items, key=lambda r: r.row)
    assert box.y == cells[0].y
    assert box.height == pytest.approx(2 * LayoutConfig().row_height)


def test_adjacent_features_and_overlapping_lanes():
    colored = colored_for({"A": [10, 12], "B": [20]})
    idx = AnnotationIndex([Feature("a", 1, 15), Feature("b", 18, 30)])
    boxes = list(layout(colored, idx).iter_items(FeatureBox))
    assert [(b.name, b.lane) for b in boxes] == [("a", 0), ("b", 0)]

    colored = colored_for({"A": [10, 30], "B": [60]})
    idx = AnnotationIndex([Feature("a", 1, 50), Feature("b", 20, 80)])
    boxes = list(layout(colored, idx).iter_items(FeatureBox))
    assert [(b.name, b.lane) for b in boxes] == [("a", 0), ("b", 1)]


def test_single_cell():
    colored = colored_for({"A": [5]}, samples=("A",))
    scene = layout(colored, AnnotationIndex())
    cells = scene.group("cells").items
    assert len(cells) == 1
    assert cells[0].fill == colored.colors[0]
    assert "annotation" not in scene.group_names()


def test_empty_matrix_draws_only_the_frame():
    for samples in ((), ("A", "B")):
        colored = map_colors(build_matrix(list(samples), []))
        scene = layout(colored, AnnotationIndex([Feature("g", 1, 10)]))
        assert scene.group_names() == ["frame"]
        assert all(isinstance(i, Line) for i in scene.iter_items())


def test_cells_follow_matrix_order():
    cfg = LayoutConfig(cell_width=10, row_height=5)
    colored = colored_for({"A": [3, 9], "B": [3]})
    cells = layout(colored, None, cfg).group("cells").items
    by_pos = {(c.row, c.col): c for c in cells}
    assert by_pos[(0, 1)].x - by_pos[(0, 0)].x == 10
    assert by_pos[(1, 0)].y - by_pos[(0, 0)].y == 5


def test_genomic_row_sizing():
    colored = colored_for({"A": [10, 30, 31]}, samples=("A",))
    cfg = LayoutConfig(row_sizing=RowSizing.GENOMIC, pixels_per_base=1.0, min_row_height=4.0)
    assert row_heights(colored, cfg).tolist() == [20.0, 4.0, 4.0]
    assert band_ranges(colored, cfg) == [(10, 29), (30, 30), (31, 31)]
    assert band_ranges(colored, LayoutConfig()) == [(10, 10), (30, 30), (31, 31)]


def test_labels_codons_and_suppression():
    colored = colored_for({"A": [10]}, samples=("A",))
    idx = AnnotationIndex([Feature("ORF1", 1, 100)])
    scene = layout(colored, idx, LayoutConfig(label_codons=True))
    texts = [t.text for t in scene.group("site_labels").items if isinstance(t, Text)]
    assert texts == ["C10T (ORF1:4)"]
    sample_texts = [t for t in scene.group("sample_labels").items if isinstance(t, Text)]
    assert sample_texts[0].rotation == -90.0

    quiet = layout(colored, idx, LayoutConfig(max_site_labels=0, max_sample_labels=0))
    assert "site_labels" not in quiet.group_names()
    assert "sample_labels" not in quiet.group_names()


def test_null_and_missing_cells():
    colored = colored_for({"A": [5]}, samples=("A", "B", "C"), missing={"C": [(1, 10)]})
    scene = layout(colored, None, LayoutConfig(show_null_cells=True))
    assert [(r.row, r.col) for r in scene.group("missing").items] == [(0, 2)]
    assert [(r.row, r.col) for r in scene.group("null_cells").items] == [(0, 1)]
    assert scene.group("missing").items[0].fill == colored.scale.missing_color


def test_scene_serialises_to_json():
    colored = colored_for({"A": [10], "B": [20]})
    scene = layout(colored, AnnotationIndex([Feature("ORF1", 1, 100)]))
    data = json.loads(json.dumps(scene.to_dict()))
    types = {i["type"] for g in data["groups"] for i in g["items"]}
    assert {"rect", "text", "line", "featurebox"} <= types
    assert data["width"] > 0 and data["height"] > 0


def test_inconsistent_input_raises_layout_error():
    colored = colored_for({"A": [5]}, samples=("A",))
    broken = ColoredMatrix(
        matrix=colored.matrix,
        values=np.array(colored.values),
        intensities=np.array(colored.intensities),
        colors=(),
        scale=colored.scale,
        vmin=colored.vmin,
        vmax=colored.vmax,
    )
    with pytest.raises(LayoutError):
        layout(broken)

    unsorted = MutationMatrix(
        sites=[MutationSite(9, MutationKind.SUBSTITUTION, "C", "T"), MutationSite(2, MutationKind.SUBSTITUTION, "C", "T")],
        samples=["A"],
        indptr=np.array([0, 1, 2]),
        indices=np.array([0, 0]),
        counts=np.array([1, 1]),
    )
    with pytest.raises(LayoutError):
        layout(map_colors(unsorted, ColorScaleConfig()))

    bad_col = MutationMatrix(
        sites=[MutationSite(2, MutationKind.SUBSTITUTION, "C", "T")],
        samples=["A"],
        indptr=np.array([0, 1]),
        indices=np.array([3]),
        counts=np.array([1]),
    )
    with pytest.raises(LayoutError):
        layout(map_colors(bad_col))


def test_layout_is_deterministic():
    colored = colored_for({"A": [10, 40], "B": [20, 40]})
    idx = AnnotationIndex([Feature("ORF1", 1, 30), Feature("S", 35, 60)])
    assert layout(colored, idx) == layout(colored, idx)
    assert all(isinstance(r, Rect) for r in layout(colored, idx).group("cells").items)
