from pathlib import Path

import pytest

from mutheatmap.annotation import AnnotationIndex
from mutheatmap.colors import map_colors
from mutheatmap.layout import SceneGraph, layout
from mutheatmap.matrix import build_matrix
from mutheatmap.models import Feature, MutationEvent, MutationKind
from mutheatmap.render import render_scene


def _scene() -> SceneGraph:
    events = [
        ("A", MutationEvent("A", 10, 1, MutationKind.SUBSTITUTION, "C", "T")),
        ("B", MutationEvent("B", 10, 1, MutationKind.SUBSTITUTION, "C", "T")),
        ("B", MutationEvent("B", 40, 2, MutationKind.DELETION)),
    ]
    colored = map_colors(build_matrix(["A", "B", "C"], events))
    return layout(colored, AnnotationIndex([Feature("ORF1", 1, 50)]))


@pytest.mark.parametrize("suffix", [".png", ".svg", ".pdf"])
def test_render_writes_each_format(tmp_path: Path, suffix: str) -> None:
    out = render_scene(_scene(), tmp_path / f"heatmap{suffix}")
    assert out.exists()
    assert out.stat().st_size > 0


def test_svg_contains_labels(tmp_path: Path) -> None:
    out = render_scene(_scene(), tmp_path / "plots" / "heatmap.svg")
    text = out.read_text(encoding="utf-8")
    assert "<svg" in text


def test_empty_scene_renders(tmp_path: Path) -> None:
    scene = layout(map_colors(build_matrix([], [])))
    assert render_scene(scene, tmp_path / "empty.png").exists()


def test_unsupported_format(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        render_scene(_scene(), tmp_path / "heatmap.bmp")
