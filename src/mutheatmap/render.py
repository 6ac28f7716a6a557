from __future__ import annotations

import logging
from pathlib import Path
from typing import List

import matplotlib.pyplot as plt
from matplotlib.collections import LineCollection, PatchCollection
from matplotlib.patches import Rectangle

from .layout import FeatureBox, Group, Line, Rect, SceneGraph, Text

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("png", "svg", "pdf")

# Agg refuses canvases above 2**16 pixels per side.
MAX_PIXELS = 30000

_HA = {"start": "left", "middle": "center", "end": "right"}
_VA = {"top": "top", "middle": "center", "bottom": "bottom"}


def _points(px: float, dpi: float) -> float:
    return px * 72.0 / dpi


def _draw_group(ax, group: Group, dpi: float) -> None:
    boxes: List[Rectangle] = []
    faces: List[str] = []
    edges: List[str] = []
    widths: List[float] = []
    segments = []
    seg_colors: List[str] = []
    seg_widths: List[float] = []

    for item in group.items:
        if isinstance(item, (Rect, FeatureBox)):
            boxes.append(Rectangle((item.x, item.y), item.width, item.height))
            faces.append(item.fill)
            edges.append(item.stroke or "none")
            stroke_width = getattr(item, "stroke_width", 0.5 if item.stroke else 0.0)
            widths.append(_points(stroke_width, dpi))
        elif isinstance(item, Line):
            segments.append([(item.x1, item.y1), (item.x2, item.y2)])
            seg_colors.append(item.stroke)
            seg_widths.append(_points(item.stroke_width, dpi))
        elif isinstance(item, Text):
            ax.text(
                item.x,
                item.y,
                item.text,
                fontsize=_points(item.font_size, dpi),
                ha=_HA.get(item.anchor, "left"),
                va=_VA.get(item.baseline, "center"),
                rotation=-item.rotation,
                rotation_mode="anchor",
                color=item.color,
            )
        else:
            raise TypeError(f"Cannot render scene item of type {type(item).__name__}")

    if boxes:
        ax.add_collection(
            PatchCollection(boxes, facecolors=faces, edgecolors=edges, linewidths=widths, match_original=False)
        )
    if segments:
        ax.add_collection(LineCollection(segments, colors=seg_colors, linewidths=seg_widths))


def render_scene(scene: SceneGraph, out_path: str | Path, *, dpi: float = 100.0) -> Path:
    """Draw a SceneGraph to PNG/SVG/PDF (picked from the file suffix)."""
    out_path = Path(out_path)
    fmt = out_path.suffix.lower().lstrip(".")
    if fmt not in SUPPORTED_FORMATS:
        raise ValueError(f"Unsupported output format {fmt!r}; choose one of {', '.join(SUPPORTED_FORMATS)}")
    out_path.parent.mkdir(parents=True, exist_ok=True)

    longest = max(scene.width, scene.height, 1.0)
    scale = min(1.0, MAX_PIXELS / longest)
    if scale < 1.0:
        logger.warning("Scene is %.0f px on its longest side; rendering at %.0f%% scale", longest, scale * 100)

    fig = plt.figure(figsize=(scene.width / dpi * scale, scene.height / dpi * scale), dpi=dpi)
    try:
        fig.patch.set_facecolor(scene.background)
        ax = fig.add_axes((0.0, 0.0, 1.0, 1.0))
        ax.set_xlim(0, scene.width)
        ax.set_ylim(scene.height, 0)
        ax.axis("off")
        for group in scene.groups:
            _draw_group(ax, group, dpi / scale)
        fig.savefig(out_path, format=fmt, dpi=dpi, facecolor=scene.background)
    finally:
        plt.close(fig)
    logger.info("Wrote %s", out_path)
    return out_path
