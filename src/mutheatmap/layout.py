"""Backend-agnostic heatmap geometry.

``layout`` turns a ColoredMatrix plus an AnnotationIndex into a SceneGraph of
absolute-positioned primitives (origin top-left, y grows downward)::

    +---------+------+------------------------+--------+
    |         |      |  sample labels (-90)   |        |
    +---------+------+------------------------+--------+
    |  site   | ann. |  cells                 | legend |
    |  labels | lanes|  (samples = columns,   |        |
    |         |      |   sites = rows)        |        |
    +---------+------+------------------------+--------+

Nothing here draws pixels; see ``render.py``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Type, Union

import numpy as np

from .annotation import AnnotationIndex
from .colors import ColoredMatrix, FrequencyMode
from .errors import LayoutError
from .models import Feature, Strand

logger = logging.getLogger(__name__)

# Average glyph advance as a fraction of the font size.
CHAR_WIDTH = 0.6

DEFAULT_FEATURE_PALETTE: Tuple[str, ...] = (
    "#8dd3c7",
    "#fdb462",
    "#80b1d3",
    "#fb8072",
    "#b3de69",
    "#bebada",
    "#fccde5",
    "#ccebc5",
)


class RowSizing(Enum):
    UNIFORM = "uniform"
    GENOMIC = "genomic"


@dataclass(frozen=True)
class LayoutConfig:
    cell_width: float = 12.0
    row_height: float = 12.0
    row_sizing: RowSizing = RowSizing.UNIFORM
    min_row_height: float = 4.0
    pixels_per_base: float = 0.5
    font_size: float = 8.0
    padding: float = 12.0
    tick_length: float = 3.0
    lane_width: float = 10.0
    legend_width: float = 14.0
    legend_steps: int = 5
    show_null_cells: bool = False
    show_missing: bool = True
    max_sample_labels: int = 200
    max_site_labels: int = 500
    label_codons: bool = False
    background: str = "#ffffff"
    frame_color: str = "#444444"
    text_color: str = "#222222"
    feature_palette: Tuple[str, ...] = DEFAULT_FEATURE_PALETTE

    def __post_init__(self) -> None:
        for name in ("cell_width", "row_height", "min_row_height", "lane_width", "legend_width", "font_size"):
            if getattr(self, name) <= 0:
                raise ValueError(f"LayoutConfig.{name} must be > 0")
        if self.pixels_per_base < 0 or self.padding < 0 or self.tick_length < 0:
            raise ValueError("LayoutConfig pixels_per_base, padding and tick_length must be >= 0")
        if self.legend_steps < 2:
            raise ValueError("LayoutConfig.legend_steps must be >= 2")
        if not self.feature_palette:
            raise ValueError("LayoutConfig.feature_palette must not be empty")


# -- primitives ---------------------------------------------------------------


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float
    fill: str
    stroke: Optional[str] = None
    stroke_width: float = 0.0
    row: Optional[int] = None
    col: Optional[int] = None


@dataclass(frozen=True)
class Text:
    x: float
    y: float
    text: str
    font_size: float
    anchor: str = "start"  # start | middle | end
    baseline: str = "middle"  # top | middle | bottom
    rotation: float = 0.0  # degrees, clockwise in screen space
    color: str = "#000000"


@dataclass(frozen=True)
class Line:
    x1: float
    y1: float
    x2: float
    y2: float
    stroke: str = "#000000"
    stroke_width: float = 1.0


@dataclass(frozen=True)
class FeatureBox:
    x: float
    y: float
    width: float
    height: float
    name: str
    strand: Strand
    start: int
    end: int
    lane: int
    fill: str
    stroke: Optional[str] = None


Item = Union[Rect, Text, Line, FeatureBox]


@dataclass(frozen=True)
class Group:
    name: str
    items: Tuple[Item, ...] = ()


@dataclass(frozen=True)
class SceneGraph:
    width: float
    height: float
    background: str
    groups: Tuple[Group, ...] = field(default_factory=tuple)

    def group_names(self) -> List[str]:
        return [g.name for g in self.groups]

    def group(self, name: str) -> Group:
        for g in self.groups:
            if g.name == name:
                return g
        raise KeyError(name)

    def iter_items(self, kind: Optional[Type] = None) -> Iterator[Item]:
        for g in self.groups:
            for item in g.items:
                if kind is None or isinstance(item, kind):
                    yield item

    def to_dict(self) -> Dict[str, object]:
        groups = []
        for g in self.groups:
            items = []
            for item in g.items:
                d = asdict(item)
                if isinstance(item, FeatureBox):
                    d["strand"] = item.strand.value
                d["type"] = type(item).__name__.lower()
                items.append(d)
            groups.append({"name": g.name, "items": items})
        return {"width": self.width, "height": self.height, "background": self.background, "groups": groups}


def text_width(text: str, font_size: float) -> float:
    """Rough rendered width of ``text``; no font metrics are available here."""
    return len(text) * font_size * CHAR_WIDTH


# -- validation ---------------------------------------------------------------


def _validate(colored: ColoredMatrix) -> None:
    m = colored.matrix
    indptr, indices = m.indptr, m.indices
    if indptr.shape != (m.num_rows + 1,):
        raise LayoutError(f"indptr has shape {indptr.shape}, expected ({m.num_rows + 1},)")
    if indptr[0] != 0 or indptr[-1] != m.nnz or np.any(np.diff(indptr) < 0):
        raise LayoutError("indptr is not a monotone offset array over the stored cells")
    if m.nnz and (indices.min() < 0 or indices.max() >= m.num_cols):
        raise LayoutError(f"column index outside [0, {m.num_cols})")
    for arr_name in ("values", "intensities"):
        if len(getattr(colored, arr_name)) != m.nnz:
            raise LayoutError(f"{arr_name} is not aligned with the stored cells")
    if len(colored.colors) != m.nnz:
        raise LayoutError("colors is not aligned with the stored cells")
    keys = [s.sort_key for s in m.sites]
    for i in range(1, len(keys)):
        if not keys[i - 1] < keys[i]:
            raise LayoutError(f"rows {i - 1} and {i} are not in ascending site order")


# -- geometry helpers -----------------------------------------------------------


def row_heights(colored: ColoredMatrix, config: LayoutConfig) -> np.ndarray:
    m = colored.matrix
    if config.row_sizing is RowSizing.UNIFORM:
        return np.full(m.num_rows, float(config.row_height))
    heights = np.empty(m.num_rows, dtype=np.float64)
    positions = m.positions()
    for i, site in enumerate(m.sites):
        if i + 1 < m.num_rows:
            span = int(positions[i + 1] - positions[i])
        else:
            span = site.end - site.position + 1
        heights[i] = max(config.min_row_height, span * config.pixels_per_base)
    return heights


def band_ranges(colored: ColoredMatrix, config: LayoutConfig) -> List[Tuple[int, int]]:
    """Inclusive genomic range covered by each row band."""
    m = colored.matrix
    out: List[Tuple[int, int]] = []
    for i, site in enumerate(m.sites):
        lo, hi = site.position, site.end
        if config.row_sizing is RowSizing.GENOMIC and i + 1 < m.num_rows:
            hi = max(hi, m.sites[i + 1].position - 1)
        out.append((lo, hi))
    return out


@dataclass
class _Run:
    feature: Feature
    first: int
    last: int


def merge_feature_runs(bands: Sequence[Tuple[int, int]], annotation: AnnotationIndex) -> List[_Run]:
    """One run per feature per stretch of consecutive bands it overlaps."""
    runs: List[_Run] = []
    open_runs: Dict[Feature, _Run] = {}
    for row, (lo, hi) in enumerate(bands):
        hits = annotation.overlapping(lo, hi)
        current = set(hits)
        for feat in list(open_runs):
            if feat not in current:
                del open_runs[feat]
        for feat in hits:
            run = open_runs.get(feat)
            if run is not None and run.last == row - 1:
                run.last = row
            else:
                run = _Run(feature=feat, first=row, last=row)
                open_runs[feat] = run
                runs.append(run)
    return runs


def assign_lanes(spans: Sequence[Tuple[float, float]]) -> List[int]:
    """First-fit lane packing of vertical [top, bottom) spans given in drawing order."""
    lane_bottoms: List[float] = []
    lanes: List[int] = []
    for top, bottom in spans:
        for lane, lane_bottom in enumerate(lane_bottoms):
            if lane_bottom <= top:
                lane_bottoms[lane] = bottom
                lanes.append(lane)
                break
        else:
            lane_bottoms.append(bottom)
            lanes.append(len(lane_bottoms) - 1)
    return lanes


def _frame(x0: float, y0: float, x1: float, y1: float, config: LayoutConfig) -> Group:
    c = config.frame_color
    return Group(
        "frame",
        (
            Line(x0, y0, x1, y0, stroke=c),
            Line(x1, y0, x1, y1, stroke=c),
            Line(x1, y1, x0, y1, stroke=c),
            Line(x0, y1, x0, y0, stroke=c),
        ),
    )


_VALUE_TITLES = {
    FrequencyMode.COUNT: "count",
    FrequencyMode.SAMPLE_FRACTION: "sample fraction",
    FrequencyMode.PRESENCE: "presence",
}


# -- layout ---------------------------------------------------------------------


def layout(
    colored: ColoredMatrix,
    annotation: Optional[AnnotationIndex] = None,
    config: Optional[LayoutConfig] = None,
) -> SceneGraph:
    """Place cells, labels, annotation boxes and legend. Raises LayoutError on bad input."""
    config = config or LayoutConfig()
    annotation = annotation if annotation is not None else AnnotationIndex()
    _validate(colored)

    m = colored.matrix
    pad = config.padding
    fs = config.font_size

    if m.num_rows == 0 or m.num_cols == 0:
        x1, y1 = pad + config.cell_width, pad + config.row_height
        logger.debug("Empty matrix %s: frame only", m.shape)
        return SceneGraph(
            width=x1 + pad,
            height=y1 + pad,
            background=config.background,
            groups=(_frame(pad, pad, x1, y1, config),),
        )

    heights = row_heights(colored, config)
    tops = np.concatenate(([0.0], np.cumsum(heights)[:-1]))
    grid_h = float(heights.sum())
    grid_w = m.num_cols * config.cell_width

    # Site labels (left).
    site_labels: List[str] = []
    if m.num_rows <= config.max_site_labels:
        for site in m.sites:
            label = site.label()
            if config.label_codons and annotation:
                codons = annotation.codon_labels(site.position)
                if codons:
                    label = f"{label} ({', '.join(codons)})"
            site_labels.append(label)
    site_label_w = max((text_width(s, fs) for s in site_labels), default=0.0)
    if site_labels:
        site_label_w += config.tick_length + fs * 0.5

    # Sample labels (top).
    show_samples = m.num_cols <= config.max_sample_labels
    sample_label_h = max((text_width(s, fs) for s in m.samples), default=0.0) if show_samples else 0.0
    if show_samples:
        sample_label_h += config.tick_length + fs * 0.5

    # Annotation boxes, packed before placing the grid so the track width is known.
    bands = band_ranges(colored, config)
    runs = merge_feature_runs(bands, annotation) if annotation else []
    spans = [(float(tops[r.first]), float(tops[r.last] + heights[r.last])) for r in runs]
    order = sorted(range(len(runs)), key=lambda k: (spans[k][0], runs[k].feature.start, runs[k].feature.name))
    runs = [runs[k] for k in order]
    spans = [spans[k] for k in order]
    lanes = assign_lanes(spans)
    n_lanes = (max(lanes) + 1) if lanes else 0
    track_w = n_lanes * config.lane_width

    grid_x0 = pad + site_label_w + (pad / 2 if track_w else 0.0) + track_w + (pad / 2 if track_w else 0.0)
    grid_y0 = pad + sample_label_h
    grid_x1 = grid_x0 + grid_w
    grid_y1 = grid_y0 + grid_h
    track_x0 = pad + site_label_w + pad / 2

    groups: List[Group] = []

    # Missing ("no data") and explicit null cells sit under the occupied cells.
    missing_cells = m.missing_cells() if (config.show_missing and m.missing) else []
    if missing_cells:
        groups.append(
            Group(
                "missing",
                tuple(
                    Rect(
                        x=grid_x0 + col * config.cell_width,
                        y=grid_y0 + float(tops[row]),
                        width=config.cell_width,
                        height=float(heights[row]),
                        fill=colored.scale.missing_color,
                        row=row,
                        col=col,
                    )
                    for row, col in missing_cells
                ),
            )
        )
    if config.show_null_cells:
        skip = set(missing_cells)
        nulls: List[Rect] = []
        for row in range(m.num_rows):
            occupied = set(int(c) for c in m.row_cells(row)[0])
            for col in range(m.num_cols):
                if col in occupied or (row, col) in skip:
                    continue
                nulls.append(
                    Rect(
                        x=grid_x0 + col * config.cell_width,
                        y=grid_y0 + float(tops[row]),
                        width=config.cell_width,
                        height=float(heights[row]),
                        fill=colored.scale.null_color,
                        row=row,
                        col=col,
                    )
                )
        groups.append(Group("null_cells", tuple(nulls)))

    cells: List[Rect] = []
    for j, (row, col, _count) in enumerate(m.iter_cells()):
        cells.append(
            Rect(
                x=grid_x0 + col * config.cell_width,
                y=grid_y0 + float(tops[row]),
                width=config.cell_width,
                height=float(heights[row]),
                fill=colored.colors[j],
                row=row,
                col=col,
            )
        )
    groups.append(Group("cells", tuple(cells)))

    if runs:
        fills = {feat: config.feature_palette[i % len(config.feature_palette)] for i, feat in enumerate(annotation.features)}
        boxes: List[FeatureBox] = []
        names: List[Text] = []
        for run, (top, bottom), lane in zip(runs, spans, lanes):
            feat = run.feature
            box = FeatureBox(
                x=track_x0 + lane * config.lane_width,
                y=grid_y0 + top,
                width=config.lane_width * 0.8,
                height=bottom - top,
                name=feat.name,
                strand=feat.strand,
                start=feat.start,
                end=feat.end,
                lane=lane,
                fill=fills[feat],
                stroke=config.frame_color,
            )
            boxes.append(box)
            if text_width(feat.name, fs) <= box.height:
                names.append(
                    Text(
                        x=box.x + box.width / 2,
                        y=box.y + box.height / 2,
                        text=feat.name,
                        font_size=fs,
                        anchor="middle",
                        baseline="middle",
                        rotation=-90.0,
                        color=config.text_color,
                    )
                )
        groups.append(Group("annotation", tuple(boxes)))
        groups.append(Group("annotation_labels", tuple(names)))

    if site_labels:
        items: List[Union[Text, Line]] = []
        tick_x1 = pad + site_label_w
        tick_x0 = tick_x1 - config.tick_length
        for row, label in enumerate(site_labels):
            cy = grid_y0 + float(tops[row] + heights[row] / 2)
            items.append(Line(tick_x0, cy, tick_x1, cy, stroke=config.frame_color, stroke_width=0.5))
            items.append(
                Text(
                    x=tick_x0 - fs * 0.25,
                    y=cy,
                    text=label,
                    font_size=fs,
                    anchor="end",
                    baseline="middle",
                    color=config.text_color,
                )
            )
        groups.append(Group("site_labels", tuple(items)))

    if show_samples:
        items = []
        tick_y1 = grid_y0
        tick_y0 = tick_y1 - config.tick_length
        for col, sample in enumerate(m.samples):
            cx = grid_x0 + (col + 0.5) * config.cell_width
            items.append(Line(cx, tick_y0, cx, tick_y1, stroke=config.frame_color, stroke_width=0.5))
            items.append(
                Text(
                    x=cx,
                    y=tick_y0 - fs * 0.25,
                    text=sample,
                    font_size=fs,
                    anchor="start",
                    baseline="middle",
                    rotation=-90.0,
                    color=config.text_color,
                )
            )
        groups.append(Group("sample_labels", tuple(items)))

    # Legend: high intensity on top.
    legend_x0 = grid_x1 + pad
    legend_items: List[Union[Rect, Text]] = []
    title = _VALUE_TITLES.get(colored.scale.value, colored.scale.value.value)
    legend_items.append(
        Text(x=legend_x0, y=grid_y0, text=title, font_size=fs, anchor="start", baseline="top", color=config.text_color)
    )
    step_h = fs * 1.5
    y = grid_y0 + step_h
    legend_label_w = text_width(title, fs)
    stops = list(reversed(colored.legend(config.legend_steps)))
    swatches = [(s.color, s.label) for s in stops]
    if missing_cells:
        swatches.append((colored.scale.missing_color, "no data"))
    for color, label in swatches:
        legend_items.append(
            Rect(x=legend_x0, y=y, width=config.legend_width, height=step_h, fill=color, stroke=config.frame_color, stroke_width=0.5)
        )
        legend_items.append(
            Text(
                x=legend_x0 + config.legend_width + fs * 0.5,
                y=y + step_h / 2,
                text=label,
                font_size=fs,
                anchor="start",
                baseline="middle",
                color=config.text_color,
            )
        )
        legend_label_w = max(legend_label_w, config.legend_width + fs * 0.5 + text_width(label, fs))
        y += step_h
    groups.append(Group("legend", tuple(legend_items)))

    groups.append(_frame(grid_x0, grid_y0, grid_x1, grid_y1, config))

    width = legend_x0 + legend_label_w + pad
    height = max(grid_y1, y) + pad
    logger.debug(
        "Laid out %d x %d matrix: %d cells, %d feature boxes in %d lane(s), canvas %.0f x %.0f",
        m.num_rows,
        m.num_cols,
        len(cells),
        len(runs),
        n_lanes,
        width,
        height,
    )
    return SceneGraph(width=width, height=height, background=config.background, groups=tuple(groups))
