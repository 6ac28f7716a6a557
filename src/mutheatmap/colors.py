from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple, Union

import numpy as np
from matplotlib.colors import LinearSegmentedColormap, ListedColormap, is_color_like, to_hex

from .matrix import MutationMatrix

logger = logging.getLogger(__name__)

# Colormap lookup-table size; colours are quantised to this many steps.
LUT_SIZE = 256

DEFAULT_PALETTE: Tuple[str, ...] = ("#f2f0f7", "#9e9ac8", "#54278f")


class FrequencyMode(Enum):
    """What number a heatmap cell encodes.

    COUNT: raw occurrence count of the (site, sample) cell.
    SAMPLE_FRACTION: fraction of all samples carrying the site (same for every
        occupied cell of a row).
    PRESENCE: 1 for every occupied cell.
    """

    COUNT = "count"
    SAMPLE_FRACTION = "sample-fraction"
    PRESENCE = "presence"


@dataclass(frozen=True)
class LinearDomain:
    """Linear value -> intensity mapping; a None bound is taken from the data."""

    vmin: Optional[float] = None
    vmax: Optional[float] = None

    def __post_init__(self) -> None:
        if self.vmin is not None and self.vmax is not None and self.vmin > self.vmax:
            raise ValueError(f"LinearDomain vmin ({self.vmin}) > vmax ({self.vmax})")


@dataclass(frozen=True)
class QuantileDomain:
    n_buckets: int = 5

    def __post_init__(self) -> None:
        if self.n_buckets < 1:
            raise ValueError("QuantileDomain needs n_buckets >= 1")


Domain = Union[LinearDomain, QuantileDomain]


@dataclass(frozen=True)
class ColorScaleConfig:
    domain: Domain = LinearDomain()
    palette: Tuple[str, ...] = DEFAULT_PALETTE
    null_color: str = "#ffffff"
    missing_color: str = "#d9d9d9"
    value: FrequencyMode = FrequencyMode.COUNT

    def __post_init__(self) -> None:
        if len(self.palette) < 1:
            raise ValueError("palette needs at least one colour stop")
        for c in (*self.palette, self.null_color, self.missing_color):
            if not is_color_like(c):
                raise ValueError(f"Not a colour: {c!r}")


@dataclass(frozen=True)
class LegendStop:
    intensity: float
    color: str
    label: str


def _colormap(palette: Tuple[str, ...]):
    if len(palette) == 1:
        return ListedColormap([palette[0]], name="mutheatmap")
    return LinearSegmentedColormap.from_list("mutheatmap", list(palette), N=LUT_SIZE)


def intensity_to_colors(intensities: np.ndarray, palette: Tuple[str, ...]) -> Tuple[str, ...]:
    """Map intensities in [0, 1] to hex colours through the palette."""
    if len(intensities) == 0:
        return ()
    cmap = _colormap(palette)
    rgba = cmap(np.asarray(intensities, dtype=np.float64))
    return tuple(to_hex(c, keep_alpha=False) for c in rgba)


def cell_values(matrix: MutationMatrix, mode: FrequencyMode) -> np.ndarray:
    """Per stored cell value for the chosen frequency mode (aligned with ``matrix.counts``)."""
    if mode is FrequencyMode.COUNT:
        return matrix.counts.astype(np.float64)
    if mode is FrequencyMode.PRESENCE:
        return np.ones(matrix.nnz, dtype=np.float64)
    if mode is FrequencyMode.SAMPLE_FRACTION:
        if matrix.num_cols == 0:
            return np.zeros(matrix.nnz, dtype=np.float64)
        per_row = matrix.sample_counts().astype(np.float64) / float(matrix.num_cols)
        return per_row[matrix.row_ids()]
    raise ValueError(f"Unknown frequency mode: {mode!r}")


def linear_intensities(values: np.ndarray, vmin: float, vmax: float) -> np.ndarray:
    """clamp((v - vmin) / (vmax - vmin), 0, 1); all ones when vmin == vmax."""
    if vmax == vmin:
        return np.ones(len(values), dtype=np.float64)
    out = (np.asarray(values, dtype=np.float64) - vmin) / (vmax - vmin)
    return np.clip(out, 0.0, 1.0)


def quantile_edges(values: np.ndarray, rows: np.ndarray, cols: np.ndarray, n_buckets: int) -> np.ndarray:
    """Bucket boundaries over the stably sorted (value, row, col) cells."""
    n = len(values)
    if n == 0 or n_buckets <= 1:
        return np.zeros(0, dtype=np.float64)
    order = np.lexsort((cols, rows, values))
    ordered = np.asarray(values, dtype=np.float64)[order]
    picks = [min(n - 1, (k * n) // n_buckets) for k in range(1, n_buckets)]
    return ordered[picks]


def quantile_intensities(values: np.ndarray, edges: np.ndarray, n_buckets: int) -> np.ndarray:
    if n_buckets <= 1:
        return np.ones(len(values), dtype=np.float64)
    buckets = np.searchsorted(edges, values, side="right")
    return buckets.astype(np.float64) / float(n_buckets - 1)


class ColoredMatrix:
    """A MutationMatrix plus a value, intensity and colour for every stored cell."""

    def __init__(
        self,
        *,
        matrix: MutationMatrix,
        values: np.ndarray,
        intensities: np.ndarray,
        colors: Tuple[str, ...],
        scale: ColorScaleConfig,
        vmin: float,
        vmax: float,
        edges: Optional[np.ndarray] = None,
    ) -> None:
        self.matrix = matrix
        self.values = values
        self.intensities = intensities
        self.colors = colors
        self.scale = scale
        self.vmin = vmin
        self.vmax = vmax
        self.edges = edges if edges is not None else np.zeros(0, dtype=np.float64)
        for arr in (self.values, self.intensities, self.edges):
            arr.flags.writeable = False

    def color_for(self, row: int, col: int) -> Optional[str]:
        j = self.matrix.cell_index(row, col)
        return self.colors[j] if j is not None else None

    def intensity_for(self, row: int, col: int) -> Optional[float]:
        j = self.matrix.cell_index(row, col)
        return float(self.intensities[j]) if j is not None else None

    def legend(self, n_steps: int = 5) -> List[LegendStop]:
        """Colour-bar stops from low to high intensity."""
        domain = self.scale.domain
        if isinstance(domain, QuantileDomain):
            n = domain.n_buckets
            bounds = [self.vmin, *[float(e) for e in self.edges], self.vmax]
            ts = [b / (n - 1) if n > 1 else 1.0 for b in range(n)]
            labels = [f"{_fmt(bounds[b])}-{_fmt(bounds[b + 1])}" for b in range(n)]
        else:
            n = max(2, int(n_steps))
            ts = [i / (n - 1) for i in range(n)]
            labels = [_fmt(self.vmin + t * (self.vmax - self.vmin)) for t in ts]
        colors = intensity_to_colors(np.array(ts, dtype=np.float64), self.scale.palette)
        return [LegendStop(intensity=t, color=c, label=lab) for t, c, lab in zip(ts, colors, labels)]


def _fmt(x: float) -> str:
    return f"{x:.3g}"


def map_colors(matrix: MutationMatrix, scale: Optional[ColorScaleConfig] = None) -> ColoredMatrix:
    """Derive intensity and colour for every occupied cell. Pure and reproducible."""
    scale = scale or ColorScaleConfig()
    values = cell_values(matrix, scale.value)

    if len(values):
        data_min, data_max = float(values.min()), float(values.max())
    else:
        data_min, data_max = 0.0, 0.0

    edges: Optional[np.ndarray] = None
    domain = scale.domain
    if isinstance(domain, LinearDomain):
        # A single fixed bound wins over the data; both fixed were checked by LinearDomain.
        if domain.vmin is not None and domain.vmax is not None:
            vmin, vmax = float(domain.vmin), float(domain.vmax)
        elif domain.vmin is not None:
            vmin = float(domain.vmin)
            vmax = max(data_max, vmin)
        elif domain.vmax is not None:
            vmax = float(domain.vmax)
            vmin = min(data_min, vmax)
        else:
            vmin, vmax = data_min, data_max
        intensities = linear_intensities(values, vmin, vmax)
    elif isinstance(domain, QuantileDomain):
        vmin, vmax = data_min, data_max
        edges = quantile_edges(values, matrix.row_ids(), matrix.indices, domain.n_buckets)
        intensities = quantile_intensities(values, edges, domain.n_buckets)
    else:
        raise ValueError(f"Unknown colour domain: {domain!r}")

    colors = intensity_to_colors(intensities, scale.palette)
    logger.debug("Mapped %d cells to colours (domain %s, value %s)", len(colors), domain, scale.value.value)
    return ColoredMatrix(
        matrix=matrix,
        values=values,
        intensities=intensities,
        colors=colors,
        scale=scale,
        vmin=vmin,
        vmax=vmax,
        edges=edges,
    )
