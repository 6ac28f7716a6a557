"""mutheatmap: mutation-frequency heatmaps from per-sample mutation calls.

Public API is intentionally small; most users should use the CLI:

    mutheatmap plot --table nextclade.tsv --gff genes.gff3 --outdir results/

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
