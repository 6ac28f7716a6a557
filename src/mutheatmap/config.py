"""Run configuration: one JSON document, overridable from the command line.

Example ``heatmap.json``::

    {
      "policy": "skip-and-warn",
      "granularity": "allele",
      "genome_length": 29903,
      "color": {"value": "count", "domain": {"type": "quantile", "n_buckets": 5}},
      "layout": {"row_sizing": "genomic", "label_codons": true}
    }

Unknown keys and invalid enum values raise ValueError naming the key.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Type, TypeVar

from .colors import ColorScaleConfig, FrequencyMode, LinearDomain, QuantileDomain
from .layout import LayoutConfig, RowSizing
from .models import AminoAcidKind, MutationKind, SiteGranularity
from .parser import ParsePolicy, RecordSchema
from .render import SUPPORTED_FORMATS

E = TypeVar("E", bound=Enum)


def _enum(cls: Type[E], value: Any, key: str) -> E:
    if isinstance(value, cls):
        return value
    try:
        return cls(str(value).lower())
    except ValueError:
        choices = ", ".join(m.value for m in cls)
        raise ValueError(f"Invalid value for {key!r}: {value!r} (choose one of: {choices})") from None


def _check_keys(d: Mapping[str, Any], allowed, where: str) -> None:
    if not isinstance(d, Mapping):
        raise ValueError(f"Config section {where or 'root'!r} must be an object")
    unknown = sorted(set(d) - set(allowed))
    if unknown:
        prefix = f"{where}." if where else ""
        raise ValueError(f"Unknown config key: {prefix}{unknown[0]}")


def _formats(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        value = [v for v in value.split(",") if v.strip()]
    out = tuple(str(v).strip().lower().lstrip(".") for v in value)
    if not out:
        raise ValueError("Invalid value for 'output_formats': at least one format is required")
    for fmt in out:
        if fmt not in SUPPORTED_FORMATS:
            raise ValueError(f"Invalid value for 'output_formats': {fmt!r} (choose from {', '.join(SUPPORTED_FORMATS)})")
    return out


# -- sections -------------------------------------------------------------------


def schema_from_dict(d: Mapping[str, Any]) -> RecordSchema:
    _check_keys(d, [f.name for f in fields(RecordSchema)], "schema")
    kw: Dict[str, Any] = dict(d)
    if "mutation_fields" in kw:
        kw["mutation_fields"] = tuple(kw["mutation_fields"])
    if "kind_hints" in kw:
        kw["kind_hints"] = {
            str(col): _enum(MutationKind, kind, f"schema.kind_hints.{col}") for col, kind in dict(kw["kind_hints"]).items()
        }
    if "aa_fields" in kw:
        kw["aa_fields"] = {
            str(col): _enum(AminoAcidKind, kind, f"schema.aa_fields.{col}") for col, kind in dict(kw["aa_fields"]).items()
        }
    return RecordSchema(**kw)


def schema_to_dict(schema: RecordSchema) -> Dict[str, Any]:
    return {
        "sample_field": schema.sample_field,
        "mutation_fields": list(schema.mutation_fields),
        "token_delimiter": schema.token_delimiter,
        "missing_field": schema.missing_field,
        "kind_hints": {col: kind.value for col, kind in schema.kind_hints.items()},
        "aa_fields": {col: kind.value for col, kind in schema.aa_fields.items()},
        "alignment_end_field": schema.alignment_end_field,
    }


def color_from_dict(d: Mapping[str, Any]) -> ColorScaleConfig:
    _check_keys(d, ["domain", "palette", "null_color", "missing_color", "value"], "color")
    kw: Dict[str, Any] = {}
    if "domain" in d:
        dom = d["domain"]
        _check_keys(dom, ["type", "vmin", "vmax", "n_buckets"], "color.domain")
        kind = str(dom.get("type", "linear")).lower()
        if kind == "linear":
            kw["domain"] = LinearDomain(vmin=dom.get("vmin"), vmax=dom.get("vmax"))
        elif kind == "quantile":
            kw["domain"] = QuantileDomain(n_buckets=int(dom.get("n_buckets", 5)))
        else:
            raise ValueError(f"Invalid value for 'color.domain.type': {kind!r} (choose one of: linear, quantile)")
    if "palette" in d:
        kw["palette"] = tuple(d["palette"])
    for key in ("null_color", "missing_color"):
        if key in d:
            kw[key] = str(d[key])
    if "value" in d:
        kw["value"] = _enum(FrequencyMode, d["value"], "color.value")
    return ColorScaleConfig(**kw)


def color_to_dict(color: ColorScaleConfig) -> Dict[str, Any]:
    if isinstance(color.domain, QuantileDomain):
        domain: Dict[str, Any] = {"type": "quantile", "n_buckets": color.domain.n_buckets}
    else:
        domain = {"type": "linear", "vmin": color.domain.vmin, "vmax": color.domain.vmax}
    return {
        "domain": domain,
        "palette": list(color.palette),
        "null_color": color.null_color,
        "missing_color": color.missing_color,
        "value": color.value.value,
    }


def layout_from_dict(d: Mapping[str, Any]) -> LayoutConfig:
    _check_keys(d, [f.name for f in fields(LayoutConfig)], "layout")
    kw: Dict[str, Any] = dict(d)
    if "row_sizing" in kw:
        kw["row_sizing"] = _enum(RowSizing, kw["row_sizing"], "layout.row_sizing")
    if "feature_palette" in kw:
        kw["feature_palette"] = tuple(kw["feature_palette"])
    return LayoutConfig(**kw)


def layout_to_dict(layout: LayoutConfig) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for f in fields(LayoutConfig):
        value = getattr(layout, f.name)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, tuple):
            value = list(value)
        out[f.name] = value
    return out


# -- top level ------------------------------------------------------------------


@dataclass(frozen=True)
class HeatmapConfig:
    schema: RecordSchema = field(default_factory=RecordSchema)
    policy: ParsePolicy = ParsePolicy.SKIP_AND_WARN
    granularity: SiteGranularity = SiteGranularity.ALLELE
    genome_length: Optional[int] = None
    workers: int = 1
    chunk_size: int = 2000
    color: ColorScaleConfig = field(default_factory=ColorScaleConfig)
    layout: LayoutConfig = field(default_factory=LayoutConfig)
    output_formats: Tuple[str, ...] = ("png", "svg")
    dpi: float = 100.0

    def __post_init__(self) -> None:
        if self.genome_length is not None and self.genome_length < 1:
            raise ValueError("Invalid value for 'genome_length': must be >= 1")
        if self.workers < 1:
            raise ValueError("Invalid value for 'workers': must be >= 1")
        if self.chunk_size < 1:
            raise ValueError("Invalid value for 'chunk_size': must be >= 1")
        if self.dpi <= 0:
            raise ValueError("Invalid value for 'dpi': must be > 0")

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "HeatmapConfig":
        _check_keys(d, [f.name for f in fields(cls)], "")
        kw: Dict[str, Any] = {}
        if "schema" in d:
            kw["schema"] = schema_from_dict(d["schema"])
        if "policy" in d:
            kw["policy"] = _enum(ParsePolicy, d["policy"], "policy")
        if "granularity" in d:
            kw["granularity"] = _enum(SiteGranularity, d["granularity"], "granularity")
        if d.get("genome_length") is not None:
            kw["genome_length"] = int(d["genome_length"])
        for key in ("workers", "chunk_size"):
            if key in d:
                kw[key] = int(d[key])
        if "dpi" in d:
            kw["dpi"] = float(d["dpi"])
        if "color" in d:
            kw["color"] = color_from_dict(d["color"])
        if "layout" in d:
            kw["layout"] = layout_from_dict(d["layout"])
        if "output_formats" in d:
            kw["output_formats"] = _formats(d["output_formats"])
        return cls(**kw)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": schema_to_dict(self.schema),
            "policy": self.policy.value,
            "granularity": self.granularity.value,
            "genome_length": self.genome_length,
            "workers": self.workers,
            "chunk_size": self.chunk_size,
            "color": color_to_dict(self.color),
            "layout": layout_to_dict(self.layout),
            "output_formats": list(self.output_formats),
            "dpi": self.dpi,
        }


def load_config(path: Optional[str | Path]) -> HeatmapConfig:
    """Read a JSON config file; ``None`` gives the defaults."""
    if path is None:
        return HeatmapConfig()
    with open(path, "rt", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Config {path} is not valid JSON: {e}") from None
    return HeatmapConfig.from_dict(data)


def apply_overrides(
    config: HeatmapConfig,
    *,
    policy: Optional[str] = None,
    granularity: Optional[str] = None,
    genome_length: Optional[int] = None,
    workers: Optional[int] = None,
    chunk_size: Optional[int] = None,
    value: Optional[str] = None,
    domain: Optional[str] = None,
    buckets: Optional[int] = None,
    vmin: Optional[float] = None,
    vmax: Optional[float] = None,
    row_sizing: Optional[str] = None,
    label_codons: Optional[bool] = None,
    output_formats: Optional[Any] = None,
) -> HeatmapConfig:
    """Return a copy of ``config`` with every non-None override applied."""
    top: Dict[str, Any] = {}
    if policy is not None:
        top["policy"] = _enum(ParsePolicy, policy, "policy")
    if granularity is not None:
        top["granularity"] = _enum(SiteGranularity, granularity, "granularity")
    if genome_length is not None:
        top["genome_length"] = int(genome_length)
    if workers is not None:
        top["workers"] = int(workers)
    if chunk_size is not None:
        top["chunk_size"] = int(chunk_size)
    if output_formats is not None:
        top["output_formats"] = _formats(output_formats)

    color = config.color
    if value is not None:
        color = replace(color, value=_enum(FrequencyMode, value, "value"))
    kind = domain.lower() if domain is not None else None
    if kind is None and buckets is not None:
        kind = "quantile"
    if kind is None and (vmin is not None or vmax is not None):
        kind = "linear"
    if kind == "quantile":
        current = color.domain.n_buckets if isinstance(color.domain, QuantileDomain) else 5
        color = replace(color, domain=QuantileDomain(n_buckets=int(buckets) if buckets is not None else current))
    elif kind == "linear":
        base = color.domain if isinstance(color.domain, LinearDomain) else LinearDomain()
        color = replace(
            color,
            domain=LinearDomain(
                vmin=vmin if vmin is not None else base.vmin,
                vmax=vmax if vmax is not None else base.vmax,
            ),
        )
    elif kind is not None:
        raise ValueError(f"Invalid value for 'domain': {domain!r} (choose one of: linear, quantile)")
    top["color"] = color

    lay: Dict[str, Any] = {}
    if row_sizing is not None:
        lay["row_sizing"] = _enum(RowSizing, row_sizing, "row_sizing")
    if label_codons is not None:
        lay["label_codons"] = bool(label_codons)
    if lay:
        top["layout"] = replace(config.layout, **lay)

    return replace(config, **top)
