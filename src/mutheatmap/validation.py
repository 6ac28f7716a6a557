from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import List, Optional, Sequence

from .parser import RecordSchema
from .tables import detect_delimiter
from .utils import open_textmaybe_gzip

logger = logging.getLogger(__name__)


def check_table_header(
    table_path: str | Path,
    schema: RecordSchema,
    *,
    delimiter: Optional[str] = None,
) -> List[str]:
    """Ensure a mutation table has the sample column and at least one mutation column.

    Returns the mutation columns present. Raises ValueError with a hint otherwise.
    """
    delim = delimiter or detect_delimiter(table_path)
    with open_textmaybe_gzip(table_path, "rt") as f:
        header = next(csv.reader(f, delimiter=delim), None)
    if not header:
        raise ValueError(f"Table {table_path} is empty (no header line).")
    header = [h.strip() for h in header]

    if len(header) == 1 and delim == "\t" and "," in header[0]:
        raise ValueError(
            f"Table {table_path} looks comma-separated but was read as tab-separated. "
            "Rename it to .csv or set the delimiter explicitly."
        )
    if schema.sample_field not in header:
        raise ValueError(
            f"Table {table_path} has no sample column {schema.sample_field!r}. "
            f"Columns: {', '.join(header[:20])}. Set schema.sample_field in the config."
        )
    present = [c for c in schema.mutation_fields if c in header]
    if not present:
        raise ValueError(
            f"Table {table_path} has none of the mutation columns "
            f"{', '.join(schema.mutation_fields)}. Set schema.mutation_fields in the config."
        )
    logger.debug("Table %s: sample column %r, mutation columns %s", table_path, schema.sample_field, present)
    return present


def check_vcf_index(vcf_path: str | Path) -> None:
    """Warn about uncompressed VCFs; a bgzipped VCF without .tbi/.csi only reads sequentially."""
    vcf = Path(vcf_path)
    if vcf.suffixes[-2:] == [".vcf", ".gz"]:
        tbi = vcf.with_suffix(vcf.suffix + ".tbi")
        csi = vcf.with_suffix(vcf.suffix + ".csi")
        if not (tbi.exists() or csi.exists()):
            logger.info("VCF %s has no tabix index; reading sequentially (tabix -p vcf %s).", vcf, vcf)
    elif vcf.suffix == ".vcf":
        logger.info(
            "VCF is uncompressed (.vcf). This is supported but slower; "
            "consider bgzip+tabix for large files."
        )
    else:
        raise ValueError(f"Not a VCF path (expected .vcf or .vcf.gz): {vcf}")


def check_sample_order(sample_order: Sequence[str], observed: Sequence[str]) -> List[str]:
    """Validate an explicit sample order against the samples seen in the input.

    Duplicates raise ValueError. Returns observed samples missing from the order;
    the build stage rejects those.
    """
    seen = set()
    dupes = []
    for s in sample_order:
        if s in seen:
            dupes.append(s)
        seen.add(s)
    if dupes:
        raise ValueError(f"Sample order lists samples more than once: {', '.join(sorted(set(dupes))[:10])}")
    unknown = [s for s in observed if s not in seen]
    if unknown:
        logger.warning("%d input sample(s) are not in the sample order, e.g. %s", len(unknown), unknown[:5])
    extra = len(seen) - len(set(observed) & seen)
    if extra:
        logger.info("%d sample(s) in the sample order have no input row; they get empty columns", extra)
    return unknown
