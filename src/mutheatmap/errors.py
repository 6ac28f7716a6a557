"""Error taxonomy.

Parse errors are row-level and may be downgraded to warnings by the
skip-and-warn policy. Build and layout errors always abort the run.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence


class MutationHeatmapError(RuntimeError):
    """Base class for all errors raised by mutheatmap."""


class ParseError(MutationHeatmapError):
    """A raw row could not be turned into mutation events."""

    def __init__(self, message: str, *, row_number: int, sample_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.row_number = int(row_number)
        self.sample_id = sample_id


class MalformedMutationToken(ParseError):
    def __init__(
        self,
        token: str,
        *,
        row_number: int,
        sample_id: Optional[str] = None,
        reason: str = "unrecognised token",
    ) -> None:
        where = f"row {row_number}" + (f" (sample {sample_id})" if sample_id else "")
        super().__init__(
            f"Malformed mutation token {token!r} in {where}: {reason}",
            row_number=row_number,
            sample_id=sample_id,
        )
        self.token = token
        self.reason = reason


class MissingFieldError(ParseError):
    def __init__(self, field: str, *, row_number: int, sample_id: Optional[str] = None) -> None:
        super().__init__(
            f"Missing required field {field!r} in row {row_number}",
            row_number=row_number,
            sample_id=sample_id,
        )
        self.field = field


@dataclass(frozen=True)
class ParseIssue:
    """A row-level problem reported instead of raised (skip-and-warn policy)."""

    row_number: int
    sample_id: Optional[str]
    token: Optional[str]
    message: str
    severity: str = "warning"

    @classmethod
    def from_error(cls, err: ParseError, *, severity: str = "error") -> "ParseIssue":
        return cls(
            row_number=err.row_number,
            sample_id=err.sample_id,
            token=getattr(err, "token", None),
            message=str(err),
            severity=severity,
        )


class IngestionAborted(MutationHeatmapError):
    """Strict policy: every row-level error of the whole input, in one exception."""

    def __init__(self, issues: Sequence[ParseIssue]) -> None:
        self.issues = list(issues)
        lines = [f"Ingestion aborted: {len(self.issues)} row(s) failed to parse."]
        lines.extend(f"  {issue.message}" for issue in self.issues[:20])
        if len(self.issues) > 20:
            lines.append(f"  ... and {len(self.issues) - 20} more")
        super().__init__("\n".join(lines))


class BuildError(MutationHeatmapError):
    """The matrix cannot be built correctly from the given events."""


class UnknownSampleError(BuildError):
    def __init__(self, sample_id: str) -> None:
        super().__init__(f"Event references unknown sample {sample_id!r} (not in the declared sample order)")
        self.sample_id = sample_id


class InvalidPositionError(BuildError):
    def __init__(self, *, sample_id: str, position: int, end: int, genome_length: int) -> None:
        super().__init__(
            f"Mutation at {position}-{end} in sample {sample_id!r} lies outside the genome "
            f"(length {genome_length})"
        )
        self.sample_id = sample_id
        self.position = int(position)
        self.end = int(end)
        self.genome_length = int(genome_length)


class LayoutError(MutationHeatmapError):
    """Internal inconsistency detected while laying out a matrix."""
