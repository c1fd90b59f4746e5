"""Diagnostics collected across one reconciliation pass.

Diagnostics never short-circuit: strategies record what went wrong and the
controller keeps working on unrelated subresources. Any entry with ERROR
severity means the caller must treat the operation as failed, even though a
partial snapshot is still returned and should be persisted.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum


class Severity(str, Enum):
    """Diagnostic severities."""

    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Diagnostic:
    """A single warning or error."""

    severity: Severity
    summary: str
    detail: str

    def __str__(self) -> str:
        return f"{self.severity.value}: {self.summary}: {self.detail}"


@dataclass
class Diagnostics:
    """Ordered, append-only list of diagnostics."""

    entries: list[Diagnostic] = field(default_factory=list)

    def add_warning(self, summary: str, detail: str) -> None:
        self.entries.append(Diagnostic(Severity.WARNING, summary, detail))

    def add_error(self, summary: str, detail: str) -> None:
        self.entries.append(Diagnostic(Severity.ERROR, summary, detail))

    def extend(self, other: Iterable[Diagnostic]) -> None:
        self.entries.extend(other)

    @property
    def errors(self) -> list[Diagnostic]:
        return [d for d in self.entries if d.severity is Severity.ERROR]

    @property
    def warnings(self) -> list[Diagnostic]:
        return [d for d in self.entries if d.severity is Severity.WARNING]

    def has_error(self) -> bool:
        """Check whether the pass should be reported as failed."""
        return any(d.severity is Severity.ERROR for d in self.entries)

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)
