"""Exception taxonomy for catalog resolution.

Row-scoped errors (everything except :class:`InfrastructureFailure`) are
caught by the batch runners and collected as :class:`RowError` entries.
Infrastructure failures abort the batch.
"""

from __future__ import annotations

from dataclasses import dataclass

# Summaries keep at most this many per-row errors; counters still count all.
MAX_REPORTED_ERRORS = 100


class ResolutionError(Exception):
    """Base class for errors raised while resolving one row or record."""


class ValidationError(ResolutionError):
    """Required fields are missing or unparseable (e.g. no derivable name)."""


class UnresolvableGroupKey(ResolutionError):
    """A row has no usable identity key for grouping."""


class StrategyLookupFailure(ResolutionError):
    """One candidate-generation strategy failed; others still run."""

    def __init__(self, strategy: str, error: Exception) -> None:
        super().__init__(f"{strategy}: {error}")
        self.strategy = strategy
        self.error = error


class InfrastructureFailure(Exception):
    """The catalog store is unreachable. Fatal for the whole batch."""


@dataclass
class RowError:
    """An explainable, user-visible error attached to one input unit."""

    reference: str
    message: str
