"""Match decision policy.

Two flows, never mixed within one resolution call:

* **automatic** (:func:`decide`): exact candidate -> auto-merge; best fuzzy
  candidate at or above the merge threshold -> merge; otherwise create.
* **human review** (:func:`select_for_review`): every candidate above the
  inclusion threshold, best first, capped; nothing is mutated.

The thresholds are tunable policy constants (see ``Settings``), not
derived business rules.
"""

from __future__ import annotations

from dataclasses import dataclass

from caskmatch.entity_resolution.models import Candidate

AUTO_MERGE = "auto_merge"
MERGE = "merge"
CREATE = "create"

MERGE_THRESHOLD = 85
REVIEW_THRESHOLD = 35
REVIEW_LIMIT = 8


@dataclass
class Decision:
    action: str  # auto_merge | merge | create
    candidate: Candidate | None = None

    @property
    def target_id(self) -> str | None:
        return self.candidate.entry.id if self.candidate else None


def decide(
    exact: Candidate | None,
    scored: list[Candidate],
    *,
    merge_threshold: int = MERGE_THRESHOLD,
) -> Decision:
    """Classify candidates for the automatic batch flow.

    *scored* must already be ordered best-first.  An exact candidate wins
    regardless of any fuzzy score and is reported with confidence 100.
    """
    if exact is not None:
        exact.exact = True
        exact.confidence = 100
        return Decision(AUTO_MERGE, exact)

    if scored and scored[0].confidence >= merge_threshold:
        return Decision(MERGE, scored[0])

    return Decision(CREATE)


def select_for_review(
    scored: list[Candidate],
    *,
    threshold: int = REVIEW_THRESHOLD,
    limit: int = REVIEW_LIMIT,
) -> list[Candidate]:
    """Candidates worth showing a reviewer: confidence above *threshold*, best first."""
    shown = [c for c in scored if c.confidence > threshold]
    shown.sort(key=lambda c: (-c.raw_score, c.entry.id))
    return shown[:limit]
