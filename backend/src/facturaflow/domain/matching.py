"""
Project classification by fuzzy label match.

Submissions name their project as free text ("Amazon Norte", "AMZ_NORTE").
The matcher maps that label onto a registered project. A miss is a valid
outcome: the invoice is stored without a project and flagged for review.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class ProjectCandidate:
    """An active project as seen by the matcher."""
    id: str
    code: str
    name: str
    sort_order: int = 0


class ProjectMatcher(ABC):
    """Maps a submitted project label to at most one project."""
    
    @abstractmethod
    def match(
        self,
        label: str,
        candidates: Iterable[ProjectCandidate],
    ) -> ProjectCandidate | None:
        """Return the matching project, or None if nothing matches."""
        pass


def normalize_project_label(label: str) -> str:
    """Project codes are upper case with underscores instead of spaces."""
    return label.strip().upper().replace(" ", "_")


class SubstringProjectMatcher(ProjectMatcher):
    """
    Case-insensitive substring match against project code and name.
    
    Candidates are scanned in (sort_order, code) order and the first hit
    wins, so ties always resolve the same way.
    """
    
    def match(
        self,
        label: str,
        candidates: Iterable[ProjectCandidate],
    ) -> ProjectCandidate | None:
        needle = label.strip().lower()
        if not needle:
            return None
        normalized = normalize_project_label(label).lower()
        
        for candidate in sorted(candidates, key=lambda c: (c.sort_order, c.code)):
            code = candidate.code.lower()
            if needle in code or normalized in code or needle in candidate.name.lower():
                return candidate
        return None
