"""Required-scope expressions aggregated from a task's mounts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Tuple

__all__ = ["RequiredScopes", "scope_satisfied"]


def scope_satisfied(required: str, granted: Iterable[str]) -> bool:
    """Return ``True`` if any granted scope equals ``required`` or covers it via a ``*`` suffix."""

    for scope in granted:
        if scope == required:
            return True
        if scope.endswith("*") and required.startswith(scope[:-1]):
            return True
    return False


@dataclass(frozen=True)
class RequiredScopes:
    """Disjunction of scope conjunctions: satisfied when every scope of any one alternative is held.

    Mount aggregation always produces a single alternative; the nested shape
    matches what the scope evaluator accepts from other worker features.
    """

    alternatives: Tuple[FrozenSet[str], ...] = (frozenset(),)

    @classmethod
    def all_of(cls, scopes: Iterable[str]) -> "RequiredScopes":
        return cls((frozenset(scopes),))

    @property
    def scopes(self) -> FrozenSet[str]:
        """Every scope mentioned by any alternative."""

        return frozenset().union(*self.alternatives)

    def satisfied_by(self, granted: Iterable[str]) -> bool:
        if not self.alternatives:
            return True
        granted = list(granted)
        return any(
            all(scope_satisfied(required, granted) for required in alternative)
            for alternative in self.alternatives
        )

    def missing(self, granted: Iterable[str]) -> List[str]:
        """Scopes of the first alternative that ``granted`` does not cover, sorted."""

        if not self.alternatives:
            return []
        granted = list(granted)
        return sorted(
            required
            for required in self.alternatives[0]
            if not scope_satisfied(required, granted)
        )
