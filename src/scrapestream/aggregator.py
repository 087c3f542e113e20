"""Folds parser output into a run's collected link count."""

from __future__ import annotations

import logging
from typing import Iterable, List, Set, Tuple

from .models import SearchQuery, utcnow

logger = logging.getLogger(__name__)


class ResultAggregator:
    """Accumulates distinct links for one query and detects goal completion.

    The count only ever grows: a link seen in an earlier round is not counted
    twice, and nothing is subtracted.
    """

    def __init__(self, query: SearchQuery):
        self.query = query
        self._links: Set[str] = set()
        self._order: List[str] = []

    @property
    def links(self) -> List[str]:
        return list(self._order)

    @property
    def count(self) -> int:
        return len(self._order)

    def fold(self, previous_link_count: int, parser_output: Iterable[str]) -> Tuple[int, bool]:
        """Add one round of parser output.

        Returns:
            ``(new_link_count, goal_reached)``
        """
        for link in parser_output:
            normalized = link.strip()
            if normalized and normalized not in self._links:
                self._links.add(normalized)
                self._order.append(normalized)

        new_count = max(previous_link_count, len(self._order))
        goal_reached = new_count >= self.query.target_link_count
        logger.debug(
            "Aggregated %d links (target %d) for query %s",
            new_count,
            self.query.target_link_count,
            self.query.id,
        )
        return new_count, goal_reached

    def describe(self) -> str:
        target = self.query.target_link_count
        status = "goal reached" if self.count >= target else "partial"
        return f"Collected {self.count}/{target} links for '{self.query.sentence}' ({status})"

    def apply(self, link_count: int) -> None:
        """Persist the count and summary onto the query; never lowers the count."""
        if link_count < self.query.link_count:
            logger.warning(
                "Ignoring link count decrease %d -> %d for query %s",
                self.query.link_count,
                link_count,
                self.query.id,
            )
            return
        self.query.link_count = link_count
        self.query.description = self.describe()
        self.query.updated_at = utcnow()
