"""Delivery deduplication state owned by a single execution tracker."""

from __future__ import annotations

import logging
from typing import Iterator, Set

from flowwatch.events.models import ExecutionEventBase

LOGGER = logging.getLogger(__name__)


class ProcessedEventSet:
    """Ids of events already folded into the projection.

    Cleared when a new execution starts or the tracker switches to another
    execution id, never otherwise. Connectivity events (``connection_established``
    and ``heartbeat``) and events without an id are never recorded and always
    admitted.
    """

    def __init__(self) -> None:
        self._ids: Set[str] = set()

    def admit(self, event: ExecutionEventBase) -> bool:
        """Return True when ``event`` should be applied, recording its id."""

        if not event.deduplicated or not event.id:
            return True
        if event.id in self._ids:
            LOGGER.debug("Skipping duplicate %s event %s", event.event_type, event.id)
            return False
        self._ids.add(event.id)
        return True

    def clear(self) -> None:
        self._ids.clear()

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)


class FinishedExecutionSet:
    """Execution ids known to be terminal; membership is permanent."""

    def __init__(self) -> None:
        self._ids: Set[str] = set()

    def add(self, execution_id: str) -> None:
        if execution_id not in self._ids:
            LOGGER.info("Marked execution %s as finished", execution_id)
        self._ids.add(execution_id)

    def __contains__(self, execution_id: object) -> bool:
        return execution_id in self._ids

    def __iter__(self) -> Iterator[str]:
        return iter(self._ids)

    def __len__(self) -> int:
        return len(self._ids)
