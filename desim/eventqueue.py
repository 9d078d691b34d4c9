"""Pending-event set of the simulation engine.

:class:`EventQueue` keeps the posted :class:`~desim.event.Event` objects
ordered by ``(time, priority, order)``. The `order` is the insertion counter
value assigned when the event was posted, so two events with the same time
and priority are dispatched in posting order.

Removal by identity is lazy: the heap entry of a removed event is blanked and
discarded once it reaches the front of the heap. The heap is compacted when
blank entries make up more than half of it.

"""
from heapq import heapify, heappop, heappush
from typing import Any, Dict, List, Optional

from .event import AlreadyQueuedError, Event

# Heap entries are [time, priority, order, event].
_EVENT = 3

#: Minimum heap size considered for compaction.
_COMPACT_MIN = 64


class EventQueue:
    """Ordered set of pending events with unique membership."""

    def __init__(self) -> None:
        self._heap: List[List[Any]] = []
        self._entries: Dict[Event, List[Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, event: Event) -> bool:
        return event in self._entries

    def empty(self) -> bool:
        """Indicates whether no events are pending."""
        return not self._entries

    def insert(self, event: Event) -> None:
        """Insert `event` keyed by its time, priority and order.

        :raises AlreadyQueuedError: If `event` is already queued.

        """
        if event.queued:
            raise AlreadyQueuedError(f'{event!r} is already in the event queue')
        entry = [event.time, event.priority, event.order, event]
        self._entries[event] = entry
        heappush(self._heap, entry)
        event._queued = True

    def remove(self, event: Event) -> None:
        """Remove `event` from the queue; no-op if it is not queued."""
        if not event.queued:
            return
        entry = self._entries.pop(event)
        entry[_EVENT] = None
        event._queued = False
        if (
            len(self._heap) > _COMPACT_MIN
            and len(self._heap) > 2 * len(self._entries)
        ):
            self._compact()

    def peek(self) -> Optional[Event]:
        """Return the earliest pending event, or `None` if there is none."""
        heap = self._heap
        while heap and heap[0][_EVENT] is None:
            heappop(heap)
        return heap[0][_EVENT] if heap else None

    def pop(self) -> Optional[Event]:
        """Remove and return the earliest pending event, or `None`."""
        event = self.peek()
        if event is not None:
            self.remove(event)
        return event

    def __iter__(self):
        """Iterate pending events in dispatch order (without popping)."""
        for entry in sorted(self._entries.values()):
            yield entry[_EVENT]

    def _compact(self) -> None:
        self._heap = [entry for entry in self._heap if entry[_EVENT] is not None]
        heapify(self._heap)

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(size={len(self)})'
