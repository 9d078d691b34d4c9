"""Schedulable events.

An :class:`Event` is posted at a tick of the simulation clock. When the engine
reaches that tick it pops the event from the queue and calls
:meth:`Event.action()`, which runs the event handler, :meth:`Event.doit()`,
followed by every probe attached to the event: first the statistics, then the
particles and finally the traces.

Events with equal time are dispatched by priority, lower values first, and
then in posting order. :data:`DEFAULT_PRIORITY` is used unless stated
otherwise; :data:`IMMEDIATE_PRIORITY` events precede all default-priority
events of the same tick.

A handler may re-post its own event, which changes :attr:`Event.time` before
the probes run. Probes interested in the firing time must therefore use
:attr:`Event.last_time`.

Handlers are supplied either by subclassing :class:`Event` and overriding
:meth:`~Event.doit()`, or with :class:`MethodEvent` which calls a bound method
of the owning entity.

"""
from typing import TYPE_CHECKING, Any, Callable, List, Optional

if TYPE_CHECKING:
    from .simulation import Simulation
    from .stats import Particle, Stat
    from .tracer import EventTrace

DEFAULT_PRIORITY = 8
IMMEDIATE_PRIORITY = 0


class SimError(Exception):
    """Base class of simulation engine errors."""


class ContractViolation(SimError):
    """An event was misused; aborts the current replica."""


class PostInPastError(ContractViolation):
    """Posting an event at a tick earlier than the current clock."""


class AlreadyQueuedError(ContractViolation):
    """Posting an event that is already in the event queue."""


class ProbeTypeError(SimError, TypeError):
    """A probe was attached to an event of a kind it cannot handle."""


class Event:
    """Base class for simulation events.

    Subclasses must override :meth:`doit()`.

    :param Simulation sim: Simulation the event is posted to.
    :param int priority: Standard priority of the event.
    :param str name: Optional name used in traces and `repr()`.

    """

    def __init__(
        self,
        sim: 'Simulation',
        priority: int = DEFAULT_PRIORITY,
        name: Optional[str] = None,
    ) -> None:
        self.sim = sim
        self.name = type(self).__name__ if name is None else name
        #: Current priority; lower numbers are dispatched first.
        self.priority = priority
        self._std_priority = priority
        #: Tick the event is posted at; only meaningful while queued.
        self.time = 0
        #: Tick of the most recent dispatch; `None` until first dispatched.
        self.last_time: Optional[int] = None
        #: Insertion counter value assigned by the last :meth:`post()`.
        self.order: Optional[int] = None
        #: Whether the engine disposes of the event after dispatch.
        self.disposable = False
        self._queued = False
        self.stats: List['Stat'] = []
        self.particles: List['Particle'] = []
        self.traces: List['EventTrace'] = []

    @property
    def queued(self) -> bool:
        """True iff the event is in the event queue."""
        return self._queued

    def post(self, time: int, disposable: bool = False) -> None:
        """Insert the event into the event queue at tick `time`.

        Posting at the current tick is allowed. By setting `disposable` the
        caller hands the event over to the engine, which calls
        :meth:`dispose()` once the event has been dispatched or discarded.

        :raises AlreadyQueuedError: If the event is already queued.
        :raises PostInPastError: If `time` is before the current tick.

        """
        if self._queued:
            raise AlreadyQueuedError(f'{self!r} is already in the event queue')
        if time < self.sim.now:
            raise PostInPastError(
                f'{self!r} posted at {time}, current time is {self.sim.now}'
            )
        self.time = time
        self.disposable = disposable
        self.sim.schedule(self)

    def drop(self) -> None:
        """Remove the event from the queue without dispatching it."""
        self.sim.event_queue.remove(self)

    def process(self, disposable: bool = False) -> None:
        """Dispatch the event immediately, bypassing the queue.

        A pending post of this event is dropped first.

        """
        self.drop()
        self.time = self.sim.now
        self.disposable = disposable
        try:
            self.action()
        finally:
            if disposable:
                self.dispose()

    def action(self) -> None:
        """Run the handler and then the attached probes.

        Called by the engine on dispatch. A failing probe does not prevent
        the remaining probes from running; the first failure is re-raised
        once all of them have been invoked.

        """
        self.last_time = self.time
        self._queued = False
        self.doit()

        failures: List[Exception] = []
        for stat in self.stats:
            self._invoke_probe(stat.probe, failures)
        for particle in self.particles:
            self._invoke_probe(particle.new_event, failures)
        for trace in self.traces:
            self._invoke_probe(trace.record, failures)
        if failures:
            raise failures[0]

    def _invoke_probe(
        self, func: Callable[['Event'], Any], failures: List[Exception]
    ) -> None:
        try:
            func(self)
        except Exception as e:
            self.sim.error(f'probe failed on {self!r}: {e!r}')
            failures.append(e)

    def doit(self) -> None:
        """Event handler; must be overridden."""
        raise NotImplementedError()  # pragma: no cover

    def dispose(self) -> None:
        """Release the event once the engine is done with it.

        Called for disposable events after their dispatch. Subclasses may
        extend this to release additional resources.

        """
        self.stats.clear()
        self.particles.clear()
        self.traces.clear()

    def set_priority(self, priority: int) -> None:
        """Temporarily change the priority.

        Takes effect the next time the event is posted.

        """
        self.priority = priority

    def restore_priority(self) -> None:
        """Restore the priority the event was constructed with."""
        self.priority = self._std_priority

    def add_stat(self, stat: 'Stat') -> None:
        """Attach a statistic probe, invoked after each dispatch.

        :raises ProbeTypeError:
            If `stat` declares an `event_type` this event is not an instance
            of.

        """
        event_type = getattr(stat, 'event_type', None)
        if event_type is not None and not isinstance(self, event_type):
            raise ProbeTypeError(
                f'{stat!r} expects {event_type.__name__}, '
                f'cannot probe {type(self).__name__}'
            )
        self.stats.append(stat)

    def add_particle(self, particle: 'Particle') -> None:
        """Attach a particle, notified with `new_event()` after each dispatch."""
        self.particles.append(particle)

    def add_trace(self, trace: 'EventTrace') -> None:
        """Attach a trace probe, invoked with `record()` after each dispatch."""
        self.traces.append(trace)

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(name={self.name!r} time={self.time} '
            f'priority={self.priority} queued={self._queued})'
        )


class MethodEvent(Event):
    """Event whose handler is a callable, typically a method of an entity.

    :param Simulation sim: Simulation the event is posted to.
    :param handler: Callable invoked without arguments on dispatch.
    :param int priority: Standard priority of the event.
    :param str name:
        Optional name; defaults to the handler's name.

    """

    def __init__(
        self,
        sim: 'Simulation',
        handler: Callable[[], Any],
        priority: int = DEFAULT_PRIORITY,
        name: Optional[str] = None,
    ) -> None:
        if name is None:
            name = getattr(handler, '__name__', None)
        super().__init__(sim, priority, name)
        self.handler = handler
        #: The object the handler is bound to, if any.
        self.owner = getattr(handler, '__self__', None)

    def doit(self) -> None:
        self.handler()
