"""Entities are the long-lived actors of a model.

An :class:`Entity` owns the events that give the model its behavior and
takes part in the replication lifecycle driven by the engine:

 - :meth:`Entity.new_run` is called before each replica. It resets the
   per-replica state and posts the entity's initial events.
 - :meth:`Entity.end_run` is called after each replica. It finalizes the
   per-replica state and must not post events; any events still pending are
   discarded by the engine afterwards.

Entities register themselves with their :class:`~desim.simulation.Simulation`
on construction and may be looked up by name with
:meth:`~desim.simulation.Simulation.find_entity`.

"""
from typing import TYPE_CHECKING, Any, Callable, Optional

from .event import Event
from .tracer import EventTrace

if TYPE_CHECKING:
    from .simulation import ResultDict, Simulation


class Entity:
    """Base class for model entities.

    :param Simulation sim: Simulation the entity belongs to.
    :param str name:
        Unique name of the entity. Defaults to :attr:`base_name`, or the
        class name if that is empty.
    :param int index:
        Optional index appended to the name, used when several sibling
        entities of the same type are instantiated.

    """

    #: Short/friendly name (class attribute).
    base_name: str = ''

    def __init__(
        self,
        sim: 'Simulation',
        name: Optional[str] = None,
        index: Optional[int] = None,
    ) -> None:
        self.sim = sim
        if name is None:
            name = self.base_name or type(self).__name__
        self.name = name + ('' if index is None else str(index))
        self.index = index
        sim.register_entity(self)

        #: Log an error message.
        self.error: Callable[..., None] = sim.tracemgr.get_trace_function(
            self.name, log={'level': 'ERROR'}
        )
        #: Log a warning message.
        self.warn: Callable[..., None] = sim.tracemgr.get_trace_function(
            self.name, log={'level': 'WARNING'}
        )
        #: Log an informative message.
        self.info: Callable[..., None] = sim.tracemgr.get_trace_function(
            self.name, log={'level': 'INFO'}
        )
        #: Log a debug message.
        self.debug: Callable[..., None] = sim.tracemgr.get_trace_function(
            self.name, log={'level': 'DEBUG'}
        )

    def new_run(self) -> None:
        """Hook called before each replica."""
        pass

    def end_run(self) -> None:
        """Hook called after each replica."""
        pass

    def get_trace_function(self, name: str, **hints: Any) -> Callable[..., None]:
        return self.sim.tracemgr.get_trace_function(f'{self.name}.{name}', **hints)

    def auto_trace(
        self,
        name: str,
        target: Optional[Event] = None,
        value: Optional[Callable[[Event], Any]] = None,
        **hints: Any,
    ) -> EventTrace:
        """Trace every firing of one of this entity's events.

        :param str name: Attribute name of the event; also names the trace.
        :param Event target: The event, if not the attribute `name`.
        :param value: Optional function of the event giving the traced value.
        :param hints: Per-tracer hints, as for :meth:`get_trace_function`.
        :returns: The :class:`~desim.tracer.EventTrace` attached to the event.

        """
        if target is None:
            target = getattr(self, name)
        trace = self.sim.tracemgr.event_trace(f'{self.name}.{name}', value, **hints)
        target.add_trace(trace)
        return trace

    def get_result(self, result: 'ResultDict') -> None:
        """Hook to add entity results to the `result` dict of a simulation."""
        pass

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(name={self.name!r})'
