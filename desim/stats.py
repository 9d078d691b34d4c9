"""Statistical probes.

A :class:`Stat` is attached to one or more events with
:meth:`~desim.event.Event.add_stat()` and is probed after each dispatch of
those events. The engine drives every registered statistic through the
replication lifecycle::

    init(num_runs)          once, before the first replica
    new_run()               before each replica
    probe(event)            after each dispatch of an attached event
    end_run()               after each replica
    end_sim()               once, after the last replica

Each statistic condenses a replica into a single value. At
:meth:`Stat.end_sim()` the per-replica values are summarized with their mean,
sample standard deviation and Student-t confidence interval half-width.

A statistic that can only make sense of one kind of event declares it with
the `event_type` class attribute; attaching it to any other kind of event
raises :class:`~desim.event.ProbeTypeError`.

"""
import math
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Optional, Type

import numpy as np
from scipy import stats as sp_stats

if TYPE_CHECKING:
    from .event import Event
    from .simulation import ResultDict, Simulation


class StatRegistry:
    """Statistics known to a simulation, driven through the run lifecycle."""

    def __init__(self, sim: 'Simulation') -> None:
        self.sim = sim
        self._stats: Dict[str, 'Stat'] = {}

    def register(self, stat: 'Stat') -> None:
        if stat.name in self._stats:
            raise ValueError(f'Duplicate statistic name "{stat.name}"')
        self._stats[stat.name] = stat

    def __iter__(self) -> Iterator['Stat']:
        return iter(self._stats.values())

    def __len__(self) -> int:
        return len(self._stats)

    def __getitem__(self, name: str) -> 'Stat':
        return self._stats[name]

    def init(self, num_runs: int) -> None:
        for stat in self:
            stat.init(num_runs)

    def new_run(self) -> None:
        for stat in self:
            stat.new_run()

    def end_run(self) -> None:
        for stat in self:
            stat.end_run()

    def end_sim(self) -> None:
        for stat in self:
            stat.end_sim()
            summary = stat.summary
            self.sim.info(
                f'{stat.name}: mean={summary["mean"]:g} '
                f'ci={summary["ci"]:g} runs={summary["runs"]}'
            )

    def get_result(self, result: 'ResultDict') -> None:
        result['stats'] = {
            stat.name: stat.summary for stat in self if stat.summary is not None
        }


class Stat:
    """Base class of statistics.

    Subclasses define how values recorded during a replica are condensed by
    overriding :meth:`initial_value` and :meth:`accumulate`. Concrete
    statistics for a model usually override :meth:`probe` to extract the
    value to :meth:`record` from the probed event.

    :param Simulation sim: Simulation the statistic is registered with.
    :param str name: Unique name of the statistic.
    :param float confidence: Level of the reported confidence interval.

    """

    #: Kind of event this statistic accepts; `None` accepts any event.
    event_type: Optional[Type['Event']] = None

    def __init__(self, sim: 'Simulation', name: str, confidence: float = 0.95) -> None:
        self.sim = sim
        self.name = name
        self.confidence = confidence
        self.num_runs = 0
        #: Value of the replica in progress.
        self.value = self.initial_value()
        #: Number of values recorded in the replica in progress.
        self.count = 0
        #: Condensed value of each completed replica.
        self.run_values: List[float] = []
        #: Cross-replica summary, available after :meth:`end_sim`.
        self.summary: Optional[Dict[str, Any]] = None
        sim.stats.register(self)

    def initial_value(self) -> float:
        return 0.0

    def accumulate(self, value: float) -> None:
        raise NotImplementedError()  # pragma: no cover

    def run_value(self) -> float:
        """Condensed value of the replica in progress."""
        return self.value

    def record(self, value: float) -> None:
        """Record one observation in the replica in progress."""
        self.count += 1
        self.accumulate(value)

    def init(self, num_runs: int) -> None:
        self.num_runs = num_runs
        self.run_values = []
        self.summary = None

    def new_run(self) -> None:
        self.value = self.initial_value()
        self.count = 0

    def probe(self, event: 'Event') -> None:
        raise NotImplementedError()  # pragma: no cover

    def end_run(self) -> None:
        self.run_values.append(self.run_value())

    def end_sim(self) -> None:
        values = np.asarray(self.run_values, dtype=float)
        n = len(values)
        if n == 0:
            mean = math.nan
        else:
            mean = float(values.mean())
        if n < 2:
            std = half_width = math.nan
        else:
            std = float(values.std(ddof=1))
            t = sp_stats.t.ppf((1 + self.confidence) / 2, n - 1)
            half_width = float(t * std / math.sqrt(n))
        self.summary = {
            'runs': n,
            'mean': mean,
            'std': std,
            'ci': half_width,
            'confidence': self.confidence,
            'values': [float(v) for v in values],
        }

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(name={self.name!r})'


class StatCount(Stat):
    """Counts the dispatches of the attached events in each replica."""

    def accumulate(self, value: float) -> None:
        self.value += value

    def probe(self, event: 'Event') -> None:
        self.record(1)


class StatSum(Stat):
    """Sum of the values recorded in each replica."""

    def accumulate(self, value: float) -> None:
        self.value += value


class StatMean(Stat):
    """Mean of the values recorded in each replica."""

    def accumulate(self, value: float) -> None:
        self.value += value

    def run_value(self) -> float:
        if not self.count:
            return math.nan
        return self.value / self.count


class StatMax(Stat):
    """Largest value recorded in each replica."""

    def initial_value(self) -> float:
        return -math.inf

    def accumulate(self, value: float) -> None:
        self.value = max(self.value, value)


class StatMin(Stat):
    """Smallest value recorded in each replica."""

    def initial_value(self) -> float:
        return math.inf

    def accumulate(self, value: float) -> None:
        self.value = min(self.value, value)


class Particle:
    """Feeds a statistic from the events it is attached to.

    After each dispatch of an attached event, `func(event)` is recorded in
    `stat`. Attach with :meth:`~desim.event.Event.add_particle()`.

    """

    def __init__(self, stat: Stat, func: Callable[['Event'], float]) -> None:
        self.stat = stat
        self.func = func

    def new_event(self, event: 'Event') -> None:
        self.stat.record(self.func(event))
