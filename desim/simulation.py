"""Simulation engine and batch driver.

The :class:`Simulation` owns the virtual clock and the event queue. Its main
loop pops the earliest pending event, advances the clock to the event's tick
and dispatches it. Handlers run to completion one at a time; they describe
delays by posting events at later ticks.

A simulation is replicated with :meth:`Simulation.run`. Each replica is
bracketed by the `new_run()`/`end_run()` hooks of every registered entity and
statistic, and the statistics summarize all replicas when the simulation
ends. The random generators are not reseeded between replicas, so replicas
of a stochastic model differ from each other while the simulation as a whole
is reproducible.

The :func:`simulate` function takes a model through configuration, the
replicas and result collection, optionally dumping the configuration and the
results to files. :func:`simulate_many` and :func:`simulate_factors` run
several such simulations in parallel, each in its own process.

"""
from contextlib import closing
from itertools import count
from multiprocessing import Process, Queue, cpu_count
from pprint import pprint
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Type,
)
import json
import os
import shutil
import timeit

from simpy.core import BoundClass, Infinity
import yaml

from .config import ConfigDict, factorial_config
from .event import DEFAULT_PRIORITY, ContractViolation, Event, MethodEvent
from .eventqueue import EventQueue
from .randomvar import RandomVar
from .stats import StatRegistry
from .timescale import Tick, parse_time, scale_time, to_ticks
from .tracer import TraceManager

if TYPE_CHECKING:
    from .entity import Entity

ResultDict = Dict[str, Any]
ModelType = Callable[['Simulation'], Any]


class Simulation:
    """Discrete event simulation engine.

    Besides the clock and the event queue, a simulation holds:

     - The configuration dictionary (`config`).
     - The registry of entities (see :meth:`find_entity`).
     - The registry of statistics (`stats`).
     - The :class:`~desim.tracer.TraceManager` (`tracemgr`), and the
       `error`, `warn`, `info` and `debug` log functions.

    Models normally pass their simulation around explicitly. A process-wide
    default instance is available from :meth:`instance`.

    :param dict config: Configuration dictionary, see :mod:`desim.config`.

    """

    _instance: Optional['Simulation'] = None

    def __init__(self, config: Optional[ConfigDict] = None) -> None:
        #: The configuration dictionary.
        self.config: ConfigDict = {} if config is None else config
        self._now: Tick = 0
        #: Number of replicas of the current :meth:`run` call.
        self.num_runs = 0
        #: Number of replicas completed by the current :meth:`run` call.
        self.act_runs = 0
        #: Set once :meth:`run` has completed its replicas.
        self.end = False
        #: The pending events.
        self.event_queue = EventQueue()
        self._order = count()
        self._entities: Dict[str, 'Entity'] = {}
        #: The registered statistics.
        self.stats = StatRegistry(self)

        #: Simulation timescale ``(magnitude, units)`` tuple; the physical
        #: duration of one tick.
        self.timescale = parse_time(self.config.setdefault('sim.timescale', '1 s'))

        #: Length of each replica in ticks, from "sim.duration".
        self.duration = to_ticks(
            self.config.setdefault('sim.duration', '0 s'), self.timescale
        )

        #: :class:`~desim.tracer.TraceManager` instance.
        self.tracemgr = TraceManager(self)
        self.error = self.tracemgr.get_trace_function('sim', log={'level': 'ERROR'})
        self.warn = self.tracemgr.get_trace_function('sim', log={'level': 'WARNING'})
        self.info = self.tracemgr.get_trace_function('sim', log={'level': 'INFO'})
        self.debug = self.tracemgr.get_trace_function('sim', log={'level': 'DEBUG'})
        BoundClass.bind_early(self)

    @classmethod
    def instance(cls) -> 'Simulation':
        """Return the process-wide simulation, creating it on first use."""
        if Simulation._instance is None:
            Simulation._instance = cls()
        return Simulation._instance

    @classmethod
    def clear_instance(cls) -> None:
        """Close and forget the process-wide simulation."""
        if Simulation._instance is not None:
            Simulation._instance.close()
            Simulation._instance = None

    if TYPE_CHECKING:

        def event(
            self,
            handler: Callable[[], Any],
            priority: int = DEFAULT_PRIORITY,
            name: Optional[str] = None,
        ) -> MethodEvent:
            """Create an event dispatching to `handler`."""
            ...

    else:
        event = BoundClass(MethodEvent)

    @property
    def now(self) -> Tick:
        """The current simulation time in ticks."""
        return self._now

    def time(self, t: Optional[Tick] = None, unit: Optional[str] = None) -> Any:
        """The current simulation time, optionally scaled to a unit.

        :param int t: Time in ticks. Default is :attr:`now`.
        :param str unit:
            Unit of time to scale to, e.g. ``'ms'``. If omitted the time is
            returned in ticks.

        """
        ticks = self._now if t is None else t
        if unit is None:
            return ticks
        ts_mag, ts_unit = self.timescale
        return scale_time((ticks * ts_mag, ts_unit), parse_time(unit))

    def register_entity(self, entity: 'Entity') -> None:
        if entity.name in self._entities:
            raise ValueError(f'Duplicate entity name "{entity.name}"')
        self._entities[entity.name] = entity

    def find_entity(self, name: str) -> 'Entity':
        """Look up a registered entity by name.

        :raises KeyError: If no entity has that name.

        """
        try:
            return self._entities[name]
        except KeyError:
            raise KeyError(f'No entity named "{name}"') from None

    @property
    def entities(self) -> List['Entity']:
        """Registered entities in registration order."""
        return list(self._entities.values())

    def schedule(self, event: Event) -> None:
        """Assign the next insertion order to `event` and queue it.

        Called by :meth:`Event.post() <desim.event.Event.post>`.

        """
        event.order = next(self._order)
        self.event_queue.insert(event)

    def peek(self) -> float:
        """Time of the next pending event, or `Infinity` if there is none."""
        event = self.event_queue.peek()
        return Infinity if event is None else event.time

    def sim_step(self) -> Optional[Tick]:
        """Dispatch the earliest pending event.

        :returns:
            The tick of the dispatched event, or `None` if no event was
            pending.

        """
        event = self.event_queue.pop()
        if event is None:
            return None
        self._now = event.time
        try:
            event.action()
        finally:
            if event.disposable:
                event.dispose()
        return self._now

    def run_to(self, stop: Tick) -> Tick:
        """Dispatch the pending events up to and including tick `stop`.

        The clock is then advanced to `stop` if it is behind. No lifecycle
        hooks are called, which makes this useful for stepping through a
        replica set up with :meth:`init_single_run`.

        :returns: The current time.

        """
        while self.peek() <= stop:
            self.sim_step()
        if self.event_queue.empty():
            self.warn(f'No more events in queue: simulation time = {self._now}')
        if self._now < stop:
            self._now = stop
        return self._now

    def init_runs(self, num_runs: int = 1) -> None:
        """Prepare the statistics for `num_runs` replicas."""
        self.stats.init(num_runs)
        self._now = 0
        self.end = False

    def init_single_run(self) -> None:
        """Start a replica: reset the clock and call the `new_run()` hooks."""
        self._now = 0
        for entity in self.entities:
            entity.new_run()
        self.stats.new_run()

    def end_single_run(self) -> None:
        """Finish a replica: call the `end_run()` hooks, discard pending events."""
        for entity in self.entities:
            entity.end_run()
        self.stats.end_run()
        self.tracemgr.end_run()
        self._discard_events()

    def end_sim(self) -> None:
        """Summarize the statistics over all replicas."""
        self.stats.end_sim()
        self.tracemgr.flush()

    def clear_event_queue(self) -> None:
        """Discard all pending events and reset the clock to zero."""
        self._discard_events()
        self._now = 0

    def _discard_events(self) -> None:
        event = self.event_queue.pop()
        while event is not None:
            if event.disposable:
                event.dispose()
            event = self.event_queue.pop()

    def run(self, end_tick: Optional[Tick] = None, runs: int = 1) -> None:
        """Run replicas of the simulation.

        Each replica dispatches every event posted at a tick up to and
        including `end_tick`, so all events sharing the tick `end_tick` fire
        and ``run(0, 1)`` still dispatches the events of tick 0. The clock is
        then left at `end_tick`. A replica ends early, leaving the clock at
        the last dispatched event, when no events are pending.

        The `runs` selector chooses how many replicas are run and whether the
        statistics are initialized before and summarized after them:

        ==========  ======================  ==========  =============
        `runs`      statistics init         replicas    summarized
        ==========  ======================  ==========  =============
        ``< -1``    for ``-runs`` replicas  1           no
        ``-1``      no                      1           no
        ``0``       no                      1           yes
        ``>= 1``    for `runs` replicas     `runs`      yes
        ==========  ======================  ==========  =============

        The negative selectors allow a batch of replicas to be driven one
        call at a time: ``run(t, -n)`` first, ``run(t, -1)`` in between and
        ``run(t, 0)`` last. Statistics cannot be summarized over two
        replicas, so a request for two is turned into three.

        A :class:`~desim.event.ContractViolation` raised while a replica runs
        aborts that replica only. Other exceptions propagate once the pending
        events have been discarded, so the simulation can be run again.

        :param int end_tick: Length of each replica. Defaults to
            :attr:`duration`.
        :param int runs: Replicas selector.

        """
        if end_tick is None:
            end_tick = self.duration

        init_count: Optional[int]
        if runs < -1:
            num_runs, init_count, terminate = 1, -runs, False
        elif runs == -1:
            num_runs, init_count, terminate = 1, None, False
        elif runs == 0:
            num_runs, init_count, terminate = 1, None, True
        else:
            num_runs, init_count, terminate = runs, runs, True

        if init_count == 2:
            self.warn('Simulation cannot be initialized with 2 runs; using 3 runs')
            init_count = 3
            if num_runs == 2:
                num_runs = 3

        self.num_runs = num_runs
        if init_count is not None:
            self.init_runs(init_count)

        self.act_runs = 0
        while self.act_runs < num_runs:
            self.info(f'Run #{self.act_runs}')
            try:
                self.init_single_run()
                self._run_replica(end_tick)
            except ContractViolation as e:
                self.error(f'Run #{self.act_runs} aborted: {e!r}')
            except BaseException:
                self._discard_events()
                raise
            self.end_single_run()
            self.act_runs += 1

        self.end = True
        if terminate:
            self.end_sim()

    def _run_replica(self, end_tick: Tick) -> None:
        while True:
            next_time = self.peek()
            if next_time == Infinity:
                self.warn(f'No more events in queue: simulation time = {self._now}')
                return
            if next_time > end_tick:
                self._now = max(self._now, end_tick)
                return
            self.sim_step()

    def get_result(self, result: ResultDict) -> None:
        """Compose the statistics and entity results into `result`."""
        self.stats.get_result(result)
        for entity in self.entities:
            entity.get_result(result)

    def close(self) -> None:
        """Close the tracers."""
        self.tracemgr.close()

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(now={self._now} '
            f'pending={len(self.event_queue)} runs={self.act_runs}/{self.num_runs})'
        )


class _Workspace:
    """Context manager for workspace directory management."""

    def __init__(self, config: ConfigDict) -> None:
        self.workspace: str = config.setdefault(
            'meta.sim.workspace', config.setdefault('sim.workspace', os.curdir)
        )
        self.overwrite: bool = config.setdefault('sim.workspace.overwrite', False)
        self.prev_dir = os.getcwd()

    def __enter__(self) -> None:
        if os.path.relpath(self.workspace) != os.curdir:
            workspace_exists = os.path.isdir(self.workspace)
            if self.overwrite and workspace_exists:
                shutil.rmtree(self.workspace)
            if self.overwrite or not workspace_exists:
                os.makedirs(self.workspace)
            os.chdir(self.workspace)

    def __exit__(self, *exc: Any) -> None:
        os.chdir(self.prev_dir)


def simulate(
    config: ConfigDict,
    model_type: ModelType,
    sim_type: Type[Simulation] = Simulation,
    reraise: bool = True,
) -> ResultDict:
    """Build a model, run its replicas and collect the results.

    The default random generator is seeded from "sim.seed" before
    `model_type` is called with the new simulation to build the model's
    entities, events and statistics. The replicas are then run with
    ``sim.run(sim.duration, config['sim.runs'])``.

    All exceptions are caught by `simulate()` so they can be logged and
    captured in the result file. By default, any unhandled exception caught
    by `simulate()` will be re-raised. Setting `reraise` to False prevents
    exceptions from propagating to the caller. Instead, the returned result
    dict will indicate if an exception occurred via the 'sim.exception' item.

    :param dict config: Configuration dictionary for the simulation.
    :param model_type:
        Callable taking the :class:`Simulation`; typically an
        :class:`~desim.entity.Entity` subclass.
    :param sim_type: :class:`Simulation` subclass.
    :param bool reraise: Should unhandled exceptions propagate to the caller.
    :returns: Dictionary containing the results of the simulation.

    """
    t0 = timeit.default_timer()
    result: ResultDict = {}
    result_file: Optional[str] = config.setdefault('sim.result.file')
    config_file: Optional[str] = config.setdefault('sim.config.file')
    try:
        with _Workspace(config):
            sim = sim_type(config)
            with closing(sim):
                try:
                    RandomVar.init(config.setdefault('sim.seed', 1))
                    model_type(sim)
                    sim.tracemgr.flush()
                    sim.run(sim.duration, config.setdefault('sim.runs', 1))
                    sim.get_result(result)
                except BaseException as e:
                    sim.tracemgr.trace_exception()
                    result['sim.exception'] = repr(e)
                    raise
                else:
                    result['sim.exception'] = None
                finally:
                    sim.tracemgr.flush()
                    result['config'] = config
                    result['sim.now'] = sim.now
                    result['sim.runs'] = sim.act_runs
                    result['sim.runtime'] = timeit.default_timer() - t0
                    _dump_dict(config_file, config)
                    _dump_dict(result_file, result)
    except BaseException as e:
        if reraise:
            raise
        result.setdefault('config', config)
        result.setdefault('sim.runtime', timeit.default_timer() - t0)
        if result.get('sim.exception') is None:
            result['sim.exception'] = repr(e)
    return result


def simulate_factors(
    base_config: ConfigDict,
    factors: Sequence[Any],
    model_type: ModelType,
    sim_type: Type[Simulation] = Simulation,
    jobs: Optional[int] = None,
    config_filter: Optional[Callable[[ConfigDict], bool]] = None,
) -> List[ResultDict]:
    """Run multi-factor simulations in separate processes.

    The `factors` are used to compose specialized config dictionaries for the
    simulations, see :func:`desim.config.factorial_config`. Each simulation
    gets its own workspace directory, named by its index, under
    "sim.workspace".

    :param dict base_config: Base configuration dictionary to be specialized.
    :param list factors: List of factors.
    :param model_type: Callable building the model, see :func:`simulate`.
    :param sim_type: :class:`Simulation` subclass.
    :param int jobs: User specified number of concurrent processes.
    :param function config_filter:
        A function which will be passed a config and returns a bool to filter.
    :returns: Sequence of result dictionaries for each simulation.

    """
    configs = list(factorial_config(base_config, factors, 'meta.sim.special'))
    ws = base_config.setdefault('sim.workspace', os.curdir)
    overwrite = base_config.setdefault('sim.workspace.overwrite', False)

    for index, config in enumerate(configs):
        config['meta.sim.index'] = index
        config['meta.sim.workspace'] = os.path.join(ws, str(index))
    if config_filter is not None:
        configs[:] = filter(config_filter, configs)
    if overwrite and os.path.relpath(ws) != os.curdir and os.path.isdir(ws):
        shutil.rmtree(ws)
    return simulate_many(configs, model_type, sim_type, jobs)


def simulate_many(
    configs: Iterable[ConfigDict],
    model_type: ModelType,
    sim_type: Type[Simulation] = Simulation,
    jobs: Optional[int] = None,
) -> List[ResultDict]:
    """Run multiple independent simulations in separate processes.

    Every process has its own engine and default random generator, so the
    simulations do not share any state.

    :param configs: Configuration dictionaries of the simulations.
    :param model_type: Callable building the model, see :func:`simulate`.
    :param sim_type: :class:`Simulation` subclass.
    :param int jobs: User specified number of concurrent processes.
    :returns: Sequence of result dictionaries, ordered by simulation index.

    """
    if jobs is not None and jobs < 1:
        raise ValueError(f'Invalid number of jobs: {jobs}')

    configs = list(configs)
    result_queue: Queue = Queue()
    config_queue: Queue = Queue()

    workspaces = set()
    for index, config in enumerate(configs):
        workspace = os.path.normpath(
            config.setdefault(
                'meta.sim.workspace', config.setdefault('sim.workspace', os.curdir)
            )
        )
        if workspace in workspaces:
            raise ValueError(f'Duplicate workspace: {workspace}')
        workspaces.add(workspace)

        config.setdefault('meta.sim.index', index)
        config_queue.put(config)

    num_workers = min(len(configs), cpu_count())
    if jobs is not None:
        num_workers = min(num_workers, jobs)

    workers = []
    for i in range(num_workers):
        worker = Process(
            name=f'sim-worker-{i}',
            target=_simulate_worker,
            args=(model_type, sim_type, config_queue, result_queue),
        )
        worker.daemon = True  # Workers die if main process dies.
        worker.start()
        workers.append(worker)
        config_queue.put(None)  # A stop sentinel for each worker.

    results = [result_queue.get() for _ in configs]

    for worker in workers:
        worker.join(5)

    return sorted(results, key=lambda r: r['config']['meta.sim.index'])


def _simulate_worker(
    model_type: ModelType,
    sim_type: Type[Simulation],
    config_queue: Queue,
    result_queue: Queue,
) -> None:
    while True:
        config = config_queue.get()
        if config is None:
            break
        result = simulate(config, model_type, sim_type, reraise=False)
        result_queue.put(result)


def _dump_dict(filename: Optional[str], dump_dict: Dict[str, Any]) -> None:
    if filename is not None:
        _, ext = os.path.splitext(filename)
        if ext not in ['.yaml', '.yml', '.json', '.py']:
            raise ValueError(f'Invalid extension: {ext}')
        with open(filename, 'w') as dump_file:
            if ext in ['.yaml', '.yml']:
                yaml.safe_dump(dump_dict, stream=dump_file)
            elif ext == '.json':
                json.dump(dump_dict, dump_file, sort_keys=True, indent=2)
            else:
                assert ext == '.py'
                pprint(dump_dict, stream=dump_file)
