import json
import os

import pytest
import yaml

from desim.entity import Entity
from desim.event import (
    DEFAULT_PRIORITY,
    IMMEDIATE_PRIORITY,
    Event,
    PostInPastError,
)
from desim.randomvar import RandomVar, UniformVar
from desim.simulation import Simulation, simulate, simulate_factors, simulate_many
from desim.stats import StatCount


class Recorder(Event):
    def __init__(self, sim, log, name, priority=DEFAULT_PRIORITY):
        super().__init__(sim, priority, name)
        self.log = log

    def doit(self):
        self.log.append((self.sim.now, self.name))


class Periodic(Entity):
    """Fires every `period` ticks, starting at `period`."""

    base_name = 'periodic'

    def __init__(self, sim, period=10, **kwargs):
        super().__init__(sim, **kwargs)
        self.period = period
        self.tick = sim.event(self.on_tick)
        self.count = StatCount(sim, f'{self.name}.ticks')
        self.tick.add_stat(self.count)
        self.times = []
        self.runs = []

    def new_run(self):
        self.times = []
        self.tick.post(self.sim.now + self.period)

    def end_run(self):
        self.runs.append(self.times)

    def on_tick(self):
        self.times.append(self.sim.now)
        self.tick.post(self.sim.now + self.period)


class Sampler(Periodic):
    """Draws a uniform sample at every tick."""

    def __init__(self, sim, **kwargs):
        super().__init__(sim, **kwargs)
        self.var = UniformVar(0, 1)

    def on_tick(self):
        self.times.append(self.var.get())
        self.tick.post(self.sim.now + self.period)


class Violator(Entity):
    """Posts into the past on its first event."""

    def __init__(self, sim):
        super().__init__(sim)
        self.start = sim.event(self.on_start)
        self.late = sim.event(self.on_late)
        self.late_fired = 0

    def new_run(self):
        self.start.post(10)

    def on_start(self):
        self.late.post(self.sim.now - 1)

    def on_late(self):
        self.late_fired += 1


def test_empty_queue(sim, capsys):
    sim.run(1000, 1)
    assert sim.act_runs == 1
    assert sim.now == 0
    assert sim.end
    assert 'No more events in queue' in capsys.readouterr().err


def test_periodic_event(sim):
    periodic = Periodic(sim)
    sim.run(45, 1)
    assert periodic.runs == [[10, 20, 30, 40]]
    assert sim.now == 45
    assert sim.act_runs == 1
    assert not periodic.tick.queued
    assert sim.event_queue.empty()


def test_dispatch_up_to_end_tick(sim):
    periodic = Periodic(sim)
    sim.run(40, 1)
    assert periodic.runs == [[10, 20, 30, 40]]
    assert sim.now == 40


def test_priority_tie(sim):
    log = []
    a = Recorder(sim, log, 'A')
    b = Recorder(sim, log, 'B', IMMEDIATE_PRIORITY)
    a.post(50)
    b.post(50)
    sim.run_to(100)
    assert log == [(50, 'B'), (50, 'A')]


def test_insertion_order_tie(sim):
    log = []
    for name in 'XYZ':
        Recorder(sim, log, name).post(5)
    sim.run_to(5)
    assert log == [(5, 'X'), (5, 'Y'), (5, 'Z')]


def test_drop_before_dispatch(sim):
    log = []
    early = Recorder(sim, log, 'early')
    dropped = Recorder(sim, log, 'dropped')
    dropped.post(100)
    early.post(50)
    sim.run_to(60)
    dropped.drop()
    sim.run_to(200)
    assert log == [(50, 'early')]
    assert sim.now == 200


def test_drop_from_handler(sim):
    log = []
    victim = Recorder(sim, log, 'victim')
    canceller = sim.event(victim.drop, name='canceller')
    victim.post(10)
    canceller.set_priority(IMMEDIATE_PRIORITY)
    canceller.post(10)
    sim.run_to(20)
    assert log == []
    assert not victim.queued


def test_multi_run_reproducible():
    def run_once():
        RandomVar.init(1)
        sim = Simulation({})
        sampler = Sampler(sim)
        sim.run(100, 3)
        sim.close()
        return sampler.runs

    first = run_once()
    second = run_once()
    assert len(first) == 3
    assert all(len(samples) == 10 for samples in first)
    assert first == second
    assert first[0] != first[1] != first[2]
    assert all(0 <= s < 1 for samples in first for s in samples)


def test_run_three(sim):
    periodic = Periodic(sim)
    sim.run(45, 3)
    assert sim.act_runs == 3
    assert periodic.runs == [[10, 20, 30, 40]] * 3
    summary = periodic.count.summary
    assert summary['runs'] == 3
    assert summary['mean'] == 4
    assert summary['std'] == 0
    assert summary['ci'] == 0


def test_run_two_becomes_three(sim, capsys):
    periodic = Periodic(sim)
    sim.run(45, 2)
    assert sim.act_runs == 3
    assert sim.num_runs == 3
    assert len(periodic.runs) == 3
    assert 'using 3 runs' in capsys.readouterr().err


def test_run_single_summarized(sim):
    periodic = Periodic(sim)
    sim.run(45, 1)
    assert periodic.count.summary['runs'] == 1
    assert periodic.count.summary['mean'] == 4


def test_run_batched_replicas(sim):
    periodic = Periodic(sim)
    sim.run(45, -3)
    assert sim.act_runs == 1
    assert periodic.count.num_runs == 3
    assert periodic.count.summary is None
    sim.run(45, -1)
    assert periodic.count.summary is None
    sim.run(45, 0)
    assert periodic.count.run_values == [4, 4, 4]
    assert periodic.count.summary['runs'] == 3
    assert len(periodic.runs) == 3


def test_run_batched_two_becomes_three(sim, capsys):
    periodic = Periodic(sim)
    sim.run(45, -2)
    assert periodic.count.num_runs == 3
    assert sim.act_runs == 1
    assert 'using 3 runs' in capsys.readouterr().err


def test_run_minus_one_keeps_stats(sim):
    periodic = Periodic(sim)
    sim.run(45, 1)
    sim.run(25, -1)
    assert periodic.count.run_values == [4, 2]


def test_run_default_duration():
    sim = Simulation({'sim.duration': '45 s'})
    periodic = Periodic(sim)
    sim.run()
    assert periodic.runs == [[10, 20, 30, 40]]
    sim.close()


def test_run_dispatches_events_at_end_tick(sim):
    log = []
    first = Recorder(sim, log, 'first')
    second = Recorder(sim, log, 'second')

    class Starter(Entity):
        def new_run(self):
            first.post(0)
            second.post(0)

    Starter(sim)
    sim.run(0, 1)
    assert log == [(0, 'first'), (0, 'second')]
    assert sim.now == 0

    log.clear()
    periodic = Periodic(sim)
    sim.run(40, 1)
    assert periodic.runs[-1] == [10, 20, 30, 40]
    assert sim.now == 40


def test_replica_lifecycle_order(sim):
    log = []

    class Hooks(Entity):
        def new_run(self):
            log.append(('new_run', self.sim.now))

        def end_run(self):
            log.append(('end_run', self.sim.now))

    Hooks(sim)
    Periodic(sim)
    sim.run(25, 3)
    assert log == [('new_run', 0), ('end_run', 25)] * 3


def test_contract_violation_aborts_replica(sim, capsys):
    violator = Violator(sim)
    periodic = Periodic(sim)
    sim.run(45, 3)
    assert sim.act_runs == 3
    assert violator.late_fired == 0
    assert [len(times) for times in periodic.runs] == [0, 0, 0]
    err = capsys.readouterr().err
    assert err.count('aborted') == 3
    assert 'PostInPastError' in err
    assert sim.event_queue.empty()


def test_other_exceptions_propagate(sim):
    class Broken(Entity):
        def __init__(self, sim):
            super().__init__(sim)
            self.boom = sim.event(self.on_boom)
            self.armed = True

        def new_run(self):
            self.boom.post(5)

        def on_boom(self):
            if self.armed:
                self.armed = False
                raise RuntimeError('boom')

    Broken(sim)
    periodic = Periodic(sim)
    with pytest.raises(RuntimeError):
        sim.run(10, 3)
    assert sim.now == 5
    assert sim.event_queue.empty()
    assert periodic.runs == []

    sim.run(45, 1)
    assert periodic.runs == [[10, 20, 30, 40]]
    assert sim.now == 45
    assert sim.stats['periodic.ticks'].run_values == [4]


def test_contract_violation_outside_run(sim):
    event = Recorder(sim, [], 'e')
    sim.run_to(10)
    with pytest.raises(PostInPastError):
        event.post(0)


def test_sim_step(sim):
    log = []
    Recorder(sim, log, 'a').post(3)
    Recorder(sim, log, 'b').post(8)
    assert sim.sim_step() == 3
    assert sim.now == 3
    assert sim.sim_step() == 8
    assert sim.sim_step() is None
    assert sim.now == 8


def test_run_to(sim):
    log = []
    Recorder(sim, log, 'a').post(3)
    Recorder(sim, log, 'b').post(8)
    assert sim.run_to(5) == 5
    assert log == [(3, 'a')]
    assert sim.run_to(8) == 8
    assert log == [(3, 'a'), (8, 'b')]


def test_init_single_run(sim):
    periodic = Periodic(sim)
    sim.init_runs(1)
    sim.init_single_run()
    assert periodic.tick.queued
    sim.run_to(25)
    assert periodic.times == [10, 20]
    sim.end_single_run()
    assert sim.event_queue.empty()
    assert periodic.runs == [[10, 20]]
    sim.end_sim()
    assert periodic.count.summary['mean'] == 2


def test_clear_event_queue(sim):
    class Disposing(Recorder):
        disposed = False

        def dispose(self):
            super().dispose()
            self.disposed = True

    kept = Disposing(sim, [], 'kept')
    owned = Disposing(sim, [], 'owned')
    kept.post(20)
    owned.post(30, disposable=True)
    sim.run_to(10)
    sim.clear_event_queue()
    assert sim.now == 0
    assert sim.event_queue.empty()
    assert not kept.queued and not kept.disposed
    assert not owned.queued and owned.disposed


def test_peek(sim):
    assert sim.peek() == float('inf')
    Recorder(sim, [], 'a').post(12)
    assert sim.peek() == 12


def test_time_units():
    sim = Simulation({'sim.timescale': '10 ms'})
    sim.run_to(5)
    assert sim.time() == 5
    assert sim.time(unit='ms') == 50
    assert sim.time(unit='s') == pytest.approx(0.05)
    assert sim.time(7, 'us') == 70000
    sim.close()


def test_duration_not_whole_ticks():
    with pytest.raises(ValueError):
        Simulation({'sim.timescale': '1 s', 'sim.duration': '1500 ms'})


def test_instance():
    sim = Simulation.instance()
    assert Simulation.instance() is sim
    Simulation.clear_instance()
    assert Simulation.instance() is not sim


def test_entities(sim):
    a = Periodic(sim, index=0)
    b = Periodic(sim, index=1)
    assert sim.entities == [a, b]
    assert sim.find_entity('periodic1') is b
    with pytest.raises(KeyError):
        sim.find_entity('periodic2')
    with pytest.raises(ValueError):
        Periodic(sim, index=0)


class Model(Periodic):
    def __init__(self, sim):
        super().__init__(sim, period=sim.config.setdefault('model.period', 10))
        if sim.config.get('test.fail_init'):
            raise Exception('fail_init')

    def get_result(self, result):
        result['model.last_times'] = self.times


@pytest.fixture
def config():
    return {
        'sim.config.file': 'config.yaml',
        'sim.result.file': 'result.yaml',
        'sim.workspace': 'workspace',
        'sim.duration': '45 s',
        'sim.runs': 3,
        'sim.seed': 1234,
        'sim.log.enable': False,
        'test.fail_init': False,
    }


@pytest.mark.usefixtures('cleandir')
def test_simulate(config):
    result = simulate(config, Model)
    assert result['sim.exception'] is None
    assert result['sim.now'] == 45
    assert result['sim.runs'] == 3
    assert result['sim.runtime'] > 0
    assert result['stats']['periodic.ticks']['mean'] == 4
    assert result['stats']['periodic.ticks']['runs'] == 3
    assert result['model.last_times'] == [10, 20, 30, 40]
    workspace = config['sim.workspace']
    for file_key in ['sim.result.file', 'sim.config.file']:
        assert os.path.exists(os.path.join(workspace, config[file_key]))
    with open(os.path.join(workspace, 'result.yaml')) as f:
        dumped = yaml.safe_load(f)
    assert dumped['stats']['periodic.ticks']['values'] == [4, 4, 4]


@pytest.mark.usefixtures('cleandir')
def test_simulate_seeds_default_generator(config):
    simulate(config, Model)
    assert RandomVar.default_generator().seed == 1234


@pytest.mark.usefixtures('cleandir')
def test_simulate_json(config):
    config['sim.result.file'] = 'result.json'
    simulate(config, Model)
    with open(os.path.join(config['sim.workspace'], 'result.json')) as f:
        result = json.load(f)
    assert result['sim.runs'] == 3


@pytest.mark.usefixtures('cleandir')
def test_simulate_bad_extension(config):
    config['sim.result.file'] = 'result.txt'
    with pytest.raises(ValueError):
        simulate(config, Model)


@pytest.mark.usefixtures('cleandir')
def test_simulate_init_failure(config):
    config['test.fail_init'] = True
    result = simulate(config, Model, reraise=False)
    assert result['sim.exception'] == repr(Exception('fail_init'))
    assert result['sim.now'] == 0
    assert result['sim.runs'] == 0
    assert result['config']['test.fail_init']
    for file_key in ['sim.result.file', 'sim.config.file']:
        assert os.path.exists(os.path.join(config['sim.workspace'], config[file_key]))


@pytest.mark.usefixtures('cleandir')
def test_simulate_init_failure_reraise(config):
    config['test.fail_init'] = True
    with pytest.raises(Exception):
        simulate(config, Model)


@pytest.mark.usefixtures('cleandir')
def test_simulate_workspace_overwrite(config):
    os.makedirs(config['sim.workspace'])
    stale = os.path.join(config['sim.workspace'], 'stale.txt')
    open(stale, 'w').close()
    config['sim.workspace.overwrite'] = True
    simulate(config, Model)
    assert not os.path.exists(stale)
    assert os.path.exists(os.path.join(config['sim.workspace'], 'result.yaml'))


@pytest.mark.usefixtures('cleandir')
def test_simulate_factors(config):
    factors = [(['model.period'], [[5], [10], [15]])]
    results = simulate_factors(config, factors, Model)
    assert [r['sim.exception'] for r in results] == [None] * 3
    assert [r['stats']['periodic.ticks']['mean'] for r in results] == [9, 4, 3]
    assert [r['config']['meta.sim.special'] for r in results] == [
        [['model.period', 5]],
        [['model.period', 10]],
        [['model.period', 15]],
    ]
    for index in range(3):
        assert os.path.exists(os.path.join('workspace', str(index), 'result.yaml'))


@pytest.mark.usefixtures('cleandir')
def test_simulate_factors_filter(config):
    factors = [(['model.period'], [[5], [10], [15]])]
    results = simulate_factors(
        config, factors, Model, config_filter=lambda c: c['model.period'] != 10
    )
    assert [r['config']['model.period'] for r in results] == [5, 15]


@pytest.mark.usefixtures('cleandir')
def test_simulate_many_failure(config):
    good = dict(config, **{'sim.workspace': 'good'})
    bad = dict(config, **{'sim.workspace': 'bad', 'test.fail_init': True})
    results = simulate_many([good, bad], Model)
    assert results[0]['sim.exception'] is None
    assert results[1]['sim.exception'] == repr(Exception('fail_init'))


@pytest.mark.usefixtures('cleandir')
def test_simulate_many_duplicate_workspace(config):
    with pytest.raises(ValueError):
        simulate_many([dict(config), dict(config)], Model)


def test_simulate_many_invalid_jobs(config):
    with pytest.raises(ValueError):
        simulate_many([config], Model, jobs=0)
