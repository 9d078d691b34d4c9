"""Tracers record simulation activity: log messages and event firings.

The :class:`TraceManager` owned by a :class:`~desim.simulation.Simulation`
holds one instance of each tracer. Each tracer is configured from the
``sim.<name>.*`` keys of the configuration:

 - :class:`LogTracer` (``sim.log.*``) writes text lines to a file or, by
   default, to standard error.
 - :class:`VCDTracer` (``sim.vcd.*``) writes a Value Change Dump viewable
   with GTKWave.
 - :class:`SQLiteTracer` (``sim.db.*``) inserts rows into an SQLite table.

Trace functions are obtained with :meth:`TraceManager.get_trace_function()`,
passing per-tracer hints as keyword arguments, e.g.
``log={'level': 'INFO'}``. Only tracers named in the hints and enabled for
the scope participate.

:meth:`TraceManager.event_trace()` returns an :class:`EventTrace`, a trace
probe which records every firing of the events it is attached to.

"""
from typing import TYPE_CHECKING, Any, Callable, List, Optional, TextIO
import os
import re
import sqlite3
import sys
import traceback

from vcd import VCDWriter

from .timescale import parse_time, scale_time

if TYPE_CHECKING:
    from .event import Event
    from .simulation import Simulation

TraceCallback = Callable[..., None]


class Tracer:

    name: str = ''
    default_enable: bool = False

    def __init__(self, sim: 'Simulation') -> None:
        self.sim = sim
        cfg_scope = f'sim.{self.name}'
        self.enabled: bool = sim.config.setdefault(
            f'{cfg_scope}.enable', self.default_enable
        )
        self.persist: bool = sim.config.setdefault(f'{cfg_scope}.persist', True)
        if self.enabled:
            self.open()
            include_pat: List[str] = sim.config.setdefault(
                f'{cfg_scope}.include_pat', ['.*']
            )
            exclude_pat: List[str] = sim.config.setdefault(
                f'{cfg_scope}.exclude_pat', []
            )
            self._include_re = [re.compile(pat) for pat in include_pat]
            self._exclude_re = [re.compile(pat) for pat in exclude_pat]

    def is_scope_enabled(self, scope: str) -> bool:
        return (
            self.enabled
            and any(r.match(scope) for r in self._include_re)
            and not any(r.match(scope) for r in self._exclude_re)
        )

    def open(self) -> None:
        raise NotImplementedError()  # pragma: no cover

    def close(self) -> None:
        if self.enabled:
            self._close()

    def _close(self) -> None:
        raise NotImplementedError()  # pragma: no cover

    def remove_files(self) -> None:
        raise NotImplementedError()  # pragma: no cover

    def flush(self) -> None:
        pass

    def end_run(self) -> None:
        pass

    def activate_trace(self, scope: str, **hints: Any) -> Optional[TraceCallback]:
        raise NotImplementedError()  # pragma: no cover

    def trace_exception(self) -> None:
        pass


class LogTracer(Tracer):

    name = 'log'
    default_enable = True
    default_format = '{level:7} {ts} {ts_unit}: {scope}:'

    levels = {
        'ERROR': 1,
        'WARNING': 2,
        'INFO': 3,
        'PROBE': 4,
        'DEBUG': 5,
    }

    def open(self) -> None:
        self.filename: str = self.sim.config.setdefault('sim.log.file', '')
        buffering: int = self.sim.config.setdefault('sim.log.buffering', -1)
        level: str = self.sim.config.setdefault('sim.log.level', 'INFO')
        self.max_level = self.levels[level]
        self.format_str: str = self.sim.config.setdefault(
            'sim.log.format', self.default_format
        )
        ts_n, ts_unit = self.sim.timescale
        if ts_n == 1:
            self.ts_unit = ts_unit
        else:
            self.ts_unit = f'({ts_n}{ts_unit})'

        self._file: Optional[TextIO] = None
        if self.filename:
            self._file = open(self.filename, 'w', buffering)

    @property
    def file(self) -> TextIO:
        # Resolved on each use so a replaced sys.stderr is honored.
        return self._file if self._file is not None else sys.stderr

    def flush(self) -> None:
        self.file.flush()

    def _close(self) -> None:
        if self._file is not None:
            self._file.close()

    def remove_files(self) -> None:
        if self.filename and os.path.isfile(self.filename):
            os.remove(self.filename)

    def is_scope_enabled(self, scope: str, level: Optional[str] = None) -> bool:
        return (
            level is None or self.levels[level] <= self.max_level
        ) and super().is_scope_enabled(scope)

    def activate_trace(self, scope: str, **hints: Any) -> Optional[TraceCallback]:
        level: str = hints.get('level', 'DEBUG')
        if not self.is_scope_enabled(scope, level):
            return None

        def trace_callback(*value: Any) -> None:
            prefix = self.format_str.format(
                level=level, ts=self.sim.now, ts_unit=self.ts_unit, scope=scope
            )
            print(prefix, *value, file=self.file)

        return trace_callback

    def trace_exception(self) -> None:
        tb_lines = traceback.format_exception(*sys.exc_info())
        print(
            self.format_str.format(
                level='ERROR', ts=self.sim.now, ts_unit=self.ts_unit, scope='Exception'
            ),
            tb_lines[-1],
            '\n',
            *tb_lines,
            file=self.file,
        )


class VCDTracer(Tracer):
    """Value Change Dump tracer.

    Simulation time restarts from zero with every replica, while VCD time
    must not go backwards; replicas are therefore laid out one after another
    in the dump.

    """

    name = 'vcd'

    def open(self) -> None:
        dump_filename: str = self.sim.config.setdefault('sim.vcd.dump_file', 'sim.vcd')
        if 'sim.vcd.timescale' in self.sim.config:
            mag, unit = parse_time(self.sim.config['sim.vcd.timescale'])
        else:
            mag, unit = self.sim.timescale
        mag_int = int(mag)
        if mag_int != mag:
            raise ValueError(f'VCD timescale magnitude must be an integer, got {mag}')
        vcd_timescale = mag_int, unit
        self.scale_factor = scale_time(self.sim.timescale, vcd_timescale)
        check_values: bool = self.sim.config.setdefault('sim.vcd.check_values', True)
        self.dump_file = open(dump_filename, 'w')
        self.vcd = VCDWriter(
            self.dump_file, timescale=vcd_timescale, check_values=check_values
        )
        self._run_offset = 0

    def vcd_now(self) -> float:
        return (self._run_offset + self.sim.now) * self.scale_factor

    def end_run(self) -> None:
        self._run_offset += self.sim.now

    def flush(self) -> None:
        self.dump_file.flush()

    def _close(self) -> None:
        self.vcd.close(self.vcd_now())
        self.dump_file.close()

    def remove_files(self) -> None:
        if os.path.isfile(self.dump_file.name):
            os.remove(self.dump_file.name)

    def activate_trace(self, scope: str, **hints: Any) -> Optional[TraceCallback]:
        assert self.enabled
        var_type = hints['var_type']
        kwargs = {k: hints[k] for k in ['size', 'init', 'ident'] if k in hints}

        if '.' in scope:
            parent_scope, name = scope.rsplit('.', 1)
        else:
            parent_scope, name = 'sim', scope
        var = self.vcd.register_var(parent_scope, name, var_type, **kwargs)

        if var_type == 'event':

            def trace_callback(*value: Any) -> None:
                self.vcd.change(var, self.vcd_now(), True)

        elif isinstance(var.size, tuple):

            def trace_callback(*value: Any) -> None:
                self.vcd.change(var, self.vcd_now(), value)

        else:

            def trace_callback(*value: Any) -> None:
                self.vcd.change(var, self.vcd_now(), value[0])

        return trace_callback


class SQLiteTracer(Tracer):

    name = 'db'

    def open(self) -> None:
        self.filename: str = self.sim.config.setdefault('sim.db.file', 'sim.sqlite')
        self.trace_table: str = self.sim.config.setdefault(
            'sim.db.trace_table', 'trace'
        )
        self.remove_files()
        self.db = sqlite3.connect(self.filename)
        self._is_trace_table_created = False

    def _create_trace_table(self) -> None:
        if not self._is_trace_table_created:
            self.db.execute(
                f'CREATE TABLE {self.trace_table} ('
                f'timestamp INTEGER, '
                f'run INTEGER, '
                f'scope TEXT, '
                f'value)'
            )
            self._is_trace_table_created = True

    def flush(self) -> None:
        self.db.commit()

    def _close(self) -> None:
        self.db.commit()
        self.db.close()

    def remove_files(self) -> None:
        if self.filename != ':memory:':
            for filename in [self.filename, f'{self.filename}-journal']:
                if os.path.exists(filename):
                    os.remove(filename)

    def activate_trace(self, scope: str, **hints: Any) -> Optional[TraceCallback]:
        assert self.enabled
        self._create_trace_table()
        insert_sql = (
            f'INSERT INTO {self.trace_table} (timestamp, run, scope, value) '
            f'VALUES (?, ?, ?, ?)'
        )

        def trace_callback(value: Any) -> None:
            self.db.execute(insert_sql, (self.sim.now, self.sim.act_runs, scope, value))

        return trace_callback


class EventTrace:
    """Trace probe recording each firing of the events it is attached to.

    :param str scope: Scope of the trace.
    :param trace_function: Function from :meth:`TraceManager.get_trace_function`.
    :param value:
        Optional function of the fired event giving the traced value. By
        default the event's name is traced.

    """

    def __init__(
        self,
        scope: str,
        trace_function: TraceCallback,
        value: Optional[Callable[['Event'], Any]] = None,
    ) -> None:
        self.scope = scope
        self.trace_function = trace_function
        self.value = value

    def record(self, event: 'Event') -> None:
        if self.value is None:
            self.trace_function(event.name)
        else:
            self.trace_function(self.value(event))

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(scope={self.scope!r})'


class TraceManager:
    def __init__(self, sim: 'Simulation') -> None:
        self.tracers: List[Tracer] = []
        try:
            self.log_tracer = LogTracer(sim)
            self.tracers.append(self.log_tracer)
            self.vcd_tracer = VCDTracer(sim)
            self.tracers.append(self.vcd_tracer)
            self.sqlite_tracer = SQLiteTracer(sim)
            self.tracers.append(self.sqlite_tracer)
        except BaseException:
            self.close()
            raise

    def flush(self) -> None:
        """Flush all managed tracers instances.

        The effect of flushing is tracer-dependent.

        """
        for tracer in self.tracers:
            if tracer.enabled:
                tracer.flush()

    def end_run(self) -> None:
        for tracer in self.tracers:
            if tracer.enabled:
                tracer.end_run()

    def close(self) -> None:
        for tracer in self.tracers:
            tracer.close()
            if tracer.enabled and not tracer.persist:
                tracer.remove_files()

    def get_trace_function(self, scope: str, **hints: Any) -> TraceCallback:
        callbacks = []
        for tracer in self.tracers:
            if tracer.name in hints and tracer.is_scope_enabled(scope):
                callback = tracer.activate_trace(scope, **hints[tracer.name])
                if callback:
                    callbacks.append(callback)

        def trace_function(*value: Any) -> None:
            for callback in callbacks:
                callback(*value)

        return trace_function

    def event_trace(
        self,
        scope: str,
        value: Optional[Callable[['Event'], Any]] = None,
        **hints: Any,
    ) -> EventTrace:
        """Create a trace probe for events, see :class:`EventTrace`."""
        return EventTrace(scope, self.get_trace_function(scope, **hints), value)

    def trace_exception(self) -> None:
        for tracer in self.tracers:
            if tracer.enabled:
                tracer.trace_exception()
