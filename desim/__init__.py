"""Event-oriented discrete event simulation (DES) kernel.

The `desim` package provides the pieces needed to build, run and analyze
event-driven simulation models: a virtual clock counting integer ticks, a
priority queue of pending events, reproducible random variables, replicated
runs and statistics summarized across replicas.

Events and entities
===================

Model behavior is expressed with :class:`~desim.event.Event` objects. An
event is posted at a future tick; when the clock reaches that tick the engine
calls the event's handler, which updates the model state and typically posts
further events. Handlers never block: the passage of time is expressed only
by posting events at later ticks.

Long-lived actors of the model are :class:`~desim.entity.Entity` subclasses.
Entities own their events and take part in the replication lifecycle through
their `new_run()` and `end_run()` hooks.

Random variables
================

:mod:`desim.randomvar` provides the Park-Miller generator and a family of
distributions drawing from it. Random variables may be built from
configuration text with :func:`~desim.randomvar.parse_var()`.

Statistics
==========

A :class:`~desim.stats.Stat` attached to an event is probed after each
dispatch of that event. Every statistic condenses a replica into one value,
and the values of all replicas are summarized with their mean and confidence
interval at the end of the simulation.

Configuration
=============

A single, flat configuration dictionary with dot-separated keys, e.g.
"mymodel.server.rate", captures all configuration for the simulation. The
:mod:`desim.config` module provides functionality useful for managing
configuration dictionaries.

Simulation
==========

A model is run with :meth:`Simulation.run() <desim.simulation.Simulation.run>`
or, taking care of configuration, seeding, tracing and result collection,
with :func:`~desim.simulation.simulate()`. The
:func:`~desim.simulation.simulate_factors()` function runs a multi-factor set
of simulations in parallel processes.

Monitoring
==========

Log messages, VCD waveforms and SQLite trace tables are produced by the
tracers of :mod:`desim.tracer`.

"""

__all__ = ()
