"""Conversion between physical time strings and integer simulation ticks.

The engine clock counts integer ticks. The configured `sim.timescale` states
how much physical time one tick represents, e.g. ``'10 us'``.

"""
import re
from typing import Tuple, Union

Tick = int
TimeValue = Tuple[Union[int, float], str]

_unit_map = {
    's': 1e0,
    'ms': 1e3,
    'us': 1e6,
    'ns': 1e9,
    'ps': 1e12,
    'fs': 1e15,
}

_num_re = r'[-+]? (?: \d*\.\d+ | \d+\.?\d* ) (?: [eE] [-+]? \d+)?'

_time_re = re.compile(
    rf'(?P<num>{_num_re})? \s? (?P<unit> [fpnum]? s)? $',
    re.VERBOSE,
)


def parse_time(time_str: str, default_unit: str = None) -> TimeValue:
    """Parse a string containing a time magnitude and optional unit.

    :param str time_str: Time string to parse, e.g. ``'12 ms'``.
    :param str default_unit:
        Unit applied when `time_str` does not specify one.
    :returns:
        `(magnitude, unit)` tuple where magnitude is an int or float and unit
        is one of "s", "ms", "us", "ns", "ps", or "fs".
    :raises ValueError:
        If the string cannot be parsed, or has no unit and no `default_unit`
        was given.

    """
    match = _time_re.match(time_str)
    if not time_str or not match:
        raise ValueError(f'Invalid time string "{time_str}"')
    num_str = match.group('num')
    if num_str:
        try:
            num: Union[int, float] = int(num_str)
        except ValueError:
            num = float(num_str)
    else:
        num = 1

    unit = match.group('unit') or default_unit
    if not unit:
        raise ValueError(f'No unit specified in "{time_str}"')
    return num, unit


def scale_time(from_time: TimeValue, to_time: TimeValue) -> Union[int, float]:
    """Express `from_time` as a multiple of `to_time`.

    Integral results are returned as `int`.

    """
    from_t, from_u = from_time
    to_t, to_u = to_time
    scaled = (_unit_map[to_u] / _unit_map[from_u] * from_t) / to_t
    if scaled % 1.0 == 0.0:
        return int(scaled)
    return scaled


def to_ticks(value: Union[str, int, TimeValue], timescale: TimeValue) -> Tick:
    """Convert a duration to a whole number of ticks.

    `value` may be a time string, a `(magnitude, unit)` tuple, or an int which
    is taken to already be in ticks.

    :raises ValueError: If the duration is not a whole number of ticks.

    """
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        value = parse_time(value)
    ticks = scale_time(value, timescale)
    if not isinstance(ticks, int):
        raise ValueError(
            f'{value[0]} {value[1]} is not a whole number of '
            f'{timescale[0]} {timescale[1]} ticks'
        )
    return ticks
