"""Tools for managing simulation configurations.

Each simulation takes a configuration dictionary that defines configuration
values for both the engine (`desim`) and the user model. The configuration
dictionary is flat, but the keys use a dotted notation, similar to
:class:`~desim.entity.Entity` trace scopes, that allows for different
namespaces to exist within the [flat] configuration dictionary.

Several configuration key/values are used by desim itself. These
configuration keys are prefixed with 'sim.'; for example: 'sim.duration' and
'sim.seed'. The engine fills in missing keys with their defaults, so the
dictionary holds the effective configuration once a simulation has been
constructed.

Models may define their own configuration key/values, but should avoid using
the 'sim.' prefix. Model parameters that are random variables are best kept
as text, e.g. ``'exp(20)'``, and turned into
:class:`~desim.randomvar.RandomVar` instances with :func:`get_var`.

Most functions in this module are provided to support building user interfaces
for configuring a model.

"""
from collections.abc import Mapping
from copy import deepcopy
from itertools import product
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import yaml

from .randomvar import RandomVar, RandomVarError, is_var_text, parse_var

ConfigDict = Dict[str, Any]
ConfigFactor = Tuple[Sequence[str], Sequence[Sequence[Any]]]


class ConfigError(Exception):
    """Exception raised for a variety of configuration errors."""


def load_config(filename: str) -> ConfigDict:
    """Load a configuration dictionary from a YAML file.

    The document must be a single mapping with string keys, e.g.::

        sim.duration: 100 s
        sim.runs: 10
        model.arrival: exp(5)

    :param str filename: Path of the YAML file.
    :returns: New configuration dictionary.
    :raises `desim.config.ConfigError`: If the file is not a flat mapping.

    """
    with open(filename) as config_file:
        try:
            config = yaml.safe_load(config_file)
        except yaml.YAMLError as e:
            raise ConfigError(f'Malformed config file "{filename}": {e}') from e
    if config is None:
        return {}
    if not isinstance(config, Mapping):
        raise ConfigError(f'Config file "{filename}" is not a mapping')
    for key in config:
        if not isinstance(key, str):
            raise ConfigError(f'Config file "{filename}" has non-string key {key!r}')
    return dict(config)


def apply_user_overrides(
    config: ConfigDict, overrides: Sequence[Tuple[str, str]]
) -> None:
    """Apply user-provided overrides to a configuration.

    Each override is a `(key, text)` pair, typically taken from a command
    line. The key must already exist in `config`; it is resolved with
    :func:`fuzzy_lookup()`. The text is interpreted according to the
    existing (default) value:

     - Random variable text such as ``'exp(5)'`` must itself parse with
       :func:`~desim.randomvar.parse_var`, and is stored as text. An
       existing :class:`~desim.randomvar.RandomVar` is replaced by the
       parsed random variable.
     - Any other string value takes the text verbatim.
     - Other values are parsed as a YAML scalar or flow sequence/mapping
       and must match the type of the existing value. Integers are accepted
       where a float is expected.

    All overrides are validated before any of them is applied, so a failure
    leaves `config` untouched.

    :param dict config: Configuration dictionary to modify.
    :param list overrides: List of user-provided (key, text) tuples.
    :raises `desim.config.ConfigError`: For unknown keys or invalid values.

    """
    updates = []
    for user_key, text in overrides:
        key, current_value = fuzzy_lookup(config, user_key)
        updates.append((key, _parse_override(key, current_value, text)))
    config.update(updates)


def factorial_config(
    base_config: ConfigDict,
    factors: Sequence[ConfigFactor],
    special_key: Optional[str] = None,
) -> Iterator[ConfigDict]:
    """Generate configurations from base config and config factors.

    :param dict base_config:
        Configuration dictionary that the generated configuration dictionaries
        are based on. This dict is not modified; generated config dicts are
        created with :func:`copy.deepcopy()`.
    :param list factors:
        Sequence of one or more configuration factors. Each configuration
        factor is a 2-tuple of keys and values lists.
    :param str special_key:
        When specified, a key/value will be inserted into the generated
        configuration dicts that identifies the "special" (unique) key/value
        combinations of the specified `factors` used in the config dict.
    :yields:
        Configuration dictionaries with the cartesian product of the provided
        `factors` applied. I.e. each yielded config dict will have a unique
        combination of the `factors`.

    """
    unrolled_factors = []
    for keys, values_list in factors:
        unrolled_factors.append([(keys, values) for values in values_list])

    for keys_values_lists in product(*unrolled_factors):
        config = deepcopy(base_config)
        special: List[List[Any]] = []
        if special_key:
            config[special_key] = special
        for keys, values in keys_values_lists:
            for key, value in zip(keys, values):
                config[key] = value
                if special_key:
                    special.append([key, value])
        yield config


def fuzzy_lookup(config: ConfigDict, fuzzy_key: str) -> Tuple[str, Any]:
    """Lookup a config key/value using a partially specified (fuzzy) key.

    A key that is in `config` as given is returned directly. Otherwise the
    `fuzzy_key` is split on dots and matched against the trailing components
    of each key, so ``'arrival'`` and ``'client.arrival'`` both find
    ``'model.client.arrival'``. Components are matched whole: ``'rival'``
    finds nothing.

    :param dict config: Configuration dict in which to lookup `fuzzy_key`.
    :param str fuzzy_key: Partially specified key to lookup in `config`.
    :returns:
        `(key, value)` tuple. The returned key is the regular, fully-qualified
        key name, not the provided `fuzzy_key`.
    :raises `desim.config.ConfigError`:
        If `fuzzy_key` matches no key or more than one key.

    """
    if fuzzy_key in config:
        return fuzzy_key, config[fuzzy_key]
    parts = fuzzy_key.strip('.').split('.')
    matches = [key for key in config if key.split('.')[-len(parts) :] == parts]
    if not matches:
        raise ConfigError(f'Invalid config key "{fuzzy_key}"')
    if len(matches) > 1:
        raise ConfigError(
            f'Ambiguous config key "{fuzzy_key}"; possible matches: '
            f'{", ".join(matches)}'
        )
    return matches[0], config[matches[0]]


def get_var(config: ConfigDict, key: str, default: Any) -> RandomVar:
    """Build the random variable configured at `key`.

    The configuration value is random variable text as accepted by
    :func:`~desim.randomvar.parse_var`, e.g. ``'exp(20)'`` or a bare number.
    A missing key is set to `default`, so the configuration records the
    value that was used.

    :param dict config: Configuration dictionary.
    :param str key: Fully-qualified configuration key.
    :param default: Random variable text (or number) used when `key` is unset.
    :raises `desim.config.ConfigError`: If the text does not parse.

    """
    value = config.setdefault(key, default)
    if isinstance(value, RandomVar):
        return value
    try:
        return parse_var(str(value))
    except RandomVarError as e:
        raise ConfigError(f'Invalid random variable for "{key}": {e}') from e


def _parse_override(key: str, current_value: Any, text: str) -> Any:
    if isinstance(current_value, RandomVar) or (
        isinstance(current_value, str) and is_var_text(current_value)
    ):
        try:
            var = parse_var(text)
        except RandomVarError as e:
            raise ConfigError(f'Invalid random variable for "{key}": {e}') from e
        return var if isinstance(current_value, RandomVar) else text.strip()
    if isinstance(current_value, str):
        return text

    try:
        value = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f'Malformed value "{text}" for "{key}"') from e

    if current_value is None:
        return value
    if isinstance(current_value, bool):
        if isinstance(value, bool):
            return value
    elif isinstance(current_value, (int, float)):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if isinstance(current_value, float):
                return float(value)
            if isinstance(value, int):
                return value
    elif isinstance(current_value, (list, tuple)):
        if isinstance(value, list):
            return type(current_value)(value)
    elif isinstance(value, type(current_value)):
        return value
    raise ConfigError(
        f'Value "{text}" for "{key}" is not a {type(current_value).__name__}'
    )
