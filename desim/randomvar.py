"""Pseudo-random numbers and random variables.

:class:`RandomGen` is the Park-Miller "minimal standard" linear congruential
generator. Random variables (:class:`RandomVar` subclasses) draw uniform
numbers in (0, 1) from a generator and shape them into a distribution.

Every random variable is bound to a generator when it is constructed. By
default this is the process-wide standard generator, seeded with 1. A
different default may be installed with :meth:`RandomVar.change_generator()`
so that all random variables constructed afterwards share it, and the
standard generator is reinstated with :meth:`RandomVar.restore_generator()`.
Given the same seed and the same construction order of random variables, two
simulations produce the same sample streams.

Random variables may also be built from configuration text with
:func:`parse_var`, e.g. ``parse_var('exp(10)')``.

"""
import math
import re
from typing import Callable, Dict, List, Optional, Sequence, Type, TypeVar, Union


class RandomVarError(Exception):
    """Base class for random variable errors."""


class ParseError(RandomVarError, ValueError):
    """Malformed random variable parameters."""


class FileOpenError(RandomVarError):
    """The values file of a :class:`DeterministicVar` cannot be opened."""


class FileTruncatedError(RandomVarError):
    """The values file of a :class:`DeterministicVar` holds no values."""


class MaxUnsupportedError(RandomVarError):
    """The distribution has no finite bound on the requested side."""


class RandomGen:
    """Park-Miller minimal standard pseudo-random generator.

    Produces integers in ``[1, M - 1]`` with ``M = 2**31 - 1`` using Schrage's
    method to avoid overflow of ``A * x``.

    :param int seed: Initial seed; must be in ``[1, M - 1]``.

    """

    A = 16807
    M = 2147483647
    Q = M // A  # 127773
    R = M % A  # 2836

    def __init__(self, seed: int) -> None:
        self.init(seed)

    def init(self, seed: int) -> None:
        """Restart the sequence from `seed`."""
        self.seed = seed
        self._xn = seed

    @property
    def current(self) -> int:
        """The last number produced (the seed before the first sample)."""
        return self._xn

    def sample(self) -> int:
        """Advance the generator and return the new number."""
        xq, xr = divmod(self._xn, self.Q)
        xn = self.A * xr - self.R * xq
        if xn < 0:
            xn += self.M
        self._xn = xn
        return xn

    def module(self) -> int:
        """Modulus of the generator."""
        return self.M

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(seed={self.seed} current={self._xn})'


_VarType = TypeVar('_VarType', bound='RandomVar')

_registry: Dict[str, Type['RandomVar']] = {}


def register_var(name: str) -> Callable[[Type[_VarType]], Type[_VarType]]:
    """Class decorator registering a random variable type for :func:`parse_var`."""

    def decorator(cls: Type[_VarType]) -> Type[_VarType]:
        _registry[name] = cls
        return cls

    return decorator


def _parse_floats(cls_name: str, params: Sequence[str], count: int) -> List[float]:
    if len(params) != count:
        raise ParseError(
            f'{cls_name} takes {count} parameter(s), got {len(params)}'
        )
    try:
        return [float(param) for param in params]
    except ValueError:
        raise ParseError(f'{cls_name}: non-numeric parameter in {list(params)}')


class RandomVar:
    """Base class of random variables.

    :param RandomGen gen:
        Generator to draw from. Defaults to the generator currently installed
        as the default.

    """

    _std_gen = RandomGen(1)
    _default_gen = _std_gen

    #: Number of parameters taken by :meth:`create_instance()`.
    num_params = 0

    def __init__(self, gen: Optional[RandomGen] = None) -> None:
        self.gen = RandomVar._default_gen if gen is None else gen

    @classmethod
    def init(cls, seed: int) -> None:
        """Reseed the current default generator."""
        RandomVar._default_gen.init(seed)

    @classmethod
    def change_generator(cls, gen: RandomGen) -> RandomGen:
        """Install `gen` as the default generator; return the previous one."""
        old = RandomVar._default_gen
        RandomVar._default_gen = gen
        return old

    @classmethod
    def restore_generator(cls) -> None:
        """Reinstate the standard generator as the default."""
        RandomVar._default_gen = RandomVar._std_gen

    @classmethod
    def default_generator(cls) -> RandomGen:
        return RandomVar._default_gen

    @classmethod
    def create_instance(cls: Type[_VarType], params: Sequence[str]) -> _VarType:
        """Build an instance from a sequence of parameter strings.

        :raises ParseError: On a wrong number of parameters or non-numeric
            parameters.

        """
        return cls(*_parse_floats(cls.__name__, params, cls.num_params))

    def uniform(self) -> float:
        """Draw a uniform number in (0, 1) from the generator."""
        return self.gen.sample() / self.gen.module()

    def get(self) -> float:
        raise NotImplementedError()  # pragma: no cover

    def minimum(self) -> float:
        raise MaxUnsupportedError(f'{type(self).__name__} has no finite minimum')

    def maximum(self) -> float:
        raise MaxUnsupportedError(f'{type(self).__name__} has no finite maximum')


@register_var('delta')
class DeltaVar(RandomVar):
    """Constant "random" variable: always returns `value`."""

    num_params = 1

    def __init__(self, value: float, gen: Optional[RandomGen] = None) -> None:
        super().__init__(gen)
        self.value = value

    def get(self) -> float:
        return self.value

    def minimum(self) -> float:
        return self.value

    def maximum(self) -> float:
        return self.value


@register_var('unif')
class UniformVar(RandomVar):
    """Uniform distribution between `low` and `high`."""

    num_params = 2

    def __init__(
        self, low: float, high: float, gen: Optional[RandomGen] = None
    ) -> None:
        super().__init__(gen)
        self.low = low
        self.high = high

    def get(self) -> float:
        return self.low + self.uniform() * (self.high - self.low)

    def minimum(self) -> float:
        return self.low

    def maximum(self) -> float:
        return self.high


@register_var('exp')
class ExponentialVar(RandomVar):
    """Exponential distribution with the given `mean`."""

    num_params = 1

    def __init__(self, mean: float, gen: Optional[RandomGen] = None) -> None:
        super().__init__(gen)
        self.mean = mean

    def get(self) -> float:
        return -math.log(self.uniform()) * self.mean

    def minimum(self) -> float:
        return 0.0


@register_var('pareto')
class ParetoVar(RandomVar):
    """Pareto distribution with scale `mu` and shape `order`."""

    num_params = 2

    def __init__(
        self, mu: float, order: float, gen: Optional[RandomGen] = None
    ) -> None:
        super().__init__(gen)
        self.mu = mu
        self.order = order

    def get(self) -> float:
        return self.mu * self.uniform() ** (-1 / self.order)


@register_var('normal')
class NormalVar(RandomVar):
    """Normal distribution, sampled with Marsaglia's polar method.

    Each polar step yields two independent deviates; the second one is
    returned by the following call.

    """

    num_params = 2

    def __init__(
        self, mu: float, sigma: float, gen: Optional[RandomGen] = None
    ) -> None:
        super().__init__(gen)
        self.mu = mu
        self.sigma = sigma
        self._spare: Optional[float] = None

    def get(self) -> float:
        if self._spare is not None:
            value, self._spare = self._spare, None
            return value

        while True:
            t1 = 2 * self.uniform() - 1
            t2 = 2 * self.uniform() - 1
            r = t1 * t1 + t2 * t2
            if 0 < r < 1:
                break
        r = math.sqrt(-2 * math.log(r) / r) * self.sigma
        self._spare = self.mu + t1 * r
        return self.mu + t2 * r


@register_var('poisson')
class PoissonVar(RandomVar):
    """Poisson distribution with mean `lam`, sampled by inversion."""

    num_params = 1

    #: Upper limit of the inversion search.
    CUTOFF = 10000

    def __init__(self, lam: float, gen: Optional[RandomGen] = None) -> None:
        super().__init__(gen)
        self.lam = lam

    def get(self) -> float:
        u = self.uniform()
        f = math.exp(-self.lam)
        s = f
        for i in range(1, self.CUTOFF):
            if u < s:
                return float(i - 1)
            f = f * self.lam / i
            s += f
        return float(self.CUTOFF)

    def minimum(self) -> float:
        return 0.0


@register_var('det')
class DeterministicVar(RandomVar):
    """Replays a fixed sequence of values, starting over after the last one.

    :param values:
        Sequence of numbers, or the name of a text file of
        whitespace-separated numbers.

    :raises FileOpenError: If the file cannot be read.
    :raises FileTruncatedError: If the file holds no values.
    :raises ParseError:
        If the file holds non-numeric text, or if `values` is an empty
        sequence.

    """

    num_params = 1

    def __init__(
        self, values: Union[str, Sequence[float]], gen: Optional[RandomGen] = None
    ) -> None:
        super().__init__(gen)
        if isinstance(values, str):
            values = self._read_values(values)
        self.values = list(values)
        if not self.values:
            raise ParseError('DeterministicVar requires at least one value')
        self._count = 0

    @staticmethod
    def _read_values(filename: str) -> List[float]:
        try:
            with open(filename) as values_file:
                tokens = values_file.read().split()
        except OSError as e:
            raise FileOpenError(f'Unable to open values file "{filename}"') from e
        if not tokens:
            raise FileTruncatedError(f'No values in file "{filename}"')
        try:
            return [float(token) for token in tokens]
        except ValueError as e:
            raise ParseError(f'Malformed values file "{filename}": {e}') from e

    @classmethod
    def create_instance(cls, params: Sequence[str]) -> 'DeterministicVar':
        if len(params) != 1:
            raise ParseError(
                f'{cls.__name__} takes a file name, got {len(params)} parameters'
            )
        return cls(params[0])

    def get(self) -> float:
        if self._count >= len(self.values):
            self._count = 0
        value = self.values[self._count]
        self._count += 1
        return value

    def minimum(self) -> float:
        return min(self.values)

    def maximum(self) -> float:
        return max(self.values)


_var_re = re.compile(r'^\s*(?P<name>\w+)\s*\((?P<params>.*)\)\s*$')


def parse_var(text: str) -> RandomVar:
    """Build a random variable from text like ``'unif(1, 5)'``.

    A bare number builds a :class:`DeltaVar`. Recognized names are those
    registered with :func:`register_var`: ``delta``, ``unif``, ``exp``,
    ``pareto``, ``normal``, ``poisson`` and ``det``.

    :raises ParseError: For unknown names or malformed text.

    """
    try:
        return DeltaVar(float(text))
    except ValueError:
        pass
    match = _var_re.match(text)
    if not match:
        raise ParseError(f'Malformed random variable "{text}"')
    name = match.group('name')
    if name not in _registry:
        raise ParseError(f'Unknown random variable "{name}"')
    params_str = match.group('params').strip()
    params = [p.strip() for p in params_str.split(',')] if params_str else []
    return _registry[name].create_instance(params)


def is_var_text(text: str) -> bool:
    """Whether `text` names a registered random variable, e.g. ``'exp(5)'``.

    Only the form and the name are checked; the parameters are not.

    """
    match = _var_re.match(text)
    return match is not None and match.group('name') in _registry
