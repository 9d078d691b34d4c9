import os

import pytest

from desim.randomvar import RandomVar
from desim.simulation import Simulation


@pytest.fixture(autouse=True)
def default_generator():
    """Every test starts from the standard generator seeded with 1."""
    RandomVar.restore_generator()
    RandomVar.init(1)
    yield RandomVar.default_generator()
    RandomVar.restore_generator()
    Simulation.clear_instance()


@pytest.fixture
def sim():
    """Fixture providing a Simulation for tests with `sim` argument."""
    sim = Simulation({})
    yield sim
    sim.close()


@pytest.fixture
def cleandir(tmpdir):
    origin = os.getcwd()
    tmpdir.chdir()
    yield None
    os.chdir(origin)
