# PyTest configuration file.
# See pytest fixtue docs: https://docs.pytest.org/en/latest/fixture.html
import pytest

from epiflow.params import ParameterSet


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: A test which runs long horizon integrations")


@pytest.fixture
def sir_params():
    return ParameterSet({"beta": 2.0, "gamma": 0.5})


@pytest.fixture
def demography_params():
    return ParameterSet({"beta": 2.0, "gamma": 0.5, "mu": 0.0003})
