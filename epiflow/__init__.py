"""
epiflow: a simulation engine for deterministic compartmental epidemic models.
"""
from .compartment import Compartment
from .derived import (
    DerivedQuantity,
    attack_rate,
    average_age_at_infection,
    basic_reproduction_number,
    critical_vaccination_coverage,
    final_epidemic_size,
    linearised_period,
    next_generation_matrix,
    oscillation_period,
)
from .equilibrium import (
    EquilibriumPoint,
    EquilibriumResult,
    find_equilibria,
    find_equilibrium_numerically,
)
from .exceptions import (
    ConfigError,
    DuplicateCompartment,
    EpiflowError,
    IntegrationDivergence,
    MalformedModel,
    UndefinedQuantity,
    UnknownReference,
    UnsupportedModelShape,
)
from .expressions import RateExpression
from .flows import TransmissionMode
from .model import CompartmentalModel
from .models import MODEL_BUILDERS
from .outputs import OutputRequests
from .params import ParameterSet, TimeGrid
from .scenarios import QUANTITIES, ScenarioTable, Sweep, linear_sweep, log_sweep, run_scenarios
from .shapes import ModelShape
from .solver import SolverType
from .trajectory import Trajectory, integrate
