"""
Type definitions for simulation config files, which are written in YAML.

Example:
    A sweep over the waning rate of an SIRS model::

        model:
          builder: sirs
          options:
            demography: true
        parameters:
          beta: 2.0
          gamma: 0.5
          omega: 0.01
          mu: 0.0003
        initial:
          S: 0.999
          I: 0.001
        time:
          start: 0
          end: 100
          step: 1
        sweeps:
          - parameter: omega
            start: 0.0001
            stop: 100
            num: 25
            scale: log
        outputs:
          - r0
          - oscillation_period
          - endemic_prevalence

"""
import logging
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from epiflow.exceptions import ConfigError
from epiflow.model import CompartmentalModel
from epiflow.models import MODEL_BUILDERS
from epiflow.params import ParameterSet, TimeGrid
from epiflow.scenarios import QUANTITIES, Sweep, linear_sweep, log_sweep
from epiflow.solver import SolverType

logger = logging.getLogger(__name__)


class ConfigModel(BaseModel):
    """
    Base class for config models
    """

    # Config should be immutable, and nothing extra can be specified.
    model_config = ConfigDict(extra="forbid", frozen=True, str_strip_whitespace=True)


class ModelConfig(ConfigModel):
    """
    The model to run, either one of the canonical builders or a declarative definition.
    """

    builder: Optional[str] = None
    options: Dict[str, Any] = {}
    definition: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def check_model(self):
        if (self.builder is None) == (self.definition is None):
            raise ValueError("Specify exactly one of a model builder or a model definition")
        if self.builder is not None and self.builder not in MODEL_BUILDERS:
            builders = ", ".join(MODEL_BUILDERS.keys())
            raise ValueError(f"Unknown model builder {self.builder}, choose from: {builders}")
        if self.definition is not None and self.options:
            raise ValueError("Builder options cannot be used with a model definition")

        return self

    def build(self) -> CompartmentalModel:
        if self.builder is not None:
            return MODEL_BUILDERS[self.builder](**self.options)
        else:
            return CompartmentalModel.from_definition(self.definition)


class SolverConfig(ConfigModel):
    type: str = SolverType.RUNGE_KUTTA
    args: Dict[str, Any] = {}

    @field_validator("type")
    @classmethod
    def check_type(cls, value):
        if value not in SolverType.ALL:
            raise ValueError(f"Unknown solver {value}, choose from: {', '.join(SolverType.ALL)}")

        return value


class SweepConfig(ConfigModel):
    """
    A parameter sweep, given either as explicit values or as a linear or log grid.
    """

    parameter: str
    values: Optional[List[float]] = None
    start: Optional[float] = None
    stop: Optional[float] = None
    num: Optional[int] = None
    scale: Literal["linear", "log"] = "linear"

    @model_validator(mode="after")
    def check_sweep(self):
        grid = (self.start, self.stop, self.num)
        if self.values is not None:
            if any(v is not None for v in grid):
                raise ValueError(f"Sweep over {self.parameter} has both values and a grid")
        elif any(v is None for v in grid):
            raise ValueError(f"Sweep over {self.parameter} needs values, or a start, stop and num")
        elif self.num < 1:
            raise ValueError(f"Sweep over {self.parameter} needs at least one value")
        elif self.scale == "log" and (self.start <= 0 or self.stop <= 0):
            raise ValueError(f"Log sweep over {self.parameter} needs positive bounds")

        return self

    def to_sweep(self) -> Sweep:
        if self.values is not None:
            return Sweep(self.parameter, tuple(self.values))
        elif self.scale == "log":
            return log_sweep(self.parameter, self.start, self.stop, self.num)
        else:
            return linear_sweep(self.parameter, self.start, self.stop, self.num)


class SimulationConfig(ConfigModel):
    """
    A complete simulation: the model, its parameters and what to do with it.
    """

    description: str = ""
    model: ModelConfig
    parameters: Dict[str, float]
    initial: Dict[str, float] = {}
    time: Optional[TimeGrid] = None
    solver: SolverConfig = SolverConfig()
    population: float = 1.0
    sweeps: List[SweepConfig] = []
    outputs: List[str] = []

    @field_validator("outputs")
    @classmethod
    def check_outputs(cls, outputs):
        unknown = [o for o in outputs if o not in QUANTITIES]
        if unknown:
            msg = f"Unknown outputs: {', '.join(unknown)}, choose from: {', '.join(QUANTITIES)}"
            raise ValueError(msg)

        return outputs

    @field_validator("population")
    @classmethod
    def check_population(cls, population):
        if population <= 0:
            raise ValueError(f"Population must be positive, got {population}")

        return population

    def build_model(self) -> CompartmentalModel:
        return self.model.build()

    def get_parameters(self) -> ParameterSet:
        return ParameterSet(self.parameters)

    def get_sweeps(self) -> List[Sweep]:
        return [s.to_sweep() for s in self.sweeps]


def load_config(path: str) -> SimulationConfig:
    """
    Loads and validates a simulation config from a YAML file.
    """
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e

    return parse_config(data, source=path)


def parse_config(data: Any, source: str = "config") -> SimulationConfig:
    if not isinstance(data, dict):
        raise ConfigError(f"{source} must contain a mapping, got {type(data).__name__}")

    try:
        config = SimulationConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid {source}:\n{e}") from e

    logger.info("Loaded config from %s", source)
    return config
