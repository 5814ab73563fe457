"""
Parameter sweeps: running a model over a grid of parameter values and collecting a table of results.
"""
import itertools
import logging
import math
from dataclasses import dataclass
from functools import cached_property
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from epiflow import derived
from epiflow.equilibrium import EquilibriumResult, find_equilibria
from epiflow.exceptions import EpiflowError
from epiflow.model import CompartmentalModel, Parameters
from epiflow.params import ParameterSet
from epiflow.reproduction import get_r0_value
from epiflow.utils.parallel import run_parallel_tasks
from epiflow.utils.timer import Timer

logger = logging.getLogger(__name__)

OutputFunction = Callable[[CompartmentalModel, ParameterSet], Dict[str, float]]
Output = Union[str, OutputFunction]

ERROR_COLUMN = "error"


@dataclass(frozen=True)
class Sweep:
    """
    A sequence of values to sweep a single parameter over.
    """

    parameter: str
    values: Tuple[float, ...]

    def __post_init__(self):
        values = tuple(float(v) for v in self.values)
        if not values:
            raise ValueError(f"Sweep over {self.parameter} has no values.")
        if not all(math.isfinite(v) for v in values):
            raise ValueError(f"Sweep over {self.parameter} has non-finite values.")

        object.__setattr__(self, "values", values)

    def __len__(self):
        return len(self.values)


def linear_sweep(parameter: str, start: float, stop: float, num: int) -> Sweep:
    """
    Returns a sweep over evenly spaced values from start to stop, inclusive.
    """
    return Sweep(parameter, tuple(np.linspace(start, stop, num)))


def log_sweep(parameter: str, start: float, stop: float, num: int) -> Sweep:
    """
    Returns a sweep over values evenly spaced on a log scale from start to stop, inclusive,
    eg. a waning rate from 1e-4 to 1e2.
    """
    if start <= 0 or stop <= 0:
        raise ValueError(f"Log sweep over {parameter} needs positive bounds, got {start} and {stop}")

    return Sweep(parameter, tuple(np.logspace(np.log10(start), np.log10(stop), num)))


class ScenarioCell:
    """
    A single combination of parameter values in a sweep.
    The equilibria are only found once per cell, no matter how many outputs use them.
    """

    def __init__(self, model: CompartmentalModel, parameters: ParameterSet, population: float):
        self.model = model
        self.parameters = parameters
        self.population = population

    @cached_property
    def equilibria(self) -> EquilibriumResult:
        return find_equilibria(self.model, self.parameters, self.population)


def _get_endemic_prevalence(cell: ScenarioCell) -> float:
    result = cell.equilibria
    if not result.has_endemic:
        return 0.0

    endemic = result.endemic
    return sum(endemic[n] for n in cell.model.infectious_compartments) / endemic.total


def _get_endemic_susceptible(cell: ScenarioCell) -> float:
    """The susceptible fraction at equilibrium, which is everyone if the infection dies out."""
    result = cell.equilibria
    if not result.has_endemic:
        return 1.0

    susceptible_names = {f.source.name for f in cell.model.get_flows() if f.transmission_mode}
    endemic = result.endemic
    susceptible = sum(endemic[n] for n in susceptible_names)
    return susceptible / endemic.total


def _get_equilibrium_population(cell: ScenarioCell) -> float:
    """The size of the population at equilibrium, relative to the disease-free population."""
    result = cell.equilibria
    if not result.has_endemic:
        return 1.0

    return result.endemic.total / result.disease_free.total


QUANTITIES = {
    "r0": lambda cell: get_r0_value(cell.model, cell.parameters),
    "oscillation_period": lambda cell: derived.oscillation_period(cell.model, cell.parameters).value,
    "linearised_period": lambda cell: derived.linearised_period(
        cell.model, cell.parameters, cell.population
    ).value,
    "age_at_infection": lambda cell: derived.average_age_at_infection(
        cell.model, cell.parameters
    ).value,
    "endemic_prevalence": _get_endemic_prevalence,
    "endemic_susceptible": _get_endemic_susceptible,
    "equilibrium_population": _get_equilibrium_population,
    "vaccination_coverage": lambda cell: derived.critical_vaccination_coverage(
        cell.model, cell.parameters
    ).value,
}


def run_scenario_cell(
    model: CompartmentalModel,
    parameters: ParameterSet,
    swept_values: Dict[str, float],
    outputs: Sequence[Output],
    population: float,
) -> Dict[str, Any]:
    """
    Calculates the outputs for a single combination of swept parameter values.
    Outputs which fail with an epiflow error are recorded as NaN, and the errors are
    recorded in the row's "error" column.
    """
    row = dict(swept_values)
    cell = ScenarioCell(model, parameters.updated(swept_values), population)
    errors = []
    for output in outputs:
        if isinstance(output, str):
            try:
                row[output] = float(QUANTITIES[output](cell))
            except EpiflowError as e:
                row[output] = math.nan
                errors.append(f"{output}: {e}")
        else:
            name = getattr(output, "__name__", repr(output))
            try:
                row.update(output(model, cell.parameters))
            except EpiflowError as e:
                errors.append(f"{name}: {e}")

    if errors:
        logger.debug("Scenario %s had errors: %s", swept_values, errors)

    row[ERROR_COLUMN] = "; ".join(errors) or None
    return row


class ScenarioTable:
    """
    The results of a parameter sweep: one row per combination of swept values, in sweep order.
    Each row maps the swept parameters, then the outputs, to their values, followed by an "error" column.

    Attributes:
        rows: The rows of the table.
        parameter_names: The names of the swept parameters.
        aborted: Whether the sweep was aborted before every combination was run.

    """

    def __init__(self, rows: List[Dict[str, Any]], parameter_names: List[str], aborted: bool = False):
        self.parameter_names = list(parameter_names)
        self.aborted = aborted
        # Outputs that failed for some rows are recorded as NaN in those rows.
        columns = []
        for row in rows:
            columns += [k for k in row.keys() if k not in columns and k != ERROR_COLUMN]

        self.columns = columns + [ERROR_COLUMN]
        self.rows = [{c: row.get(c, math.nan) for c in self.columns} for row in rows]

    @property
    def output_names(self) -> List[str]:
        return [c for c in self.columns if c not in self.parameter_names and c != ERROR_COLUMN]

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter(self.rows)

    def __getitem__(self, idx: int) -> Dict[str, Any]:
        return self.rows[idx]

    def get_column(self, name: str) -> np.ndarray:
        return np.array([row[name] for row in self.rows])

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(self.rows, columns=self.columns)

    def __repr__(self):
        status = " (aborted)" if self.aborted else ""
        return f"<ScenarioTable {len(self)} rows of [{', '.join(self.columns)}]{status}>"


def run_scenarios(
    model: CompartmentalModel,
    parameters: Parameters,
    sweeps: Sequence[Sweep],
    outputs: Sequence[Output],
    parallel: bool = False,
    max_workers: Optional[int] = None,
    abort: Optional[Any] = None,
    population: float = 1.0,
) -> ScenarioTable:
    """
    Runs the model for every combination of the swept parameter values (the Cartesian product of
    the sweeps, with the first sweep varying slowest) and calculates the requested outputs for each.
    The base model and parameters are never modified.

    Args:
        model: The model to run.
        parameters: The base parameter values, which the swept values override.
        sweeps: The parameters to sweep over.
        outputs: The outputs to calculate for each combination, either names from ``QUANTITIES``
            or functions of (model, parameters) which return a dict of named values.
            Functions must be picklable to run in parallel.
        parallel (optional): Whether to run the combinations in a pool of worker processes.
        max_workers (optional): The number of worker processes, defaults to one less than the CPU count.
        abort (optional): A signal, such as ``multiprocessing.Event``, which cancels all combinations
            which have not yet started when it is set.
        population (optional): The total population for frequency dependent equilibria.

    Returns:
        ScenarioTable: One row per combination, in sweep order.

    """
    if not isinstance(parameters, ParameterSet):
        parameters = ParameterSet(parameters)

    unknown = [o for o in outputs if isinstance(o, str) and o not in QUANTITIES]
    if unknown:
        msg = f"Unknown outputs: {', '.join(unknown)}, choose from: {', '.join(QUANTITIES)}"
        raise ValueError(msg)

    names = [s.parameter for s in sweeps]
    if len(set(names)) != len(names):
        raise ValueError(f"Each parameter can only be swept once: {names}")

    # Check that every parameter the model refers to has a value before any cells are run.
    parameters.updated({n: s.values[0] for n, s in zip(names, sweeps)}).check_names(
        model.parameter_names
    )
    combinations = itertools.product(*[s.values for s in sweeps])
    arg_list = [
        (model, parameters, dict(zip(names, values)), list(outputs), population)
        for values in combinations
    ]
    with Timer(f"Running {len(arg_list)} scenarios"):
        if parallel:
            results = run_parallel_tasks(run_scenario_cell, arg_list, max_workers, abort)
        else:
            results = []
            for args in arg_list:
                if abort is not None and abort.is_set():
                    results.append(None)
                else:
                    results.append(run_scenario_cell(*args))

    rows = [r for r in results if r is not None]
    is_aborted = len(rows) < len(results)
    if is_aborted:
        logger.warning("Sweep aborted after %s of %s scenarios.", len(rows), len(results))

    return ScenarioTable(rows, names, aborted=is_aborted)
