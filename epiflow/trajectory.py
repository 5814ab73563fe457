"""
Integrating a model over time, and the trajectories that integration produces.
"""
import logging
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from epiflow.exceptions import IntegrationDivergence, MalformedModel, UndefinedQuantity
from epiflow.model import CompartmentalModel, Parameters
from epiflow.params import TimeGrid, as_time_array
from epiflow.solver import SolverType, solve_ode

logger = logging.getLogger(__name__)

InitialValues = Union[Mapping[str, float], Sequence[float], np.ndarray]
Times = Union[TimeGrid, Sequence[float], np.ndarray]


class Trajectory:
    """
    The compartment values of a model run, sampled at a sequence of times.
    A trajectory is read-only once it has been produced.

    Args:
        compartment_names: The names of the compartments, in the order of the value columns.
        times: The sample times.
        values: The compartment values, with one row per sample time.
        clamped (optional): Whether small negative values were clamped to zero, for each sample.
        divergence (optional): The divergence which ended the run early, if any.

    """

    def __init__(
        self,
        compartment_names: List[str],
        times: np.ndarray,
        values: np.ndarray,
        clamped: Optional[np.ndarray] = None,
        divergence: Optional[IntegrationDivergence] = None,
    ):
        times = np.array(times, dtype=float)
        values = np.array(values, dtype=float).reshape(len(times), len(compartment_names))
        if clamped is None:
            clamped = np.zeros(len(times), dtype=bool)
        else:
            clamped = np.array(clamped, dtype=bool)

        assert len(clamped) == len(times), "There must be one clamped flag per sample."
        for arr in (times, values, clamped):
            arr.flags.writeable = False

        self.compartment_names = list(compartment_names)
        self.times = times
        self.values = values
        self.clamped = clamped
        self.divergence = divergence
        self._idx_lookup = {name: idx for idx, name in enumerate(self.compartment_names)}

    @property
    def diverged(self) -> bool:
        return self.divergence is not None

    @property
    def num_clamped(self) -> int:
        """The number of samples where negative values were clamped to zero"""
        return int(self.clamped.sum())

    def __len__(self) -> int:
        return len(self.times)

    def __getitem__(self, name: str) -> np.ndarray:
        return self.get_series(name)

    def get_series(self, name: str) -> np.ndarray:
        """
        Returns the values of a single compartment at every sample time.
        """
        try:
            return self.values[:, self._idx_lookup[name]]
        except KeyError:
            raise KeyError(f"Compartment '{name}' is not in this trajectory.") from None

    def get_sample(self, idx: int) -> Dict[str, float]:
        """
        Returns a mapping of compartment name to value for a single sample.
        """
        return dict(zip(self.compartment_names, self.values[idx].tolist()))

    def samples(self) -> Iterator[Tuple[float, Dict[str, float]]]:
        for idx, time in enumerate(self.times):
            yield float(time), self.get_sample(idx)

    @property
    def final_time(self) -> float:
        self._check_not_empty()
        return float(self.times[-1])

    @property
    def final_values(self) -> Dict[str, float]:
        self._check_not_empty()
        return self.get_sample(-1)

    def _check_not_empty(self):
        # A run which diverges at its initial state has no valid samples.
        if len(self) == 0:
            raise UndefinedQuantity(f"Trajectory has no samples: {self.divergence}")

    def get_total_population(self) -> np.ndarray:
        return self.values.sum(axis=1)

    def to_dataframe(self) -> pd.DataFrame:
        """
        Returns the trajectory as a DataFrame indexed by time, with a column per compartment
        and a "clamped" column.
        """
        df = pd.DataFrame(self.values, columns=self.compartment_names)
        df.insert(0, "time", self.times)
        df["clamped"] = self.clamped
        return df.set_index("time")

    def __repr__(self):
        status = " diverged" if self.diverged else ""
        return f"<Trajectory {len(self)} samples of [{', '.join(self.compartment_names)}]{status}>"


def integrate(
    model: CompartmentalModel,
    initial: InitialValues,
    parameters: Parameters,
    times: Times,
    solver: str = SolverType.RUNGE_KUTTA,
    solver_args: Optional[dict] = None,
) -> Trajectory:
    """
    Integrates the model forward in time from the initial values.

    The model and parameters are validated before any integration is attempted.
    If the values blow up, the returned trajectory holds every sample computed before the divergence,
    and ``trajectory.divergence`` describes what went wrong.

    Args:
        model: The model to integrate.
        initial: The initial compartment values, either a mapping of compartment name to value
            (missing compartments start empty) or a sequence in compartment order.
        parameters: The parameter values for this run.
        times: The sample times, or a ``TimeGrid``.
        solver (optional): The ODE solver to use, see ``SolverType``.
        solver_args (optional): Arguments passed to the solver, eg. ``step_size`` or ``method``.

    Returns:
        Trajectory: The compartment values at each sample time.

    """
    solver_args = solver_args or {}
    if solver not in SolverType.ALL:
        raise ValueError(f"Solver type requested is not available: {solver}")

    times = as_time_array(times)
    initial_values = get_initial_values(model, initial)
    ode_func = model.get_ode_function(parameters)
    try:
        values, clamped = solve_ode(solver, ode_func, initial_values, times, solver_args)
    except IntegrationDivergence as e:
        logger.warning("Integration diverged: %s", e)
        return Trajectory(model.compartment_names, e.times, e.values, e.clamped, divergence=e)

    if clamped.any():
        logger.debug("Clamped negative values at %s sample times", clamped.sum())

    return Trajectory(model.compartment_names, times, values, clamped)


def get_initial_values(model: CompartmentalModel, initial: InitialValues) -> np.ndarray:
    if isinstance(initial, Mapping):
        return model.get_initial_values(initial)

    values = np.array(initial, dtype=float)
    if values.shape != (model.num_compartments,):
        msg = f"Expected {model.num_compartments} initial values, got {values.shape}"
        raise MalformedModel(msg)
    if not np.all(np.isfinite(values)) or np.any(values < 0):
        raise MalformedModel(f"Initial values must be finite and >= 0: {values}")

    return values
