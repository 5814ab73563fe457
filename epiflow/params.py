"""
Type definitions for model parameters and time grids.
"""
import math
from typing import Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from epiflow.exceptions import UnknownReference


class ParameterSet(BaseModel):
    """
    An immutable set of named, real-valued model parameters.
    A parameter set is supplied for each model run and is never modified by the run,
    use ``updated`` to derive a new set with some values changed.

    Args:
        values: A mapping of parameter name to value.

    Example:
        Create a parameter set for the SIR model with demography::

            params = ParameterSet({"beta": 2.0, "gamma": 0.5, "mu": 0.0003})
            params["beta"]  # 2.0
            faster = params.updated(gamma=1.0)

    """

    # Params should be immutable, and nothing else can be specified.
    model_config = ConfigDict(extra="forbid", frozen=True)

    values: Dict[str, float]

    def __init__(self, values: Optional[Mapping[str, float]] = None, **kwargs):
        super().__init__(values={**(values or {}), **kwargs})

    @field_validator("values")
    @classmethod
    def check_values(cls, values):
        for name, value in values.items():
            if not name.isidentifier():
                raise ValueError(f"Parameter name '{name}' is not a valid identifier")
            if not math.isfinite(value):
                raise ValueError(f"Parameter '{name}' must be finite, got {value}")

        return values

    def __getitem__(self, name: str) -> float:
        try:
            return self.values[name]
        except KeyError:
            raise UnknownReference(f"Parameter '{name}' is not in the parameter set.") from None

    def __contains__(self, name: str) -> bool:
        return name in self.values

    def __len__(self) -> int:
        return len(self.values)

    def get(self, name: str, default: Optional[float] = None) -> Optional[float]:
        return self.values.get(name, default)

    def keys(self) -> List[str]:
        return list(self.values.keys())

    def as_dict(self) -> Dict[str, float]:
        """Returns a copy of the parameter values"""
        return dict(self.values)

    def updated(self, values: Optional[Mapping[str, float]] = None, **kwargs) -> "ParameterSet":
        """
        Returns a new parameter set with some values replaced or added.
        """
        return ParameterSet({**self.values, **(values or {}), **kwargs})

    def check_names(self, names: Sequence[str]):
        """
        Raises ``UnknownReference`` if any of the names are missing from this parameter set.
        """
        missing = set(names) - set(self.values.keys())
        if missing:
            msg = f"Parameter set is missing values for: {', '.join(sorted(missing))}"
            raise UnknownReference(msg)


class TimeGrid(BaseModel):
    """
    Parameters to define the times that a model is integrated over.
    Either a start, end and step or an explicit list of sample points must be given.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    start: Optional[float] = None
    end: Optional[float] = None
    step: Optional[float] = None
    points: Optional[List[float]] = None

    @model_validator(mode="after")
    def check_grid(self):
        if self.points is not None:
            if any(v is not None for v in (self.start, self.end, self.step)):
                raise ValueError("Specify either explicit points or start, end and step, not both")
            _check_increasing(self.points)
            return self

        if any(v is None for v in (self.start, self.end, self.step)):
            raise ValueError("Start, end and step are all required when points are not given")
        if self.end <= self.start:
            raise ValueError(f"End time: {self.end} must be after start: {self.start}")
        if self.step <= 0:
            raise ValueError(f"Time step must be positive, got {self.step}")

        num_steps = (self.end - self.start) / self.step
        if abs(num_steps - round(num_steps)) > 1e-9 * max(1.0, num_steps):
            raise ValueError(f"Step {self.step} must be a factor of the time span")

        return self

    def get_times(self) -> np.ndarray:
        if self.points is not None:
            return np.array(self.points, dtype=float)

        num_steps = int(round((self.end - self.start) / self.step))
        return np.linspace(self.start, self.end, num_steps + 1)


def as_time_array(times: Union[TimeGrid, Sequence[float], np.ndarray]) -> np.ndarray:
    """
    Converts a time specification into a validated array of sample times.
    """
    if isinstance(times, TimeGrid):
        return times.get_times()

    times = np.asarray(times, dtype=float)
    if times.ndim != 1:
        raise ValueError("Times must be a one dimensional sequence")

    _check_increasing(times)
    return times


def _check_increasing(points):
    points = np.asarray(points, dtype=float)
    if len(points) < 2:
        raise ValueError("At least two sample times are required")
    if not np.all(np.isfinite(points)):
        raise ValueError("Sample times must be finite")
    if not np.all(np.diff(points) > 0):
        raise ValueError("Sample times must be strictly increasing")
