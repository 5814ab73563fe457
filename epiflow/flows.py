"""
This module contains the classes which are used to calculate inter-compartmental flow rates.
As a user of the framework you should not have to use these classes directly.
"""
import copy
from abc import ABC, abstractmethod
from typing import Dict, List, Mapping, Optional, Set, Union

import numpy as np
from numba import jit

from epiflow.compartment import Compartment
from epiflow.expressions import RateExpression

FlowParam = Union[float, str, RateExpression]

# Name used in expression flows for the total population.
TOTAL_POPULATION = "N"


class TransmissionMode:
    """
    Options for how the force of infection scales with population size.
    """

    # Rate scales with the absolute number of infectious people.
    DENSITY = "density"
    # Rate scales with the fraction of the population who are infectious.
    FREQUENCY = "frequency"


class BaseFlow(ABC):
    """
    :meta private:
    Abstract base class for all flows.
    A flow represents the movement of people from one compartment to another,
    or into or out of the modelled population.

    A flow's rate is an algebraic expression over parameter names, which is evaluated once per run
    when the flow is bound to a parameter set (see ``bind``).
    """

    name = None
    source = None
    dest = None
    param = None
    weight = None
    transmission_mode = None

    def get_parameter_names(self) -> Set[str]:
        """
        Returns the names of all parameters referred to by this flow.
        """
        return set(self.param.names)

    def get_compartments(self) -> List[Compartment]:
        return [c for c in (self.source, self.dest) if c is not None]

    def bind(self, parameters: Mapping[str, float]) -> "BaseFlow":
        """
        Returns a copy of this flow with its rate evaluated for the given parameters.
        The original flow is not modified, so that a model can be shared between runs.
        """
        bound = copy.copy(self)
        bound.weight = self.param.evaluate(parameters)
        return bound

    def get_weight_value(self) -> float:
        assert self.weight is not None, f"Flow {self.name} has not been bound to parameters."
        return self.weight

    @abstractmethod
    def get_net_flow(self, compartment_values: np.ndarray, population: float) -> float:
        """
        Returns the net flow value for the given compartment values and total population.
        """
        pass

    @abstractmethod
    def __repr__(self):
        """
        Returns a text representation of the flow.
        """
        pass


class BaseEntryFlow(BaseFlow):
    """
    :meta private:
    A flow where people enter the destination compartment, but there is no source.
    Eg. births, importation.
    """

    def __init__(self, name: str, dest: Compartment, param: FlowParam):
        assert type(dest) is Compartment
        self.name = name
        self.dest = dest
        self.param = RateExpression(param)

    def __repr__(self):
        return f"<{self.__class__.__name__} '{self.name}' to {self.dest}>"


class BaseExitFlow(BaseFlow):
    """
    :meta private:
    A flow where people exit the source compartment, but there is no destination
    Eg. deaths, emigration
    """

    def __init__(self, name: str, source: Compartment, param: FlowParam):
        assert type(source) is Compartment
        self.name = name
        self.source = source
        self.param = RateExpression(param)

    def __repr__(self):
        return f"<{self.__class__.__name__} '{self.name}' from {self.source}>"


class BaseTransitionFlow(BaseFlow):
    """
    :meta private:
    A flow where people move from the source compartment, to the destination.
    Eg. infection, recovery, progress of disease.
    """

    def __init__(self, name: str, source: Compartment, dest: Compartment, param: FlowParam):
        assert type(source) is Compartment
        assert type(dest) is Compartment
        self.name = name
        self.source = source
        self.dest = dest
        self.param = RateExpression(param)

    def __repr__(self):
        return f"<{self.__class__.__name__} '{self.name}' from {self.source} to {self.dest}>"


class CrudeBirthFlow(BaseEntryFlow):
    """
    A flow that calculates births using a 'crude birth rate' method.
    The number of births will be determined by the product of the birth rate and total population.

    Args:
        name: The flow name.
        dest: The destination compartment.
        param: The fraction of the population to be born per unit time.

    """

    def get_net_flow(self, compartment_values: np.ndarray, population: float) -> float:
        return self.get_weight_value() * population


class ImportFlow(BaseEntryFlow):
    """
    Calculates importation, where people enter the destination compartment from outside the system.
    The number of people entering per unit time is independent of the population,
    eg. a constant birth rate.

    Args:
        name: The flow name.
        dest: The destination compartment.
        param: The number of people to be imported per unit time.

    """

    def get_net_flow(self, compartment_values: np.ndarray, population: float) -> float:
        return self.get_weight_value()


class DeathFlow(BaseExitFlow):
    """
    A flow representing deaths, calculated from a fractional death rate.

    Args:
        name: The flow name.
        source: The source compartment.
        param: The fraction of the compartment who die per unit time.

    """

    def get_net_flow(self, compartment_values: np.ndarray, population: float) -> float:
        return self.get_weight_value() * compartment_values[self.source.idx]


class FractionalFlow(BaseTransitionFlow):
    """
    A flow that transfers people from a source to a destination based on
    the population of the source compartment and the fractional flow rate.
    Used for recovery, waning immunity and progression through latency.

    Args:
        name: The flow name.
        source: The source compartment.
        dest: The destination compartment.
        param: The fraction of the source compartment to transfer per unit time.

    """

    def get_net_flow(self, compartment_values: np.ndarray, population: float) -> float:
        return self.get_weight_value() * compartment_values[self.source.idx]


class BaseInfectionFlow(BaseTransitionFlow):
    """
    :meta private:
    A mass-action infection flow, from a susceptible source to an infected destination.

    The net flow is ``param * source * sum(weight_j * infectious_j)``, where the sum runs over the
    infectious compartments that this flow draws from, each with its own weight expression.
    This allows carrier states (eg. ``{"I": 1, "C": "epsilon"}``) and WAIFW terms
    (one flow per pair of risk groups) to be expressed.

    Args:
        name: The flow name.
        source: The source (susceptible) compartment.
        dest: The destination compartment.
        param: The contact rate.
        infectious: A mapping from each infectious compartment to its relative infectiousness.

    """

    def __init__(
        self,
        name: str,
        source: Compartment,
        dest: Compartment,
        param: FlowParam,
        infectious: Dict[Compartment, FlowParam],
    ):
        super().__init__(name, source, dest, param)
        assert infectious, "Infection flows must draw from at least one infectious compartment."
        assert all(type(c) is Compartment for c in infectious.keys())
        self.infectious = {c: RateExpression(w) for c, w in infectious.items()}
        self._infectious_idxs = None
        self._infectious_weights = None

    def get_parameter_names(self) -> Set[str]:
        names = set(self.param.names)
        for weight in self.infectious.values():
            names |= weight.names

        return names

    def get_compartments(self) -> List[Compartment]:
        return [self.source, self.dest, *self.infectious.keys()]

    def bind(self, parameters: Mapping[str, float]) -> "BaseInfectionFlow":
        bound = super().bind(parameters)
        bound._infectious_idxs = np.array([c.idx for c in self.infectious.keys()], dtype=int)
        bound._infectious_weights = np.array(
            [w.evaluate(parameters) for w in self.infectious.values()], dtype=float
        )
        return bound

    def get_infectious_population(self, compartment_values: np.ndarray) -> float:
        """
        Returns the weighted number of infectious people that this flow draws from.
        """
        infectious_values = compartment_values[self._infectious_idxs]
        return float(np.dot(self._infectious_weights, infectious_values))

    def __repr__(self):
        infectious = ", ".join(str(c) for c in self.infectious.keys())
        return (
            f"<{self.__class__.__name__} '{self.name}' from {self.source} to {self.dest}"
            f" by {infectious}>"
        )


class InfectionDensityFlow(BaseInfectionFlow):
    """
    An infection flow that uses the density (absolute number) of infectious people
    to calculate the force of infection.
    """

    transmission_mode = TransmissionMode.DENSITY

    def get_net_flow(self, compartment_values: np.ndarray, population: float) -> float:
        infectious = self.get_infectious_population(compartment_values)
        return self.get_weight_value() * compartment_values[self.source.idx] * infectious


class InfectionFrequencyFlow(BaseInfectionFlow):
    """
    An infection flow that uses the frequency (proportion) of infectious people
    to calculate the force of infection.
    When the total population is zero, the flow is zero.
    """

    transmission_mode = TransmissionMode.FREQUENCY

    def get_net_flow(self, compartment_values: np.ndarray, population: float) -> float:
        if population == 0:
            # The population has been extinguished, this is a degenerate steady state.
            return 0.0

        infectious = self.get_infectious_population(compartment_values)
        source_value = compartment_values[self.source.idx]
        return self.get_weight_value() * source_value * infectious / population


class ExpressionFlow(BaseFlow):
    """
    A flow with an arbitrary algebraic rate over compartment values, parameters and the
    total population ``N``. The source or destination may be omitted for entry or exit flows.
    When the expression refers to ``N`` and the total population is zero, the flow is zero.

    Args:
        name: The flow name.
        source: The source compartment, or None.
        dest: The destination compartment, or None.
        param: The flow rate, eg. ``"beta * S * (E + q * I) / N"``.
        compartments: All of the model's compartments, which the rate may refer to.

    """

    def __init__(
        self,
        name: str,
        source: Optional[Compartment],
        dest: Optional[Compartment],
        param: FlowParam,
        compartments: List[Compartment],
    ):
        assert source is not None or dest is not None, "Expression flows need a source or dest."
        self.name = name
        self.source = source
        self.dest = dest
        self.param = RateExpression(param)
        self.compartments = compartments
        self._func = None

    @property
    def _state_names(self) -> List[str]:
        return [c.name for c in self.compartments] + [TOTAL_POPULATION]

    def get_parameter_names(self) -> Set[str]:
        return set(self.param.names) - set(self._state_names)

    def get_compartments(self) -> List[Compartment]:
        return [c for c in self.compartments if c.name in self.param.names]

    def bind(self, parameters: Mapping[str, float]) -> "ExpressionFlow":
        bound = copy.copy(self)
        state_names = self._state_names
        param_values = {k: v for k, v in parameters.items() if k not in state_names}
        expression = self.param.partial(param_values)
        bound._func = expression.compile(state_names)
        bound._uses_population = TOTAL_POPULATION in expression.names
        bound.weight = 1.0
        return bound

    def get_net_flow(self, compartment_values: np.ndarray, population: float) -> float:
        assert self._func is not None, f"Flow {self.name} has not been bound to parameters."
        if self._uses_population and population == 0:
            return 0.0

        return float(self._func(*compartment_values, population))

    def __repr__(self):
        return f"<{self.__class__.__name__} '{self.name}' from {self.source} to {self.dest}>"


# Use Numba to speed up the calculation of the population.
@jit(nopython=True)
def find_sum(compartment_values: np.ndarray) -> float:
    return compartment_values.sum()
