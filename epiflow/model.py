"""
This module contains the main disease modelling class.
"""
import logging
from typing import Callable, List, Mapping, Optional, Sequence, Union

import numpy as np

import epiflow.flows as flows
from epiflow.compartment import Compartment
from epiflow.exceptions import DuplicateCompartment, MalformedModel, UnknownReference
from epiflow.flows import FlowParam
from epiflow.expressions import RateExpression
from epiflow.params import ParameterSet
from epiflow.shapes import (
    DEFAULT_TRANSMISSION_MODES,
    SHAPE_TRANSMISSION_MODES,
    ModelShape,
    get_shape_requirements,
)

logger = logging.getLogger(__name__)

OdeFunction = Callable[[np.ndarray, float], np.ndarray]
InfectiousParam = Union[None, str, Sequence[str], Mapping[str, FlowParam]]
Parameters = Union[ParameterSet, Mapping[str, float]]


class CompartmentalModel:
    """
    A compartmental disease model.

    This model defines a set of compartments, and a set of flows which move people between them.
    The model is purely structural: the parameter values, initial conditions and times are supplied
    for each run (see ``epiflow.integrate``). Flows are added with the ``add_*`` methods, which validate
    each flow against the declared compartments and parameters as it is added. The model is frozen
    once it has been tagged with a shape or evaluated for the first time, after which no more flows can be added.

    Args:
        compartments: The names of the compartments to simulate, in output order.
        infectious_compartments: The compartments which are counted as infectious.
        parameters (optional): The names of the parameters that flows may refer to.
            When omitted, any parameter name is accepted and the parameter set is checked at runtime.

    Attributes:
        compartments (List[Compartment]): The model's compartments.
        shape (str): The model's shape tag, see ``ModelShape``, or None.

    Example:
        Build a closed SIR model::

            model = CompartmentalModel(
                compartments=["S", "I", "R"],
                infectious_compartments=["I"],
                parameters=["beta", "gamma"],
            )
            model.add_infection_frequency_flow("infection", "beta", "S", "I")
            model.add_fractional_flow("recovery", "gamma", "I", "R")

    """

    def __init__(
        self,
        compartments: List[str],
        infectious_compartments: List[str],
        parameters: Optional[List[str]] = None,
    ):
        compartments = list(compartments)
        if not compartments:
            raise MalformedModel("A model must have at least one compartment.")

        for name in compartments:
            if type(name) is not str or not name.isidentifier():
                raise MalformedModel(f"Compartment name {name!r} is not a valid identifier.")
            if name == flows.TOTAL_POPULATION:
                raise MalformedModel(f"'{name}' is reserved for the total population.")

        duplicates = sorted({n for n in compartments if compartments.count(n) > 1})
        if duplicates:
            raise DuplicateCompartment(f"Duplicate compartments: {', '.join(duplicates)}")

        unknown = [n for n in infectious_compartments if n not in compartments]
        if unknown:
            msg = f"Infectious compartments must be a subset of compartments: {', '.join(unknown)}"
            raise UnknownReference(msg)

        if parameters is not None:
            parameters = list(parameters)
            clashes = [p for p in parameters if p in compartments]
            if clashes:
                msg = f"Parameter names clash with compartment names: {', '.join(clashes)}"
                raise MalformedModel(msg)

        self.compartments = [Compartment(n) for n in compartments]
        self._infectious_compartments = [Compartment(n) for n in infectious_compartments]
        self._declared_parameters = parameters
        # Flows to be applied to the model compartments
        self._flows = []
        self.shape = None
        self.shape_options = {}
        # No more flows can be added once the model is frozen.
        self._is_frozen = False
        self._update_compartment_indices()

    def _update_compartment_indices(self):
        """
        Update the mapping of compartment name to idx for quicker lookups.
        """
        for idx, c in enumerate(self.compartments):
            c.idx = idx

    @property
    def compartment_names(self) -> List[str]:
        return [c.name for c in self.compartments]

    @property
    def num_compartments(self) -> int:
        return len(self.compartments)

    @property
    def infectious_compartments(self) -> List[str]:
        return [c.name for c in self._infectious_compartments]

    def get_flows(self) -> List[flows.BaseFlow]:
        """
        Returns the model's flows, in the order they were added.
        """
        return list(self._flows)

    def get_flow_names(self) -> List[str]:
        return [f.name for f in self._flows]

    @property
    def parameter_names(self) -> List[str]:
        """
        The names of every parameter referred to by the model's flows.
        """
        names = set()
        for flow in self._flows:
            names |= flow.get_parameter_names()

        return sorted(names)

    @property
    def is_closed(self) -> bool:
        """
        Whether the model is a closed cohort, with no entry or exit flows.
        """
        return all(f.source is not None and f.dest is not None for f in self._flows)

    @property
    def transmission_mode(self) -> Optional[str]:
        """
        The transmission mode shared by all infection flows, None if there are no infection flows.
        """
        modes = {f.transmission_mode for f in self._flows if f.transmission_mode}
        if not modes:
            return None
        elif len(modes) > 1:
            return "mixed"
        else:
            return modes.pop()

    def get_compartment(self, name: str) -> Compartment:
        for comp in self.compartments:
            if comp.has_name(name):
                return comp

        raise UnknownReference(f"Compartment '{name}' is not in the model.")

    """
    Adding flows
    """

    def add_crude_birth_flow(self, name: str, birth_rate: FlowParam, dest: str):
        """
        Adds a crude birth rate flow to the model.
        The number of births will be determined by the product of the birth rate and total population.

        Args:
            name: The name of the new flow.
            birth_rate: The fractional crude birth rate per unit time.
            dest: The name of the destination compartment.

        """
        param = self._validate_param(name, birth_rate)
        self._add_flow(flows.CrudeBirthFlow(name, self.get_compartment(dest), param))

    def add_importation_flow(self, name: str, num_imported: FlowParam, dest: str):
        """
        Adds an importation flow to the model, where people enter the destination compartment
        from outside the system, eg. a constant number of births per unit time.

        Args:
            name: The name of the new flow.
            num_imported: The number of people imported per unit time.
            dest: The name of the destination compartment.

        """
        param = self._validate_param(name, num_imported)
        self._add_flow(flows.ImportFlow(name, self.get_compartment(dest), param))

    def add_death_flow(self, name: str, death_rate: FlowParam, source: str):
        """
        Adds a flow where people die and leave the compartment, reducing the total population.

        Args:
            name: The name of the new flow.
            death_rate: The fractional death rate per unit time.
            source: The name of the source compartment.

        """
        param = self._validate_param(name, death_rate)
        self._add_flow(flows.DeathFlow(name, self.get_compartment(source), param))

    def add_universal_death_flows(self, base_name: str, death_rate: FlowParam) -> List[str]:
        """
        Adds a universal death rate flow to every compartment in the model.

        The base name will be used to create the name of each flow. For example a
        base name of "universal_death" applied to the "S" compartment will result in a flow called
        "universal_death_for_S".

        Args:
            base_name: The base name for each new flow.
            death_rate: The fractional death rate per unit time.

        Returns:
            List[str]: The names of the flows added.

        """
        flow_names = []
        for comp in self.compartments:
            flow_name = f"{base_name}_for_{comp.name}"
            self.add_death_flow(flow_name, death_rate, comp.name)
            flow_names.append(flow_name)

        return flow_names

    def add_fractional_flow(self, name: str, fractional_rate: FlowParam, source: str, dest: str):
        """
        Adds a flow that transfers people from a source to a destination based on the population
        of the source compartment and the fractional flow rate, eg. recovery or waning immunity.

        Args:
            name: The name of the new flow.
            fractional_rate: The fraction of people that transfer per unit time.
            source: The name of the source compartment.
            dest: The name of the destination compartment.

        """
        param = self._validate_param(name, fractional_rate)
        source_comp, dest_comp = self._get_transition_compartments(name, source, dest)
        self._add_flow(flows.FractionalFlow(name, source_comp, dest_comp, param))

    def add_infection_frequency_flow(
        self,
        name: str,
        contact_rate: FlowParam,
        source: str,
        dest: str,
        infectious: InfectiousParam = None,
    ):
        """
        Adds a flow that infects people using an "infection frequency" contact rate, which is
        when the force of infection is determined by the proportion of infectious people in the total population.

        Args:
            name: The name of the new flow.
            contact_rate: The contact rate.
            source: The name of the source compartment.
            dest: The name of the destination compartment.
            infectious (optional): The infectious compartments that the flow draws from, either a name,
                a list of names, or a mapping of name to relative infectiousness.
                Defaults to all of the model's infectious compartments.

        """
        self._add_infection_flow(
            flows.InfectionFrequencyFlow, name, contact_rate, source, dest, infectious
        )

    def add_infection_density_flow(
        self,
        name: str,
        contact_rate: FlowParam,
        source: str,
        dest: str,
        infectious: InfectiousParam = None,
    ):
        """
        Adds a flow that infects people using an "infection density" contact rate, which is
        when the force of infection is determined by the number of infectious people.

        Args:
            name: The name of the new flow.
            contact_rate: The contact rate.
            source: The name of the source compartment.
            dest: The name of the destination compartment.
            infectious (optional): The infectious compartments that the flow draws from, either a name,
                a list of names, or a mapping of name to relative infectiousness.
                Defaults to all of the model's infectious compartments.

        """
        self._add_infection_flow(
            flows.InfectionDensityFlow, name, contact_rate, source, dest, infectious
        )

    def add_expression_flow(
        self,
        name: str,
        rate: FlowParam,
        source: Optional[str] = None,
        dest: Optional[str] = None,
    ):
        """
        Adds a flow with an arbitrary algebraic rate, which may refer to compartments, parameters
        and the total population ``N``. Either the source or the destination may be omitted.

        Args:
            name: The name of the new flow.
            rate: The absolute flow rate, eg. ``"beta * S * (E + q * I) / N"``.
            source (optional): The name of the source compartment.
            dest (optional): The name of the destination compartment.

        """
        if source is None and dest is None:
            raise MalformedModel(f"Flow {name} needs a source or a destination.")

        source_comp = self.get_compartment(source) if source is not None else None
        dest_comp = self.get_compartment(dest) if dest is not None else None
        flow = flows.ExpressionFlow(name, source_comp, dest_comp, rate, self.compartments)
        if self._declared_parameters is not None:
            available = [*self._declared_parameters, *flow._state_names]
            flow.param.check_names(available, context=f"Flow {name}")

        self._add_flow(flow)

    def _add_infection_flow(self, flow_cls, name, contact_rate, source, dest, infectious):
        param = self._validate_param(name, contact_rate)
        source_comp, dest_comp = self._get_transition_compartments(name, source, dest)
        if infectious is None:
            infectious = self.infectious_compartments
        if type(infectious) is str:
            infectious = [infectious]
        if not isinstance(infectious, Mapping):
            infectious = {n: 1 for n in infectious}
        if not infectious:
            raise MalformedModel(f"Infection flow {name} has no infectious compartments.")

        infectious_comps = {}
        for comp_name, weight in infectious.items():
            comp = self.get_compartment(comp_name)
            infectious_comps[comp] = self._validate_param(name, weight)

        self._add_flow(flow_cls(name, source_comp, dest_comp, param, infectious_comps))

    def _get_transition_compartments(self, name: str, source: str, dest: str):
        if source == dest:
            raise MalformedModel(f"Flow {name} has the same source and destination: {source}")

        return self.get_compartment(source), self.get_compartment(dest)

    def _validate_param(self, flow_name: str, param: FlowParam) -> RateExpression:
        """
        Ensure that the supplied parameter is a valid rate expression, which only refers to
        declared parameters and which is not a negative constant.
        """
        expr = RateExpression(param)
        clashes = expr.names & set(self.compartment_names)
        if clashes:
            msg = f"Rate for {flow_name} refers to compartments {sorted(clashes)}, use an expression flow."
            raise MalformedModel(msg)

        if self._declared_parameters is not None:
            expr.check_names(self._declared_parameters, context=f"Flow {flow_name}")

        if expr.is_constant and expr.evaluate({}) < 0:
            raise MalformedModel(f"Parameter for {flow_name} must be >= 0: {expr.text}")

        return expr

    def _add_flow(self, flow: flows.BaseFlow):
        if self._is_frozen:
            msg = f"Cannot add flow {flow.name}: the model structure has been fixed."
            raise MalformedModel(msg)
        if any(f.name == flow.name for f in self._flows):
            raise MalformedModel(f"There is already a flow called '{flow.name}' in this model.")

        self._flows.append(flow)

    """
    Model shape
    """

    def set_shape(self, shape: str, **shape_options):
        """
        Tags the model with a canonical shape, so that closed-form equilibria and derived quantities
        can be calculated. The model's compartments, flow parameters and transmission mode are
        checked against the shape, and the model structure is fixed.

        Args:
            shape: The shape, see ``ModelShape``.
            shape_options: Extra shape information, eg. ``groups`` for risk group models.

        """
        if shape not in ModelShape.ALL:
            raise MalformedModel(f"Unknown model shape: {shape}")

        compartments, parameters = get_shape_requirements(shape, shape_options.get("groups"))
        missing = [c for c in compartments if c not in self.compartment_names]
        if missing:
            msg = f"Model shape {shape} requires compartments: {', '.join(missing)}"
            raise MalformedModel(msg)

        missing = [p for p in parameters if p not in self.parameter_names]
        if missing:
            msg = f"Model shape {shape} requires flow parameters: {', '.join(missing)}"
            raise MalformedModel(msg)

        allowed_modes = SHAPE_TRANSMISSION_MODES.get(shape, DEFAULT_TRANSMISSION_MODES)
        if self.transmission_mode not in allowed_modes:
            msg = f"Model shape {shape} requires {' or '.join(allowed_modes)} transmission, got {self.transmission_mode}"
            raise MalformedModel(msg)

        if shape in ModelShape.CLOSED and not self.is_closed:
            raise MalformedModel(f"Model shape {shape} must not have entry or exit flows.")

        self.shape = shape
        self.shape_options = shape_options
        self._is_frozen = True

    """
    Evaluating flow rates
    """

    def get_initial_values(self, initial: Mapping[str, float]) -> np.ndarray:
        """
        Returns a state vector from a mapping of compartment name to value.
        Compartments which are not mentioned start empty.
        """
        values = np.zeros(self.num_compartments)
        for name, value in initial.items():
            comp = self.get_compartment(name)
            value = float(value)
            if not np.isfinite(value) or value < 0:
                raise MalformedModel(f"Initial value for {name} must be finite and >= 0: {value}")

            values[comp.idx] = value

        return values

    def get_ode_function(self, parameters: Parameters) -> OdeFunction:
        """
        Returns a function of (compartment values, time) that calculates the net flow into each compartment,
        with every flow bound to the given parameters. This function is passed to the ODE solver
        and defines the dynamics of the model.
        """
        bound_flows = self._bind_flows(parameters)
        num_comps = self.num_compartments

        def get_flow_rates(compartment_values: np.ndarray, time: float) -> np.ndarray:
            # Zero out -ve compartment sizes in flow rate calculations,
            # to prevent negative values from messing up the direction of flows.
            # We don't expect large -ve values, but there can be small ones due to numerical errors.
            comp_vals = np.array(compartment_values, dtype=float)
            comp_vals[comp_vals < 0] = 0
            population = flows.find_sum(comp_vals)
            net_flow_rates = np.zeros(num_comps)
            for flow in bound_flows:
                net_flow = flow.get_net_flow(comp_vals, population)
                if flow.source:
                    net_flow_rates[flow.source.idx] -= net_flow
                if flow.dest:
                    net_flow_rates[flow.dest.idx] += net_flow

            return net_flow_rates

        return get_flow_rates

    def get_flow_rates(
        self, compartment_values: np.ndarray, parameters: Parameters, time: float = 0.0
    ) -> np.ndarray:
        """
        Returns the net flow into each compartment for the given state and parameters.
        """
        ode_func = self.get_ode_function(parameters)
        return ode_func(np.asarray(compartment_values, dtype=float), time)

    def get_flow_value_function(self, parameters: Parameters) -> Callable[[np.ndarray], np.ndarray]:
        """
        Returns a function that calculates the value of every individual flow, in ``get_flows`` order,
        for a given state vector.
        """
        bound_flows = self._bind_flows(parameters)

        def get_flow_values(compartment_values: np.ndarray) -> np.ndarray:
            comp_vals = np.array(compartment_values, dtype=float)
            comp_vals[comp_vals < 0] = 0
            population = flows.find_sum(comp_vals)
            return np.array([f.get_net_flow(comp_vals, population) for f in bound_flows])

        return get_flow_values

    def _bind_flows(self, parameters: Parameters) -> List[flows.BaseFlow]:
        self._is_frozen = True
        values = parameters.as_dict() if isinstance(parameters, ParameterSet) else dict(parameters)
        missing = set(self.parameter_names) - set(values.keys())
        if missing:
            msg = f"Parameter set is missing values for: {', '.join(sorted(missing))}"
            raise UnknownReference(msg)

        return [flow.bind(values) for flow in self._flows]

    """
    Declarative definitions
    """

    _FLOW_TYPES = (
        "fractional",
        "death",
        "universal_death",
        "crude_birth",
        "importation",
        "infection_frequency",
        "infection_density",
        "expression",
    )

    @classmethod
    def from_definition(cls, definition: Mapping) -> "CompartmentalModel":
        """
        Builds a model from a declarative definition, such as one loaded from a YAML file.

        Example:
            Define an SIS model::

                model = CompartmentalModel.from_definition({
                    "compartments": ["S", "I"],
                    "infectious_compartments": ["I"],
                    "flows": [
                        {"type": "infection_frequency", "name": "infection", "rate": "beta", "source": "S", "dest": "I"},
                        {"type": "fractional", "name": "recovery", "rate": "gamma", "source": "I", "dest": "S"},
                    ],
                    "shape": "sis",
                })

        """
        try:
            model = cls(
                compartments=definition["compartments"],
                infectious_compartments=definition.get("infectious_compartments", []),
                parameters=definition.get("parameters"),
            )
            for flow_def in definition.get("flows", []):
                model._add_flow_from_definition(dict(flow_def))
        except KeyError as e:
            raise MalformedModel(f"Model definition is missing {e}") from e

        if definition.get("shape"):
            model.set_shape(definition["shape"], **definition.get("shape_options", {}))

        return model

    def _add_flow_from_definition(self, flow_def: dict):
        flow_type = flow_def.pop("type")
        name = flow_def.pop("name")
        rate = flow_def.pop("rate")
        source = flow_def.pop("source", None)
        dest = flow_def.pop("dest", None)
        infectious = flow_def.pop("infectious", None)
        if flow_type not in self._FLOW_TYPES:
            raise MalformedModel(f"Unknown flow type '{flow_type}' for flow {name}.")
        if flow_def:
            raise MalformedModel(f"Unexpected keys for flow {name}: {', '.join(flow_def.keys())}")

        if flow_type == "fractional":
            self.add_fractional_flow(name, rate, source, dest)
        elif flow_type == "death":
            self.add_death_flow(name, rate, source)
        elif flow_type == "universal_death":
            self.add_universal_death_flows(name, rate)
        elif flow_type == "crude_birth":
            self.add_crude_birth_flow(name, rate, dest)
        elif flow_type == "importation":
            self.add_importation_flow(name, rate, dest)
        elif flow_type == "infection_frequency":
            self.add_infection_frequency_flow(name, rate, source, dest, infectious)
        elif flow_type == "infection_density":
            self.add_infection_density_flow(name, rate, source, dest, infectious)
        elif flow_type == "expression":
            self.add_expression_flow(name, rate, source, dest)

    def __repr__(self):
        comps = ", ".join(self.compartment_names)
        shape = f" shape={self.shape}" if self.shape else ""
        return f"<CompartmentalModel [{comps}]{shape} with {len(self._flows)} flows>"
