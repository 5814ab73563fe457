"""
Finding the equilibria (fixed points) of a model.

Models with a canonical shape use closed-form expressions, derived by setting every net flow to zero.
All other models, and the endemic equilibrium of risk group models, are solved numerically by
relaxing the model towards steady state over a long horizon and polishing the result with a root finder.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

import numpy as np
from scipy.integrate import solve_ivp
from scipy.optimize import root

from epiflow.model import CompartmentalModel, Parameters
from epiflow.reproduction import get_parameter_values, get_r0_value, get_risk_groups, get_value
from epiflow.shapes import ModelShape, get_risk_group_names
from epiflow.flows import TransmissionMode

logger = logging.getLogger(__name__)

DEFAULT_HORIZON = 1e6
DEFAULT_TOLERANCE = 1e-10
# Fraction of the population that is initially infectious when searching for an endemic equilibrium.
DEFAULT_SEED_FRACTION = 1e-3
# Infectious prevalence (as a fraction of the population) below which a point is disease-free.
DISEASE_FREE_THRESHOLD = 1e-8


class EquilibriumKind:
    DISEASE_FREE = "disease_free"
    ENDEMIC = "endemic"


class EquilibriumMethod:
    CLOSED_FORM = "closed_form"
    NUMERICAL = "numerical"


class EquilibriumStatus:
    ENDEMIC = "endemic"
    NO_ENDEMIC_EQUILIBRIUM = "no_endemic_equilibrium"


@dataclass(frozen=True)
class EquilibriumPoint:
    """
    A set of compartment values where all flows balance.

    Attributes:
        values: Compartment name to value.
        kind: Whether the point is disease-free or endemic, see ``EquilibriumKind``.
        method: How the point was found, see ``EquilibriumMethod``.
        residual: The norm of the net flow rates at the point, which is zero at an exact fixed point.

    """

    values: Dict[str, float]
    kind: str
    method: str
    residual: float

    def __getitem__(self, name: str) -> float:
        return self.values[name]

    @property
    def total(self) -> float:
        return sum(self.values.values())


@dataclass(frozen=True)
class EquilibriumResult:
    """
    The equilibria of a model for a single parameter set.
    The disease-free equilibrium is always reported. The endemic equilibrium is None when the model
    has none, in which case ``status`` is "no_endemic_equilibrium" and ``reason`` says why.
    """

    disease_free: EquilibriumPoint
    endemic: Optional[EquilibriumPoint]
    status: str
    shape: Optional[str] = None
    r0: Optional[float] = None
    reason: Optional[str] = None
    points: List[EquilibriumPoint] = field(default_factory=list)

    @property
    def has_endemic(self) -> bool:
        return self.endemic is not None


def find_equilibria(
    model: CompartmentalModel,
    parameters: Parameters,
    population: float = 1.0,
    initial: Optional[Mapping[str, float]] = None,
) -> EquilibriumResult:
    """
    Finds the disease-free and endemic equilibria of a model.

    Closed-form expressions are used for models tagged with a canonical shape. The endemic equilibrium
    of risk group models, and both equilibria of untagged models, are found numerically.

    Args:
        model: The model.
        parameters: The parameter values.
        population (optional): The total population for frequency dependent shapes, 1 for fractions.
        initial (optional): The starting point for a numerical search for the endemic equilibrium.

    Returns:
        EquilibriumResult: The equilibria.

    """
    assert population > 0, f"Population must be positive, got {population}"
    ode_func = model.get_ode_function(parameters)
    if model.shape is None:
        return _find_untagged_equilibria(model, parameters, population, initial)

    values = get_parameter_values(parameters)
    r0 = get_r0_value(model, parameters)
    disease_free_values = _get_disease_free_values(model, values, population)
    disease_free = _build_point(
        model, ode_func, disease_free_values, EquilibriumKind.DISEASE_FREE, EquilibriumMethod.CLOSED_FORM
    )

    reason = _get_no_endemic_reason(model.shape, values, r0)
    if reason:
        logger.debug("No endemic equilibrium for %s model: %s", model.shape, reason)
        return EquilibriumResult(
            disease_free=disease_free,
            endemic=None,
            status=EquilibriumStatus.NO_ENDEMIC_EQUILIBRIUM,
            shape=model.shape,
            r0=r0,
            reason=reason,
            points=[disease_free],
        )

    if model.shape == ModelShape.RISK_GROUPS:
        if initial is None:
            initial = _get_risk_group_seed(model, values)
        endemic = find_equilibrium_numerically(model, parameters, initial)
    else:
        endemic_values = _get_endemic_values(model, values, r0, population)
        endemic = _build_point(
            model, ode_func, endemic_values, EquilibriumKind.ENDEMIC, EquilibriumMethod.CLOSED_FORM
        )

    return EquilibriumResult(
        disease_free=disease_free,
        endemic=endemic,
        status=EquilibriumStatus.ENDEMIC,
        shape=model.shape,
        r0=r0,
        points=[disease_free, endemic],
    )


def _get_no_endemic_reason(shape: str, values: Dict[str, float], r0: float) -> Optional[str]:
    """
    Returns the reason that a model has no endemic equilibrium, or None if it has one.
    """
    if shape == ModelShape.SIR:
        return "Closed SIR models have no endemic equilibrium, the epidemic burns out."
    elif r0 <= 1:
        return f"R0 = {r0:.4g} <= 1, so infection cannot persist."

    mu = values.get("mu", 0.0)
    if shape in (ModelShape.SIR_DEMOGRAPHY, ModelShape.SEIR, ModelShape.CARRIER) and mu == 0:
        return "No births or deaths (mu = 0), so there is no supply of new susceptibles."
    elif shape == ModelShape.SIRS and mu + values["omega"] == 0:
        return "No births, deaths or waning immunity, so there is no supply of new susceptibles."

    return None


def _get_disease_free_values(
    model: CompartmentalModel, values: Dict[str, float], population: float
) -> Dict[str, float]:
    point = {name: 0.0 for name in model.compartment_names}
    if model.shape == ModelShape.FATAL_SI:
        # Constant births balance background deaths.
        point["S"] = values["nu"] / values["mu"]
    elif model.shape == ModelShape.RISK_GROUPS:
        for group in get_risk_groups(model):
            names = get_risk_group_names(group)
            point[names["susceptible"]] = get_value(values, names["size"])
    else:
        point["S"] = population

    return point


def _get_endemic_values(
    model: CompartmentalModel, values: Dict[str, float], r0: float, population: float
) -> Dict[str, float]:
    """
    Returns the endemic equilibrium of a canonical shape, found by setting each net flow to zero.
    Frequency dependent shapes are solved as fractions and then scaled by the population.
    """
    shape = model.shape
    beta = values["beta"]
    mu = values.get("mu", 0.0)
    susceptible = 1 / r0
    if shape == ModelShape.FATAL_SI:
        nu, rho = values["nu"], values["rho"]
        disease_free_population = nu / mu
        if model.transmission_mode == TransmissionMode.DENSITY:
            # dI/dt = 0 fixes S, then dS/dt = 0 fixes I.
            return {
                "S": disease_free_population / r0,
                "I": (1 - rho) * disease_free_population * (1 - 1 / r0),
            }
        else:
            # Prevalence is fixed by dI/dt = 0, then dN/dt = 0 fixes the population size.
            equilibrium_population = disease_free_population * (1 - rho) / (1 - rho / r0)
            return {
                "S": equilibrium_population / r0,
                "I": equilibrium_population * (1 - 1 / r0),
            }

    if shape == ModelShape.SIS:
        point = {"S": susceptible, "I": 1 - susceptible}
    elif shape == ModelShape.SIR_DEMOGRAPHY:
        # At equilibrium, births into S balance infection and death: mu * (1 - S) = beta * S * I
        infectious = mu * (r0 - 1) / beta
        point = {"S": susceptible, "I": infectious, "R": 1 - susceptible - infectious}
    elif shape == ModelShape.SIRS:
        # R is fed by recovery and drained by waning and death: gamma * I = (omega + mu) * R
        gamma, omega = values["gamma"], values["omega"]
        infectious = (mu + omega) * (1 - susceptible) / (mu + omega + gamma)
        point = {"S": susceptible, "I": infectious, "R": gamma * infectious / (mu + omega)}
    elif shape == ModelShape.SEIR:
        sigma = values["sigma"]
        exposed = mu * (1 - susceptible) / (sigma + mu)
        infectious = mu * (r0 - 1) / beta
        point = {
            "S": susceptible,
            "E": exposed,
            "I": infectious,
            "R": 1 - susceptible - exposed - infectious,
        }
    elif shape == ModelShape.CARRIER:
        gamma, q, carrier_gamma = values["gamma"], values["q"], values["Gamma"]
        infectious = mu * (1 - susceptible) / (gamma + mu)
        carriers = gamma * q * infectious / (carrier_gamma + mu)
        point = {
            "S": susceptible,
            "I": infectious,
            "C": carriers,
            "R": 1 - susceptible - infectious - carriers,
        }

    return {name: value * population for name, value in point.items()}


def _get_risk_group_seed(model: CompartmentalModel, values: Dict[str, float]) -> Dict[str, float]:
    seed = {}
    for group in get_risk_groups(model):
        names = get_risk_group_names(group)
        size = get_value(values, names["size"])
        seed[names["susceptible"]] = size * (1 - DEFAULT_SEED_FRACTION)
        seed[names["infectious"]] = size * DEFAULT_SEED_FRACTION

    return seed


def _find_untagged_equilibria(
    model: CompartmentalModel,
    parameters: Parameters,
    population: float,
    initial: Optional[Mapping[str, float]],
) -> EquilibriumResult:
    """
    Relaxes a model without a canonical shape towards its disease-free and endemic equilibria.
    The disease-free search starts with everyone susceptible, the endemic search starts from
    the given initial values or seeds the infectious compartments.
    """
    susceptible = _get_susceptible_compartments(model)
    disease_free_start = {name: population / len(susceptible) for name in susceptible}
    disease_free = find_equilibrium_numerically(model, parameters, disease_free_start)

    if initial is None:
        infectious = model.infectious_compartments
        seed = population * DEFAULT_SEED_FRACTION
        initial = {name: population * (1 - DEFAULT_SEED_FRACTION) / len(susceptible) for name in susceptible}
        for name in infectious:
            initial[name] = initial.get(name, 0.0) + seed / len(infectious)

    endemic = find_equilibrium_numerically(model, parameters, initial)
    if endemic.kind == EquilibriumKind.DISEASE_FREE:
        reason = "Numerical relaxation from the seeded state reached a disease-free state."
        return EquilibriumResult(
            disease_free=disease_free,
            endemic=None,
            status=EquilibriumStatus.NO_ENDEMIC_EQUILIBRIUM,
            reason=reason,
            points=[disease_free],
        )

    return EquilibriumResult(
        disease_free=disease_free,
        endemic=endemic,
        status=EquilibriumStatus.ENDEMIC,
        points=[disease_free, endemic],
    )


def _get_susceptible_compartments(model: CompartmentalModel) -> List[str]:
    """
    Returns the compartments that people are infected from, or the first compartment if there are none.
    """
    names = []
    for flow in model.get_flows():
        if flow.transmission_mode and flow.source.name not in names:
            names.append(flow.source.name)

    return names or model.compartment_names[:1]


def find_equilibrium_numerically(
    model: CompartmentalModel,
    parameters: Parameters,
    initial: Mapping[str, float],
    horizon: float = DEFAULT_HORIZON,
    tolerance: float = DEFAULT_TOLERANCE,
    method: str = "LSODA",
) -> EquilibriumPoint:
    """
    Finds an equilibrium by relaxation: the model is integrated from the initial values until the
    norm of the net flow rates falls below the tolerance (or the horizon is reached), and the end point
    is then polished with a root finder. Conserved totals of closed models are preserved.

    Args:
        model: The model.
        parameters: The parameter values.
        initial: The compartment values to start from.
        horizon (optional): The longest time to integrate for.
        tolerance (optional): Relaxation stops once the norm of the net flow rates is below this value.
        method (optional): The solve_ivp method used for relaxation, a stiff method by default.

    Returns:
        EquilibriumPoint: The equilibrium that the initial values relax to.

    """
    ode_func = model.get_ode_function(parameters)
    start = model.get_initial_values(initial)
    scale = max(start.sum(), 1.0)

    def _ode_func(time, values):
        return ode_func(values, time)

    def _is_steady(time, values):
        return np.linalg.norm(ode_func(values, time)) - tolerance * scale

    _is_steady.terminal = True
    _is_steady.direction = -1
    results = solve_ivp(
        _ode_func,
        (0.0, horizon),
        start,
        method=method,
        events=_is_steady,
        rtol=1e-10,
        atol=1e-12 * scale,
    )
    if results.status == -1:
        logger.warning("Relaxation towards equilibrium failed: %s", results.message)

    relaxed = np.clip(results.y[:, -1], 0, None)
    relaxed_residual = np.linalg.norm(ode_func(relaxed, 0.0))
    point = relaxed
    polished = root(lambda x: ode_func(x, 0.0), relaxed)
    if polished.success:
        candidate = np.clip(polished.x, 0, None)
        residual = np.linalg.norm(ode_func(candidate, 0.0))
        is_conserved = not model.is_closed or abs(candidate.sum() - relaxed.sum()) <= 1e-9 * scale
        if residual < relaxed_residual and is_conserved:
            point = candidate

    residual = float(np.linalg.norm(ode_func(point, 0.0)))
    if residual > tolerance * scale:
        logger.warning("Equilibrium search stopped with residual %s at time %s", residual, results.t[-1])

    values = dict(zip(model.compartment_names, point.tolist()))
    prevalence = sum(values[name] for name in model.infectious_compartments)
    total = max(point.sum(), np.finfo(float).tiny)
    if prevalence / total > DISEASE_FREE_THRESHOLD:
        kind = EquilibriumKind.ENDEMIC
    else:
        kind = EquilibriumKind.DISEASE_FREE

    return EquilibriumPoint(values, kind, EquilibriumMethod.NUMERICAL, residual)


def _build_point(model, ode_func, values, kind, method) -> EquilibriumPoint:
    state = np.array([values[name] for name in model.compartment_names])
    residual = float(np.linalg.norm(ode_func(state, 0.0)))
    return EquilibriumPoint(dict(values), kind, method, residual)
