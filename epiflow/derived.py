"""
Epidemiological summary quantities derived from a model and its parameters.

Each quantity is returned as a ``DerivedQuantity`` tagged with the model shape whose formula was used.
Requesting a quantity from a model that does not have a suitable shape raises ``UnsupportedModelShape``,
and quantities which are mathematically undefined for the parameters raise ``UndefinedQuantity``.
"""
import logging
import math
from typing import Mapping

import numpy as np
from scipy.optimize import brentq

from epiflow.equilibrium import find_equilibria, find_equilibrium_numerically
from epiflow.exceptions import UndefinedQuantity, UnsupportedModelShape
from epiflow.model import CompartmentalModel, Parameters
from epiflow.reproduction import (
    DerivedQuantity,
    basic_reproduction_number,
    get_parameter_values,
    get_r0_value,
    next_generation_matrix,
    require_shape,
)
from epiflow.shapes import ModelShape

logger = logging.getLogger(__name__)

__all__ = [
    "DerivedQuantity",
    "basic_reproduction_number",
    "next_generation_matrix",
    "final_epidemic_size",
    "attack_rate",
    "oscillation_period",
    "linearised_period",
    "average_age_at_infection",
    "critical_vaccination_coverage",
]


class FinalSizeMethod:
    # Solve the implicit final size relation of the SIR model.
    IMPLICIT = "implicit"
    # Integrate until the flows stop.
    INTEGRATE = "integrate"


def final_epidemic_size(
    model: CompartmentalModel,
    parameters: Parameters,
    initial: Mapping[str, float],
    method: str = FinalSizeMethod.IMPLICIT,
) -> DerivedQuantity:
    """
    Returns the number of people who are still susceptible once the epidemic is over.

    The implicit method, for SIR models, solves the final size relation::

        S(inf) = S(0) * exp(-R0 * (R(inf) - R(0)) / N)

    where R(inf) = N - S(inf), which follows from the SIR invariant d(ln S)/dR = -R0 / N.
    The integrate method works for any closed model, and relaxes the model until the net flow rates
    are negligible.
    """
    if method == FinalSizeMethod.IMPLICIT:
        require_shape(model, [ModelShape.SIR], "implicit final epidemic size")
        start = model.get_initial_values(initial)
        values = dict(zip(model.compartment_names, start.tolist()))
        susceptible = _solve_final_size_relation(
            get_r0_value(model, parameters), values["S"], values["R"], start.sum()
        )
    elif method == FinalSizeMethod.INTEGRATE:
        if not model.is_closed:
            msg = "Final epidemic size can only be found by integration for closed models."
            raise UnsupportedModelShape(msg)

        point = find_equilibrium_numerically(model, parameters, initial)
        susceptible = sum(point[name] for name in _get_susceptible_names(model))
    else:
        raise ValueError(f"Unknown final size method: {method}")

    return DerivedQuantity("final_susceptible", susceptible, model.shape)


def _solve_final_size_relation(r0: float, susceptible: float, recovered: float, population: float):
    if susceptible == 0:
        return 0.0
    elif susceptible + recovered >= population:
        # Nobody is infectious, so there is no epidemic.
        return susceptible

    def _get_error(final_susceptible):
        final_recovered = population - final_susceptible
        growth = -r0 * (final_recovered - recovered) / population
        return final_susceptible - susceptible * math.exp(growth)

    # The error is concave in the final susceptible population, negative at zero and
    # positive at the initial susceptible population, so there is exactly one root.
    return brentq(_get_error, 0.0, susceptible, xtol=1e-14 * population)


def attack_rate(
    model: CompartmentalModel,
    parameters: Parameters,
    initial: Mapping[str, float],
    method: str = FinalSizeMethod.IMPLICIT,
) -> DerivedQuantity:
    """
    Returns the fraction of the population who are infected over the course of the epidemic.
    """
    start = model.get_initial_values(initial)
    susceptible = sum(start[model.get_compartment(n).idx] for n in _get_susceptible_names(model))
    final = final_epidemic_size(model, parameters, initial, method).value
    return DerivedQuantity("attack_rate", (susceptible - final) / start.sum(), model.shape)


def _get_susceptible_names(model: CompartmentalModel):
    names = []
    for flow in model.get_flows():
        if flow.transmission_mode and flow.source.name not in names:
            names.append(flow.source.name)

    return names


def oscillation_period(model: CompartmentalModel, parameters: Parameters) -> DerivedQuantity:
    """
    Returns the period of the damped oscillations as the model approaches its endemic equilibrium,
    using the approximation 2 * pi * sqrt(A * G), where A is the mean age at infection and G
    is the mean time spent between infection and leaving the infected state:

        - SIR with demography: A = 1 / (mu * (R0 - 1)), G = 1 / (gamma + mu)
        - SIRS: A = 1 / (beta * I*), G = 1 / (gamma + mu + omega)
        - SEIR: A = 1 / (mu * (R0 - 1)), G = 1 / (sigma + mu) + 1 / (gamma + mu)

    """
    shapes = [ModelShape.SIR_DEMOGRAPHY, ModelShape.SIRS, ModelShape.SEIR]
    require_shape(model, shapes, "oscillation period")
    values = get_parameter_values(parameters)
    mu = values.get("mu", 0.0)
    gamma = values["gamma"]
    if model.shape == ModelShape.SIRS:
        mean_age = _get_sirs_time_to_infection(model, parameters)
        generation_time = 1 / (gamma + mu + values["omega"])
    else:
        mean_age = average_age_at_infection(model, parameters).value
        generation_time = 1 / (gamma + mu)
        if model.shape == ModelShape.SEIR:
            sigma = values["sigma"]
            generation_time += 1 / (sigma + mu)

    period = 2 * math.pi * math.sqrt(mean_age * generation_time)
    return DerivedQuantity("oscillation_period", period, model.shape)


def _get_sirs_time_to_infection(model: CompartmentalModel, parameters: Parameters) -> float:
    """
    Returns 1 / (beta * I*), the mean time a susceptible person waits to be infected at the
    endemic equilibrium of an SIRS model.
    """
    result = find_equilibria(model, parameters)
    if not result.has_endemic:
        raise UndefinedQuantity(f"SIRS model has no endemic equilibrium: {result.reason}")

    beta = get_parameter_values(parameters)["beta"]
    return 1 / (beta * result.endemic["I"])


def linearised_period(
    model: CompartmentalModel, parameters: Parameters, population: float = 1.0
) -> DerivedQuantity:
    """
    Returns the period of the slowest decaying oscillation around the endemic equilibrium,
    2 * pi / |Im(lambda)|, where lambda is the complex eigenvalue of the Jacobian with the largest
    real part. Works for any model with an endemic equilibrium, tagged or not.
    """
    result = find_equilibria(model, parameters, population)
    if not result.has_endemic:
        raise UndefinedQuantity(f"Model has no endemic equilibrium: {result.reason}")

    ode_func = model.get_ode_function(parameters)
    point = np.array([result.endemic[n] for n in model.compartment_names])
    jacobian = _get_jacobian(ode_func, point)
    eigenvalues = np.linalg.eigvals(jacobian)
    scale = np.max(np.abs(eigenvalues), initial=0.0)
    is_oscillatory = np.abs(eigenvalues.imag) > 1e-9 * max(scale, 1e-300)
    if not is_oscillatory.any():
        raise UndefinedQuantity("The endemic equilibrium is approached without oscillation.")

    oscillatory = eigenvalues[is_oscillatory]
    dominant = oscillatory[np.argmax(oscillatory.real)]
    period = 2 * math.pi / abs(dominant.imag)
    return DerivedQuantity("linearised_period", period, model.shape)


def _get_jacobian(ode_func, point: np.ndarray) -> np.ndarray:
    """
    Returns the Jacobian of the net flow rates at a point, using central differences.
    Steps are kept small enough that no compartment is pushed below zero.
    """
    num_comps = len(point)
    jacobian = np.zeros([num_comps, num_comps])
    scale = max(point.sum(), 1e-300)
    for idx in range(num_comps):
        step = 1e-6 * max(abs(point[idx]), 1e-3 * scale)
        forward, backward = point.copy(), point.copy()
        forward[idx] += step
        backward[idx] -= step
        if backward[idx] < 0:
            backward[idx] = point[idx]
            jacobian[:, idx] = (ode_func(forward, 0.0) - ode_func(backward, 0.0)) / step
        else:
            jacobian[:, idx] = (ode_func(forward, 0.0) - ode_func(backward, 0.0)) / (2 * step)

    return jacobian


def average_age_at_infection(model: CompartmentalModel, parameters: Parameters) -> DerivedQuantity:
    """
    Returns the mean age at which people are infected at the endemic equilibrium,
    1 / (mu * (R0 - 1)), or 1 / (beta * I*) for SIRS models.
    Undefined if R0 <= 1, or if there are no births and deaths (mu = 0).
    """
    shapes = [ModelShape.SIR_DEMOGRAPHY, ModelShape.SIRS, ModelShape.SEIR, ModelShape.CARRIER]
    require_shape(model, shapes, "average age at infection")
    values = get_parameter_values(parameters)
    mu = values.get("mu", 0.0)
    r0 = get_r0_value(model, parameters)
    if r0 <= 1:
        raise UndefinedQuantity(f"Average age at infection is undefined when R0 = {r0:.4g} <= 1.")
    elif mu == 0:
        raise UndefinedQuantity("Average age at infection is undefined without births and deaths.")

    if model.shape == ModelShape.SIRS:
        age = _get_sirs_time_to_infection(model, parameters)
    else:
        age = 1 / (mu * (r0 - 1))

    return DerivedQuantity("age_at_infection", age, model.shape)


def critical_vaccination_coverage(
    model: CompartmentalModel, parameters: Parameters
) -> DerivedQuantity:
    """
    Returns the fraction of newborns who must be vaccinated to prevent the infection from
    persisting, 1 - 1 / R0. Undefined if R0 <= 1, since no vaccination is needed.
    """
    r0 = get_r0_value(model, parameters)
    if r0 <= 1:
        raise UndefinedQuantity(f"Critical vaccination coverage is undefined when R0 = {r0:.4g} <= 1.")

    return DerivedQuantity("vaccination_coverage", 1 - 1 / r0, model.shape)
