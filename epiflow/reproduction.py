"""
The basic reproduction number of canonical model shapes.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from epiflow.exceptions import UndefinedQuantity, UnknownReference, UnsupportedModelShape
from epiflow.flows import TransmissionMode
from epiflow.model import CompartmentalModel, Parameters
from epiflow.params import ParameterSet
from epiflow.shapes import ModelShape, get_risk_group_names, get_waifw_parameter


@dataclass(frozen=True)
class DerivedQuantity:
    """
    A named epidemiological quantity, tagged with the model shape whose formula produced it.
    """

    name: str
    value: float
    shape: Optional[str]

    def __float__(self):
        return float(self.value)


def get_parameter_values(parameters: Parameters) -> Dict[str, float]:
    if isinstance(parameters, ParameterSet):
        return parameters.as_dict()
    return dict(parameters)


def require_shape(model: CompartmentalModel, shapes: Sequence[str], quantity: str):
    """
    Raises ``UnsupportedModelShape`` unless the model has one of the given shapes.
    """
    if model.shape not in shapes:
        msg = f"Cannot calculate {quantity} for model shape {model.shape}, supported: {', '.join(shapes)}"
        raise UnsupportedModelShape(msg)


def get_value(values: Dict[str, float], name: str, default: Optional[float] = None) -> float:
    if name in values:
        return values[name]
    elif default is not None:
        return default
    else:
        raise UnknownReference(f"Parameter set is missing values for: {name}")


def divide(numerator: float, denominator: float, quantity: str) -> float:
    if denominator == 0:
        raise UndefinedQuantity(f"{quantity} is undefined, division by zero.")
    return numerator / denominator


def get_r0_value(model: CompartmentalModel, parameters: Parameters) -> float:
    """
    Returns the basic reproduction number, using the closed-form expression for the model's shape.
    """
    values = get_parameter_values(parameters)
    shape = model.shape
    require_shape(model, ModelShape.ALL, "R0")
    if shape == ModelShape.RISK_GROUPS:
        ngm = next_generation_matrix(model, parameters)
        return float(np.max(np.abs(np.linalg.eigvals(ngm))))

    beta = get_value(values, "beta")
    if shape == ModelShape.FATAL_SI:
        mu, nu, rho = values["mu"], values["nu"], values["rho"]
        r0 = divide(beta * (1 - rho), mu, "R0")
        if model.transmission_mode == TransmissionMode.DENSITY:
            # Density dependent transmission scales with the disease-free population size.
            r0 *= divide(nu, mu, "Disease-free population")
        return r0

    mu = get_value(values, "mu", 0.0)
    gamma = get_value(values, "gamma")
    if shape == ModelShape.SIR:
        return divide(beta, gamma, "R0")
    elif shape in (ModelShape.SIR_DEMOGRAPHY, ModelShape.SIS, ModelShape.SIRS):
        return divide(beta, gamma + mu, "R0")
    elif shape == ModelShape.SEIR:
        sigma = values["sigma"]
        return divide(beta * sigma, (sigma + mu) * (gamma + mu), "R0")
    elif shape == ModelShape.CARRIER:
        q, epsilon, carrier_gamma = values["q"], values["epsilon"], values["Gamma"]
        # Infections caused while acutely infectious, plus those caused by the fraction q who become carriers.
        carrier_term = divide(q * gamma * epsilon, carrier_gamma + mu, "R0")
        return divide(beta, gamma + mu, "R0") * (1 + carrier_term)


def basic_reproduction_number(
    model: CompartmentalModel, parameters: Parameters
) -> DerivedQuantity:
    """
    Returns the basic reproduction number R0 of a model with a canonical shape.

    For risk group models this is the dominant eigenvalue of the next generation matrix.
    Models without a shape raise ``UnsupportedModelShape``.
    """
    return DerivedQuantity("r0", get_r0_value(model, parameters), model.shape)


def next_generation_matrix(model: CompartmentalModel, parameters: Parameters) -> np.ndarray:
    """
    Returns the next generation matrix K of a risk group model, where K[i, j] is the number of
    new infections in group i caused by one infectious person in group j, in an otherwise
    fully susceptible population::

        K[i, j] = beta_ij * n_i / (gamma + mu)

    where n_i is the size of group i.
    """
    require_shape(model, [ModelShape.RISK_GROUPS], "next generation matrix")
    values = get_parameter_values(parameters)
    groups = get_risk_groups(model)
    gamma = get_value(values, "gamma")
    mu = get_value(values, "mu", 0.0)
    duration = divide(1.0, gamma + mu, "Infectious period")
    ngm = np.zeros([len(groups), len(groups)])
    for i, to_group in enumerate(groups):
        size = get_value(values, get_risk_group_names(to_group)["size"])
        for j, from_group in enumerate(groups):
            beta = get_value(values, get_waifw_parameter(to_group, from_group))
            ngm[i, j] = beta * size * duration

    return ngm


def get_risk_groups(model: CompartmentalModel) -> List[str]:
    return list(model.shape_options["groups"])
