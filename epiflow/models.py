"""
Builders for the canonical model shapes.

Each builder returns a frozen model tagged with its shape, so that closed-form equilibria and derived
quantities are available. Parameter names follow the usual textbook notation:

    beta: transmission rate        gamma: recovery rate          mu: birth and background death rate
    omega: waning immunity rate    sigma: rate of leaving latency
    q: fraction of infections which become chronic carriers
    epsilon: relative infectiousness of carriers    Gamma: carrier recovery rate
    nu: constant birth rate        rho: probability that infection is fatal

"""
from typing import Sequence

from epiflow.flows import TransmissionMode
from epiflow.model import CompartmentalModel
from epiflow.shapes import ModelShape, get_risk_group_names, get_waifw_parameter


def build_sir_model() -> CompartmentalModel:
    """
    Returns a closed SIR model, with frequency dependent transmission.
    """
    model = CompartmentalModel(
        compartments=["S", "I", "R"],
        infectious_compartments=["I"],
        parameters=["beta", "gamma"],
    )
    model.add_infection_frequency_flow("infection", "beta", "S", "I")
    model.add_fractional_flow("recovery", "gamma", "I", "R")
    model.set_shape(ModelShape.SIR)
    return model


def build_sir_demography_model() -> CompartmentalModel:
    """
    Returns an SIR model where births into S balance deaths from every compartment.
    """
    model = CompartmentalModel(
        compartments=["S", "I", "R"],
        infectious_compartments=["I"],
        parameters=["beta", "gamma", "mu"],
    )
    model.add_infection_frequency_flow("infection", "beta", "S", "I")
    model.add_fractional_flow("recovery", "gamma", "I", "R")
    _add_demography(model)
    model.set_shape(ModelShape.SIR_DEMOGRAPHY)
    return model


def build_sis_model(demography: bool = False) -> CompartmentalModel:
    """
    Returns an SIS model, where recovery confers no immunity.
    """
    model = CompartmentalModel(
        compartments=["S", "I"],
        infectious_compartments=["I"],
        parameters=["beta", "gamma", "mu"] if demography else ["beta", "gamma"],
    )
    model.add_infection_frequency_flow("infection", "beta", "S", "I")
    model.add_fractional_flow("recovery", "gamma", "I", "S")
    if demography:
        _add_demography(model)

    model.set_shape(ModelShape.SIS)
    return model


def build_sirs_model(demography: bool = False) -> CompartmentalModel:
    """
    Returns an SIRS model, where immunity wanes and people return from R to S.
    """
    params = ["beta", "gamma", "omega"]
    model = CompartmentalModel(
        compartments=["S", "I", "R"],
        infectious_compartments=["I"],
        parameters=params + ["mu"] if demography else params,
    )
    model.add_infection_frequency_flow("infection", "beta", "S", "I")
    model.add_fractional_flow("recovery", "gamma", "I", "R")
    model.add_fractional_flow("waning", "omega", "R", "S")
    if demography:
        _add_demography(model)

    model.set_shape(ModelShape.SIRS)
    return model


def build_seir_model() -> CompartmentalModel:
    """
    Returns an SEIR model with demography, where newly infected people pass through a latent period.
    """
    model = CompartmentalModel(
        compartments=["S", "E", "I", "R"],
        infectious_compartments=["I"],
        parameters=["beta", "sigma", "gamma", "mu"],
    )
    model.add_infection_frequency_flow("infection", "beta", "S", "E")
    model.add_fractional_flow("progression", "sigma", "E", "I")
    model.add_fractional_flow("recovery", "gamma", "I", "R")
    _add_demography(model)
    model.set_shape(ModelShape.SEIR)
    return model


def build_carrier_model() -> CompartmentalModel:
    """
    Returns an SIR model with demography, where a fraction q of acute infections become chronic carriers,
    who are less infectious (relative infectiousness epsilon) and recover at a slower rate Gamma.
    """
    model = CompartmentalModel(
        compartments=["S", "I", "C", "R"],
        infectious_compartments=["I", "C"],
        parameters=["beta", "gamma", "q", "epsilon", "Gamma", "mu"],
    )
    model.add_infection_frequency_flow(
        "infection", "beta", "S", "I", infectious={"I": 1, "C": "epsilon"}
    )
    model.add_fractional_flow("recovery", "(1 - q) * gamma", "I", "R")
    model.add_fractional_flow("carriage", "q * gamma", "I", "C")
    model.add_fractional_flow("carrier_recovery", "Gamma", "C", "R")
    _add_demography(model)
    model.set_shape(ModelShape.CARRIER)
    return model


def build_fatal_si_model(transmission_mode: str = TransmissionMode.FREQUENCY) -> CompartmentalModel:
    """
    Returns an SI model with constant births, where infected people die at a raised rate.
    A fraction rho of infected people die of the infection rather than of background mortality,
    so the extra death rate is rho * mu / (1 - rho).
    """
    model = CompartmentalModel(
        compartments=["S", "I"],
        infectious_compartments=["I"],
        parameters=["beta", "mu", "nu", "rho"],
    )
    if transmission_mode == TransmissionMode.DENSITY:
        model.add_infection_density_flow("infection", "beta", "S", "I")
    else:
        model.add_infection_frequency_flow("infection", "beta", "S", "I")

    model.add_importation_flow("births", "nu", "S")
    model.add_universal_death_flows("universal_death", "mu")
    model.add_death_flow("infection_death", "rho * mu / (1 - rho)", "I")
    model.set_shape(ModelShape.FATAL_SI)
    return model


def build_risk_group_model(groups: Sequence[str] = ("H", "L")) -> CompartmentalModel:
    """
    Returns an SIS model with several risk groups and density dependent transmission.
    Mixing between groups is set by a WAIFW ("who acquires infection from whom") matrix, where
    parameter beta_HL is the rate at which infectious people in group L infect susceptible people in group H.
    The group sizes n_H, n_L, etc. are needed to calculate R0.
    """
    groups = list(groups)
    assert groups, "At least one risk group is required."
    names = {g: get_risk_group_names(g) for g in groups}
    compartments = []
    for group in groups:
        compartments += [names[group]["susceptible"], names[group]["infectious"]]

    model = CompartmentalModel(
        compartments=compartments,
        infectious_compartments=[names[g]["infectious"] for g in groups],
    )
    for to_group in groups:
        susceptible = names[to_group]["susceptible"]
        infectious = names[to_group]["infectious"]
        for from_group in groups:
            model.add_infection_density_flow(
                f"infection_{to_group}_from_{from_group}",
                get_waifw_parameter(to_group, from_group),
                susceptible,
                infectious,
                infectious=[names[from_group]["infectious"]],
            )

        model.add_fractional_flow(f"recovery_{to_group}", "gamma", infectious, susceptible)

    model.set_shape(ModelShape.RISK_GROUPS, groups=groups)
    return model


def _add_demography(model: CompartmentalModel):
    """
    Adds births into S which exactly balance deaths from every compartment at rate mu.
    """
    model.add_crude_birth_flow("births", "mu", "S")
    model.add_universal_death_flows("universal_death", "mu")


MODEL_BUILDERS = {
    ModelShape.SIR: build_sir_model,
    ModelShape.SIR_DEMOGRAPHY: build_sir_demography_model,
    ModelShape.SIS: build_sis_model,
    ModelShape.SIRS: build_sirs_model,
    ModelShape.SEIR: build_seir_model,
    ModelShape.CARRIER: build_carrier_model,
    ModelShape.FATAL_SI: build_fatal_si_model,
    ModelShape.RISK_GROUPS: build_risk_group_model,
}
