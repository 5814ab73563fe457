"""
Canonical model shapes.

A model can be tagged with a shape, which tells the equilibrium solver and the derived-quantity
calculator which closed-form formulas apply to it. The tag is validated against the model's
structure when it is set.
"""
from typing import Dict, List, Optional

from epiflow.flows import TransmissionMode


class ModelShape:
    """
    Options for the shape of a model.
    """

    # Closed SIR: S -> I -> R
    SIR = "sir"
    # SIR with births into S and deaths from every compartment at the same rate
    SIR_DEMOGRAPHY = "sir_demography"
    # SIS, optionally with demography
    SIS = "sis"
    # SIR with waning immunity R -> S, optionally with demography
    SIRS = "sirs"
    # SEIR with demography
    SEIR = "seir"
    # SIR with a chronic carrier state C, with demography
    CARRIER = "carrier"
    # SI where infection raises mortality, with constant births
    FATAL_SI = "fatal_si"
    # SIS with risk groups mixing through a WAIFW matrix
    RISK_GROUPS = "risk_groups"

    ALL = (SIR, SIR_DEMOGRAPHY, SIS, SIRS, SEIR, CARRIER, FATAL_SI, RISK_GROUPS)
    # Shapes which have a closed population, with no entries or exits.
    CLOSED = (SIR,)


# Compartments and parameters required by each shape.
# Parameters which are optional in a shape (eg. "mu" for SIS) are treated as zero when absent.
SHAPE_REQUIREMENTS = {
    ModelShape.SIR: (["S", "I", "R"], ["beta", "gamma"]),
    ModelShape.SIR_DEMOGRAPHY: (["S", "I", "R"], ["beta", "gamma", "mu"]),
    ModelShape.SIS: (["S", "I"], ["beta", "gamma"]),
    ModelShape.SIRS: (["S", "I", "R"], ["beta", "gamma", "omega"]),
    ModelShape.SEIR: (["S", "E", "I", "R"], ["beta", "sigma", "gamma", "mu"]),
    ModelShape.CARRIER: (["S", "I", "C", "R"], ["beta", "epsilon", "gamma", "q", "Gamma", "mu"]),
    ModelShape.FATAL_SI: (["S", "I"], ["beta", "mu", "nu", "rho"]),
}

SHAPE_TRANSMISSION_MODES = {
    ModelShape.FATAL_SI: (TransmissionMode.DENSITY, TransmissionMode.FREQUENCY),
    ModelShape.RISK_GROUPS: (TransmissionMode.DENSITY,),
}
DEFAULT_TRANSMISSION_MODES = (TransmissionMode.FREQUENCY,)


def get_risk_group_names(group: str) -> Dict[str, str]:
    """
    Returns the names of the compartments and parameters used for a single risk group.
    """
    return {
        "susceptible": f"S{group}",
        "infectious": f"I{group}",
        "size": f"n_{group}",
    }


def get_waifw_parameter(to_group: str, from_group: str) -> str:
    """
    Returns the name of the WAIFW parameter for transmission to one group from another.
    """
    return f"beta_{to_group}{from_group}"


def get_shape_requirements(shape: str, groups: Optional[List[str]] = None):
    """
    Returns the compartments and the flow parameters required by a model shape.
    Group sizes for risk group models are only needed to calculate R0, so they are not included.
    """
    if shape == ModelShape.RISK_GROUPS:
        assert groups, "Risk group models require a list of groups."
        compartments, parameters = [], ["gamma"]
        for group in groups:
            names = get_risk_group_names(group)
            compartments += [names["susceptible"], names["infectious"]]
            parameters +=[get_waifw_parameter(group, other) for other in groups]

        return compartments, parameters

    return SHAPE_REQUIREMENTS[shape]
