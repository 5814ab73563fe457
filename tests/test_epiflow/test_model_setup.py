import pickle

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from epiflow import flows
from epiflow.exceptions import DuplicateCompartment, MalformedModel, UnknownReference
from epiflow.flows import TransmissionMode
from epiflow.model import CompartmentalModel
from epiflow.models import build_sir_model
from epiflow.shapes import ModelShape


def _get_sir_model(parameters=None):
    model = CompartmentalModel(
        compartments=["S", "I", "R"],
        infectious_compartments=["I"],
        parameters=parameters,
    )
    model.add_infection_frequency_flow("infection", "beta", "S", "I")
    model.add_fractional_flow("recovery", "gamma", "I", "R")
    return model


def test_model_compartments():
    model = CompartmentalModel(["S", "E", "I", "R"], ["I"])
    assert model.compartment_names == ["S", "E", "I", "R"]
    assert model.num_compartments == 4
    assert [c.idx for c in model.compartments] == [0, 1, 2, 3]
    assert model.infectious_compartments == ["I"]


def test_model_duplicate_compartments():
    with pytest.raises(DuplicateCompartment):
        CompartmentalModel(["S", "I", "S"], ["I"])


def test_duplicate_compartment_is_malformed_model():
    with pytest.raises(MalformedModel):
        CompartmentalModel(["S", "S"], [])


@pytest.mark.parametrize("comps", [[], ["S", "1I"], ["S", "N"], ["S", 3]])
def test_model_invalid_compartments(comps):
    with pytest.raises(MalformedModel):
        CompartmentalModel(comps, [])


def test_model_unknown_infectious_compartment():
    with pytest.raises(UnknownReference):
        CompartmentalModel(["S", "I", "R"], ["X"])


def test_model_parameter_clash():
    with pytest.raises(MalformedModel):
        CompartmentalModel(["S", "I"], ["I"], parameters=["beta", "S"])


def test_flow_with_unknown_compartment_fails_before_integration():
    model = CompartmentalModel(["S", "I", "R"], ["I"])
    with pytest.raises(MalformedModel):
        model.add_fractional_flow("recovery", "gamma", "I", "X")

    with pytest.raises(UnknownReference):
        model.add_death_flow("death", "mu", "H")

    assert model.get_flows() == []


def test_flow_with_unknown_parameter():
    model = CompartmentalModel(["S", "I", "R"], ["I"], parameters=["beta", "gamma"])
    model.add_fractional_flow("recovery", "gamma", "I", "R")
    with pytest.raises(UnknownReference):
        model.add_fractional_flow("waning", "omega", "R", "S")
    with pytest.raises(UnknownReference):
        model.add_infection_frequency_flow("infection", "beta", "S", "I", {"I": "epsilon"})


def test_undeclared_parameters_are_allowed_without_declaration():
    model = _get_sir_model()
    assert model.parameter_names == ["beta", "gamma"]


def test_flow_validation():
    model = CompartmentalModel(["S", "I", "R"], ["I"])
    with pytest.raises(MalformedModel):
        model.add_fractional_flow("self", "gamma", "I", "I")
    with pytest.raises(MalformedModel):
        model.add_fractional_flow("negative", -1, "I", "R")
    with pytest.raises(MalformedModel):
        # Structured flow rates cannot refer to compartments.
        model.add_fractional_flow("recovery", "gamma * S", "I", "R")
    with pytest.raises(MalformedModel):
        model.add_expression_flow("nowhere", "gamma * I")


def test_duplicate_flow_names():
    model = _get_sir_model()
    with pytest.raises(MalformedModel):
        model.add_fractional_flow("recovery", "gamma", "R", "S")


def test_parameter_names_are_scanned_from_flows():
    model = CompartmentalModel(["S", "I", "C", "R"], ["I", "C"])
    model.add_infection_frequency_flow("infection", "beta", "S", "I", {"I": 1, "C": "epsilon"})
    model.add_fractional_flow("recovery", "(1 - q) * gamma", "I", "R")
    model.add_fractional_flow("carriage", "q * gamma", "I", "C")
    model.add_expression_flow("carrier_recovery", "Gamma * C", "C", "R")
    assert model.parameter_names == ["Gamma", "beta", "epsilon", "gamma", "q"]


def test_universal_death_flows():
    model = CompartmentalModel(["S", "I", "R"], ["I"])
    names = model.add_universal_death_flows("universal_death", "mu")
    assert names == ["universal_death_for_S", "universal_death_for_I", "universal_death_for_R"]
    assert all(type(f) is flows.DeathFlow for f in model.get_flows())
    assert not model.is_closed


def test_model_is_closed():
    model = _get_sir_model()
    assert model.is_closed
    model.add_crude_birth_flow("births", "mu", "S")
    assert not model.is_closed


def test_transmission_mode():
    model = CompartmentalModel(["S", "I"], ["I"])
    assert model.transmission_mode is None
    model.add_infection_density_flow("infection", "beta", "S", "I")
    assert model.transmission_mode == TransmissionMode.DENSITY
    model.add_infection_frequency_flow("infection_2", "beta", "S", "I")
    assert model.transmission_mode == "mixed"


def test_model_is_frozen_after_evaluation(sir_params):
    model = _get_sir_model()
    model.get_ode_function(sir_params)
    with pytest.raises(MalformedModel):
        model.add_fractional_flow("waning", "omega", "R", "S")


def test_model_is_frozen_after_shape_is_set():
    model = build_sir_model()
    assert model.shape == ModelShape.SIR
    with pytest.raises(MalformedModel):
        model.add_death_flow("death", "mu", "I")


def test_set_shape_validation():
    model = CompartmentalModel(["S", "I"], ["I"])
    model.add_infection_frequency_flow("infection", "beta", "S", "I")
    model.add_fractional_flow("recovery", "gamma", "I", "S")
    with pytest.raises(MalformedModel):
        # Missing R compartment.
        model.set_shape(ModelShape.SIR)
    with pytest.raises(MalformedModel):
        # Missing R compartment and omega parameter.
        model.set_shape(ModelShape.SIRS)
    with pytest.raises(MalformedModel):
        model.set_shape("not_a_shape")

    model.set_shape(ModelShape.SIS)
    assert model.shape == ModelShape.SIS


def test_set_shape_checks_transmission_mode():
    model = CompartmentalModel(["S", "I"], ["I"])
    model.add_infection_density_flow("infection", "beta", "S", "I")
    model.add_fractional_flow("recovery", "gamma", "I", "S")
    with pytest.raises(MalformedModel, match="frequency"):
        model.set_shape(ModelShape.SIS)


def test_closed_shape_rejects_demography():
    model = _get_sir_model()
    model.add_death_flow("death", "mu", "I")
    with pytest.raises(MalformedModel):
        model.set_shape(ModelShape.SIR)


def test_get_initial_values():
    model = _get_sir_model()
    assert_array_equal(model.get_initial_values({"S": 0.99, "I": 0.01}), [0.99, 0.01, 0])
    with pytest.raises(UnknownReference):
        model.get_initial_values({"X": 1})
    with pytest.raises(MalformedModel):
        model.get_initial_values({"S": -1})


def test_get_flow_rates(sir_params):
    model = _get_sir_model()
    rates = model.get_flow_rates(np.array([0.9, 0.1, 0.0]), sir_params)
    # Infection: 2 * 0.9 * 0.1 / 1 = 0.18, recovery: 0.5 * 0.1 = 0.05
    assert_allclose(rates, [-0.18, 0.13, 0.05])


def test_get_flow_rates_missing_parameter():
    model = _get_sir_model()
    with pytest.raises(UnknownReference, match="gamma"):
        model.get_flow_rates(np.array([0.9, 0.1, 0.0]), {"beta": 2.0})


def test_get_flow_rates_clamps_negative_values(sir_params):
    model = _get_sir_model()
    rates = model.get_flow_rates(np.array([0.9, -0.1, 0.0]), sir_params)
    assert_array_equal(rates, [0, 0, 0])


def test_flow_rates_sum_to_net_population_change():
    """
    The sum of the net flows equals births minus deaths.
    """
    model = _get_sir_model()
    model.add_crude_birth_flow("births", "mu", "S")
    model.add_universal_death_flows("universal_death", "mu")
    model.add_death_flow("infection_death", "alpha", "I")
    params = {"beta": 2, "gamma": 0.5, "mu": 0.1, "alpha": 0.3}
    values = np.array([600.0, 300.0, 100.0])
    rates = model.get_flow_rates(values, params)
    births = 0.1 * 1000
    deaths = 0.1 * 1000 + 0.3 * 300
    assert rates.sum() == pytest.approx(births - deaths)


def test_model_is_not_modified_by_evaluation(sir_params):
    model = _get_sir_model()
    model.get_flow_rates(np.array([0.9, 0.1, 0.0]), sir_params)
    assert all(f.weight is None for f in model.get_flows())


def test_model_pickles():
    model = build_sir_model()
    model_copy = pickle.loads(pickle.dumps(model))
    assert model_copy.compartment_names == model.compartment_names
    assert model_copy.get_flow_names() == model.get_flow_names()
    assert model_copy.shape == model.shape


def test_model_from_definition(sir_params):
    model = CompartmentalModel.from_definition(
        {
            "compartments": ["S", "I", "R"],
            "infectious_compartments": ["I"],
            "parameters": ["beta", "gamma", "omega"],
            "flows": [
                {"type": "infection_frequency", "name": "infection", "rate": "beta", "source": "S", "dest": "I"},
                {"type": "fractional", "name": "recovery", "rate": "gamma", "source": "I", "dest": "R"},
                {"type": "fractional", "name": "waning", "rate": "omega", "source": "R", "dest": "S"},
            ],
            "shape": "sirs",
        }
    )
    assert model.shape == ModelShape.SIRS
    assert model.get_flow_names() == ["infection", "recovery", "waning"]


@pytest.mark.parametrize(
    "definition",
    [
        {"infectious_compartments": ["I"]},
        {"compartments": ["S", "I"], "flows": [{"type": "teleport", "name": "x", "rate": 1, "source": "S", "dest": "I"}]},
        {"compartments": ["S", "I"], "flows": [{"type": "fractional", "name": "x", "rate": 1, "source": "S", "dest": "I", "colour": "red"}]},
        {"compartments": ["S", "I"], "flows": [{"type": "fractional", "rate": 1, "source": "S", "dest": "I"}]},
    ],
)
def test_model_from_bad_definition(definition):
    with pytest.raises(MalformedModel):
        CompartmentalModel.from_definition(definition)
