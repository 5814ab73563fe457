import math

import numpy as np
import pytest
from numpy.testing import assert_allclose

from epiflow.derived import (
    DerivedQuantity,
    FinalSizeMethod,
    attack_rate,
    average_age_at_infection,
    basic_reproduction_number,
    critical_vaccination_coverage,
    final_epidemic_size,
    linearised_period,
    next_generation_matrix,
    oscillation_period,
)
from epiflow.equilibrium import find_equilibria
from epiflow.exceptions import UndefinedQuantity, UnknownReference, UnsupportedModelShape
from epiflow.flows import TransmissionMode
from epiflow.model import CompartmentalModel
from epiflow.models import (
    build_carrier_model,
    build_fatal_si_model,
    build_risk_group_model,
    build_seir_model,
    build_sir_demography_model,
    build_sir_model,
    build_sirs_model,
    build_sis_model,
)

RISK_GROUP_PARAMS = {
    "beta_HH": 0.05,
    "beta_HL": 0.005,
    "beta_LH": 0.005,
    "beta_LL": 0.001,
    "gamma": 0.5,
    "n_H": 20,
    "n_L": 80,
}


@pytest.mark.parametrize(
    "build_model, options, params, expected",
    [
        (build_sir_model, {}, {"beta": 2, "gamma": 0.5}, 4),
        (build_sir_demography_model, {}, {"beta": 2, "gamma": 0.5, "mu": 0.0003}, 2 / 0.5003),
        (build_sis_model, {}, {"beta": 2, "gamma": 0.5}, 4),
        (build_sis_model, {"demography": True}, {"beta": 2, "gamma": 0.5, "mu": 0.5}, 2),
        (build_sirs_model, {}, {"beta": 2, "gamma": 0.5, "omega": 0.1}, 4),
        (
            build_seir_model,
            {},
            {"beta": 2, "sigma": 1, "gamma": 0.5, "mu": 0.05},
            2 / (1.05 * 0.55),
        ),
        (
            build_carrier_model,
            {},
            {"beta": 1.5, "gamma": 0.25, "q": 0.1, "epsilon": 0.2, "Gamma": 0.01, "mu": 0.02},
            1.5 / 0.27 * (1 + 0.1 * 0.25 * 0.2 / 0.03),
        ),
        (build_fatal_si_model, {}, {"beta": 1, "mu": 0.1, "nu": 10, "rho": 0.5}, 5),
        (
            build_fatal_si_model,
            {"transmission_mode": TransmissionMode.DENSITY},
            {"beta": 0.01, "mu": 0.1, "nu": 10, "rho": 0.5},
            5,
        ),
    ],
)
def test_basic_reproduction_number(build_model, options, params, expected):
    model = build_model(**options)
    r0 = basic_reproduction_number(model, params)
    assert r0.name == "r0"
    assert r0.shape == model.shape
    assert r0.value == pytest.approx(expected)
    assert float(r0) == pytest.approx(expected)


def test_next_generation_matrix():
    model = build_risk_group_model()
    ngm = next_generation_matrix(model, RISK_GROUP_PARAMS)
    assert_allclose(ngm, [[2, 0.2], [0.8, 0.16]])
    r0 = basic_reproduction_number(model, RISK_GROUP_PARAMS)
    assert r0.value == pytest.approx((2.16 + math.sqrt(2.16 ** 2 - 4 * 0.16)) / 2)
    assert r0.value == pytest.approx(max(abs(np.linalg.eigvals(ngm))))


def test_next_generation_matrix_needs_group_sizes():
    model = build_risk_group_model()
    params = {k: v for k, v in RISK_GROUP_PARAMS.items() if k != "n_L"}
    with pytest.raises(UnknownReference):
        next_generation_matrix(model, params)


def test_next_generation_matrix_needs_risk_groups(sir_params):
    with pytest.raises(UnsupportedModelShape):
        next_generation_matrix(build_sir_model(), sir_params)


def test_r0_for_untagged_model(sir_params):
    model = CompartmentalModel(["S", "I"], ["I"])
    model.add_infection_frequency_flow("infection", "beta", "S", "I")
    model.add_fractional_flow("recovery", "gamma", "I", "S")
    with pytest.raises(UnsupportedModelShape):
        basic_reproduction_number(model, sir_params)


def test_r0_undefined_without_recovery():
    with pytest.raises(UndefinedQuantity):
        basic_reproduction_number(build_sis_model(), {"beta": 2, "gamma": 0})


def test_final_epidemic_size_methods_agree():
    """
    The implicit final size relation matches integrating the SIR model until the epidemic is over.
    """
    model = build_sir_model()
    params = {"beta": 2, "gamma": 1}
    initial = {"S": 0.999, "I": 0.001}
    implicit = final_epidemic_size(model, params, initial)
    integrated = final_epidemic_size(model, params, initial, FinalSizeMethod.INTEGRATE)
    assert implicit.name == "final_susceptible"
    assert implicit.shape == "sir"
    # About 80% of the population is infected when R0 = 2.
    assert implicit.value == pytest.approx(0.2032, abs=1e-3)
    assert implicit.value == pytest.approx(0.999 * math.exp(-2 * (1 - implicit.value)))
    assert integrated.value == pytest.approx(implicit.value, rel=1e-5)

    rate = attack_rate(model, params, initial)
    assert rate.value == pytest.approx(0.999 - implicit.value)


def test_final_epidemic_size_without_infection():
    model = build_sir_model()
    result = final_epidemic_size(model, {"beta": 2, "gamma": 1}, {"S": 0.9, "R": 0.1})
    assert result.value == 0.9


def test_final_epidemic_size_below_threshold():
    model = build_sir_model()
    result = final_epidemic_size(model, {"beta": 0.5, "gamma": 1}, {"S": 0.99, "I": 0.01})
    # Only a few more people are infected.
    assert 0.97 < result.value < 0.99


def test_final_epidemic_size_by_integration_of_sis(sir_params):
    model = build_sis_model()
    result = final_epidemic_size(model, sir_params, {"S": 0.99, "I": 0.01}, FinalSizeMethod.INTEGRATE)
    assert result.value == pytest.approx(0.25, rel=1e-6)


def test_final_epidemic_size_unsupported(sir_params, demography_params):
    with pytest.raises(UnsupportedModelShape):
        final_epidemic_size(build_sis_model(), sir_params, {"S": 0.99, "I": 0.01})
    with pytest.raises(UnsupportedModelShape):
        final_epidemic_size(
            build_sir_demography_model(),
            demography_params,
            {"S": 0.99, "I": 0.01},
            FinalSizeMethod.INTEGRATE,
        )
    with pytest.raises(ValueError):
        final_epidemic_size(build_sir_model(), sir_params, {"S": 0.99, "I": 0.01}, "guess")


def test_sir_demography_oscillation_period(demography_params):
    model = build_sir_demography_model()
    r0 = 2 / 0.5003
    mean_age = 1 / (0.0003 * (r0 - 1))
    expected = 2 * math.pi * math.sqrt(mean_age / 0.5003)
    period = oscillation_period(model, demography_params)
    assert period.name == "oscillation_period"
    assert period.value == pytest.approx(expected)
    # The approximation is close to the period of the linearised dynamics when damping is weak.
    linearised = linearised_period(model, demography_params)
    assert linearised.value == pytest.approx(expected, rel=0.05)


def test_seir_oscillation_period():
    model = build_seir_model()
    params = {"beta": 2, "sigma": 1, "gamma": 0.5, "mu": 0.001}
    r0 = 2 / (1.001 * 0.501)
    mean_age = 1 / (0.001 * (r0 - 1))
    generation_time = 1 / 1.001 + 1 / 0.501
    period = oscillation_period(model, params)
    assert period.value == pytest.approx(2 * math.pi * math.sqrt(mean_age * generation_time))


def test_sirs_oscillation_period():
    model = build_sirs_model(demography=True)
    params = {"beta": 2, "gamma": 0.5, "omega": 0.01, "mu": 0.001}
    endemic = find_equilibria(model, params).endemic
    mean_age = 1 / (2 * endemic["I"])
    period = oscillation_period(model, params)
    assert period.value == pytest.approx(2 * math.pi * math.sqrt(mean_age / 0.511))
    assert average_age_at_infection(model, params).value == pytest.approx(mean_age)


def test_oscillation_period_unsupported(sir_params):
    with pytest.raises(UnsupportedModelShape):
        oscillation_period(build_sis_model(), sir_params)


def test_sirs_oscillation_period_without_endemic_equilibrium():
    with pytest.raises(UndefinedQuantity):
        oscillation_period(build_sirs_model(), {"beta": 0.5, "gamma": 1, "omega": 0.1})


def test_linearised_period_without_oscillation(sir_params):
    """
    The SIS model approaches its endemic equilibrium without oscillating.
    """
    with pytest.raises(UndefinedQuantity):
        linearised_period(build_sis_model(), sir_params)


def test_linearised_period_without_endemic_equilibrium():
    with pytest.raises(UndefinedQuantity):
        linearised_period(build_sir_demography_model(), {"beta": 0.4, "gamma": 0.5, "mu": 0.01})


def test_average_age_at_infection(demography_params):
    model = build_sir_demography_model()
    age = average_age_at_infection(model, demography_params)
    assert age.name == "age_at_infection"
    assert age.value == pytest.approx(1 / (0.0003 * (2 / 0.5003 - 1)))


def test_average_age_at_infection_undefined():
    with pytest.raises(UndefinedQuantity):
        average_age_at_infection(build_seir_model(), {"beta": 2, "sigma": 1, "gamma": 0.5, "mu": 0})
    with pytest.raises(UndefinedQuantity):
        average_age_at_infection(build_sir_demography_model(), {"beta": 0.4, "gamma": 0.5, "mu": 0.01})
    with pytest.raises(UndefinedQuantity):
        average_age_at_infection(build_sirs_model(), {"beta": 2, "gamma": 0.5, "omega": 0.1})
    with pytest.raises(UnsupportedModelShape):
        average_age_at_infection(build_sis_model(), {"beta": 2, "gamma": 0.5})


def test_critical_vaccination_coverage(sir_params):
    coverage = critical_vaccination_coverage(build_sir_model(), sir_params)
    assert coverage == DerivedQuantity("vaccination_coverage", 0.75, "sir")
    with pytest.raises(UndefinedQuantity):
        critical_vaccination_coverage(build_sir_model(), {"beta": 0.4, "gamma": 0.5})
