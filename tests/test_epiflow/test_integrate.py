import numpy as np
import pytest
from numpy.testing import assert_allclose

from epiflow.exceptions import MalformedModel, UndefinedQuantity, UnknownReference
from epiflow.model import CompartmentalModel
from epiflow.models import build_carrier_model, build_sir_model, build_sirs_model, build_sis_model
from epiflow.params import ParameterSet, TimeGrid
from epiflow.solver import SolverType
from epiflow.trajectory import Trajectory, integrate

SOLVERS = (
    (SolverType.RUNGE_KUTTA, {"step_size": 0.5}),
    (SolverType.ODE_INT, {}),
    (SolverType.SOLVE_IVP, {"method": "DOP853", "rtol": 1e-9}),
)


@pytest.mark.parametrize("solver, solver_args", SOLVERS)
@pytest.mark.parametrize(
    "build_model, params, initial",
    [
        (build_sir_model, {"beta": 3, "gamma": 0.5}, {"S": 0.99, "I": 0.01}),
        (build_sirs_model, {"beta": 2, "gamma": 0.5, "omega": 0.1}, {"S": 0.9, "I": 0.1}),
        (build_sis_model, {"beta": 2, "gamma": 0.5}, {"S": 0.999, "I": 0.001}),
    ],
)
def test_closed_models_conserve_population(build_model, params, initial, solver, solver_args):
    """
    Every sample of a closed cohort model sums to 1.
    """
    model = build_model()
    trajectory = integrate(model, initial, params, TimeGrid(start=0, end=50, step=1), solver, solver_args)
    assert not trajectory.diverged
    assert len(trajectory) == 51
    assert_allclose(trajectory.get_total_population(), 1, atol=1e-6)
    assert np.all(trajectory.values >= 0)


def test_sir_grows_above_threshold(sir_params):
    """
    Infection grows when S(0) is above gamma / beta = 0.25.
    """
    model = build_sir_model()
    trajectory = integrate(model, {"S": 0.3, "I": 0.001, "R": 0.699}, sir_params, np.linspace(0, 5, 51))
    infectious = trajectory["I"]
    assert infectious[1] > infectious[0]
    assert infectious.max() > infectious[0]


def test_sir_declines_below_threshold(sir_params):
    """
    Infection declines from the start when S(0) is below gamma / beta = 0.25.
    """
    model = build_sir_model()
    trajectory = integrate(model, {"S": 0.2, "I": 0.01, "R": 0.79}, sir_params, np.linspace(0, 20, 201))
    assert np.all(np.diff(trajectory["I"]) < 0)


def test_carrier_model_runs():
    model = build_carrier_model()
    params = {"beta": 1.5, "gamma": 0.25, "q": 0.1, "epsilon": 0.2, "Gamma": 0.01, "mu": 0.02}
    trajectory = integrate(model, {"S": 0.99, "I": 0.01}, params, np.linspace(0, 100, 101))
    assert_allclose(trajectory.get_total_population(), 1, atol=1e-6)
    assert trajectory["C"][-1] > 0


def test_integrate_validates_before_running():
    model = build_sir_model()
    with pytest.raises(UnknownReference):
        integrate(model, {"S": 0.99, "I": 0.01}, {"beta": 2}, [0, 1])
    with pytest.raises(UnknownReference):
        integrate(model, {"S": 0.99, "X": 0.01}, {"beta": 2, "gamma": 1}, [0, 1])
    with pytest.raises(MalformedModel):
        integrate(model, {"S": -0.99}, {"beta": 2, "gamma": 1}, [0, 1])
    with pytest.raises(MalformedModel):
        integrate(model, [0.5, 0.5], {"beta": 2, "gamma": 1}, [0, 1])
    with pytest.raises(ValueError):
        integrate(model, {"S": 1}, {"beta": 2, "gamma": 1}, [0, 2, 1])
    with pytest.raises(ValueError):
        integrate(model, {"S": 1}, {"beta": 2, "gamma": 1}, [0, 1], solver="euler")


def test_integrate_with_initial_array(sir_params):
    model = build_sir_model()
    trajectory = integrate(model, [0.99, 0.01, 0], sir_params, [0, 1, 2])
    assert trajectory.get_sample(0) == {"S": 0.99, "I": 0.01, "R": 0.0}


def test_integrate_does_not_modify_parameters(sir_params):
    model = build_sir_model()
    integrate(model, {"S": 0.99, "I": 0.01}, sir_params, [0, 1])
    assert sir_params.as_dict() == {"beta": 2.0, "gamma": 0.5}


def test_integration_divergence_is_returned():
    """
    A model which blows up returns the samples before divergence, rather than raising.
    """
    model = CompartmentalModel(["X"], [])
    model.add_expression_flow("growth", "r * X * X", dest="X")
    trajectory = integrate(
        model, {"X": 1.0}, {"r": 1.0}, np.linspace(0, 2, 21), solver_args={"max_magnitude": 1e8}
    )
    assert trajectory.diverged
    assert 0 < len(trajectory) <= 10
    assert trajectory.final_time < 1
    assert "magnitude" in str(trajectory.divergence)


def test_divergence_at_initial_state_gives_empty_trajectory(sir_params):
    model = build_sir_model()
    trajectory = integrate(
        model, {"S": 0.99, "I": 0.01}, sir_params, [0, 1, 2], solver_args={"max_magnitude": 0.5}
    )
    assert trajectory.diverged
    assert len(trajectory) == 0
    assert trajectory.to_dataframe().empty
    with pytest.raises(UndefinedQuantity):
        trajectory.final_time
    with pytest.raises(UndefinedQuantity):
        trajectory.final_values


def test_trajectory_is_read_only(sir_params):
    model = build_sir_model()
    trajectory = integrate(model, {"S": 0.99, "I": 0.01}, sir_params, [0, 1, 2])
    with pytest.raises(ValueError):
        trajectory.values[0, 0] = 1
    with pytest.raises(ValueError):
        trajectory.times[0] = 1
    with pytest.raises(ValueError):
        trajectory["S"][0] = 1


def test_trajectory_accessors():
    traj = Trajectory(
        ["S", "I"],
        times=[0, 1, 2],
        values=[[0.9, 0.1], [0.8, 0.2], [0.85, 0.15]],
        clamped=[False, True, False],
    )
    assert traj.get_series("I").tolist() == [0.1, 0.2, 0.15]
    assert traj.final_values == {"S": 0.85, "I": 0.15}
    assert traj.final_time == 2
    assert traj.num_clamped == 1
    assert list(traj.samples())[1] == (1.0, {"S": 0.8, "I": 0.2})
    with pytest.raises(KeyError):
        traj.get_series("R")

    df = traj.to_dataframe()
    assert list(df.columns) == ["S", "I", "clamped"]
    assert df.index.name == "time"
    assert df.loc[1.0, "clamped"]


def test_time_grid():
    assert TimeGrid(start=0, end=1, step=0.25).get_times().tolist() == [0, 0.25, 0.5, 0.75, 1]
    assert TimeGrid(points=[0, 2, 5]).get_times().tolist() == [0, 2, 5]
    for kwargs in [
        {"start": 1, "end": 0, "step": 0.1},
        {"start": 0, "end": 1, "step": 0.3},
        {"start": 0, "end": 1},
        {"points": [0]},
        {"points": [0, 1], "step": 1},
    ]:
        with pytest.raises(ValueError):
            TimeGrid(**kwargs)


def test_parameter_set():
    params = ParameterSet({"beta": 2.0}, gamma=0.5)
    assert params["gamma"] == 0.5
    assert "beta" in params
    assert len(params) == 2
    updated = params.updated(beta=3.0)
    assert updated["beta"] == 3.0
    assert params["beta"] == 2.0
    with pytest.raises(UnknownReference):
        params["omega"]
    with pytest.raises(ValueError):
        ParameterSet({"beta": float("nan")})
    with pytest.raises(ValueError):
        ParameterSet({"not a name": 1.0})
