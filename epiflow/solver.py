"""
Tools for solving compartmental ODEs
"""
import logging
from typing import Callable, Tuple

import numpy as np
from scipy.integrate import odeint, solve_ivp

from epiflow.exceptions import IntegrationDivergence

logger = logging.getLogger(__name__)

OdeFunction = Callable[[np.ndarray, float], np.ndarray]
SolverResults = Tuple[np.ndarray, np.ndarray]

DEFAULT_STEP_SIZE = 0.1
DEFAULT_MAX_RELATIVE_CHANGE = 0.01
DEFAULT_MAX_MAGNITUDE = 1e12
DEFAULT_NEGATIVE_TOLERANCE = 1e-9
# Compartments smaller than this fraction of the population are not used to limit the step size.
MIN_CHANGE_SCALE = 1e-6


class SolverType:
    """
    Options for ODE solver used by model
    """

    ODE_INT = "odeint"
    SOLVE_IVP = "solve_ivp"
    RUNGE_KUTTA = "rk4"

    ALL = (ODE_INT, SOLVE_IVP, RUNGE_KUTTA)


def solve_ode(
    solver_type: str,
    ode_func: OdeFunction,
    values: np.ndarray,
    times: np.ndarray,
    solver_args: dict,
) -> SolverResults:
    """
    Solve an ODE function given a function describing the dynamics, some initial conditions and times.

    Returns the values at each requested time, and a flag for each time which is True when small
    negative values were clamped to zero. Raises ``IntegrationDivergence``, carrying the valid samples,
    if the values blow up.
    """
    max_magnitude = solver_args.get("max_magnitude", DEFAULT_MAX_MAGNITUDE)
    if solver_type == SolverType.RUNGE_KUTTA:
        return solve_with_rk4(ode_func, values, times, solver_args)
    elif solver_type == SolverType.ODE_INT:
        results = solve_with_odeint(ode_func, values, times, solver_args)
    elif solver_type == SolverType.SOLVE_IVP:
        results = solve_with_ivp(ode_func, values, times, solver_args)
    else:
        raise ValueError(f"Solver type requested is not available: {solver_type}")

    return _check_solver_results(results, times, max_magnitude)


def solve_with_odeint(
    ode_func: OdeFunction, values: np.ndarray, times: np.ndarray, solver_args: dict
) -> np.ndarray:
    """
    Solve ODE with SciPy's odeint solver, which uses LSODA and switches automatically
    between stiff and non-stiff methods.

    https://docs.scipy.org/doc/scipy/reference/generated/scipy.integrate.odeint.html
    """
    atol = solver_args.get("atol", 1e-8)
    rtol = solver_args.get("rtol", 1e-6)
    return odeint(ode_func, values, times, atol=atol, rtol=rtol)


def solve_with_ivp(
    ode_func: OdeFunction, values: np.ndarray, times: np.ndarray, solver_args: dict
) -> np.ndarray:
    """
    Solve ODE with SciPy's solve_ivp solver.
    Any of its methods can be used, eg. "RK45", "DOP853" or the stiff methods "LSODA", "Radau" and "BDF".
    Integration stops early if the values exceed the magnitude bound.

    https://docs.scipy.org/doc/scipy/reference/generated/scipy.integrate.solve_ivp.html
    """
    method = solver_args.get("method", "RK45")
    atol = solver_args.get("atol", 1e-8)
    rtol = solver_args.get("rtol", 1e-6)
    max_magnitude = solver_args.get("max_magnitude", DEFAULT_MAX_MAGNITUDE)
    extra_args = {}
    if "max_step" in solver_args:
        extra_args["max_step"] = solver_args["max_step"]

    def _ode_func(time, values):
        """Reverse parameters"""
        return ode_func(values, time)

    def _get_divergence_condition(time, values):
        return max_magnitude - np.max(np.abs(values))

    _get_divergence_condition.terminal = True
    t_span = (times[0], times[-1])
    results = solve_ivp(
        _ode_func,
        t_span,
        values,
        method=method,
        t_eval=times,
        atol=atol,
        rtol=rtol,
        events=_get_divergence_condition,
        **extra_args,
    )
    if results.status != 0:
        logger.warning("solve_ivp stopped early at time %s: %s", results.t[-1:], results.message)

    return results.y.transpose()


def solve_with_rk4(
    ode_func: OdeFunction, values: np.ndarray, times: np.ndarray, solver_args: dict
) -> SolverResults:
    """
    Solve ODE with a hand-rolled Runge-Kutta 4 implementation with step size control.

    Steps are never longer than ``step_size`` and always land exactly on the requested times.
    A step is retried at half the size while any compartment changes by more than
    ``max_relative_change`` of its value, or would overshoot below zero by more than
    ``negative_tolerance``, until the step reaches ``min_step_size``. Steps grow back
    when the changes are small. Values that still end up below zero are clamped to zero
    and the sample is flagged.
    """
    step_size = solver_args.get("step_size", DEFAULT_STEP_SIZE)
    min_step_size = solver_args.get("min_step_size", step_size * 1e-6)
    max_change = solver_args.get("max_relative_change", DEFAULT_MAX_RELATIVE_CHANGE)
    max_magnitude = solver_args.get("max_magnitude", DEFAULT_MAX_MAGNITUDE)
    negative_tolerance = solver_args.get("negative_tolerance", DEFAULT_NEGATIVE_TOLERANCE)
    assert step_size > 0, f"Step size must be positive, got {step_size}"
    assert 0 < min_step_size <= step_size, "Minimum step size must be in (0, step_size]"
    assert max_change > 0, f"Maximum relative change must be positive, got {max_change}"

    num_times = len(times)
    results_arr = np.zeros([num_times, len(values)])
    clamped = np.zeros(num_times, dtype=bool)
    state = np.array(values, dtype=float)
    _check_magnitude(state, times[0], max_magnitude, times[:0], results_arr[:0], clamped[:0])
    results_arr[0] = state

    time = times[0]
    step = step_size
    num_steps = 0
    for time_idx in range(1, num_times):
        target_time = times[time_idx]
        is_clamped = False
        while time < target_time:
            h = min(step, target_time - time)
            new_state = _rk4_step(ode_func, state, time, h)
            if not np.all(np.isfinite(new_state)):
                if h > min_step_size:
                    step = h / 2
                    continue

                valid = slice(0, time_idx)
                msg = f"Non-finite values after time {time}"
                raise IntegrationDivergence(
                    msg, time, times[valid], results_arr[valid].copy(), clamped[valid].copy()
                )

            valid = slice(0, time_idx)
            _check_magnitude(
                new_state, time + h, max_magnitude, times[valid], results_arr[valid], clamped[valid]
            )

            # Limit the relative change of each compartment, ignoring compartments which are tiny
            # relative to the population.
            population = np.abs(state).sum()
            scale = np.maximum(np.abs(state), MIN_CHANGE_SCALE * max(population, 1.0))
            relative_change = np.max(np.abs(new_state - state) / scale)
            is_overshoot = np.any(new_state < -negative_tolerance * max(population, 1.0))
            if (relative_change > max_change or is_overshoot) and h > min_step_size:
                step = max(h / 2, min_step_size)
                continue

            if np.any(new_state < 0):
                new_state[new_state < 0] = 0
                is_clamped = True

            state = new_state
            time = target_time if h >= target_time - time else time + h
            num_steps += 1
            if relative_change < max_change / 4:
                step = min(step * 2, step_size)

        results_arr[time_idx] = state
        clamped[time_idx] = is_clamped

    logger.debug("RK4 solver took %s steps for %s sample times", num_steps, num_times)
    return results_arr, clamped


def _rk4_step(ode_func: OdeFunction, values: np.ndarray, time: float, h: float) -> np.ndarray:
    k1 = h * ode_func(values, time)
    k2 = h * ode_func(values + k1 / 2, time + h / 2)
    k3 = h * ode_func(values + k2 / 2, time + h / 2)
    k4 = h * ode_func(values + k3, time + h)
    return values + (1 / 6) * (k1 + 2 * k2 + 2 * k3 + k4)


def _check_magnitude(values, time, max_magnitude, times, results_arr, clamped):
    if np.max(np.abs(values), initial=0) > max_magnitude:
        msg = f"Values exceeded magnitude bound {max_magnitude} at time {time}"
        raise IntegrationDivergence(msg, time, times, results_arr.copy(), clamped.copy())


def _check_solver_results(
    results_arr: np.ndarray, times: np.ndarray, max_magnitude: float
) -> SolverResults:
    """
    Check the output of a SciPy solver for divergence, then clamp small negative values.
    Solvers which stop early return fewer rows than there are requested times.
    """
    is_valid = np.all(np.isfinite(results_arr), axis=1)
    is_valid[is_valid] &= np.all(np.abs(results_arr[is_valid]) <= max_magnitude, axis=1)
    num_valid = len(results_arr) if is_valid.all() else int(np.argmin(is_valid))
    values, clamped = clamp_negative_values(results_arr[:num_valid])
    if num_valid < len(times):
        time = times[num_valid]
        msg = f"Integration diverged or failed before time {time}"
        raise IntegrationDivergence(msg, time, times[:num_valid], values, clamped)

    return values, clamped


def clamp_negative_values(results_arr: np.ndarray) -> SolverResults:
    """
    Returns a copy of the results with negative values set to zero,
    and a flag for each sample which was changed.
    """
    values = np.array(results_arr, dtype=float)
    is_negative = values < 0
    values[is_negative] = 0
    return values, is_negative.any(axis=1)
