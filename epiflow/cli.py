"""
Runs simulations from config files

You can access this script from your CLI by running:

    python -m epiflow --help

"""
import logging
import os
import warnings

# Ensure NumPy only uses 1 thread for matrix multiplication,
# so that parallel sweeps don't compete for cores.
os.environ["OMP_NUM_THREADS"] = "1"

import click

from epiflow.config import SimulationConfig, load_config
from epiflow.derived import basic_reproduction_number
from epiflow.equilibrium import find_equilibria
from epiflow.exceptions import EpiflowError
from epiflow.scenarios import run_scenarios
from epiflow.trajectory import integrate
from epiflow.utils.logs import set_logging_config
from epiflow.utils.timer import Timer

logger = logging.getLogger(__name__)

# Ignore noisy deprecation warnings.
warnings.simplefilter(action="ignore", category=FutureWarning)


@click.group()
@click.option("--verbose", is_flag=True, help="Log progress messages.")
@click.option("--log-file", type=click.Path(dir_okay=False), default=None)
def cli(verbose, log_file):
    """
    Simulate compartmental epidemic models.
    """
    set_logging_config(verbose, log_file)


@cli.command("simulate")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", type=click.Path(dir_okay=False), default=None, help="CSV file for results.")
def simulate(config_path, output):
    """Integrate a model over time."""
    config = _load(config_path)
    if config.time is None:
        raise click.ClickException("Config needs a time grid to simulate.")

    try:
        model = config.build_model()
        with Timer(f"Integrating {model.shape or 'custom'} model"):
            trajectory = integrate(
                model,
                config.initial,
                config.get_parameters(),
                config.time,
                solver=config.solver.type,
                solver_args=dict(config.solver.args),
            )
    except EpiflowError as e:
        raise click.ClickException(str(e))

    if trajectory.diverged:
        click.echo(f"Warning: {trajectory.divergence}", err=True)

    df = trajectory.to_dataframe()
    if output:
        df.to_csv(output)
        click.echo(f"Wrote {len(df)} samples to {output}")
    else:
        click.echo(df.tail().to_string())


@cli.command("equilibrium")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
def equilibrium(config_path):
    """Find a model's disease-free and endemic equilibria."""
    config = _load(config_path)
    try:
        model = config.build_model()
        parameters = config.get_parameters()
        result = find_equilibria(model, parameters, config.population, config.initial or None)
    except EpiflowError as e:
        raise click.ClickException(str(e))

    if result.r0 is not None:
        r0 = basic_reproduction_number(model, parameters)
        click.echo(f"R0 ({r0.shape}): {r0.value:.6g}")

    for point in result.points:
        values = ", ".join(f"{k}={v:.6g}" for k, v in point.values.items())
        click.echo(f"{point.kind} ({point.method}, residual {point.residual:.2g}): {values}")

    if not result.has_endemic:
        click.echo(f"No endemic equilibrium: {result.reason}")


@cli.command("sweep")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--parallel", is_flag=True, help="Run scenarios in worker processes.")
@click.option("--workers", type=int, default=None)
@click.option("--output", type=click.Path(dir_okay=False), default=None, help="CSV file for results.")
def sweep(config_path, parallel, workers, output):
    """Calculate outputs over a grid of parameter values."""
    config = _load(config_path)
    if not config.outputs:
        raise click.ClickException("Config needs at least one output to sweep.")

    try:
        table = run_scenarios(
            config.build_model(),
            config.get_parameters(),
            config.get_sweeps(),
            config.outputs,
            parallel=parallel,
            max_workers=workers,
            population=config.population,
        )
    except EpiflowError as e:
        raise click.ClickException(str(e))

    df = table.to_dataframe()
    if output:
        df.to_csv(output, index=False)
        click.echo(f"Wrote {len(df)} scenarios to {output}")
    else:
        click.echo(df.to_string(index=False))


def _load(config_path: str) -> SimulationConfig:
    try:
        return load_config(config_path)
    except EpiflowError as e:
        raise click.ClickException(str(e))
