"""
Runs simulations from config files

    python -m epiflow --help

"""
from epiflow.cli import cli

cli()
