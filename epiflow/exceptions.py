"""
Errors raised by the simulation engine.

Structural errors (``MalformedModel`` and its subclasses) are raised while a model is being
built and never surface later. Numerical problems are reported as values where possible:
``IntegrationDivergence`` is attached to the partial ``Trajectory`` rather than raised to the caller.
"""


class EpiflowError(Exception):
    """
    Base class for all errors raised by epiflow.
    """


class MalformedModel(EpiflowError):
    """
    The model definition is structurally invalid.
    """


class UnknownReference(MalformedModel):
    """
    A flow term, initial condition or parameter set refers to a compartment or parameter
    which has not been declared.
    """


class DuplicateCompartment(MalformedModel):
    """
    The same compartment name was declared more than once.
    """


class UnsupportedModelShape(EpiflowError):
    """
    A shape-specific quantity was requested for a model which does not have that shape.
    """


class UndefinedQuantity(EpiflowError):
    """
    The request is well formed, but the quantity is mathematically undefined
    for the supplied parameters (eg. average age at infection when R0 <= 1).
    """


class ConfigError(EpiflowError):
    """
    A configuration file could not be loaded or validated.
    """


class IntegrationDivergence(EpiflowError):
    """
    The state of an integration blew up (exceeded the magnitude bound or became non-finite).

    Raised internally by the solvers, caught by ``integrate`` and attached to the returned trajectory.

    Args:
        message: Description of the divergence.
        time: The time at which divergence was detected.
        times: The sample times which were successfully computed before divergence.
        values: The sample values which were successfully computed before divergence.
        clamped: The boundary-clamped flags for those samples.

    """

    def __init__(self, message: str, time: float, times=None, values=None, clamped=None):
        super().__init__(message)
        self.message = message
        self.time = time
        self.times = times
        self.values = values
        self.clamped = clamped

    def __reduce__(self):
        return (
            self.__class__,
            (self.message, self.time, self.times, self.values, self.clamped),
        )
