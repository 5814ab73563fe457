"""
This module contains a class used to represent compartments.
"""


class Compartment:
    """
    A single compartment in the compartmental model.
    A compartment does not store the number of occupants - this data is tracked by the integrator
    and stored in a ``Trajectory``.

    Args:
        name: The compartment's name, eg. "S" or "IH" (high-risk infectious).

    Example:
        Create a susceptible compartment::

            comp = Compartment("S")

    """

    def __init__(self, name: str):
        assert type(name) is str, "Name must be a string, not %s." % type(name)
        self.name = name
        # Position in the model's state vector, set when the compartment is added to a model.
        self.idx = None

    def has_name(self, comp) -> bool:
        """
        Returns True if this compartment has the given name, or the same name as another compartment.
        """
        name = comp if type(comp) is str else comp.name
        return self.name == name

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return self.name

    def __eq__(self, obj):
        # Compartments compare equal to their names, so they can be looked up by name.
        if type(obj) is str:
            return obj == self.name
        return type(obj) is Compartment and obj.name == self.name

    def __hash__(self):
        return hash(self.name)
