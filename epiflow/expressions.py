"""
Algebraic rate expressions, used to parameterise flows.

A rate expression is a small algebraic formula over named quantities, for example ``"gamma"``,
``"q * gamma"`` or ``"rho * mu / (1 - rho)"``. Expressions are parsed with SymPy, with every identifier
treated as a plain symbol so that names like ``gamma``, ``beta``, ``E``, ``I`` and ``N`` never resolve to
SymPy built-ins.
"""
import math
import re
from typing import Callable, Mapping, Sequence, Union

import sympy
from sympy.parsing.sympy_parser import parse_expr

from epiflow.exceptions import MalformedModel, UndefinedQuantity, UnknownReference

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class RateExpression:
    """
    An algebraic expression over named quantities.

    Args:
        expression: A number, the text of an expression, or another ``RateExpression``.

    Example:
        Create and evaluate an expression::

            expr = RateExpression("q * gamma")
            expr.names  # frozenset({"q", "gamma"})
            expr.evaluate({"q": 0.1, "gamma": 0.5})  # 0.05

    """

    def __init__(self, expression: Union[float, int, str, "RateExpression"]):
        if isinstance(expression, RateExpression):
            self.text = expression.text
            self._expr = expression._expr
            self._init_symbols()
            return

        if isinstance(expression, bool):
            raise MalformedModel(f"Rate expression cannot be a boolean: {expression}")
        elif isinstance(expression, (int, float)):
            if not math.isfinite(expression):
                raise MalformedModel(f"Rate expression must be finite: {expression}")
            text = repr(float(expression))
        elif isinstance(expression, str):
            text = expression.strip()
        else:
            msg = f"Rate expression must be a number or a string, not {type(expression)}."
            raise MalformedModel(msg)

        if not text:
            raise MalformedModel("Rate expression cannot be empty.")

        local_symbols = {name: sympy.Symbol(name) for name in _IDENTIFIER.findall(text)}
        try:
            expr = parse_expr(text, local_dict=local_symbols)
        except Exception as e:
            # SymPy's parser can fail with a variety of exception types.
            raise MalformedModel(f"Cannot parse rate expression '{text}': {e}") from e

        if not isinstance(expr, sympy.Expr) or expr.atoms(sympy.Function):
            raise MalformedModel(f"Rate expression '{text}' is not an algebraic expression.")

        self.text = text
        self._expr = expr
        self._init_symbols()

    @classmethod
    def from_sympy(cls, expr: sympy.Expr) -> "RateExpression":
        obj = cls.__new__(cls)
        obj.text = str(expr)
        obj._expr = expr
        obj._init_symbols()
        return obj

    def _init_symbols(self):
        self._symbols = {str(s): s for s in self._expr.free_symbols}
        self.names = frozenset(self._symbols.keys())

    @property
    def is_constant(self) -> bool:
        return not self.names

    def check_names(self, available: Sequence[str], context: str = ""):
        """
        Raises ``UnknownReference`` if the expression refers to a name which is not available.
        """
        missing = self.names - set(available)
        if missing:
            names = ", ".join(sorted(missing))
            prefix = f"{context}: " if context else ""
            raise UnknownReference(f"{prefix}rate expression '{self.text}' refers to unknown {names}")

    def evaluate(self, values: Mapping[str, float]) -> float:
        """
        Returns the value of the expression, given values for every name it refers to.
        """
        self.check_names(list(values.keys()))
        if self.is_constant:
            result = self._expr
        else:
            result = self._expr.subs({s: values[n] for n, s in self._symbols.items()})

        try:
            value = float(result)
        except (TypeError, ValueError) as e:
            raise UndefinedQuantity(f"Rate expression '{self.text}' is undefined: {e}") from e

        if not math.isfinite(value):
            raise UndefinedQuantity(f"Rate expression '{self.text}' is not finite: {value}")

        return value

    def partial(self, values: Mapping[str, float]) -> "RateExpression":
        """
        Returns a new expression with the supplied names substituted, leaving any others as symbols.
        """
        subs = {s: values[n] for n, s in self._symbols.items() if n in values}
        return RateExpression.from_sympy(self._expr.subs(subs))

    def compile(self, arg_names: Sequence[str]) -> Callable[..., float]:
        """
        Returns a fast Python function of the given names, in the given order.
        """
        self.check_names(arg_names)
        args = [sympy.Symbol(n) for n in arg_names]
        return sympy.lambdify(args, self._expr, modules="math")

    def __eq__(self, obj):
        return isinstance(obj, RateExpression) and self._expr == obj._expr

    def __hash__(self):
        return hash(self._expr)

    def __repr__(self):
        return f"<RateExpression '{self.text}'>"
