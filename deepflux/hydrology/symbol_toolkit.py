"""Sympy symbols carrying hydrological metadata.

Variables and parameters are ordinary sympy ``Symbol`` subclasses, so they can be
combined freely in expressions. A ``HydroParameter`` additionally carries its
calibration bounds and a default value.
"""

from typing import List, Optional, Tuple

import sympy
from sympy import Symbol


def _new_symbol(cls, name: str, assumptions: dict):
    # uncached, so every instance keeps its own metadata
    cls._sanitize(assumptions, cls)
    return Symbol.__xnew__(cls, name, **assumptions)


class HydroVariable(Symbol):
    """A named forcing, flux or state variable."""

    def __new__(cls, name: str, description: str = "", unit: str = "", **assumptions):
        obj = _new_symbol(cls, name, assumptions)
        obj._description = description
        obj._unit = unit
        return obj

    @property
    def description(self) -> str:
        return getattr(self, "_description", "")

    @property
    def unit(self) -> str:
        return getattr(self, "_unit", "")


class HydroParameter(Symbol):
    """A named model constant with optional calibration bounds and default."""

    def __new__(
        cls,
        name: str,
        description: str = "",
        unit: str = "",
        bounds: Optional[Tuple[float, float]] = None,
        default: Optional[float] = None,
        **assumptions,
    ):
        obj = _new_symbol(cls, name, assumptions)
        obj._description = description
        obj._unit = unit
        obj._bounds = tuple(bounds) if bounds is not None else None
        obj._default = default
        return obj

    @property
    def description(self) -> str:
        return getattr(self, "_description", "")

    @property
    def unit(self) -> str:
        return getattr(self, "_unit", "")

    def get_bounds(self) -> Optional[Tuple[float, float]]:
        return getattr(self, "_bounds", None)

    def get_default(self) -> Optional[float]:
        default = getattr(self, "_default", None)
        if default is None and self.get_bounds() is not None:
            low, high = self.get_bounds()
            return (low + high) / 2
        return default


def variables(names: str, **kwargs) -> List[HydroVariable]:
    """Create several variables at once: ``snowpack, temp = variables("snowpack temp")``."""
    return [HydroVariable(name, **kwargs) for name in names.replace(",", " ").split()]


def parameters(names: str, **kwargs) -> List[HydroParameter]:
    """Create several parameters at once, sharing ``bounds``/``default`` if given."""
    return [HydroParameter(name, **kwargs) for name in names.replace(",", " ").split()]


def is_parameter(symbol) -> bool:
    return isinstance(symbol, HydroParameter)


def step_func(x):
    """Smooth approximation of the Heaviside step, differentiable everywhere."""
    return (sympy.tanh(5.0 * x) + 1.0) * 0.5


def smoothlogistic_func(S, Smax, r=0.01, e=5.0):
    """Smooth logistic switch, close to 1 for an empty store and falling to 0 as ``S`` exceeds ``r * e * Smax``."""
    return 1 / (1 + sympy.exp((S - r * e * Smax) / (r * Smax)))
