"""Flux variants: the pure transformations a component is assembled from.

Three variants share one calling contract (named inputs and parameters in,
named outputs out):

* :class:`HydroFlux` - one or more sympy equations ``output = expr``.
* :class:`StateFlux` - the net rate of change of a single state.
* :class:`NeuralFlux` - an opaque ``nn.Module`` mapping stacked inputs to outputs,
  with its weights supplied through ``pas["nns"][nn_name]``.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

import sympy
import torch
import torch.nn as nn
from sympy import Eq, Symbol

from ..errors import DefinitionError
from .symbol_toolkit import HydroVariable, is_parameter

logger = logging.getLogger(__name__)


def _check_name_clashes(owner: str, symbols: Iterable[Symbol]):
    seen: Dict[str, Symbol] = {}
    for s in symbols:
        other = seen.setdefault(s.name, s)
        if other != s:
            raise DefinitionError(
                f"{owner}: two distinct symbols share the name '{s.name}' "
                f"({type(other).__name__} and {type(s).__name__})"
            )


def _split_free_symbols(exprs: Iterable[sympy.Expr]):
    free = set()
    for expr in exprs:
        free |= sympy.sympify(expr).free_symbols
    inputs = sorted((s for s in free if not is_parameter(s)), key=lambda s: s.name)
    params = sorted((s for s in free if is_parameter(s)), key=lambda s: s.name)
    return inputs, params


class AbstractFlux:
    """Common schema of every flux variant."""

    name: str
    inputs: List[Symbol]
    outputs: List[Symbol]
    params: List[Symbol]

    @property
    def input_names(self) -> List[str]:
        return [s.name for s in self.inputs]

    @property
    def output_names(self) -> List[str]:
        return [s.name for s in self.outputs]

    @property
    def param_names(self) -> List[str]:
        return [s.name for s in self.params]

    @property
    def nn_names(self) -> List[str]:
        return []

    def __call__(self, input: torch.Tensor, pas: Mapping, config: Optional[Mapping] = None):
        """Evaluate this flux on its own over a whole series.

        ``input`` is ``(len(inputs), T)`` or ``(len(inputs), N, T)``; the result has
        the same layout with one row per output.
        """
        runner = getattr(self, "_runner", None)
        if runner is None:
            from .bucket import HydroBucket

            runner = HydroBucket([self], name=f"{self.name}_runner")
            self._runner = runner
        return runner(input, pas, config=config)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(name={self.name!r}, inputs={self.input_names}, "
            f"outputs={self.output_names}, params={self.param_names})"
        )


class HydroFlux(AbstractFlux):
    """A flux defined by sympy equations.

    Parameters
    ----------
    *equations
        ``sympy.Eq(output, expr)`` objects, or a single mapping ``{output: expr}``.
    name
        Flux name; derived from the outputs if omitted.
    """

    def __init__(self, *equations: Union[Eq, Mapping], name: Optional[str] = None):
        if len(equations) == 1 and isinstance(equations[0], Mapping):
            equations = tuple(Eq(lhs, rhs) for lhs, rhs in equations[0].items())
        if not equations:
            raise DefinitionError("HydroFlux requires at least one equation")

        outputs, exprs = [], []
        for eq in equations:
            if not isinstance(eq, Eq) or not isinstance(eq.lhs, Symbol):
                raise DefinitionError(
                    f"HydroFlux equations must be Eq(symbol, expr), got {eq!r}"
                )
            if is_parameter(eq.lhs):
                raise DefinitionError(f"Parameter '{eq.lhs.name}' cannot be a flux output")
            outputs.append(eq.lhs)
            exprs.append(eq.rhs)

        self.outputs = outputs
        self.exprs = exprs
        self.name = name or "_".join(s.name for s in outputs) + "_flux"
        self.inputs, self.params = _split_free_symbols(exprs)

        names = self.output_names
        duplicated = {n for n in names if names.count(n) > 1}
        if duplicated:
            raise DefinitionError(f"{self.name}: duplicate outputs {sorted(duplicated)}")
        overlap = set(names) & set(self.input_names)
        if overlap:
            raise DefinitionError(
                f"{self.name}: outputs {sorted(overlap)} are also inputs of the same flux"
            )
        _check_name_clashes(self.name, [*self.inputs, *self.outputs, *self.params])


class StateFlux(AbstractFlux):
    """Net rate of change of one state variable.

    The state itself may appear in ``expr``; every other free symbol is either a
    parameter or an input (typically the output of another flux).
    """

    def __init__(self, state: Symbol, expr, name: Optional[str] = None):
        if not isinstance(state, Symbol) or is_parameter(state):
            raise DefinitionError(f"StateFlux state must be a variable symbol, got {state!r}")
        self.state = state
        self.expr = sympy.sympify(expr)
        self.exprs = [self.expr]
        self.outputs = []
        self.name = name or f"{state.name}_dflux"
        self.inputs, self.params = _split_free_symbols([self.expr])
        _check_name_clashes(self.name, [state, *self.inputs, *self.params])

    @classmethod
    def from_balance(
        cls,
        state: Symbol,
        influxes: Sequence = (),
        outfluxes: Sequence = (),
        name: Optional[str] = None,
    ) -> "StateFlux":
        """``d state = sum(influxes) - sum(outfluxes)``."""
        return cls(state, sympy.Add(*influxes) - sympy.Add(*outfluxes), name=name)

    @property
    def state_name(self) -> str:
        return self.state.name

    def __call__(self, input, pas, config=None):
        raise TypeError(
            f"StateFlux '{self.name}' only yields a rate; evaluate it inside a component"
        )

    def __repr__(self) -> str:
        return f"StateFlux(name={self.name!r}, state={self.state.name!r}, expr={self.expr})"


class NeuralFlux(AbstractFlux):
    """A flux backed by a neural network.

    The inputs are stacked along a trailing feature axis, fed through ``module``
    with the weights found under ``pas["nns"][nn_name]``, and the trailing axis
    of the result is split into the declared outputs.
    """

    def __init__(
        self,
        inputs: Sequence[Symbol],
        outputs: Sequence[Symbol],
        module: nn.Module,
        name: Optional[str] = None,
        nn_name: Optional[str] = None,
    ):
        self.inputs = [s if isinstance(s, Symbol) else HydroVariable(s) for s in inputs]
        self.outputs = [s if isinstance(s, Symbol) else HydroVariable(s) for s in outputs]
        self.params = []
        self.module = module
        self.name = name or "_".join(self.output_names) + "_nnflux"
        self.nn_name = nn_name or f"{self.name}_nn"

        if not self.inputs or not self.outputs:
            raise DefinitionError(f"{self.name}: a NeuralFlux needs inputs and outputs")
        overlap = set(self.output_names) & set(self.input_names)
        if overlap:
            raise DefinitionError(
                f"{self.name}: outputs {sorted(overlap)} are also inputs of the same flux"
            )
        if any(is_parameter(s) for s in self.inputs):
            raise DefinitionError(
                f"{self.name}: parameters cannot feed a NeuralFlux, pass them as network weights"
            )

    @property
    def nn_names(self) -> List[str]:
        return [self.nn_name]

    def init_params(self) -> Dict[str, torch.Tensor]:
        """A detached copy of the module's current weights, ready for ``pas["nns"]``."""
        return {k: v.detach().clone() for k, v in self.module.named_parameters()}

    def apply(self, args: Sequence[torch.Tensor], weights: Mapping[str, torch.Tensor]):
        x = torch.stack(list(args), dim=-1)
        y = torch.func.functional_call(self.module, dict(weights), (x,))
        return list(y.unbind(-1))
