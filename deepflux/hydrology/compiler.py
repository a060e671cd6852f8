import logging
from collections import OrderedDict
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import sympy
import torch
from sympy import Max, Min, Piecewise, S, srepr
from sympy.printing.pycode import AbstractPythonCodePrinter
from sympy.printing.pytorch import TorchPrinter
from sympy.utilities.lambdify import lambdify

from ..errors import ConfigError
from .flux import AbstractFlux, NeuralFlux, StateFlux

logger = logging.getLogger(__name__)


# Helper function to ensure inputs to min/max are Tensors
def _to_tensor(val, ref=None):
    if torch.is_tensor(val):
        return val
    if ref is not None and torch.is_tensor(ref):
        return torch.tensor(val, dtype=ref.dtype, device=ref.device)
    return torch.tensor(val, dtype=torch.get_default_dtype())


def _reference(args):
    return next((a for a in args if torch.is_tensor(a)), None)


def _variadic(op: Callable) -> Callable:
    def fold(*args):
        ref = _reference(args)
        out = _to_tensor(args[0], ref)
        for arg in args[1:]:
            out = op(out, _to_tensor(arg, out))
        return out

    return fold


def _heaviside(x, h0=0.5):
    x = _to_tensor(x)
    return torch.heaviside(x, _to_tensor(h0, x))


# Custom module for lambdify to handle mixed-type min/max
TORCH_EXTEND_MODULE = {
    "Max": _variadic(torch.maximum),
    "Min": _variadic(torch.minimum),
    "Heaviside": _heaviside,
}


class FluxPrinter(TorchPrinter):
    """``TorchPrinter`` that is safe to use when numbers and tensors are mixed.

    * ``Max``/``Min`` print as variadic helpers accepting floats and tensors.
    * Relationals print infix, so ``2 < x`` works with a tensor ``x``.
    * Function applications without free symbols are folded to float literals.
    """

    def _print_number(self, expr):
        return repr(float(expr))

    def _print_Function(self, expr):
        if expr.is_number:
            return self._print_number(expr)
        return super()._print_Function(expr)

    _print_Expr = _print_Function
    _print_Application = _print_Function

    def _print_Pow(self, expr):
        if expr.is_number:
            return self._print_number(expr)
        return super()._print_Pow(expr)

    def _print_NumberSymbol(self, expr):
        return self._print_number(expr)

    _print_Pi = _print_NumberSymbol
    _print_Exp1 = _print_NumberSymbol

    def _print_Max(self, expr):
        return "Max(%s)" % ", ".join(self._print(arg) for arg in expr.args)

    def _print_Min(self, expr):
        return "Min(%s)" % ", ".join(self._print(arg) for arg in expr.args)

    def _print_Heaviside(self, expr):
        return "Heaviside(%s)" % ", ".join(self._print(arg) for arg in expr.args)

    def _print_Relational(self, expr):
        return AbstractPythonCodePrinter._print_Relational(self, expr)

    def _print_Piecewise(self, expr):
        value, cond = expr.args[-1].args
        if cond == S.true:
            tail = self._print(value)
        else:
            tail = "{}({}, {}, {})".format(
                self._module_format("torch.where"), self._print(cond), self._print(value), "0.0"
            )
        for value, cond in reversed(expr.args[:-1]):
            tail = "{}({}, {}, {})".format(
                self._module_format("torch.where"), self._print(cond), self._print(value), tail
            )
        return tail


def broadcast_like(value, ref: torch.Tensor) -> torch.Tensor:
    """Broadcast a scalar or tensor result to the shape, dtype and device of ``ref``."""
    value = torch.as_tensor(value, dtype=ref.dtype, device=ref.device)
    if value.shape == ref.shape:
        return value
    return torch.broadcast_to(value, ref.shape)


class CompilationCache:
    """Cache of lambdified functions keyed by expression structure and argument names.

    Compiled functions are pure, so one cache may be shared by many components and
    reused across simulation runs. Components keep references to the closures
    they were built with, so evicting or clearing entries never breaks them; it
    only means the next component built from the same expressions compiles again.

    Parameters
    ----------
    maxsize
        Number of entries kept, least recently used first out. ``None`` keeps
        everything until :meth:`clear` is called.
    """

    def __init__(self, maxsize: Optional[int] = 1024):
        if maxsize is not None and maxsize < 1:
            raise ConfigError(f"maxsize must be positive or None, got {maxsize}")
        self.maxsize = maxsize
        self._store: "OrderedDict[Tuple[str, Tuple[str, ...]], Callable]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(exprs: Sequence, arg_names: Sequence[str]):
        return srepr(tuple(sympy.sympify(e) for e in exprs)), tuple(arg_names)

    def get_or_compile(self, exprs: Sequence, arg_names: Sequence[str], factory: Callable[[], Callable]):
        key = self.make_key(exprs, arg_names)
        fn = self._store.get(key)
        if fn is None:
            self.misses += 1
            logger.debug("Compilation cache miss for %s", list(arg_names))
            fn = factory()
            self._store[key] = fn
            if self.maxsize is not None and len(self._store) > self.maxsize:
                self._store.popitem(last=False)
        else:
            self.hits += 1
            self._store.move_to_end(key)
            logger.debug("Compilation cache hit for %s", list(arg_names))
        return fn

    def clear(self):
        self._store.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key) -> bool:
        return key in self._store


class CompiledComponent:
    """Executable form of a sorted flux list plus its state fluxes.

    Every function reads and writes a *namespace*: a dict mapping variable and
    parameter names to tensors. All results are broadcast to the shape of ``ref``
    (``(N,)`` for a single time step, ``(N, T)`` for a whole series).
    """

    def __init__(self, fluxes, dfluxes, flux_calls, dflux_calls):
        self.fluxes = list(fluxes)
        self.dfluxes = list(dfluxes)
        self._flux_calls = flux_calls
        self._dflux_calls = dflux_calls
        self.output_names = [n for f in self.fluxes for n in f.output_names]
        self.state_names = [d.state_name for d in self.dfluxes]

    def evaluate(self, namespace: Dict[str, torch.Tensor], nns: Mapping, ref: torch.Tensor):
        for flux, call in zip(self.fluxes, self._flux_calls):
            for name, value in zip(flux.output_names, call(namespace, nns)):
                namespace[name] = broadcast_like(value, ref)
        return namespace

    def flux_func(self, namespace, nns, ref) -> List[torch.Tensor]:
        namespace = self.evaluate(namespace, nns, ref)
        return [namespace[name] for name in self.output_names]

    def state_rates(self, namespace, ref) -> List[torch.Tensor]:
        """Rates of change from a namespace whose fluxes are already evaluated."""
        return [broadcast_like(call(namespace), ref) for call in self._dflux_calls]

    def diff_func(self, namespace, nns, ref) -> List[torch.Tensor]:
        namespace = self.evaluate(namespace, nns, ref)
        return self.state_rates(namespace, ref)


class FluxCompiler:
    """Turns flux definitions into torch closures, backed by a :class:`CompilationCache`."""

    def __init__(self, cache: Optional[CompilationCache] = None):
        self.cache = cache if cache is not None else CompilationCache()
        self.modules = [TORCH_EXTEND_MODULE.copy(), "torch"]

    def lambdify(self, args: Sequence[sympy.Symbol], exprs: Sequence) -> Callable:
        arg_names = [a.name for a in args]
        return self.cache.get_or_compile(
            exprs,
            arg_names,
            lambda: lambdify(
                list(args),
                list(exprs),
                modules=self.modules,
                printer=FluxPrinter({"strict": False}),
            ),
        )

    def compile_flux(self, flux: AbstractFlux) -> Callable:
        """Closure ``call(namespace, nns) -> [outputs]`` for one flux."""
        if isinstance(flux, NeuralFlux):
            input_names, nn_name = flux.input_names, flux.nn_name

            def neural_call(namespace, nns):
                return flux.apply([namespace[n] for n in input_names], nns[nn_name])

            return neural_call

        args = [*flux.inputs, *flux.params]
        names = [a.name for a in args]
        fn = self.lambdify(args, flux.exprs)

        def call(namespace, nns=None):
            return fn(*[namespace[n] for n in names])

        return call

    def compile_state_flux(self, dflux: StateFlux) -> Callable:
        args = [*dflux.inputs, *dflux.params]
        names = [a.name for a in args]
        fn = self.lambdify(args, [dflux.expr])

        def call(namespace):
            return fn(*[namespace[n] for n in names])[0]

        return call

    def compile_component(self, fluxes: Sequence, dfluxes: Sequence = ()) -> CompiledComponent:
        """Compile already sorted ``fluxes`` and their ``dfluxes`` into a :class:`CompiledComponent`."""
        flux_calls = [self.compile_flux(f) for f in fluxes]
        dflux_calls = [self.compile_state_flux(d) for d in dfluxes]
        return CompiledComponent(fluxes, dfluxes, flux_calls, dflux_calls)


# Shared by every component built without an explicit compiler. Bounded by
# CompilationCache.maxsize; call DEFAULT_COMPILER.cache.clear() to release it.
DEFAULT_COMPILER = FluxCompiler()
