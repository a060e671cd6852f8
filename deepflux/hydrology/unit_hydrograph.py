"""Unit hydrographs: causal convolution kernels that lag and spread a flow series.

A kernel is described by its S-curve ``S(t; lag)``, the cumulative fraction of a
unit input released by time ``t``. The ordinate for step ``k`` is
``S(k + 1) - S(k)``, so the output at time ``t`` is
``sum_k w[k] * input[t - k]`` with zero input before the series starts.
"""

import logging
import math
from typing import Callable, Mapping, Optional, Sequence, Tuple, Union

import sympy
import torch
import torch.nn.functional as F

from ..errors import DefinitionError
from .base import HydroComponent
from .compiler import DEFAULT_COMPILER
from .symbol_toolkit import HydroParameter, HydroVariable

logger = logging.getLogger(__name__)

SOLVETYPES = ("SPARSE", "DISCRETE")


def uh_1_half(t: torch.Tensor, lag: torch.Tensor) -> torch.Tensor:
    x = torch.clamp(t / lag, 0.0, 1.0)
    return torch.pow(x, 2.5)


def uh_2_full(t: torch.Tensor, lag: torch.Tensor) -> torch.Tensor:
    x = torch.clamp(t / lag, 0.0, 2.0)
    rising = 0.5 * torch.pow(torch.clamp(x, max=1.0), 2.5)
    falling = 1.0 - 0.5 * torch.pow(torch.clamp(2.0 - x, 0.0, 1.0), 2.5)
    return torch.where(x < 1.0, rising, falling)


class UHFunction:
    """A unit-hydrograph shape.

    Parameters
    ----------
    scurve
        Either the name of a built-in shape (``"UH_1_HALF"``, ``"UH_2_FULL"``) or
        a callable ``scurve(t, lag) -> tensor`` returning the cumulative response.
    multiplier
        Support of the kernel in units of ``lag``; the kernel has
        ``ceil(multiplier * lag)`` ordinates.
    normalize
        Rescale the ordinates of each node to sum to one.
    """

    BUILTINS = {
        "UH_1_HALF": (uh_1_half, 1.0),
        "UH_2_FULL": (uh_2_full, 2.0),
    }

    t = sympy.Symbol("t")
    lag = sympy.Symbol("lag")

    def __init__(
        self,
        scurve: Union[str, Callable] = "UH_1_HALF",
        multiplier: Optional[float] = None,
        normalize: bool = False,
    ):
        if isinstance(scurve, str):
            if scurve not in self.BUILTINS:
                raise DefinitionError(
                    f"Unknown unit hydrograph '{scurve}', expected one of {list(self.BUILTINS)}"
                )
            self.name = scurve
            scurve, default_multiplier = self.BUILTINS[scurve]
            multiplier = multiplier or default_multiplier
        else:
            self.name = getattr(scurve, "__name__", "custom")
        self.scurve = scurve
        self.multiplier = float(multiplier or 1.0)
        self.normalize = normalize

    @classmethod
    def piecewise(cls, pieces: Sequence[Tuple[float, sympy.Expr]], normalize: bool = False) -> "UHFunction":
        """S-curve defined piece by piece in the symbols ``UHFunction.t`` and ``UHFunction.lag``.

        ``pieces`` holds ``(upper_bound, expr)`` pairs, bounds in units of ``lag``;
        the curve is 0 for ``t <= 0`` and 1 beyond the largest bound.
        """
        if not pieces:
            raise DefinitionError("A piecewise unit hydrograph needs at least one piece")
        pieces = sorted(pieces, key=lambda p: p[0])
        t, lag = cls.t, cls.lag
        expr = sympy.Piecewise(
            (sympy.Float(0.0), t <= 0),
            *[(e, t < bound * lag) for bound, e in pieces],
            (sympy.Float(1.0), True),
        )
        fn = DEFAULT_COMPILER.lambdify([t, lag], [expr])

        def scurve(tt, ll):
            return fn(tt, ll)[0]

        scurve.__name__ = "piecewise"
        return cls(scurve, multiplier=float(pieces[-1][0]), normalize=normalize)

    def kernel_length(self, lag: torch.Tensor) -> int:
        return max(1, math.ceil(float(lag.max()) * self.multiplier))

    def weights(self, lag: torch.Tensor) -> torch.Tensor:
        """Ordinates ``(N, L)`` for per-node lags ``(N,)``."""
        if bool((lag <= 0).any()):
            logger.warning(
                "%s: non-positive lag, the kernel degenerates to a pass-through", self.name
            )
        lag = lag.clamp(min=1e-6)
        length = self.kernel_length(lag)
        steps = torch.arange(length + 1, dtype=lag.dtype, device=lag.device)
        s = self.scurve(steps.unsqueeze(0), lag.unsqueeze(-1))
        s = torch.broadcast_to(torch.as_tensor(s, dtype=lag.dtype, device=lag.device), (lag.shape[0], length + 1))
        w = (s[:, 1:] - s[:, :-1]).clamp(min=0.0)
        if self.normalize:
            w = w / w.sum(dim=-1, keepdim=True).clamp(min=torch.finfo(w.dtype).tiny)
        return w

    def __repr__(self) -> str:
        return f"UHFunction({self.name!r}, multiplier={self.multiplier}, normalize={self.normalize})"


def convolve_sparse(x: torch.Tensor, w: torch.Tensor) -> torch.Tensor:
    """Shift-and-sum over the kernel diagonals. ``x`` is ``(N, T)``, ``w`` is ``(N, L)``."""
    num_steps = x.shape[-1]
    out = torch.zeros_like(x)
    for k in range(min(w.shape[-1], num_steps)):
        out = out + w[:, k : k + 1] * F.pad(x, (k, 0))[:, :num_steps]
    return out


def convolve_discrete(x: torch.Tensor, w: torch.Tensor) -> torch.Tensor:
    """Rolling lag-store recurrence, one time step at a time."""
    store = torch.zeros_like(w)
    pad = w.new_zeros(w.shape[0], 1)
    out = []
    for i in range(x.shape[-1]):
        store = store + x[:, i : i + 1] * w
        out.append(store[:, 0])
        store = torch.cat([store[:, 1:], pad], dim=-1)
    if not out:
        return torch.zeros_like(x)
    return torch.stack(out, dim=-1)


CONVOLUTIONS = {"SPARSE": convolve_sparse, "DISCRETE": convolve_discrete}


class UnitHydrograph(HydroComponent):
    """Routes one or more series through a unit-hydrograph kernel.

    Each input ``q`` yields an output named ``q + suffix``; the kernel's lag is a
    parameter, shared or indexed per node type like any other parameter.
    """

    def __init__(
        self,
        inputs: Sequence,
        lag_param: Union[HydroParameter, str],
        uhfunc: Union[UHFunction, str] = "UH_1_HALF",
        name: Optional[str] = None,
        suffix: str = "_lag",
        solvetype: str = "SPARSE",
    ):
        if solvetype not in SOLVETYPES:
            raise DefinitionError(f"solvetype must be one of {SOLVETYPES}, got {solvetype!r}")
        if not inputs:
            raise DefinitionError("A unit hydrograph needs at least one input")
        inputs = [s if isinstance(s, sympy.Symbol) else HydroVariable(s) for s in inputs]
        super().__init__(name or "uh_" + "_".join(s.name for s in inputs))
        if not isinstance(lag_param, HydroParameter):
            lag_param = HydroParameter(lag_param)
        self.inputs = inputs
        self.outputs = [HydroVariable(f"{s.name}{suffix}") for s in inputs]
        self.params = [lag_param]
        self.lag_param = lag_param
        self.uhfunc = uhfunc if isinstance(uhfunc, UHFunction) else UHFunction(uhfunc)
        self.solvetype = solvetype
        clash = set(self.output_names) & set(self.input_names)
        if clash:
            raise DefinitionError(f"{self.name}: outputs {sorted(clash)} collide with inputs")
        logger.info("Built unit hydrograph '%s' (%s, %s)", self.name, self.uhfunc.name, solvetype)

    def forward(
        self,
        input: torch.Tensor,
        pas: Mapping,
        initstates: Optional[Mapping] = None,
        config: Optional[Mapping] = None,
    ) -> torch.Tensor:
        x, squeeze, config, params, _ = self._prepare(input, pas, initstates, config)
        w = self.uhfunc.weights(params[self.lag_param.name])
        convolve = CONVOLUTIONS[self.solvetype]
        return self._finish([convolve(series, w) for series in x], squeeze, x)
