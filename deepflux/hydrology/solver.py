"""Explicit Euler integration of component states.

Each step computes ``s_i = max(s_{i-1} + d(s_{i-1}, t_i), eps)``. Non-finite
values are replaced by ``eps`` so a run never aborts midway; two strategies
produce identical trajectories:

* :class:`MutableSolver` - one working buffer updated in place, no autograd.
* :class:`ImmutableSolver` - a fresh tensor per step, differentiable.
"""

import logging
from enum import Enum
from typing import Callable, Sequence, Union

import torch

from ..errors import ConfigError

logger = logging.getLogger(__name__)

DerivativeFunc = Callable[[torch.Tensor, float], torch.Tensor]


class SolverStatus(Enum):
    INITIALIZED = "initialized"
    RUNNING = "running"
    DONE = "done"


def safe_max(x: torch.Tensor, eps: float = 1e-6) -> torch.Tensor:
    """Floor ``x`` at ``eps``, mapping NaN and +-inf entries to ``eps``."""
    return torch.where(torch.isfinite(x), x.clamp(min=eps), torch.full_like(x, eps))


def safe_max_(x: torch.Tensor, eps: float = 1e-6) -> torch.Tensor:
    """In-place variant of :func:`safe_max`."""
    return x.nan_to_num_(nan=eps, posinf=eps, neginf=eps).clamp_(min=eps)


class HydroSolver:
    """Base class of the integration strategies.

    Parameters
    ----------
    min_value
        Floor applied to every state after each step.
    nonfinite
        ``"clamp"`` absorbs non-finite values silently, ``"warn"`` additionally
        logs a warning once the run has finished.
    """

    name = "base"

    def __init__(self, min_value: float = 1e-6, nonfinite: str = "clamp"):
        self.min_value = float(min_value)
        self.nonfinite = nonfinite
        self.status = SolverStatus.INITIALIZED
        self._nonfinite_steps = 0

    def _set_status(self, status: SolverStatus):
        logger.debug("%s solver: %s -> %s", self.name, self.status.value, status.value)
        self.status = status

    def _track(self, candidate: torch.Tensor, step: int):
        if self.nonfinite == "warn" and not bool(torch.isfinite(candidate).all()):
            self._nonfinite_steps += 1

    def _report(self):
        if self._nonfinite_steps:
            logger.warning(
                "%s solver absorbed non-finite state updates in %d step(s); "
                "states were floored to %g",
                self.name,
                self._nonfinite_steps,
                self.min_value,
            )

    def __call__(
        self,
        du_func: DerivativeFunc,
        initstates: torch.Tensor,
        timeidx: Union[Sequence[float], torch.Tensor],
    ) -> torch.Tensor:
        """Integrate ``initstates`` (``(S, ...)``) over ``timeidx``.

        Returns the trajectory with time as the trailing axis: ``(S, ..., T)``.
        """
        times = torch.as_tensor(timeidx).tolist()
        self._nonfinite_steps = 0
        self._set_status(SolverStatus.RUNNING)
        try:
            trajectory = self._solve(du_func, initstates, times)
        finally:
            self._set_status(SolverStatus.DONE)
        self._report()
        return trajectory

    def _solve(self, du_func, initstates, times):
        raise NotImplementedError


class MutableSolver(HydroSolver):
    """Reuses one state buffer; runs under ``torch.no_grad``."""

    name = "mutable"

    def _solve(self, du_func, initstates, times):
        with torch.no_grad():
            buffer = initstates.detach().clone()
            trajectory = buffer.new_empty(*buffer.shape, len(times))
            for i, t in enumerate(times):
                buffer.add_(du_func(buffer, t))
                self._track(buffer, i)
                safe_max_(buffer, self.min_value)
                trajectory[..., i] = buffer
        return trajectory


class ImmutableSolver(HydroSolver):
    """Allocates a new state tensor per step so gradients flow through the run."""

    name = "immutable"

    def _solve(self, du_func, initstates, times):
        states = initstates
        trajectory = []
        for i, t in enumerate(times):
            candidate = states + du_func(states, t)
            self._track(candidate, i)
            states = safe_max(candidate, self.min_value)
            trajectory.append(states)
        if not trajectory:
            return initstates.new_empty(*initstates.shape, 0)
        return torch.stack(trajectory, dim=-1)


SOLVERS = {
    "mutable": MutableSolver,
    "immutable": ImmutableSolver,
}


def build_solver(name: str = "mutable", min_value: float = 1e-6, nonfinite: str = "clamp") -> HydroSolver:
    try:
        cls = SOLVERS[name]
    except KeyError:
        raise ConfigError(f"Unknown solver '{name}', expected one of {list(SOLVERS)}") from None
    return cls(min_value=min_value, nonfinite=nonfinite)
