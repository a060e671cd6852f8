"""Look up forcing values at arbitrary solver times.

Both interpolators wrap a ``(..., T)`` tensor whose trailing axis is aligned with
``timeidx`` and return the ``(...)`` slice for a requested time.
"""

from bisect import bisect_left, bisect_right
from typing import Optional, Sequence, Union

import torch

from ..errors import ConfigError


def default_timeidx(length: int) -> torch.Tensor:
    return torch.arange(length, dtype=torch.float64)


class Interpolator:
    def __init__(self, data: torch.Tensor, timeidx: Optional[Union[Sequence[float], torch.Tensor]] = None):
        if timeidx is None:
            timeidx = default_timeidx(data.shape[-1])
        knots = torch.as_tensor(timeidx).tolist()
        if len(knots) != data.shape[-1]:
            raise ConfigError(
                f"timeidx has {len(knots)} entries but the data has {data.shape[-1]} time steps"
            )
        if any(b <= a for a, b in zip(knots, knots[1:])):
            raise ConfigError("timeidx must be strictly increasing")
        self.data = data
        self.knots = knots

    def __call__(self, t: float) -> torch.Tensor:
        raise NotImplementedError


class DirectInterpolation(Interpolator):
    """Value at the first knot not earlier than ``t``; clamped at both ends."""

    def __call__(self, t: float) -> torch.Tensor:
        idx = min(bisect_left(self.knots, float(t)), len(self.knots) - 1)
        return self.data[..., idx]


class LinearInterpolation(Interpolator):
    """Piecewise linear between knots, flat beyond the first and last knot."""

    def __call__(self, t: float) -> torch.Tensor:
        t = float(t)
        knots = self.knots
        if t <= knots[0]:
            return self.data[..., 0]
        if t >= knots[-1]:
            return self.data[..., -1]
        hi = bisect_right(knots, t)
        lo = hi - 1
        w = (t - knots[lo]) / (knots[hi] - knots[lo])
        if w == 0.0:
            return self.data[..., lo]
        return torch.lerp(self.data[..., lo], self.data[..., hi], w)


INTERPOLATORS = {
    "direct": DirectInterpolation,
    "linear": LinearInterpolation,
}


def build_interpolator(name: str, data: torch.Tensor, timeidx=None) -> Interpolator:
    try:
        cls = INTERPOLATORS[name]
    except KeyError:
        raise ConfigError(f"Unknown interpolation '{name}', expected one of {list(INTERPOLATORS)}") from None
    return cls(data, timeidx)
