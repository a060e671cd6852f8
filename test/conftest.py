import math

import pytest
import torch
from sympy import Eq

from deepflux.hydrology import HydroBucket, HydroFlux, HydroParameter, StateFlux, variables

DTYPE = torch.float64


@pytest.fixture
def linear_reservoir():
    """ds/dt = p - k*s, q = k*s."""
    p, s, q = variables("p s q")
    k = HydroParameter("k", bounds=(0.0, 1.0), default=0.2)
    return HydroBucket(
        [HydroFlux(Eq(q, k * s), name="outflow")],
        [StateFlux.from_balance(s, [p], [q])],
        name="reservoir",
    )


@pytest.fixture
def forcing():
    """Deterministic 100-day (lday, prcp, temp) forcing."""
    days = torch.arange(100, dtype=DTYPE)
    lday = 0.5 + 0.1 * torch.sin(2 * math.pi * days / 100)
    prcp = 4.0 * (1.0 + torch.sin(0.7 * days)) * (days % 3 != 0)
    temp = 8.0 * torch.sin(2 * math.pi * (days - 30) / 100) + 2.0
    return torch.stack([lday, prcp, temp])


@pytest.fixture
def exphydro_params():
    return {"Tmin": -2.0, "Tmax": 1.0, "Df": 2.5, "Smax": 300.0, "Qmax": 20.0, "f": 0.017}
