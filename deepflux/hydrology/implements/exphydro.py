"""Exp-Hydro: a snow bucket feeding a soil bucket (Patil & Stieglitz, 2014)."""

from sympy import Eq, Max, Min, exp

from ..bucket import HydroBucket
from ..flux import HydroFlux, StateFlux
from ..hydrological_model import HydroModel
from ..symbol_toolkit import HydroParameter, step_func, variables

# forcings and fluxes
temp, lday, prcp = variables("temp lday prcp")
pet, snowfall, rainfall, melt = variables("pet snowfall rainfall melt")
evap, baseflow, surfaceflow, flow = variables("evap baseflow surfaceflow flow")
snowpack, soilwater = variables("snowpack soilwater")

Tmin = HydroParameter("Tmin", bounds=(-3.0, 0.0), default=-2.0, unit="degC")
Tmax = HydroParameter("Tmax", bounds=(0.0, 3.0), default=1.0, unit="degC")
Df = HydroParameter("Df", bounds=(0.0, 5.0), default=2.5, unit="mm/degC/d")
Smax = HydroParameter("Smax", bounds=(100.0, 2000.0), default=1000.0, unit="mm")
Qmax = HydroParameter("Qmax", bounds=(10.0, 50.0), default=20.0, unit="mm/d")
f = HydroParameter("f", bounds=(0.0, 0.1), default=0.05, unit="1/mm")


def build_snow_bucket(name: str = "snow") -> HydroBucket:
    fluxes = [
        HydroFlux(
            Eq(pet, 29.8 * lday * 24 * 0.611 * exp((17.3 * temp) / (temp + 237.3)) / (temp + 273.2)),
            name="pet",
        ),
        HydroFlux(
            Eq(snowfall, step_func(Tmin - temp) * prcp),
            Eq(rainfall, step_func(temp - Tmin) * prcp),
            name="split",
        ),
        HydroFlux(
            Eq(melt, step_func(temp - Tmax) * step_func(snowpack) * Min(snowpack, Df * (temp - Tmax))),
            name="melt",
        ),
    ]
    dfluxes = [StateFlux.from_balance(snowpack, [snowfall], [melt])]
    return HydroBucket(fluxes, dfluxes, name=name)


def build_soil_bucket(name: str = "soil") -> HydroBucket:
    fluxes = [
        HydroFlux(
            Eq(evap, step_func(soilwater) * pet * Min(1.0, soilwater / Smax)),
            name="evap",
        ),
        HydroFlux(
            Eq(baseflow, step_func(soilwater) * Qmax * exp(-f * Max(0.0, Smax - soilwater))),
            Eq(surfaceflow, Max(0.0, soilwater - Smax)),
            name="runoff",
        ),
        HydroFlux(Eq(flow, baseflow + surfaceflow), name="flow"),
    ]
    dfluxes = [StateFlux.from_balance(soilwater, [rainfall, melt], [evap, flow])]
    return HydroBucket(fluxes, dfluxes, name=name)


def build_exphydro(name: str = "exphydro") -> HydroModel:
    """The two-bucket model; inputs ``lday, prcp, temp``, states ``snowpack, soilwater``."""
    return HydroModel([build_snow_bucket(), build_soil_bucket()], name=name)
