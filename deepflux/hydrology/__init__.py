from .aggregation import GraphAggregator, GridAggregator
from .bucket import HydroBucket
from .compiler import CompilationCache, FluxCompiler
from .flux import HydroFlux, NeuralFlux, StateFlux
from .hydrological_model import HydroModel
from .implements import build_exphydro
from .route import HydroRoute
from .solver import ImmutableSolver, MutableSolver, build_solver
from .sorting import sort_components, sort_fluxes
from .symbol_toolkit import HydroParameter, HydroVariable, parameters, step_func, variables
from .unit_hydrograph import UHFunction, UnitHydrograph

AVAILABLE_MODELS = ["ExpHydro"]

HYDROLOGY_MODELS = {
    "exphydro": build_exphydro,
}

__all__ = [
    "HydroBucket",
    "HydroFlux",
    "HydroModel",
    "HydroParameter",
    "HydroRoute",
    "HydroVariable",
    "NeuralFlux",
    "StateFlux",
    "UHFunction",
    "UnitHydrograph",
    "GraphAggregator",
    "GridAggregator",
    "CompilationCache",
    "FluxCompiler",
    "MutableSolver",
    "ImmutableSolver",
    "build_solver",
    "sort_fluxes",
    "sort_components",
    "variables",
    "parameters",
    "step_func",
    "AVAILABLE_MODELS",
    "HYDROLOGY_MODELS",
]
