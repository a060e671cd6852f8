from .config import DEFAULT_CONFIG
from .errors import ConfigError, DefinitionError, HydroModelError, SchemaMismatchError
from .hydrology import *  # noqa: F401,F403
from .hydrology import __all__ as _hydrology_all
from .simulation import run

__version__ = "0.1.0"

__all__ = [
    "DEFAULT_CONFIG",
    "ConfigError",
    "DefinitionError",
    "HydroModelError",
    "SchemaMismatchError",
    "run",
    *_hydrology_all,
]
