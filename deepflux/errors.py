from typing import Optional


class HydroModelError(Exception):
    """Base class of every error raised by deepflux."""


class DefinitionError(HydroModelError, ValueError):
    """A flux, component or model definition is invalid.

    Raised at construction time, before any simulation runs: cyclic flux
    dependencies, duplicate output or state declarations, outputs that are also
    inputs of the same flux, or an invalid component composition.
    """


class SchemaMismatchError(HydroModelError, ValueError):
    """Supplied data does not match a component's declared schema.

    Parameters
    ----------
    component
        Name of the component whose pre-flight check failed.
    identifier
        The missing or mismatched variable / parameter / state / network name,
        or the name of the mismatched dimension.
    message
        Human readable description.
    """

    def __init__(self, component: str, identifier: Optional[str], message: str):
        self.component = component
        self.identifier = identifier
        super().__init__(f"[{component}] {message}")


class ConfigError(HydroModelError, ValueError):
    """Invalid run configuration."""
