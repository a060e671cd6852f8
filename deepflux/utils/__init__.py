from .metrics import KGELoss, LogNSELoss, NSELoss
from .params import (
    default_initstates,
    expand_component_params,
    expand_component_states,
    init_params,
)

__all__ = [
    "NSELoss",
    "LogNSELoss",
    "KGELoss",
    "default_initstates",
    "expand_component_params",
    "expand_component_states",
    "init_params",
]
