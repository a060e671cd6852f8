"""Parameter and state containers and their expansion over the node axis.

``pas`` is a nested mapping::

    {"params": {"Smax": 1500.0, "f": torch.tensor([0.01, 0.02])},
     "nns": {"et_nn": {"0.weight": ..., "0.bias": ...}}}

A 0-d value is shared by every node. A 1-d value holds one entry per parameter
(or state) *type*; each node picks its entry through ``ptyidx`` (or ``styidx``).
"""

from typing import Dict, Mapping, Optional, Sequence

import torch

from ..errors import DefinitionError


def as_index(idx, num_nodes: int, device=None) -> torch.Tensor:
    """Type index as a ``long`` tensor, defaulting to one type per node."""
    if idx is None:
        return torch.arange(num_nodes, device=device)
    return torch.as_tensor(idx, dtype=torch.long, device=device)


def _expand(value, idx: Optional[torch.Tensor], num_nodes: int, dtype, device) -> torch.Tensor:
    value = torch.as_tensor(value, dtype=dtype, device=device)
    if value.dim() == 0:
        return value.expand(num_nodes)
    index = as_index(idx, num_nodes, device=device)
    return value.index_select(0, index)


def expand_component_params(
    params: Mapping,
    names: Sequence[str],
    ptyidx=None,
    num_nodes: int = 1,
    dtype: torch.dtype = None,
    device=None,
) -> Dict[str, torch.Tensor]:
    """Per-node ``(num_nodes,)`` tensors for each of ``names``."""
    dtype = dtype or torch.get_default_dtype()
    return {name: _expand(params[name], ptyidx, num_nodes, dtype, device) for name in names}


def expand_component_states(
    states: Mapping,
    names: Sequence[str],
    styidx=None,
    num_nodes: int = 1,
    dtype: torch.dtype = None,
    device=None,
) -> torch.Tensor:
    """Initial states stacked to ``(len(names), num_nodes)``."""
    dtype = dtype or torch.get_default_dtype()
    if not names:
        return torch.zeros(0, num_nodes, dtype=dtype, device=device)
    return torch.stack([_expand(states[n], styidx, num_nodes, dtype, device) for n in names])


def default_initstates(names: Sequence[str], dtype: torch.dtype = None, device=None) -> Dict[str, torch.Tensor]:
    """Zero initial value for every state, shared by all nodes."""
    dtype = dtype or torch.get_default_dtype()
    return {n: torch.zeros((), dtype=dtype, device=device) for n in names}


def init_params(component) -> Dict[str, Dict[str, torch.Tensor]]:
    """Build a ``pas`` mapping for ``component`` from its parameter metadata.

    Parameters use their declared default (the bounds midpoint when no default
    was given); neural sub-functions use the current module weights.
    """
    params = {}
    for p in component.params:
        default = p.get_default() if hasattr(p, "get_default") else None
        if default is None:
            raise DefinitionError(f"Parameter '{p.name}' has neither a default nor bounds")
        params[p.name] = torch.tensor(float(default))
    nns = {name: {k: v.detach().clone() for k, v in module.named_parameters()}
           for name, module in component.nn_modules.items()}
    return {"params": params, "nns": nns}
