import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import torch
import torch.nn as nn
from sympy import Symbol

from ..config import normalize_config
from ..errors import DefinitionError
from ..utils.params import expand_component_params
from .check import check
from .interpolation import default_timeidx

logger = logging.getLogger(__name__)


class HydroComponent(nn.Module):
    """Shared schema and run preparation of buckets, routes and unit hydrographs.

    Subclasses fill ``inputs``, ``outputs``, ``states`` and ``params`` with sympy
    symbols; the ``*_names`` properties expose their names in the same order,
    which is also the row order of input and output tensors.
    """

    def __init__(self, name: str):
        super().__init__()
        self.name = name
        self.inputs: List[Symbol] = []
        self.outputs: List[Symbol] = []
        self.states: List[Symbol] = []
        self.params: List[Symbol] = []
        self.nn_modules = nn.ModuleDict()

    @property
    def input_names(self) -> List[str]:
        return [s.name for s in self.inputs]

    @property
    def output_names(self) -> List[str]:
        return [s.name for s in self.outputs]

    @property
    def state_names(self) -> List[str]:
        return [s.name for s in self.states]

    @property
    def param_names(self) -> List[str]:
        return [s.name for s in self.params]

    @property
    def nn_names(self) -> List[str]:
        return list(self.nn_modules.keys())

    def _register_nn(self, nn_name: str, module: nn.Module):
        existing = self.nn_modules[nn_name] if nn_name in self.nn_modules else None
        if existing is not None and existing is not module:
            raise DefinitionError(f"{self.name}: network name '{nn_name}' is used by two modules")
        self.nn_modules[nn_name] = module

    def _warn_detached_gradients(self, config: Mapping, params: Mapping[str, torch.Tensor], nns: Mapping):
        if config["solver"] != "mutable" or not self.states or not torch.is_grad_enabled():
            return
        weights = [w for name in self.nn_names for w in nns.get(name, {}).values()]
        if any(torch.is_tensor(p) and p.requires_grad for p in [*params.values(), *weights]):
            logger.warning(
                "%s: parameters require grad but the mutable solver runs without autograd; "
                "gradients will skip the state trajectory, use solver='immutable'",
                self.name,
            )

    def _prepare(
        self,
        input: torch.Tensor,
        pas: Mapping,
        initstates: Optional[Mapping],
        config: Optional[Mapping],
    ) -> Tuple[torch.Tensor, bool, Dict, Dict[str, torch.Tensor], torch.Tensor]:
        """Validate the call and bring the input to ``(variables, nodes, time)``.

        Returns the reshaped input, whether the node axis was added, the merged
        config, the per-node parameters and the time index.
        """
        config = normalize_config(config)
        check(self, input, pas, initstates, config)
        squeeze = input.dim() == 2
        x = input.unsqueeze(1) if squeeze else input
        num_nodes = x.shape[1]
        params = expand_component_params(
            pas.get("params", {}),
            self.param_names,
            config["ptyidx"],
            num_nodes,
            dtype=x.dtype,
            device=x.device,
        )
        timeidx = config["timeidx"]
        if timeidx is None:
            timeidx = default_timeidx(x.shape[-1])
        return x, squeeze, config, params, torch.as_tensor(timeidx)

    @staticmethod
    def _finish(rows: Sequence[torch.Tensor], squeeze: bool, like: torch.Tensor) -> torch.Tensor:
        if rows:
            out = torch.stack(list(rows))
        else:
            out = like.new_zeros(0, *like.shape[1:])
        return out[:, 0, :] if squeeze else out

    def summary(self, console=None):
        """Print a table describing this component."""
        from .display import print_summary

        return print_summary(self, console=console)

    def extra_repr(self) -> str:
        return (
            f"name={self.name!r}, inputs={self.input_names}, states={self.state_names}, "
            f"outputs={self.output_names}, params={self.param_names}"
        )
