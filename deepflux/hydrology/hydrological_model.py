import logging
from typing import Dict, List, Mapping, Optional, Sequence, Union

import torch
import torch.nn as nn

from ..config import normalize_config
from ..errors import ConfigError, DefinitionError
from .base import HydroComponent
from .check import check_initstates, check_input, check_nns, check_params
from .route import HydroRoute
from .sorting import sort_components

logger = logging.getLogger(__name__)


class HydroModel(HydroComponent):
    """A hydrological model composed of buckets, unit hydrographs and a route.

    Components run one after another over the whole series, each reading its
    inputs from the model input or from earlier components' states and outputs.
    Since every component only consumes values produced at the same time step,
    this is equivalent to one shared time loop.

    Parameters
    ----------
    components
        Buckets and unit hydrographs, optionally followed by one route.
    name
        Model name.
    sort
        Order the components by their data dependencies first.
    """

    def __init__(self, components: Sequence[HydroComponent], name: Optional[str] = None, sort: bool = False):
        components = list(components)
        if not components:
            raise DefinitionError("A model needs at least one component")
        if sort:
            components = sort_components(components)
        super().__init__(name or "model")

        routes = [i for i, c in enumerate(components) if isinstance(c, HydroRoute)]
        if len(routes) > 1:
            raise DefinitionError(f"{self.name}: at most one route is allowed, got {len(routes)}")
        if routes and routes[0] != len(components) - 1:
            raise DefinitionError(f"{self.name}: the route must be the last component")

        names = [c.name for c in components]
        if len(set(names)) != len(names):
            raise DefinitionError(f"{self.name}: component names must be unique, got {names}")

        available, inputs = {}, {}
        states, outputs, params = {}, {}, {}
        for component in components:
            for s in component.inputs:
                if s.name not in available:
                    if any(s.name in c.output_names or s.name in c.state_names for c in components):
                        raise DefinitionError(
                            f"{self.name}: '{component.name}' reads '{s.name}' before it is produced; "
                            "reorder the components or pass sort=True"
                        )
                    inputs.setdefault(s.name, s)
                    available[s.name] = s
            for s in [*component.states, *component.outputs]:
                if s.name in states or s.name in outputs or s.name in inputs:
                    raise DefinitionError(f"{self.name}: '{s.name}' is produced more than once")
                available[s.name] = s
            states.update({s.name: s for s in component.states})
            outputs.update({s.name: s for s in component.outputs})
            for p in component.params:
                params.setdefault(p.name, p)

        self.components = nn.ModuleList(components)
        self.inputs = list(inputs.values())
        self.states = list(states.values())
        self.outputs = list(outputs.values())
        self.params = [params[k] for k in sorted(params)]
        for component in components:
            for nn_name, module in component.nn_modules.items():
                self._register_nn(nn_name, module)
        logger.info(
            "Built model '%s' from %d components: %s", self.name, len(components), names
        )

    def _component_configs(self, config) -> List[Dict]:
        if config is None or isinstance(config, Mapping):
            return [normalize_config(config)] * len(self.components)
        configs = list(config)
        if len(configs) != len(self.components):
            raise ConfigError(
                f"{self.name}: got {len(configs)} configs for {len(self.components)} components"
            )
        return [normalize_config(c) for c in configs]

    def forward(
        self,
        input: torch.Tensor,
        pas: Mapping,
        initstates: Optional[Mapping] = None,
        config: Optional[Union[Mapping, Sequence[Mapping]]] = None,
    ) -> torch.Tensor:
        """Run every component in order.

        ``config`` is one mapping shared by all components or one mapping per
        component. Returns all states followed by all outputs.
        """
        configs = self._component_configs(config)
        check_input(self, input, configs[0]["timeidx"])
        check_params(self, pas)
        check_nns(self, pas)
        check_initstates(self, initstates)

        namespace = dict(zip(self.input_names, input))
        for component, component_config in zip(self.components, configs):
            component_input = torch.stack([namespace[n] for n in component.input_names]) if component.inputs \
                else input.new_zeros(0, *input.shape[1:])
            component_states = None
            if initstates is not None:
                component_states = {n: initstates[n] for n in component.state_names}
            output = component(component_input, pas, component_states, component_config)
            namespace.update(zip([*component.state_names, *component.output_names], output))

        return torch.stack([namespace[n] for n in [*self.state_names, *self.output_names]])
