"""Storage routing over a spatial topology.

Every node owns a storage state balanced by the route's state fluxes. The
routing fluxes compute each node's outflow from its storage (and optionally
other inputs); the aggregator turns outflows into inflows received from
upstream neighbours, exposed to the fluxes under the name ``inflow``.
"""

import logging
from typing import List, Mapping, Optional, Sequence, Union

import torch
from sympy import Symbol

from ..errors import DefinitionError, SchemaMismatchError
from ..utils.params import default_initstates, expand_component_states
from .aggregation import Aggregator
from .base import HydroComponent
from .compiler import DEFAULT_COMPILER, FluxCompiler
from .flux import AbstractFlux, NeuralFlux, StateFlux, _check_name_clashes
from .interpolation import build_interpolator
from .solver import build_solver
from .sorting import sort_fluxes
from .symbol_toolkit import HydroVariable

logger = logging.getLogger(__name__)

ROUTING_ORDERS = ("parallel", "topological")


class HydroRoute(HydroComponent):
    """Per-node storage routing coupled through an :class:`Aggregator`.

    Parameters
    ----------
    rfluxes
        Fluxes computing the routed outflow (and any other per-node outputs).
    dfluxes
        State fluxes of the route storages, typically
        ``inflow + local_runoff - outflow``.
    aggregator
        A :class:`GridAggregator` or :class:`GraphAggregator`.
    outflow
        Name of the rflux output aggregated downstream; defaults to the single
        rflux output.
    inflow
        Name under which the aggregated upstream outflow is visible to fluxes.
    routing_order
        ``"parallel"`` computes every outflow from the current storages before
        aggregating. ``"topological"`` walks the node levels upstream first so
        that an outflow may also depend on the same step's inflow.
    """

    def __init__(
        self,
        rfluxes: Sequence[AbstractFlux],
        dfluxes: Sequence[StateFlux],
        aggregator: Aggregator,
        outflow: Optional[Union[Symbol, str]] = None,
        inflow: Union[Symbol, str] = "inflow",
        name: Optional[str] = None,
        routing_order: str = "parallel",
        compiler: Optional[FluxCompiler] = None,
    ):
        if routing_order not in ROUTING_ORDERS:
            raise DefinitionError(f"routing_order must be one of {ROUTING_ORDERS}, got {routing_order!r}")
        if not rfluxes or not dfluxes:
            raise DefinitionError("A route needs routing fluxes and state fluxes")
        super().__init__(name or "route")
        self.rfluxes = sort_fluxes(list(rfluxes))
        self.dfluxes = list(dfluxes)
        self.aggregator = aggregator
        self.routing_order = routing_order

        rflux_outputs = [s for f in self.rfluxes for s in f.outputs]
        if outflow is None:
            if len(rflux_outputs) != 1:
                raise DefinitionError(
                    f"{self.name}: 'outflow' must be named when the routing fluxes produce {len(rflux_outputs)} outputs"
                )
            outflow = rflux_outputs[0]
        self.outflow_name = outflow.name if isinstance(outflow, Symbol) else outflow
        self.inflow_name = inflow.name if isinstance(inflow, Symbol) else inflow
        if self.outflow_name not in [s.name for s in rflux_outputs]:
            raise DefinitionError(f"{self.name}: outflow '{self.outflow_name}' is not produced by the routing fluxes")

        state_names = [d.state_name for d in self.dfluxes]
        if len(set(state_names)) != len(state_names):
            raise DefinitionError(f"{self.name}: a route storage is balanced more than once")
        if self.inflow_name in state_names or self.inflow_name in [s.name for s in rflux_outputs]:
            raise DefinitionError(f"{self.name}: '{self.inflow_name}' is reserved for the aggregated inflow")

        if routing_order == "parallel" and any(self.inflow_name in f.input_names for f in self.rfluxes):
            raise DefinitionError(
                f"{self.name}: routing fluxes read '{self.inflow_name}', which needs routing_order='topological'"
            )

        inflow_symbol = inflow if isinstance(inflow, Symbol) else None
        produced = {s.name for s in rflux_outputs} | set(state_names) | {self.inflow_name}
        inputs, params = {}, {}
        for f in [*self.rfluxes, *self.dfluxes]:
            for s in f.inputs:
                if s.name == self.inflow_name and inflow_symbol is None:
                    inflow_symbol = s
                if s.name not in produced:
                    inputs.setdefault(s.name, s)
            for p in f.params:
                params.setdefault(p.name, p)
        self.inputs = [inputs[k] for k in sorted(inputs)]
        self.params = [params[k] for k in sorted(params)]
        self.states = [d.state for d in self.dfluxes]
        self.outputs = [*rflux_outputs, inflow_symbol or HydroVariable(self.inflow_name)]
        _check_name_clashes(self.name, [*self.inputs, *self.outputs, *self.states, *self.params])

        for f in self.rfluxes:
            if isinstance(f, NeuralFlux):
                self._register_nn(f.nn_name, f.module)

        self.compiled = (compiler or DEFAULT_COMPILER).compile_component(self.rfluxes, self.dfluxes)
        self._level_masks: List[torch.Tensor] = []
        for level in aggregator.node_levels():
            mask = torch.zeros(aggregator.num_nodes, dtype=torch.bool)
            mask[level] = True
            self._level_masks.append(mask)
        logger.info(
            "Built route '%s': %d nodes, %d levels, %s routing",
            self.name,
            aggregator.num_nodes,
            len(self._level_masks),
            routing_order,
        )

    def _route(self, namespace, nns, ref):
        """Evaluate the routing fluxes and the aggregated inflow in ``namespace``."""
        if self.routing_order == "parallel":
            namespace = self.compiled.evaluate(namespace, nns, ref)
            namespace[self.inflow_name] = self.aggregator(namespace[self.outflow_name])
            return namespace

        outflow = torch.zeros_like(ref)
        for mask in self._level_masks:
            namespace[self.inflow_name] = self.aggregator(outflow)
            namespace = self.compiled.evaluate(namespace, nns, ref)
            mask = mask.to(ref.device).view(-1, *([1] * (ref.dim() - 1)))
            outflow = torch.where(mask, namespace[self.outflow_name], outflow)
        namespace[self.inflow_name] = self.aggregator(outflow)
        namespace = self.compiled.evaluate(namespace, nns, ref)
        return namespace

    def forward(
        self,
        input: torch.Tensor,
        pas: Mapping,
        initstates: Optional[Mapping] = None,
        config: Optional[Mapping] = None,
    ) -> torch.Tensor:
        """Run the route over ``(variables, nodes, time)`` input.

        Returns the storages, the routing flux outputs and the aggregated inflow.
        """
        x, squeeze, config, params, timeidx = self._prepare(input, pas, initstates, config)
        _, num_nodes, num_steps = x.shape
        if num_nodes != self.aggregator.num_nodes:
            raise SchemaMismatchError(
                self.name, "nodes", f"input has {num_nodes} nodes but the topology has {self.aggregator.num_nodes}"
            )
        nns = pas.get("nns", {})

        if initstates is None:
            initstates = default_initstates(self.state_names, dtype=x.dtype, device=x.device)
        s0 = expand_component_states(
            initstates, self.state_names, config["styidx"], num_nodes, dtype=x.dtype, device=x.device
        )
        itp = build_interpolator(config["interp"], x, timeidx)
        step_ref = x.new_zeros(num_nodes)

        def du_func(s: torch.Tensor, t: float) -> torch.Tensor:
            namespace = dict(zip(self.input_names, itp(t)))
            namespace.update(zip(self.state_names, s))
            namespace.update(params)
            namespace = self._route(namespace, nns, step_ref)
            return torch.stack(self.compiled.state_rates(namespace, step_ref))

        self._warn_detached_gradients(config, params, nns)
        solver = build_solver(config["solver"], config["min_value"], config["nonfinite"])
        states = solver(du_func, s0, timeidx)

        namespace = dict(zip(self.input_names, x))
        namespace.update(zip(self.state_names, states))
        namespace.update({k: v.unsqueeze(-1) for k, v in params.items()})
        namespace = self._route(namespace, nns, x.new_zeros(num_nodes, num_steps))
        return self._finish([*states, *(namespace[n] for n in self.output_names)], squeeze, x)
