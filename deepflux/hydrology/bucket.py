import logging
from typing import Mapping, Optional, Sequence

import torch

from ..errors import DefinitionError
from ..utils.params import default_initstates, expand_component_states
from .base import HydroComponent
from .compiler import DEFAULT_COMPILER, FluxCompiler
from .flux import AbstractFlux, NeuralFlux, StateFlux, _check_name_clashes
from .interpolation import build_interpolator
from .solver import build_solver
from .sorting import sort_fluxes

logger = logging.getLogger(__name__)


class HydroBucket(HydroComponent):
    """A storage reservoir: fluxes plus the state fluxes balancing its storages.

    The fluxes are sorted so that producers run before consumers and compiled
    once. Without state fluxes the bucket evaluates its fluxes over the whole
    series in one batched call; otherwise the states are integrated with the
    configured solver and the fluxes are then evaluated from the trajectory.
    """

    def __init__(
        self,
        fluxes: Sequence[AbstractFlux],
        dfluxes: Sequence[StateFlux] = (),
        name: Optional[str] = None,
        compiler: Optional[FluxCompiler] = None,
    ):
        fluxes, dfluxes = list(fluxes), list(dfluxes)
        if not fluxes and not dfluxes:
            raise DefinitionError("A bucket needs at least one flux or state flux")
        if any(isinstance(f, StateFlux) for f in fluxes):
            raise DefinitionError("State fluxes must be passed through 'dfluxes'")
        super().__init__(name or "bucket_" + "_".join(n for f in fluxes for n in f.output_names))

        self.fluxes = sort_fluxes(fluxes)
        self.dfluxes = dfluxes

        state_names = [d.state_name for d in dfluxes]
        duplicated = sorted({n for n in state_names if state_names.count(n) > 1})
        if duplicated:
            raise DefinitionError(f"{self.name}: states {duplicated} are balanced more than once")

        self.outputs = [s for f in self.fluxes for s in f.outputs]
        self.states = [d.state for d in dfluxes]
        produced = set(self.output_names) | set(state_names)
        if set(self.output_names) & set(state_names):
            raise DefinitionError(
                f"{self.name}: {sorted(set(self.output_names) & set(state_names))} are both flux outputs and states"
            )

        inputs, params = {}, {}
        for f in [*self.fluxes, *dfluxes]:
            for s in f.inputs:
                if s.name not in produced:
                    inputs.setdefault(s.name, s)
            for p in f.params:
                params.setdefault(p.name, p)
        self.inputs = [inputs[k] for k in sorted(inputs)]
        self.params = [params[k] for k in sorted(params)]
        _check_name_clashes(
            self.name,
            [*self.inputs, *self.outputs, *self.states, *self.params]
            + [s for f in [*self.fluxes, *dfluxes] for s in f.inputs],
        )

        for f in self.fluxes:
            if isinstance(f, NeuralFlux):
                self._register_nn(f.nn_name, f.module)

        compiler = compiler or DEFAULT_COMPILER
        self.compiled = compiler.compile_component(self.fluxes, self.dfluxes)
        logger.info(
            "Built bucket '%s': %d inputs, %d states, %d outputs, %d params",
            self.name,
            len(self.inputs),
            len(self.states),
            len(self.outputs),
            len(self.params),
        )

    def _series_namespace(self, x, params, states=None):
        namespace = dict(zip(self.input_names, x))
        if states is not None:
            namespace.update(zip(self.state_names, states))
        namespace.update({k: v.unsqueeze(-1) for k, v in params.items()})
        return namespace

    def forward(
        self,
        input: torch.Tensor,
        pas: Mapping,
        initstates: Optional[Mapping] = None,
        config: Optional[Mapping] = None,
    ) -> torch.Tensor:
        """Run the bucket.

        Parameters
        ----------
        input
            ``(len(input_names), T)`` or ``(len(input_names), N, T)``.
        pas
            ``{"params": {...}, "nns": {...}}``.
        initstates
            ``{state: value}``; zeros when omitted.
        config
            Run configuration, see :data:`deepflux.config.DEFAULT_CONFIG`.

        Returns
        -------
        torch.Tensor
            States followed by outputs along the leading axis, same layout as ``input``.
        """
        x, squeeze, config, params, timeidx = self._prepare(input, pas, initstates, config)
        nns = pas.get("nns", {})
        _, num_nodes, num_steps = x.shape
        series_ref = x.new_zeros(num_nodes, num_steps)

        if not self.states:
            outputs = self.compiled.flux_func(self._series_namespace(x, params), nns, series_ref)
            return self._finish(outputs, squeeze, x)

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
            return torch.stack(self.compiled.diff_func(namespace, nns, step_ref))

        self._warn_detached_gradients(config, params, nns)
        solver = build_solver(config["solver"], config["min_value"], config["nonfinite"])
        states = solver(du_func, s0, timeidx)

        namespace = self._series_namespace(x, params, states)
        outputs = self.compiled.flux_func(namespace, nns, series_ref)
        return self._finish([*states, *outputs], squeeze, x)
