"""Pre-flight validation run by every component before its time loop starts."""

from typing import Mapping, Optional

import torch

from ..errors import SchemaMismatchError


def _num_nodes(input: torch.Tensor) -> int:
    return input.shape[1] if input.dim() == 3 else 1


def check_input(component, input: torch.Tensor, timeidx=None):
    name = component.name
    if not torch.is_tensor(input):
        raise SchemaMismatchError(name, "input", f"input must be a tensor, got {type(input).__name__}")
    if input.dim() not in (2, 3):
        raise SchemaMismatchError(
            name, "input", f"input must be (variables, time) or (variables, nodes, time), got shape {tuple(input.shape)}"
        )
    expected = len(component.input_names)
    if input.shape[0] != expected:
        raise SchemaMismatchError(
            name,
            "variables",
            f"input has {input.shape[0]} variables but the component expects {expected}: {component.input_names}",
        )
    if timeidx is not None and len(timeidx) != input.shape[-1]:
        raise SchemaMismatchError(
            name, "time", f"input has {input.shape[-1]} time steps but timeidx has {len(timeidx)}"
        )


def check_params(component, pas: Mapping):
    name = component.name
    if component.param_names and "params" not in pas:
        raise SchemaMismatchError(name, "params", "parameter container has no 'params' entry")
    params = pas.get("params", {})
    for pname in component.param_names:
        if pname not in params:
            raise SchemaMismatchError(name, pname, f"missing parameter '{pname}'")


def check_initstates(component, initstates: Optional[Mapping]):
    if initstates is None:
        return
    for sname in component.state_names:
        if sname not in initstates:
            raise SchemaMismatchError(component.name, sname, f"missing initial state '{sname}'")


def check_nns(component, pas: Mapping):
    name = component.name
    if not component.nn_names:
        return
    nns = pas.get("nns", {})
    for nn_name in component.nn_names:
        if nn_name not in nns:
            raise SchemaMismatchError(name, nn_name, f"missing neural network parameters '{nn_name}' in pas['nns']")


def _check_types(component, values: Mapping, names, idx, num_nodes: int, label: str):
    if idx is not None:
        idx = torch.as_tensor(idx)
        if idx.dim() != 1 or idx.shape[0] != num_nodes:
            raise SchemaMismatchError(
                component.name, label, f"{label} must have one entry per node ({num_nodes}), got shape {tuple(idx.shape)}"
            )
        if idx.numel() and int(idx.min()) < 0:
            raise SchemaMismatchError(component.name, label, f"{label} contains negative indices")
    for n in names:
        value = torch.as_tensor(values[n])
        if value.dim() == 0:
            continue
        if value.dim() != 1:
            raise SchemaMismatchError(
                component.name, n, f"'{n}' must be a scalar or a 1-d tensor, got shape {tuple(value.shape)}"
            )
        if idx is None and value.shape[0] != num_nodes:
            raise SchemaMismatchError(
                component.name, n, f"'{n}' has {value.shape[0]} entries but there are {num_nodes} nodes and no {label}"
            )
        if idx is not None and idx.numel() and int(idx.max()) >= value.shape[0]:
            raise SchemaMismatchError(
                component.name, n, f"{label} refers to type {int(idx.max())} but '{n}' has {value.shape[0]} entries"
            )


def check_ptypes(component, input: torch.Tensor, pas: Mapping, ptyidx=None):
    params = pas.get("params", {})
    _check_types(component, params, component.param_names, ptyidx, _num_nodes(input), "ptyidx")


def check_stypes(component, input: torch.Tensor, initstates: Optional[Mapping], styidx=None):
    if initstates is None:
        return
    _check_types(component, initstates, component.state_names, styidx, _num_nodes(input), "styidx")


def check(component, input: torch.Tensor, pas: Mapping, initstates: Optional[Mapping], config: Mapping):
    """Run every pre-flight check; raises :class:`SchemaMismatchError` on the first failure."""
    check_input(component, input, config.get("timeidx"))
    check_params(component, pas)
    check_nns(component, pas)
    check_initstates(component, initstates)
    check_ptypes(component, input, pas, config.get("ptyidx"))
    check_stypes(component, input, initstates, config.get("styidx"))
