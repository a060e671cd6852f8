"""Single entry point for running any component or model."""

import logging
from typing import Mapping, Optional

import torch

from .config import normalize_config

logger = logging.getLogger(__name__)


def run(
    component,
    input: torch.Tensor,
    pas: Mapping,
    initstates: Optional[Mapping] = None,
    timeidx=None,
    **options,
) -> torch.Tensor:
    """Run ``component`` on ``input``.

    ``options`` are configuration keys (``solver``, ``interp``, ``ptyidx``,
    ``styidx``, ``min_value``, ``nonfinite``).

    Examples
    --------
    >>> model = build_exphydro()
    >>> out = run(model, forcing, pas, solver="immutable")
    """
    config = normalize_config({**options, "timeidx": timeidx})
    logger.debug("Running '%s' on input of shape %s", component.name, tuple(input.shape))
    return component(input, pas, initstates, config)
