"""
Pure batch-norm arithmetic on channel-last tensors [N, H, W, C].

Nothing here mutates its arguments: running statistics go in as values and
come out as new values. The modules in `layers` and `compiled` are built on
these functions.

Formulas:
  mean, var  = per-channel mean / biased variance over (N, H, W)
  running'   = running + (batch - running) * (1 - momentum)
  normalizer = (var + eps)^(-1/2) * scale
  y          = (x - mean) * normalizer + offset
"""

import warnings
from typing import Tuple

import torch
from torch import Tensor

from .errors import NumericalInstabilityWarning, ShapeMismatchError

REDUCE_DIMS = (0, 1, 2)


def check_input(x: Tensor, feature_count: int) -> None:
    if x.dim() != 4:
        raise ShapeMismatchError(
            f"expected a 4D [batch, height, width, channel] tensor, got shape {tuple(x.shape)}"
        )
    if x.shape[-1] != feature_count:
        raise ShapeMismatchError(
            f"expected {feature_count} channels in the last dimension, got {x.shape[-1]}"
        )


def clamp_variance(var: Tensor, warn: bool = True) -> Tensor:
    if warn and bool((var < 0).any()):
        warnings.warn(
            "negative variance from floating-point cancellation, clamping to zero",
            NumericalInstabilityWarning,
            stacklevel=3,
        )
    return var.clamp_min(0.0)


def batch_statistics(x: Tensor, warn: bool = True) -> Tuple[Tensor, Tensor]:
    # fp64 accumulation: a constant channel gives mean == value and var == 0 exactly
    acc = x.to(torch.float64)
    mean = acc.mean(REDUCE_DIMS).to(x.dtype)                      # [C]
    var = acc.var(REDUCE_DIMS, unbiased=False).to(x.dtype)        # [C]
    return mean, clamp_variance(var, warn=warn)


def update_running(running: Tensor, batch: Tensor, momentum: float) -> Tensor:
    # Bookkeeping only: no gradient reaches the running statistic.
    batch = batch.detach()
    return running + (batch - running) * (1.0 - momentum)


def normalize(x: Tensor, mean: Tensor, var: Tensor, scale: Tensor, offset: Tensor, eps: float) -> Tensor:
    normalizer = torch.rsqrt(var + eps) * scale
    return (x - mean) * normalizer + offset


def batch_norm_training(
    x: Tensor,
    scale: Tensor,
    offset: Tensor,
    running_mean: Tensor,
    running_var: Tensor,
    momentum: float,
    eps: float,
    warn: bool = True,
) -> Tuple[Tensor, Tensor, Tensor]:
    """Training step. Returns (output, new_running_mean, new_running_var)."""
    mean, var = batch_statistics(x, warn=warn)
    new_mean = update_running(running_mean, mean, momentum)
    new_var = update_running(running_var, var, momentum)
    return normalize(x, mean, var, scale, offset, eps), new_mean, new_var


def batch_norm_inference(
    x: Tensor,
    scale: Tensor,
    offset: Tensor,
    running_mean: Tensor,
    running_var: Tensor,
    eps: float,
) -> Tensor:
    return normalize(x, running_mean, running_var, scale, offset, eps)
