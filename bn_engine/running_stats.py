"""
Exponential moving averages of the batch statistics.

The saved batch variance is biased (divide by N); the running variance is
unbiased, so the update applies Bessel's correction ``N / (N - 1)``. With a
single sample per channel that factor divides by zero and the running
variance becomes non-finite; callers validate batch sizes beforehand.
"""

from typing import Optional, Union

import torch
from torch import Tensor

Count = Union[int, float, Tensor]


def invert_var(var: Tensor, eps: float) -> Tensor:
    """invstd = 1 / sqrt(var + eps)"""
    return torch.rsqrt(var + eps)


def update_running_stats(
    mean: Tensor,
    var: Tensor,
    running_mean: Optional[Tensor],
    running_var: Optional[Tensor],
    momentum: float,
    count: Count,
) -> None:
    """Fold the batch ``mean`` / biased ``var`` into the running statistics in place."""
    if running_mean is not None:
        running_mean.copy_(momentum * mean + (1 - momentum) * running_mean)
    if running_var is not None:
        unbiased_var = var * count / (count - 1)
        running_var.copy_(momentum * unbiased_var + (1 - momentum) * running_var)


def update_running_stats_and_invert(
    mean: Tensor,
    var: Tensor,
    running_mean: Optional[Tensor],
    running_var: Optional[Tensor],
    momentum: float,
    eps: float,
    count: Count,
) -> Tensor:
    """Update the running statistics, then turn ``var`` into invstd in place.

    The invstd is taken from the biased batch variance: it normalizes the
    current batch, not the running estimate.
    """
    update_running_stats(mean, var, running_mean, running_var, momentum, count)
    return var.add_(eps).rsqrt_()
