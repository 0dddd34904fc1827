"""
Parallel variance combination (Chan et al.) for per-channel partial statistics.

A partial holds the mean, the sum of squared deviations (M2) and the number
of samples it summarizes. Partials merge without revisiting the data, which
is what lets the statistics pass, the 32-bit split and the distributed
gather share one numerically stable reduction.
"""

from typing import NamedTuple

import torch
from torch import Tensor


class Partial(NamedTuple):
    mean: Tensor  # [C]
    m2: Tensor  # [C]
    count: Tensor  # scalar or [C]


def empty(channels: int, dtype: torch.dtype, device: torch.device) -> Partial:
    zeros = torch.zeros(channels, dtype=dtype, device=device)
    return Partial(zeros, zeros.clone(), torch.zeros((), dtype=dtype, device=device))


def from_var(mean: Tensor, var: Tensor, count) -> Partial:
    count = torch.as_tensor(count, dtype=mean.dtype, device=mean.device)
    return Partial(mean, var * count, count)


def combine(a: Partial, b: Partial) -> Partial:
    """Merge two partials; a side with zero samples leaves the other unchanged."""
    count = a.count + b.count
    safe_count = torch.where(count > 0, count, torch.ones_like(count))
    delta = b.mean - a.mean
    mean = a.mean + delta * (b.count / safe_count)
    m2 = a.m2 + b.m2 + delta * delta * (a.count * b.count / safe_count)
    has_b = b.count > 0
    return Partial(
        torch.where(has_b, mean, a.mean), torch.where(has_b, m2, a.m2), count
    )


def combine_equal(means: Tensor, m2s: Tensor, count_each: int) -> Partial:
    """Merge K partials of equal size at once. ``means``/``m2s`` are [K, C]."""
    k = means.size(0)
    mean = means.mean(dim=0)
    m2 = m2s.sum(dim=0) + count_each * (means - mean).pow(2).sum(dim=0)
    count = torch.tensor(float(k * count_each), dtype=mean.dtype, device=mean.device)
    return Partial(mean, m2, count)


def biased_var(p: Partial) -> Tensor:
    return p.m2 / p.count
