import logging
from typing import Optional, Tuple, Union

import torch
from torch import Tensor

from . import welford
from .errors import check_running_stats
from .running_stats import update_running_stats

logger = logging.getLogger(__name__)


def batch_norm_gather_stats_with_counts(
    mean: Tensor,
    invstd: Tensor,
    running_mean: Optional[Tensor],
    running_var: Optional[Tensor],
    momentum: float,
    eps: float,
    counts: Union[Tensor, list],
) -> Tuple[Tensor, Tensor]:
    """Merge K shard statistics into global (mean, var).

    ``mean`` and ``invstd`` are [K, C], one row per shard, and ``counts``
    holds the K shard sizes. Shards are folded in one at a time with the
    parallel variance combination; empty shards are skipped. The merged
    statistics then update the running statistics using the total count.
    The returned variance is biased, over all shards together.
    """
    check_running_stats(running_mean, running_var)
    acc = mean.dtype if mean.dtype == torch.float64 else torch.float32
    mean = mean.to(acc)
    counts = torch.as_tensor(counts, dtype=acc, device=mean.device).reshape(-1)
    # invstd was computed from the biased variance with the same eps
    var = invstd.to(acc).pow(-2) - eps

    merged = welford.empty(mean.size(1), acc, mean.device)
    for shard in range(mean.size(0)):
        merged = welford.combine(
            merged, welford.from_var(mean[shard], var[shard], counts[shard])
        )
    logger.debug("gathered %d shards", mean.size(0))

    global_var = welford.biased_var(merged)
    update_running_stats(merged.mean, global_var, running_mean, running_var, momentum, merged.count)
    return merged.mean, global_var


def batch_norm_gather_stats(
    mean: Tensor,
    invstd: Tensor,
    running_mean: Optional[Tensor],
    running_var: Optional[Tensor],
    momentum: float,
    eps: float,
    count: int,
) -> Tuple[Tensor, Tensor]:
    """Same as ``batch_norm_gather_stats_with_counts`` for shards of equal size."""
    counts = torch.full((mean.size(0),), float(count), device=mean.device)
    return batch_norm_gather_stats_with_counts(
        mean, invstd, running_mean, running_var, momentum, eps, counts
    )
