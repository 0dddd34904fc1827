"""
Synchronized batch normalization across the ranks of a process group.

Every rank computes statistics over its own shard, the (mean, invstd, count)
triples are all-gathered and merged, and the merged statistics normalize each
shard. Backward all-reduces the two reduction sums so that every rank applies
the gradient formula with global sums and the global count.
"""

import logging
from typing import Optional

import torch
import torch.distributed as dist
from torch import Tensor

from .backward import batch_norm_backward_elemt, batch_norm_backward_reduce
from .elemt import batch_norm_elemt
from .errors import check_input, check_running_stats
from .gather import batch_norm_gather_stats_with_counts
from .layout import acc_type
from .ops import batchnorm
from .running_stats import invert_var
from .stats import batch_norm_stats

logger = logging.getLogger(__name__)


class SyncBatchNormFunction(torch.autograd.Function):
    """
    Usage:
        output = SyncBatchNormFunction.apply(input, weight, bias, running_mean, running_var, eps, momentum, process_group)
    """

    @staticmethod
    def forward(ctx, input, weight, bias, running_mean, running_var, eps, momentum, process_group):
        check_input(input)
        check_running_stats(running_mean, running_var)
        C = input.size(1)
        world_size = dist.get_world_size(process_group)

        count = torch.full((1,), input.numel() // C, dtype=acc_type(input.dtype), device=input.device)
        if input.numel() > 0:
            mean, invstd = batch_norm_stats(input, eps)
        else:
            # an empty shard still takes part in the collective, with count 0
            mean = torch.zeros(C, dtype=count.dtype, device=input.device)
            invstd = torch.ones(C, dtype=count.dtype, device=input.device)

        # one collective for all three: [mean | invstd | count]
        combined = torch.cat([mean.to(count.dtype), invstd.to(count.dtype), count], dim=0)
        gathered = [torch.empty_like(combined) for _ in range(world_size)]
        dist.all_gather(gathered, combined, group=process_group)
        gathered = torch.stack(gathered, dim=0)
        mean_all, invstd_all, count_all = torch.split(gathered, [C, C, 1], dim=1)
        count_all = count_all.reshape(-1)
        logger.debug("sync stats gathered from %d ranks", world_size)

        mean, var = batch_norm_gather_stats_with_counts(
            mean_all, invstd_all, running_mean, running_var, momentum, eps, count_all
        )
        invstd = invert_var(var, eps)

        ctx.save_for_backward(input, weight, mean, invstd, count_all)
        ctx.process_group = process_group
        return batch_norm_elemt(input, weight, bias, mean, invstd)

    @staticmethod
    def backward(ctx, grad_output):
        input, weight, mean, invstd, count_all = ctx.saved_tensors
        needs_input, needs_weight, needs_bias = ctx.needs_input_grad[:3]

        sum_dy, sum_dy_xmu, grad_weight, grad_bias = batch_norm_backward_reduce(
            grad_output, input, mean, invstd, weight, needs_input, needs_weight, needs_bias
        )

        grad_input = None
        if needs_input:
            C = input.size(1)
            combined = torch.cat([sum_dy, sum_dy_xmu], dim=0)
            dist.all_reduce(combined, dist.ReduceOp.SUM, group=ctx.process_group)
            sum_dy, sum_dy_xmu = torch.split(combined, C)
            grad_input = batch_norm_backward_elemt(
                grad_output, input, mean, invstd, weight, sum_dy, sum_dy_xmu, count_all
            )

        return grad_input, grad_weight, grad_bias, None, None, None, None, None


def sync_batchnorm(
    input: Tensor,
    weight: Optional[Tensor] = None,
    bias: Optional[Tensor] = None,
    running_mean: Optional[Tensor] = None,
    running_var: Optional[Tensor] = None,
    training: bool = True,
    momentum: float = 0.1,
    eps: float = 1e-5,
    process_group: Optional[dist.ProcessGroup] = None,
) -> Tensor:
    """Batch norm whose training statistics span every rank of ``process_group``.

    Falls back to ``batchnorm`` in inference, when torch.distributed is not
    initialized, or when the group has a single rank.
    """
    if (
        not training
        or not dist.is_available()
        or not dist.is_initialized()
        or dist.get_world_size(process_group) == 1
    ):
        return batchnorm(input, weight, bias, running_mean, running_var, training, momentum, eps)
    return SyncBatchNormFunction.apply(
        input, weight, bias, running_mean, running_var, eps, momentum, process_group
    )
