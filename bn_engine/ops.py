import logging
from typing import Optional, Sequence, Tuple, Union

import torch
from torch import Tensor

from . import backward as _backward
from . import elemt as _elemt
from . import stats as _stats
from .errors import PreconditionViolation, check_input, check_per_channel, check_running_stats
from .gather import batch_norm_gather_stats, batch_norm_gather_stats_with_counts
from .layout import acc_type
from .running_stats import invert_var, update_running_stats, update_running_stats_and_invert

__all__ = [
    "batch_norm_forward",
    "batch_norm_stats",
    "batch_norm_elemt",
    "batch_norm_update_stats",
    "batch_norm_backward_reduce",
    "batch_norm_backward_elemt",
    "batch_norm_backward",
    "batch_norm_gather_stats",
    "batch_norm_gather_stats_with_counts",
    "batchnorm",
    "BatchNormFunction",
]

logger = logging.getLogger(__name__)


def _check_params(input: Tensor, **params: Optional[Tensor]) -> None:
    check_input(input)
    for name, t in params.items():
        check_per_channel(t, name, input.size(1))


def _count(input: Tensor) -> int:
    # elements per channel
    return input.numel() // input.size(1)


def batch_norm_forward(
    input: Tensor,  # [N, C, *]
    weight: Optional[Tensor],  # [C]
    bias: Optional[Tensor],  # [C]
    running_mean: Optional[Tensor],  # [C], updated in place when training
    running_var: Optional[Tensor],  # [C], updated in place when training
    training: bool,
    momentum: float,
    eps: float,
) -> Tuple[Tensor, Tensor, Tensor]:
    """forward pass of BatchNorm, returns (output, save_mean, save_invstd)."""
    _check_params(
        input, weight=weight, bias=bias, running_mean=running_mean, running_var=running_var
    )
    has_running = check_running_stats(running_mean, running_var)

    if training:
        save_mean, save_var = _stats.batch_norm_stats(input, eps, _stats.StatsMode.VAR)
        if has_running:
            save_invstd = update_running_stats_and_invert(
                save_mean, save_var, running_mean, running_var, momentum, eps, _count(input)
            )
        else:
            save_invstd = invert_var(save_var, eps)
    else:
        if not has_running:
            raise PreconditionViolation(
                "running_mean and running_var are required when training is False"
            )
        # inference never looks at the batch statistics
        acc = acc_type(input.dtype)
        save_mean = running_mean.to(acc, copy=True)
        save_invstd = invert_var(running_var.to(acc), eps)

    output = _elemt.batch_norm_elemt(input, weight, bias, save_mean, save_invstd)
    return output, save_mean, save_invstd


def batch_norm_stats(input: Tensor, eps: float) -> Tuple[Tensor, Tensor]:
    """(save_mean, save_invstd) of ``input`` per channel."""
    check_input(input)
    return _stats.batch_norm_stats(input, eps, _stats.StatsMode.INVSTD)


def batch_norm_elemt(
    input: Tensor,
    weight: Optional[Tensor],
    bias: Optional[Tensor],
    mean: Tensor,
    invstd: Tensor,
    out: Optional[Tensor] = None,
) -> Tensor:
    _check_params(input, weight=weight, bias=bias, mean=mean, invstd=invstd)
    return _elemt.batch_norm_elemt(input, weight, bias, mean, invstd, out=out)


def batch_norm_update_stats(
    input: Tensor,
    running_mean: Optional[Tensor],
    running_var: Optional[Tensor],
    momentum: float,
) -> Tuple[Tensor, Tensor]:
    """Update the running statistics from ``input``; returns (save_mean, biased save_var)."""
    _check_params(input, running_mean=running_mean, running_var=running_var)
    has_running = check_running_stats(running_mean, running_var)
    save_mean, save_var = _stats.batch_norm_var_mean(input)
    if has_running:
        update_running_stats(save_mean, save_var, running_mean, running_var, momentum, _count(input))
    return save_mean, save_var


def batch_norm_backward_reduce(
    grad_output: Tensor,
    input: Tensor,
    mean: Tensor,
    invstd: Tensor,
    weight: Optional[Tensor],
    input_g: bool,
    weight_g: bool,
    bias_g: bool,
) -> Tuple[Tensor, Tensor, Optional[Tensor], Optional[Tensor]]:
    _check_params(input, mean=mean, invstd=invstd, weight=weight)
    check_input(grad_output, "grad_output")
    return _backward.batch_norm_backward_reduce(
        grad_output, input, mean, invstd, weight, input_g, weight_g, bias_g
    )


def batch_norm_backward_elemt(
    grad_output: Tensor,
    input: Tensor,
    mean: Tensor,
    invstd: Tensor,
    weight: Optional[Tensor],
    sum_dy: Tensor,
    sum_dy_xmu: Tensor,
    count: Union[int, float, Tensor],
) -> Tensor:
    _check_params(
        input, mean=mean, invstd=invstd, weight=weight, sum_dy=sum_dy, sum_dy_xmu=sum_dy_xmu
    )
    check_input(grad_output, "grad_output")
    return _backward.batch_norm_backward_elemt(
        grad_output, input, mean, invstd, weight, sum_dy, sum_dy_xmu, count
    )


def batch_norm_backward(
    grad_output: Tensor,
    input: Tensor,
    weight: Optional[Tensor],
    running_mean: Optional[Tensor],
    running_var: Optional[Tensor],
    save_mean: Optional[Tensor],
    save_invstd: Optional[Tensor],
    training: bool,
    eps: float,
    output_mask: Sequence[bool] = (True, True, True),
) -> Tuple[Optional[Tensor], Optional[Tensor], Optional[Tensor]]:
    """backward pass of BatchNorm, returns (grad_input, grad_weight, grad_bias).

    ``output_mask`` selects which of the three gradients are computed; the
    others come back as None.
    """
    _check_params(
        input,
        weight=weight,
        running_mean=running_mean,
        running_var=running_var,
        save_mean=save_mean,
        save_invstd=save_invstd,
    )
    check_input(grad_output, "grad_output")
    has_running = check_running_stats(running_mean, running_var)
    input_g, weight_g, bias_g = output_mask

    if training:
        if save_mean is None or save_invstd is None:
            raise PreconditionViolation("save_mean and save_invstd are required when training is True")
        mean, invstd = save_mean, save_invstd
    else:
        if not has_running:
            raise PreconditionViolation(
                "running_mean and running_var are required when training is False"
            )
        acc = acc_type(input.dtype)
        mean = running_mean.to(acc)
        invstd = invert_var(running_var.to(acc), eps)

    sum_dy = sum_dy_xmu = grad_weight = grad_bias = None
    if weight_g or bias_g or (input_g and training):
        sum_dy, sum_dy_xmu, grad_weight, grad_bias = _backward.batch_norm_backward_reduce(
            grad_output, input, mean, invstd, weight, input_g, weight_g, bias_g
        )

    grad_input = None
    if input_g:
        if training:
            grad_input = _backward.batch_norm_backward_elemt(
                grad_output, input, mean, invstd, weight, sum_dy, sum_dy_xmu, _count(input)
            )
        else:
            # the running statistics are constants here: dx = dy * invstd * weight
            grad_input = _elemt.batch_norm_elemt(
                grad_output, weight, None, torch.zeros_like(mean), invstd
            )
    return grad_input, grad_weight, grad_bias


# register as custom operators
@torch.library.custom_op(
    "bn_engine::batch_norm_forward", mutates_args=("running_mean", "running_var")
)
def batch_norm_forward_op(
    input: Tensor,
    weight: Optional[Tensor],
    bias: Optional[Tensor],
    running_mean: Optional[Tensor],
    running_var: Optional[Tensor],
    training: bool,
    momentum: float,
    eps: float,
) -> Tuple[Tensor, Tensor, Tensor]:
    return batch_norm_forward(
        input, weight, bias, running_mean, running_var, training, momentum, eps
    )


@torch.library.custom_op("bn_engine::batch_norm_backward", mutates_args=())
def batch_norm_backward_op(
    grad_output: Tensor,
    input: Tensor,
    weight: Optional[Tensor],
    running_mean: Optional[Tensor],
    running_var: Optional[Tensor],
    save_mean: Optional[Tensor],
    save_invstd: Optional[Tensor],
    training: bool,
    eps: float,
) -> Tuple[Tensor, Tensor, Tensor]:
    grad_input, grad_weight, grad_bias = batch_norm_backward(
        grad_output, input, weight, running_mean, running_var,
        save_mean, save_invstd, training, eps,
    )
    return grad_input, grad_weight, grad_bias


# connect custom operators with torch.autograd.Function
class BatchNormFunction(torch.autograd.Function):
    """
    Batch Normalization over dim 1 of an [N, C, *] input.

    - forward(): calls bn_engine::batch_norm_forward and saves context
    - backward(): calls bn_engine::batch_norm_backward using saved context

    Usage:
        output = BatchNormFunction.apply(input, weight, bias, running_mean, running_var, training, momentum, eps)
    """

    @staticmethod
    def forward(ctx, input, weight, bias, running_mean, running_var,
                training=True, momentum=0.1, eps=1e-5):
        output, save_mean, save_invstd = torch.ops.bn_engine.batch_norm_forward(
            input, weight, bias, running_mean, running_var,
            training, momentum, eps
        )
        # running stats are only read by backward in inference mode; in
        # training they may be updated again before backward runs
        if training:
            running_mean = running_var = None
        ctx.save_for_backward(input, weight, running_mean, running_var, save_mean, save_invstd)
        ctx.training = training
        ctx.eps = eps
        return output

    @staticmethod
    def backward(ctx, grad_output):
        input, weight, running_mean, running_var, save_mean, save_invstd = ctx.saved_tensors
        grad_input, grad_weight, grad_bias = torch.ops.bn_engine.batch_norm_backward(
            grad_output, input, weight, running_mean, running_var,
            save_mean, save_invstd, ctx.training, ctx.eps
        )
        needs_input, needs_weight, needs_bias = ctx.needs_input_grad[:3]
        # Return gradients for all forward inputs (None for non-tensor args)
        return (
            grad_input if needs_input else None,
            grad_weight if needs_weight else None,
            grad_bias if needs_bias else None,
            None, None, None, None, None,
        )


def batchnorm(
    input: Tensor,
    weight: Optional[Tensor] = None,
    bias: Optional[Tensor] = None,
    running_mean: Optional[Tensor] = None,
    running_var: Optional[Tensor] = None,
    training: bool = True,
    momentum: float = 0.1,
    eps: float = 1e-5,
) -> Tensor:
    return BatchNormFunction.apply(
        input, weight, bias, running_mean, running_var,
        training, momentum, eps
    )
