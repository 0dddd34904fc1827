"""
Backward passes of batch normalization.

The reducer produces, per channel,

    sum_dy     = Σ dy
    sum_dy_xmu = Σ dy * (x - mean)

and the elementwise pass consumes exactly those two sums (possibly summed
over several shards first) to form

    dx = weight * invstd * (dy - sum_dy / n - (x - mean) * invstd^2 * sum_dy_xmu / n)

Ref. https://arxiv.org/abs/1502.03167
"""

import logging
from typing import Optional, Sequence, Tuple, Union

import torch
from torch import Tensor

from .layout import (
    Impl,
    acc_type,
    as_nsc,
    as_rows,
    channel_view,
    choose_impl,
    index_width,
    reduce_dims,
    split_32bit,
    use_triton,
)

logger = logging.getLogger(__name__)


def _sums(grad_output: Tensor, input: Tensor, mean: Tensor, dims: Sequence[int]) -> Tuple[Tensor, Tensor]:
    acc = acc_type(input.dtype)
    dy = grad_output.to(acc)
    xmu = input.to(acc) - channel_view(mean.to(acc), input.dim())
    return dy.sum(dim=dims), (dy * xmu).sum(dim=dims)


def _reduce_general(grad_output: Tensor, input: Tensor, mean: Tensor) -> Tuple[Tensor, Tensor]:
    sum_dy = sum_dy_xmu = None
    for index in split_32bit(input):
        x = input[index]
        part_dy, part_dy_xmu = _sums(grad_output[index], x, mean, reduce_dims(x))
        if sum_dy is None:
            sum_dy, sum_dy_xmu = part_dy, part_dy_xmu
        else:
            sum_dy = sum_dy + part_dy
            sum_dy_xmu = sum_dy_xmu + part_dy_xmu
    return sum_dy, sum_dy_xmu


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
    """Per-channel (sum_dy, sum_dy_xmu, grad_weight, grad_bias).

    ``sum_dy`` and ``sum_dy_xmu`` are returned whatever ``input_g`` says.
    ``grad_weight = sum_dy_xmu * invstd`` and ``grad_bias = sum_dy`` are None
    unless their flags are set.
    """
    impl = choose_impl(input, grad_output, params=(mean, invstd, weight))
    logger.debug("backward_reduce: impl=%s width=%s", impl.value, index_width(input).name)
    param_dtype = weight.dtype if weight is not None else acc_type(input.dtype)

    if impl is not Impl.General and use_triton(input):
        from . import triton_kernels

        sum_dy, sum_dy_xmu, grad_weight, grad_bias = triton_kernels.backward_reduce(
            grad_output, input, mean, invstd, impl, weight_g, bias_g, param_dtype
        )
    else:
        if impl is Impl.Contiguous:
            sum_dy, sum_dy_xmu = _sums(as_nsc(grad_output), as_nsc(input), mean, (0, 2))
        elif impl is Impl.ChannelsLast:
            sum_dy, sum_dy_xmu = _sums(as_rows(grad_output), as_rows(input), mean, (0,))
        else:
            sum_dy, sum_dy_xmu = _reduce_general(grad_output, input, mean)
        grad_weight = (sum_dy_xmu * invstd).to(param_dtype) if weight_g else None
        grad_bias = sum_dy.to(param_dtype) if bias_g else None

    return sum_dy, sum_dy_xmu, grad_weight, grad_bias


def _grad_input(
    grad_output: Tensor,
    input: Tensor,
    grad_input: Tensor,
    mean: Tensor,
    grad_mean: Tensor,
    proj_scale: Tensor,
    grad_scale: Tensor,
) -> None:
    ndim = input.dim()
    acc = acc_type(input.dtype)
    dx = (
        grad_output.to(acc)
        - channel_view(grad_mean, ndim)
        - (input.to(acc) - channel_view(mean, ndim)) * channel_view(proj_scale, ndim)
    ) * channel_view(grad_scale, ndim)
    grad_input.copy_(dx)


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
    """grad_input from the reduced sums.

    ``count`` is the number of elements per channel the sums cover, either a
    number or a tensor of per-shard counts that is summed.
    """
    total = torch.as_tensor(count, dtype=sum_dy.dtype, device=sum_dy.device)
    if total.dim() > 0:
        total = total.sum()
    norm_fct = 1.0 / total

    impl = choose_impl(input, grad_output, params=(mean, invstd, weight, sum_dy, sum_dy_xmu))
    logger.debug("backward_elemt: impl=%s width=%s", impl.value, index_width(input).name)
    grad_input = torch.empty_like(input)

    if impl is not Impl.General and use_triton(input):
        from . import triton_kernels

        return triton_kernels.backward_elemt(
            grad_output, input, mean, invstd, weight, sum_dy, sum_dy_xmu,
            norm_fct.to(torch.float32).reshape(1), grad_input, impl,
        )

    acc = acc_type(input.dtype)
    mean = mean.to(acc)
    invstd = invstd.to(acc)
    grad_mean = sum_dy.to(acc) * norm_fct
    proj_scale = sum_dy_xmu.to(acc) * norm_fct * invstd * invstd
    grad_scale = invstd * weight if weight is not None else invstd

    if impl is Impl.Contiguous:
        _grad_input(
            as_nsc(grad_output), as_nsc(input), as_nsc(grad_input),
            mean, grad_mean, proj_scale, grad_scale,
        )
    elif impl is Impl.ChannelsLast:
        _grad_input(
            as_rows(grad_output), as_rows(input), as_rows(grad_input),
            mean, grad_mean, proj_scale, grad_scale,
        )
    else:
        for index in split_32bit(input):
            _grad_input(
                grad_output[index], input[index], grad_input[index],
                mean, grad_mean, proj_scale, grad_scale,
            )
    return grad_input
