import logging
from typing import Optional

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
    split_32bit,
    use_triton,
)

logger = logging.getLogger(__name__)


def _normalize(
    x: Tensor,
    out: Tensor,
    weight: Optional[Tensor],
    bias: Optional[Tensor],
    mean: Tensor,
    invstd: Tensor,
) -> None:
    # per-channel tensors become [1, C, 1, ...] broadcast views over x
    ndim = x.dim()
    y = (x.to(acc_type(x.dtype)) - channel_view(mean, ndim)) * channel_view(invstd, ndim)
    if weight is not None:
        y = y * channel_view(weight, ndim)
    if bias is not None:
        y = y + channel_view(bias, ndim)
    out.copy_(y)


def batch_norm_elemt(
    input: Tensor,
    weight: Optional[Tensor],
    bias: Optional[Tensor],
    mean: Tensor,
    invstd: Tensor,
    out: Optional[Tensor] = None,
) -> Tensor:
    """((x - mean[c]) * invstd[c]) * weight[c] + bias[c] for every element.

    A missing weight acts as 1 and a missing bias as 0. The result has the
    shape, dtype and memory format of ``input``; ``out`` is resized in place
    when given.
    """
    if out is None:
        out = torch.empty_like(input)
    else:
        out.resize_(input.shape)

    impl = choose_impl(input, out, params=(weight, bias, mean, invstd))
    logger.debug("elemt: impl=%s width=%s", impl.value, index_width(input).name)

    if impl is not Impl.General and use_triton(input):
        from . import triton_kernels

        return triton_kernels.elemt(input, weight, bias, mean, invstd, out, impl)

    if impl is Impl.Contiguous:
        _normalize(as_nsc(input), as_nsc(out), weight, bias, mean, invstd)
    elif impl is Impl.ChannelsLast:
        _normalize(as_rows(input), as_rows(out), weight, bias, mean, invstd)
    else:
        for index in split_32bit(input):
            _normalize(input[index], out[index], weight, bias, mean, invstd)
    return out
