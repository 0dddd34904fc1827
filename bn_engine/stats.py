import enum
import logging
from typing import Tuple

import torch
from torch import Tensor

from . import welford
from .layout import (
    Impl,
    acc_type,
    as_nsc,
    as_rows,
    choose_impl,
    index_width,
    reduce_dims,
    split_32bit,
    use_triton,
)
from .running_stats import invert_var

logger = logging.getLogger(__name__)


class StatsMode(enum.Enum):
    VAR = "var"  # biased variance
    INVSTD = "invstd"  # 1 / sqrt(var + eps)


def _var_mean_contiguous(input: Tensor) -> Tuple[Tensor, Tensor]:
    # partial statistics per (n, c) run of S packed elements, merged over n
    x = as_nsc(input).to(acc_type(input.dtype))
    S = x.size(2)
    var_n, mean_n = torch.var_mean(x, dim=2, correction=0)
    partial = welford.combine_equal(mean_n, var_n * S, S)
    return partial.mean, welford.biased_var(partial)


def _var_mean_channels_last(input: Tensor) -> Tuple[Tensor, Tensor]:
    rows = as_rows(input).to(acc_type(input.dtype))
    var, mean = torch.var_mean(rows, dim=0, correction=0)
    return mean, var


def _var_mean_general(input: Tensor) -> Tuple[Tensor, Tensor]:
    C = input.size(1)
    partials = []
    for index in split_32bit(input):
        piece = input[index].to(acc_type(input.dtype))
        var, mean = torch.var_mean(piece, dim=reduce_dims(piece), correction=0)
        partials.append(welford.from_var(mean, var, piece.numel() // C))

    if len(partials) == 1:
        return partials[0].mean, welford.biased_var(partials[0])
    merged = partials[0]
    for partial in partials[1:]:
        merged = welford.combine(merged, partial)
    return merged.mean, welford.biased_var(merged)


def batch_norm_stats(
    input: Tensor, eps: float, mode: StatsMode = StatsMode.INVSTD
) -> Tuple[Tensor, Tensor]:
    """Per-channel mean and biased variance (or invstd) over all but dim 1.

    Both outputs are 1-D of length C in the accumulation dtype of ``input``.
    """
    impl = choose_impl(input)
    logger.debug("stats: impl=%s width=%s mode=%s", impl.value, index_width(input).name, mode.value)

    if impl is not Impl.General and use_triton(input):
        from . import triton_kernels

        return triton_kernels.stats(input, impl, eps, mode is StatsMode.INVSTD)

    if impl is Impl.Contiguous:
        mean, var = _var_mean_contiguous(input)
    elif impl is Impl.ChannelsLast:
        mean, var = _var_mean_channels_last(input)
    else:
        mean, var = _var_mean_general(input)

    if mode is StatsMode.INVSTD:
        return mean, invert_var(var, eps)
    return mean, var


def batch_norm_var_mean(input: Tensor) -> Tuple[Tensor, Tensor]:
    """(mean, biased var) of ``input`` per channel."""
    return batch_norm_stats(input, 0.0, StatsMode.VAR)
