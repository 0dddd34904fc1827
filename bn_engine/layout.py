"""
Memory layout classification shared by every batch norm pass.

All passes resolve the same ``Impl`` tag from the input's shape and strides so
that the forward statistics, the normalization and both backward passes agree
on the strategy for a given tensor.
"""

import enum
import logging
import math
from typing import Iterator, List, Optional, Tuple

import torch
from torch import Tensor

from . import config

logger = logging.getLogger(__name__)


class Impl(enum.Enum):
    Contiguous = "contiguous"  # packed [N, C, *], channel stride > 1
    ChannelsLast = "channels_last"  # packed with channel stride 1, or 2-D
    General = "general"  # arbitrary strides or too large for 32-bit indexing


class IndexWidth(enum.Enum):
    NARROW = 32
    WIDE = 64


def acc_type(dtype: torch.dtype) -> torch.dtype:
    """Accumulation dtype for statistics of a tensor stored as ``dtype``."""
    if dtype == torch.float64:
        return torch.float64
    # half, bfloat16 and float32 all accumulate in float32
    return torch.float32


def can_use_32bit_indexing(t: Tensor) -> bool:
    limit = config.max_32bit_index()
    if t.numel() > limit:
        return False
    max_offset = 1
    for size, stride in zip(t.shape, t.stride()):
        max_offset += (size - 1) * stride
    return max_offset <= limit


def index_width(t: Tensor) -> IndexWidth:
    return IndexWidth.NARROW if can_use_32bit_indexing(t) else IndexWidth.WIDE


def is_channels_last_packed(t: Tensor) -> bool:
    if t.dim() == 4:
        return t.is_contiguous(memory_format=torch.channels_last)
    if t.dim() == 5:
        return t.is_contiguous(memory_format=torch.channels_last_3d)
    return False


def _choose_impl(t: Tensor) -> Impl:
    if not can_use_32bit_indexing(t):
        return Impl.General
    if t.is_contiguous():
        return Impl.ChannelsLast if t.stride(1) == 1 else Impl.Contiguous
    if is_channels_last_packed(t):
        return Impl.ChannelsLast
    return Impl.General


def choose_impl(
    self: Tensor, *others: Tensor, params: Tuple[Optional[Tensor], ...] = ()
) -> Impl:
    """Resolve the execution strategy for ``self``.

    ``others`` are full-size tensors read alongside ``self`` (e.g. the
    gradient in backward); they must classify identically. ``params`` are
    per-channel tensors, which must be absent or contiguous. Anything else
    falls through to ``Impl.General``.
    """
    impl = _choose_impl(self)
    if impl is not Impl.General:
        if any(_choose_impl(other) is not impl for other in others):
            impl = Impl.General
        elif any(p is not None and not p.is_contiguous() for p in params):
            impl = Impl.General
    logger.debug(
        "layout %s for shape=%s strides=%s", impl.value, tuple(self.shape), self.stride()
    )
    return impl


def channel_view(t: Tensor, ndim: int) -> Tensor:
    """View a length-C tensor as [1, C, 1, ...] so it broadcasts over ``ndim`` dims."""
    return t.view((1, -1) + (1,) * (ndim - 2))


def as_nsc(t: Tensor) -> Tensor:
    """[N, C, S] view of a channel-first packed tensor."""
    return t.view(t.size(0), t.size(1), math.prod(t.shape[2:]))


def as_rows(t: Tensor) -> Tensor:
    """[M, C] view of a channels-last packed tensor (one row per position)."""
    return t.movedim(1, -1).view(-1, t.size(1))


def reduce_dims(t: Tensor) -> List[int]:
    return [d for d in range(t.dim()) if d != 1]


def _split_dim(t: Tensor) -> Optional[int]:
    best, best_extent = None, 0
    for d in reduce_dims(t):
        if t.size(d) < 2:
            continue
        extent = (t.size(d) - 1) * t.stride(d)
        if best is None or extent > best_extent:
            best, best_extent = d, extent
    return best


def split_32bit(t: Tensor) -> Iterator[Tuple[slice, ...]]:
    """Yield index tuples cutting ``t`` into 32-bit addressable pieces.

    A NARROW tensor yields a single index covering all of it. The channel
    dimension is never cut, so per-channel views broadcast against every
    piece unchanged.
    """
    pending = [[(0, size) for size in t.shape]]
    while pending:
        bounds = pending.pop()
        index = tuple(slice(lo, hi) for lo, hi in bounds)
        piece = t[index]
        dim = None if can_use_32bit_indexing(piece) else _split_dim(piece)
        if dim is None:
            yield index
            continue
        lo, hi = bounds[dim]
        mid = lo + (hi - lo) // 2
        upper = list(bounds)
        upper[dim] = (mid, hi)
        lower = list(bounds)
        lower[dim] = (lo, mid)
        pending.append(upper)
        pending.append(lower)


def use_triton(t: Tensor) -> bool:
    """Whether the fast layouts of ``t`` run as Triton kernels."""
    return (
        t.is_cuda
        and t.dtype in (torch.float16, torch.bfloat16, torch.float32)
        and config.triton_enabled()
    )
