"""
Triton kernels for the packed batch norm layouts.

Two kernel families cover the fast strategies picked by ``layout.choose_impl``:

* Contiguous: the input is viewed as [N, C, S]. Reductions run one program per
  channel, walking the N * S elements of that channel in BLOCK_SIZE steps.
* ChannelsLast: the input is viewed as [M, C] rows. Programs own a tile of
  CHANNEL_BLOCK adjacent channels and walk the rows, so loads stay coalesced
  along the channel dimension.

All arithmetic happens in float32 whatever the storage dtype; stores cast back
to the pointer's element type. The reduction order inside a program is fixed,
so results are deterministic for a given launch configuration.

This module imports triton at load time; it is only imported by the host
passes once a CUDA tensor takes a fast path.
"""

import math
from typing import Optional, Tuple

import torch
import triton
import triton.language as tl
from torch import Tensor

from . import config
from .layout import Impl

# CUDA limit on grid axes 1 and 2
MAX_GRID_DIM = 65535


# ---------------------------------------------------------------------------
# Statistics


@triton.jit
def bn_stats_contiguous_kernel(
    input_ptr,
    mean_ptr,  # [C] output
    out_ptr,  # [C] output, var or invstd
    N,
    S,  # product of the trailing (spatial) dims
    stride_n,
    stride_c,
    eps,
    COMPUTE_INVSTD: tl.constexpr,
    BLOCK_SIZE: tl.constexpr,
):
    c = tl.program_id(0)
    M = N * S
    base = input_ptr + c * stride_c

    # two passes: mean, then centered sum of squares
    acc = tl.zeros([BLOCK_SIZE], dtype=tl.float32)
    for m_start in range(0, M, BLOCK_SIZE):
        m_offsets = m_start + tl.arange(0, BLOCK_SIZE)
        mask = m_offsets < M
        offset = (m_offsets // S) * stride_n + m_offsets % S
        acc += tl.load(base + offset, mask=mask, other=0.0).to(tl.float32)
    mean = tl.sum(acc, axis=0) / M

    acc = tl.zeros([BLOCK_SIZE], dtype=tl.float32)
    for m_start in range(0, M, BLOCK_SIZE):
        m_offsets = m_start + tl.arange(0, BLOCK_SIZE)
        mask = m_offsets < M
        offset = (m_offsets // S) * stride_n + m_offsets % S
        x = tl.load(base + offset, mask=mask, other=0.0).to(tl.float32)
        d = tl.where(mask, x - mean, 0.0)
        acc += d * d
    var = tl.sum(acc, axis=0) / M

    tl.store(mean_ptr + c, mean)
    if COMPUTE_INVSTD:
        tl.store(out_ptr + c, 1.0 / tl.sqrt(var + eps))
    else:
        tl.store(out_ptr + c, var)


@triton.jit
def bn_stats_channels_last_kernel(
    input_ptr,
    mean_ptr,
    out_ptr,
    M,  # rows
    C,
    eps,
    COMPUTE_INVSTD: tl.constexpr,
    BLOCK_M: tl.constexpr,
    BLOCK_C: tl.constexpr,
):
    c_offsets = tl.program_id(0) * BLOCK_C + tl.arange(0, BLOCK_C)
    c_mask = c_offsets < C

    acc = tl.zeros([BLOCK_M, BLOCK_C], dtype=tl.float32)
    for m_start in range(0, M, BLOCK_M):
        m_offsets = m_start + tl.arange(0, BLOCK_M)
        mask = (m_offsets < M)[:, None] & c_mask[None, :]
        ptrs = input_ptr + m_offsets[:, None] * C + c_offsets[None, :]
        acc += tl.load(ptrs, mask=mask, other=0.0).to(tl.float32)
    mean = tl.sum(acc, axis=0) / M

    acc = tl.zeros([BLOCK_M, BLOCK_C], dtype=tl.float32)
    for m_start in range(0, M, BLOCK_M):
        m_offsets = m_start + tl.arange(0, BLOCK_M)
        mask = (m_offsets < M)[:, None] & c_mask[None, :]
        ptrs = input_ptr + m_offsets[:, None] * C + c_offsets[None, :]
        x = tl.load(ptrs, mask=mask, other=0.0).to(tl.float32)
        d = tl.where(mask, x - mean[None, :], 0.0)
        acc += d * d
    var = tl.sum(acc, axis=0) / M

    tl.store(mean_ptr + c_offsets, mean, mask=c_mask)
    if COMPUTE_INVSTD:
        tl.store(out_ptr + c_offsets, 1.0 / tl.sqrt(var + eps), mask=c_mask)
    else:
        tl.store(out_ptr + c_offsets, var, mask=c_mask)


# ---------------------------------------------------------------------------
# Elementwise normalization


@triton.jit
def bn_elemt_contiguous_kernel(
    input_ptr,
    weight_ptr,
    bias_ptr,
    mean_ptr,
    invstd_ptr,
    output_ptr,
    N,
    S,
    stride_n,
    stride_c,
    HAS_WEIGHT: tl.constexpr,
    HAS_BIAS: tl.constexpr,
    BLOCK_SIZE: tl.constexpr,
):
    c = tl.program_id(0)
    M = N * S

    mean = tl.load(mean_ptr + c).to(tl.float32)
    invstd = tl.load(invstd_ptr + c).to(tl.float32)
    weight = 1.0
    bias = 0.0
    if HAS_WEIGHT:
        weight = tl.load(weight_ptr + c).to(tl.float32)
    if HAS_BIAS:
        bias = tl.load(bias_ptr + c).to(tl.float32)

    # axis 1 is capped at launch; each program strides over the channel's blocks
    for start in range(tl.program_id(1) * BLOCK_SIZE, M, tl.num_programs(1) * BLOCK_SIZE):
        m_offsets = start + tl.arange(0, BLOCK_SIZE)
        mask = m_offsets < M
        offset = (m_offsets // S) * stride_n + c * stride_c + m_offsets % S
        x = tl.load(input_ptr + offset, mask=mask, other=0.0).to(tl.float32)
        y = (x - mean) * invstd * weight + bias
        tl.store(output_ptr + offset, y, mask=mask)


@triton.jit
def bn_elemt_channels_last_kernel(
    input_ptr,
    weight_ptr,
    bias_ptr,
    mean_ptr,
    invstd_ptr,
    output_ptr,
    M,
    C,
    HAS_WEIGHT: tl.constexpr,
    HAS_BIAS: tl.constexpr,
    BLOCK_M: tl.constexpr,
    BLOCK_C: tl.constexpr,
):
    m_offsets = tl.program_id(0) * BLOCK_M + tl.arange(0, BLOCK_M)
    c_offsets = tl.program_id(1) * BLOCK_C + tl.arange(0, BLOCK_C)
    c_mask = c_offsets < C
    mask = (m_offsets < M)[:, None] & c_mask[None, :]
    offset = m_offsets[:, None] * C + c_offsets[None, :]

    mean = tl.load(mean_ptr + c_offsets, mask=c_mask, other=0.0).to(tl.float32)
    invstd = tl.load(invstd_ptr + c_offsets, mask=c_mask, other=0.0).to(tl.float32)

    x = tl.load(input_ptr + offset, mask=mask, other=0.0).to(tl.float32)
    y = (x - mean[None, :]) * invstd[None, :]
    if HAS_WEIGHT:
        w = tl.load(weight_ptr + c_offsets, mask=c_mask, other=0.0).to(tl.float32)
        y = y * w[None, :]
    if HAS_BIAS:
        b = tl.load(bias_ptr + c_offsets, mask=c_mask, other=0.0).to(tl.float32)
        y = y + b[None, :]
    tl.store(output_ptr + offset, y, mask=mask)


# ---------------------------------------------------------------------------
# Backward


@triton.jit
def bn_backward_reduce_contiguous_kernel(
    grad_output_ptr,
    input_ptr,
    mean_ptr,
    invstd_ptr,
    sum_dy_ptr,
    sum_dy_xmu_ptr,
    grad_weight_ptr,
    grad_bias_ptr,
    N,
    S,
    stride_n,
    stride_c,
    WEIGHT_G: tl.constexpr,
    BIAS_G: tl.constexpr,
    BLOCK_SIZE: tl.constexpr,
):
    c = tl.program_id(0)
    M = N * S
    mean = tl.load(mean_ptr + c).to(tl.float32)

    acc_dy = tl.zeros([BLOCK_SIZE], dtype=tl.float32)
    acc_dy_xmu = tl.zeros([BLOCK_SIZE], dtype=tl.float32)
    for m_start in range(0, M, BLOCK_SIZE):
        m_offsets = m_start + tl.arange(0, BLOCK_SIZE)
        mask = m_offsets < M
        offset = (m_offsets // S) * stride_n + c * stride_c + m_offsets % S
        x = tl.load(input_ptr + offset, mask=mask, other=0.0).to(tl.float32)
        dy = tl.load(grad_output_ptr + offset, mask=mask, other=0.0).to(tl.float32)
        acc_dy += dy
        acc_dy_xmu += dy * (x - mean)
    sum_dy = tl.sum(acc_dy, axis=0)
    sum_dy_xmu = tl.sum(acc_dy_xmu, axis=0)

    tl.store(sum_dy_ptr + c, sum_dy)
    tl.store(sum_dy_xmu_ptr + c, sum_dy_xmu)
    if WEIGHT_G:
        invstd = tl.load(invstd_ptr + c).to(tl.float32)
        tl.store(grad_weight_ptr + c, sum_dy_xmu * invstd)
    if BIAS_G:
        tl.store(grad_bias_ptr + c, sum_dy)


@triton.jit
def bn_backward_reduce_channels_last_kernel(
    grad_output_ptr,
    input_ptr,
    mean_ptr,
    invstd_ptr,
    sum_dy_ptr,
    sum_dy_xmu_ptr,
    grad_weight_ptr,
    grad_bias_ptr,
    M,
    C,
    WEIGHT_G: tl.constexpr,
    BIAS_G: tl.constexpr,
    BLOCK_M: tl.constexpr,
    BLOCK_C: tl.constexpr,
):
    c_offsets = tl.program_id(0) * BLOCK_C + tl.arange(0, BLOCK_C)
    c_mask = c_offsets < C
    mean = tl.load(mean_ptr + c_offsets, mask=c_mask, other=0.0).to(tl.float32)

    acc_dy = tl.zeros([BLOCK_M, BLOCK_C], dtype=tl.float32)
    acc_dy_xmu = tl.zeros([BLOCK_M, BLOCK_C], dtype=tl.float32)
    for m_start in range(0, M, BLOCK_M):
        m_offsets = m_start + tl.arange(0, BLOCK_M)
        mask = (m_offsets < M)[:, None] & c_mask[None, :]
        offset = m_offsets[:, None] * C + c_offsets[None, :]
        x = tl.load(input_ptr + offset, mask=mask, other=0.0).to(tl.float32)
        dy = tl.load(grad_output_ptr + offset, mask=mask, other=0.0).to(tl.float32)
        acc_dy += dy
        acc_dy_xmu += dy * (x - mean[None, :])
    sum_dy = tl.sum(acc_dy, axis=0)
    sum_dy_xmu = tl.sum(acc_dy_xmu, axis=0)

    tl.store(sum_dy_ptr + c_offsets, sum_dy, mask=c_mask)
    tl.store(sum_dy_xmu_ptr + c_offsets, sum_dy_xmu, mask=c_mask)
    if WEIGHT_G:
        invstd = tl.load(invstd_ptr + c_offsets, mask=c_mask, other=0.0).to(tl.float32)
        tl.store(grad_weight_ptr + c_offsets, sum_dy_xmu * invstd, mask=c_mask)
    if BIAS_G:
        tl.store(grad_bias_ptr + c_offsets, sum_dy, mask=c_mask)


@triton.jit
def bn_backward_elemt_contiguous_kernel(
    grad_output_ptr,
    input_ptr,
    mean_ptr,
    invstd_ptr,
    weight_ptr,
    sum_dy_ptr,
    sum_dy_xmu_ptr,
    norm_fct_ptr,  # 1 / count, a one-element device tensor
    grad_input_ptr,
    N,
    S,
    stride_n,
    stride_c,
    HAS_WEIGHT: tl.constexpr,
    BLOCK_SIZE: tl.constexpr,
):
    c = tl.program_id(0)
    M = N * S

    norm_fct = tl.load(norm_fct_ptr).to(tl.float32)
    mean = tl.load(mean_ptr + c).to(tl.float32)
    invstd = tl.load(invstd_ptr + c).to(tl.float32)
    grad_mean = tl.load(sum_dy_ptr + c).to(tl.float32) * norm_fct
    proj_scale = tl.load(sum_dy_xmu_ptr + c).to(tl.float32) * norm_fct * invstd * invstd
    grad_scale = invstd
    if HAS_WEIGHT:
        grad_scale = grad_scale * tl.load(weight_ptr + c).to(tl.float32)

    for start in range(tl.program_id(1) * BLOCK_SIZE, M, tl.num_programs(1) * BLOCK_SIZE):
        m_offsets = start + tl.arange(0, BLOCK_SIZE)
        mask = m_offsets < M
        offset = (m_offsets // S) * stride_n + c * stride_c + m_offsets % S
        x = tl.load(input_ptr + offset, mask=mask, other=0.0).to(tl.float32)
        dy = tl.load(grad_output_ptr + offset, mask=mask, other=0.0).to(tl.float32)
        dx = (dy - grad_mean - (x - mean) * proj_scale) * grad_scale
        tl.store(grad_input_ptr + offset, dx, mask=mask)


@triton.jit
def bn_backward_elemt_channels_last_kernel(
    grad_output_ptr,
    input_ptr,
    mean_ptr,
    invstd_ptr,
    weight_ptr,
    sum_dy_ptr,
    sum_dy_xmu_ptr,
    norm_fct_ptr,
    grad_input_ptr,
    M,
    C,
    HAS_WEIGHT: tl.constexpr,
    BLOCK_M: tl.constexpr,
    BLOCK_C: tl.constexpr,
):
    m_offsets = tl.program_id(0) * BLOCK_M + tl.arange(0, BLOCK_M)
    c_offsets = tl.program_id(1) * BLOCK_C + tl.arange(0, BLOCK_C)
    c_mask = c_offsets < C
    mask = (m_offsets < M)[:, None] & c_mask[None, :]
    offset = m_offsets[:, None] * C + c_offsets[None, :]

    norm_fct = tl.load(norm_fct_ptr).to(tl.float32)
    mean = tl.load(mean_ptr + c_offsets, mask=c_mask, other=0.0).to(tl.float32)
    invstd = tl.load(invstd_ptr + c_offsets, mask=c_mask, other=0.0).to(tl.float32)
    sum_dy = tl.load(sum_dy_ptr + c_offsets, mask=c_mask, other=0.0).to(tl.float32)
    sum_dy_xmu = tl.load(sum_dy_xmu_ptr + c_offsets, mask=c_mask, other=0.0).to(tl.float32)
    grad_mean = sum_dy * norm_fct
    proj_scale = sum_dy_xmu * norm_fct * invstd * invstd
    grad_scale = invstd
    if HAS_WEIGHT:
        grad_scale = grad_scale * tl.load(weight_ptr + c_offsets, mask=c_mask, other=0.0).to(tl.float32)

    x = tl.load(input_ptr + offset, mask=mask, other=0.0).to(tl.float32)
    dy = tl.load(grad_output_ptr + offset, mask=mask, other=0.0).to(tl.float32)
    dx = (dy - grad_mean[None, :] - (x - mean[None, :]) * proj_scale[None, :]) * grad_scale[None, :]
    tl.store(grad_input_ptr + offset, dx, mask=mask)


# ---------------------------------------------------------------------------
# Host launchers


def _nsc(t: Tensor) -> Tuple[int, int, int, int]:
    # N, S, stride_n, stride_c of a channel-first packed tensor
    return t.size(0), math.prod(t.shape[2:]), t.stride(0), t.stride(1)


def _tile() -> Tuple[int, int]:
    block_c = triton.next_power_of_2(max(config.CHANNEL_BLOCK, 1))
    block_m = triton.next_power_of_2(max(config.BLOCK_SIZE // block_c, 1))
    return block_m, block_c


def stats(input: Tensor, impl: Impl, eps: float, compute_invstd: bool) -> Tuple[Tensor, Tensor]:
    C = input.size(1)
    mean = torch.empty(C, dtype=torch.float32, device=input.device)
    out = torch.empty(C, dtype=torch.float32, device=input.device)

    if impl is Impl.Contiguous:
        N, S, stride_n, stride_c = _nsc(input)
        bn_stats_contiguous_kernel[(C,)](
            input, mean, out,
            N, S, stride_n, stride_c,
            eps,
            COMPUTE_INVSTD=compute_invstd,
            BLOCK_SIZE=config.BLOCK_SIZE,
        )
    else:
        M = input.numel() // C
        block_m, block_c = _tile()
        bn_stats_channels_last_kernel[(triton.cdiv(C, block_c),)](
            input, mean, out,
            M, C,
            eps,
            COMPUTE_INVSTD=compute_invstd,
            BLOCK_M=block_m,
            BLOCK_C=block_c,
        )
    return mean, out


def elemt(
    input: Tensor,
    weight: Optional[Tensor],
    bias: Optional[Tensor],
    mean: Tensor,
    invstd: Tensor,
    output: Tensor,
    impl: Impl,
) -> Tensor:
    C = input.size(1)
    # absent parameters are compiled out; any valid pointer fills the slot
    weight_arg = weight if weight is not None else mean
    bias_arg = bias if bias is not None else mean

    if impl is Impl.Contiguous:
        N, S, stride_n, stride_c = _nsc(input)
        grid = (C, min(triton.cdiv(N * S, config.BLOCK_SIZE), MAX_GRID_DIM))
        bn_elemt_contiguous_kernel[grid](
            input, weight_arg, bias_arg, mean, invstd, output,
            N, S, stride_n, stride_c,
            HAS_WEIGHT=weight is not None,
            HAS_BIAS=bias is not None,
            BLOCK_SIZE=config.BLOCK_SIZE,
        )
    else:
        M = input.numel() // C
        block_m, block_c = _tile()
        grid = (triton.cdiv(M, block_m), triton.cdiv(C, block_c))
        bn_elemt_channels_last_kernel[grid](
            input, weight_arg, bias_arg, mean, invstd, output,
            M, C,
            HAS_WEIGHT=weight is not None,
            HAS_BIAS=bias is not None,
            BLOCK_M=block_m,
            BLOCK_C=block_c,
        )
    return output


def backward_reduce(
    grad_output: Tensor,
    input: Tensor,
    mean: Tensor,
    invstd: Tensor,
    impl: Impl,
    weight_g: bool,
    bias_g: bool,
    param_dtype: torch.dtype,
) -> Tuple[Tensor, Tensor, Optional[Tensor], Optional[Tensor]]:
    C = input.size(1)
    sum_dy = torch.empty(C, dtype=torch.float32, device=input.device)
    sum_dy_xmu = torch.empty(C, dtype=torch.float32, device=input.device)
    grad_weight = torch.empty(C, dtype=param_dtype, device=input.device) if weight_g else None
    grad_bias = torch.empty(C, dtype=param_dtype, device=input.device) if bias_g else None
    grad_weight_arg = grad_weight if grad_weight is not None else sum_dy
    grad_bias_arg = grad_bias if grad_bias is not None else sum_dy

    if impl is Impl.Contiguous:
        N, S, stride_n, stride_c = _nsc(input)
        bn_backward_reduce_contiguous_kernel[(C,)](
            grad_output, input, mean, invstd,
            sum_dy, sum_dy_xmu, grad_weight_arg, grad_bias_arg,
            N, S, stride_n, stride_c,
            WEIGHT_G=weight_g,
            BIAS_G=bias_g,
            BLOCK_SIZE=config.BLOCK_SIZE,
        )
    else:
        M = input.numel() // C
        block_m, block_c = _tile()
        bn_backward_reduce_channels_last_kernel[(triton.cdiv(C, block_c),)](
            grad_output, input, mean, invstd,
            sum_dy, sum_dy_xmu, grad_weight_arg, grad_bias_arg,
            M, C,
            WEIGHT_G=weight_g,
            BIAS_G=bias_g,
            BLOCK_M=block_m,
            BLOCK_C=block_c,
        )
    return sum_dy, sum_dy_xmu, grad_weight, grad_bias


def backward_elemt(
    grad_output: Tensor,
    input: Tensor,
    mean: Tensor,
    invstd: Tensor,
    weight: Optional[Tensor],
    sum_dy: Tensor,
    sum_dy_xmu: Tensor,
    norm_fct: Tensor,
    grad_input: Tensor,
    impl: Impl,
) -> Tensor:
    C = input.size(1)
    weight_arg = weight if weight is not None else mean

    if impl is Impl.Contiguous:
        N, S, stride_n, stride_c = _nsc(input)
        grid = (C, min(triton.cdiv(N * S, config.BLOCK_SIZE), MAX_GRID_DIM))
        bn_backward_elemt_contiguous_kernel[grid](
            grad_output, input, mean, invstd, weight_arg,
            sum_dy, sum_dy_xmu, norm_fct, grad_input,
            N, S, stride_n, stride_c,
            HAS_WEIGHT=weight is not None,
            BLOCK_SIZE=config.BLOCK_SIZE,
        )
    else:
        M = input.numel() // C
        block_m, block_c = _tile()
        grid = (triton.cdiv(M, block_m), triton.cdiv(C, block_c))
        bn_backward_elemt_channels_last_kernel[grid](
            grad_output, input, mean, invstd, weight_arg,
            sum_dy, sum_dy_xmu, norm_fct, grad_input,
            M, C,
            HAS_WEIGHT=weight is not None,
            BLOCK_M=block_m,
            BLOCK_C=block_c,
        )
    return grad_input
