import pytest
import torch
import torch.nn.functional as F

from bn_engine import (
    PreconditionViolation,
    batch_norm_backward,
    batch_norm_backward_elemt,
    batch_norm_backward_reduce,
    batch_norm_stats,
    batchnorm,
)
from bn_engine.layout import Impl, choose_impl
from conftest import LAYOUTS, to_layout

EPS = 1e-5


def make_leaves(x, weight, bias):
    return (
        x.clone().detach().requires_grad_(True),
        weight.clone().detach().requires_grad_(True),
        bias.clone().detach().requires_grad_(True),
    )


@pytest.mark.parametrize("layout", list(LAYOUTS))
@pytest.mark.parametrize("training", [True, False])
def test_autograd_matches_pytorch(layout, training, device):
    torch.manual_seed(0)
    N, C, H, W = 6, 4, 5, 3
    x = to_layout(torch.randn(N, C, H, W, device=device, dtype=torch.float64) * 2 + 1, layout)
    weight = torch.randn(C, device=device, dtype=torch.float64)
    bias = torch.randn(C, device=device, dtype=torch.float64)
    running_mean = torch.randn(C, device=device, dtype=torch.float64)
    running_var = torch.rand(C, device=device, dtype=torch.float64) + 0.5
    grad_output = to_layout(torch.randn(N, C, H, W, device=device, dtype=torch.float64), layout)

    inp, g, b = make_leaves(x, weight, bias)
    out = batchnorm(inp, g, b, running_mean.clone(), running_var.clone(), training, 0.1, EPS)
    out.backward(grad_output)

    ref_inp, ref_g, ref_b = make_leaves(x, weight, bias)
    ref = F.batch_norm(ref_inp, running_mean.clone(), running_var.clone(), ref_g, ref_b, training, 0.1, EPS)
    ref.backward(grad_output)

    assert torch.allclose(out, ref, atol=1e-10)
    assert torch.allclose(inp.grad, ref_inp.grad, atol=1e-9)
    assert torch.allclose(g.grad, ref_g.grad, atol=1e-9)
    assert torch.allclose(b.grad, ref_b.grad, atol=1e-9)


def test_autograd_with_broadcast_grad_without_affine(device):
    torch.manual_seed(1)
    x = torch.randn(8, 3, 4, 4, device=device, dtype=torch.float64, requires_grad=True)
    ref_x = x.detach().clone().requires_grad_(True)

    coeff = torch.randn(1, 3, 1, 4, device=device, dtype=torch.float64)

    # grad_output of a broadcast product is an expanded (zero-stride) tensor
    (batchnorm(x) * coeff).sum().backward()
    (F.batch_norm(ref_x, None, None, training=True, eps=EPS) * coeff).sum().backward()

    assert torch.allclose(x.grad, ref_x.grad, atol=1e-9)


@pytest.mark.parametrize("layout", list(LAYOUTS))
def test_sum_dy_is_plain_sum_for_every_layout(layout, device):
    torch.manual_seed(2)
    base_x = torch.randn(5, 3, 4, 6, device=device, dtype=torch.float64)
    base_dy = torch.randn(5, 3, 4, 6, device=device, dtype=torch.float64)
    x, dy = to_layout(base_x, layout), to_layout(base_dy, layout)
    mean, invstd = batch_norm_stats(x, EPS)

    sum_dy, sum_dy_xmu, grad_weight, grad_bias = batch_norm_backward_reduce(
        dy, x, mean, invstd, None, True, True, True
    )

    dims = (0, 2, 3)
    expected_xmu = (base_dy * (base_x - mean.view(1, -1, 1, 1))).sum(dim=dims)
    assert torch.allclose(sum_dy, base_dy.sum(dim=dims), atol=1e-12)
    assert torch.allclose(sum_dy_xmu, expected_xmu, atol=1e-12)
    assert torch.allclose(grad_weight, expected_xmu * invstd, atol=1e-10)
    assert torch.allclose(grad_bias, sum_dy)


def test_reduce_layouts_agree(device):
    torch.manual_seed(3)
    base_x = torch.randn(4, 5, 3, 7, device=device, dtype=torch.float64)
    base_dy = torch.randn(4, 5, 3, 7, device=device, dtype=torch.float64)
    mean, invstd = batch_norm_stats(base_x, EPS)

    results = []
    for layout in LAYOUTS:
        results.append(
            batch_norm_backward_reduce(
                to_layout(base_dy, layout), to_layout(base_x, layout), mean, invstd, None, True, False, False
            )
        )
    for sum_dy, sum_dy_xmu, grad_weight, grad_bias in results:
        assert grad_weight is None and grad_bias is None
        assert torch.allclose(sum_dy, results[0][0], atol=1e-12)
        assert torch.allclose(sum_dy_xmu, results[0][1], atol=1e-12)


def test_reduce_flags():
    x = torch.randn(4, 3, 2)
    dy = torch.randn_like(x)
    mean, invstd = batch_norm_stats(x, EPS)
    sum_dy, sum_dy_xmu, grad_weight, grad_bias = batch_norm_backward_reduce(
        dy, x, mean, invstd, torch.ones(3), False, True, False
    )
    # the two sums do not depend on input_g
    assert torch.allclose(sum_dy, dy.sum(dim=(0, 2)), atol=1e-5)
    assert sum_dy_xmu.shape == (3,)
    assert grad_bias is None
    assert torch.allclose(grad_weight, sum_dy_xmu * invstd)

    sum_dy, sum_dy_xmu, grad_weight, grad_bias = batch_norm_backward_reduce(
        dy, x, mean, invstd, None, False, False, False
    )
    assert sum_dy is not None and sum_dy_xmu is not None
    assert grad_weight is None and grad_bias is None


@pytest.mark.parametrize("layout", list(LAYOUTS))
def test_backward_elemt_formula(layout, device):
    torch.manual_seed(4)
    base_x = torch.randn(3, 4, 5, 2, device=device, dtype=torch.float64)
    base_dy = torch.randn(3, 4, 5, 2, device=device, dtype=torch.float64)
    weight = torch.randn(4, device=device, dtype=torch.float64)
    mean, invstd = batch_norm_stats(base_x, EPS)
    sum_dy, sum_dy_xmu, _, _ = batch_norm_backward_reduce(
        base_dy, base_x, mean, invstd, weight, True, False, False
    )
    count = 3 * 5 * 2

    grad_input = batch_norm_backward_elemt(
        to_layout(base_dy, layout), to_layout(base_x, layout), mean, invstd, weight,
        sum_dy, sum_dy_xmu, count,
    )

    v = lambda t: t.view(1, -1, 1, 1)  # noqa: E731
    expected = v(weight) * v(invstd) * (
        base_dy
        - v(sum_dy) / count
        - (base_x - v(mean)) * v(invstd) ** 2 * v(sum_dy_xmu) / count
    )
    assert torch.allclose(grad_input, expected, atol=1e-10)


def test_backward_elemt_accepts_shard_counts():
    torch.manual_seed(5)
    x = torch.randn(6, 3)
    dy = torch.randn(6, 3)
    mean, invstd = batch_norm_stats(x, EPS)
    sum_dy, sum_dy_xmu, _, _ = batch_norm_backward_reduce(dy, x, mean, invstd, None, True, False, False)

    from_int = batch_norm_backward_elemt(dy, x, mean, invstd, None, sum_dy, sum_dy_xmu, 6)
    from_counts = batch_norm_backward_elemt(
        dy, x, mean, invstd, None, sum_dy, sum_dy_xmu, torch.tensor([2, 4], dtype=torch.int32)
    )
    assert torch.allclose(from_int, from_counts)


def test_backward_output_mask(device):
    torch.manual_seed(6)
    x = torch.randn(4, 3, 3, 3, device=device, dtype=torch.float64)
    dy = torch.randn_like(x)
    weight = torch.ones(3, device=device, dtype=torch.float64)
    mean, invstd = batch_norm_stats(x, EPS)

    grad_input, grad_weight, grad_bias = batch_norm_backward(
        dy, x, weight, None, None, mean, invstd, True, EPS, output_mask=(True, False, False)
    )
    assert grad_input is not None and grad_input.shape == x.shape
    assert grad_weight is None and grad_bias is None

    grad_input, grad_weight, grad_bias = batch_norm_backward(
        dy, x, weight, None, None, mean, invstd, True, EPS, output_mask=(False, True, True)
    )
    assert grad_input is None
    assert torch.allclose(grad_bias, dy.sum(dim=(0, 2, 3)))


def test_inference_backward_is_scaled_grad(device):
    torch.manual_seed(7)
    x = torch.randn(4, 3, 3, 3, device=device, dtype=torch.float64)
    dy = torch.randn_like(x)
    weight = torch.randn(3, device=device, dtype=torch.float64)
    running_mean = torch.randn(3, device=device, dtype=torch.float64)
    running_var = torch.rand(3, device=device, dtype=torch.float64) + 0.5

    grad_input, grad_weight, grad_bias = batch_norm_backward(
        dy, x, weight, running_mean, running_var, None, None, False, EPS
    )

    invstd = 1 / torch.sqrt(running_var + EPS)
    v = lambda t: t.view(1, -1, 1, 1)  # noqa: E731
    assert torch.allclose(grad_input, dy * v(invstd * weight), atol=1e-12)
    expected_grad_weight = (dy * (x - v(running_mean))).sum(dim=(0, 2, 3)) * invstd
    assert torch.allclose(grad_weight, expected_grad_weight, atol=1e-10)
    assert torch.allclose(grad_bias, dy.sum(dim=(0, 2, 3)), atol=1e-12)


def test_backward_preconditions():
    x = torch.randn(4, 3)
    dy = torch.randn(4, 3)
    with pytest.raises(PreconditionViolation):
        batch_norm_backward(dy, x, None, None, None, None, None, True, EPS)
    with pytest.raises(PreconditionViolation):
        batch_norm_backward(dy, x, None, None, None, None, None, False, EPS)
    with pytest.raises(PreconditionViolation):
        batch_norm_backward(dy, x, None, torch.zeros(3), None, None, None, False, EPS)


@pytest.mark.parametrize("training", [True, False])
def test_autograd_channels_last_3d(training, device):
    torch.manual_seed(8)
    N, C, D, H, W = 3, 4, 3, 5, 2
    x = (torch.randn(N, C, D, H, W, device=device, dtype=torch.float64) * 2 - 1).contiguous(
        memory_format=torch.channels_last_3d
    )
    assert choose_impl(x) is Impl.ChannelsLast
    weight = torch.randn(C, device=device, dtype=torch.float64)
    bias = torch.randn(C, device=device, dtype=torch.float64)
    running_mean = torch.randn(C, device=device, dtype=torch.float64)
    running_var = torch.rand(C, device=device, dtype=torch.float64) + 0.5
    rm_ref, rv_ref = running_mean.clone(), running_var.clone()
    grad_output = torch.randn(N, C, D, H, W, device=device, dtype=torch.float64).contiguous(
        memory_format=torch.channels_last_3d
    )

    inp, g, b = make_leaves(x, weight, bias)
    out = batchnorm(inp, g, b, running_mean, running_var, training, 0.1, EPS)
    out.backward(grad_output)

    ref_inp, ref_g, ref_b = make_leaves(x, weight, bias)
    ref = F.batch_norm(ref_inp, rm_ref, rv_ref, ref_g, ref_b, training, 0.1, EPS)
    ref.backward(grad_output)

    assert out.is_contiguous(memory_format=torch.channels_last_3d)
    assert torch.allclose(out, ref, atol=1e-10)
    assert torch.allclose(running_mean, rm_ref, atol=1e-12)
    assert torch.allclose(running_var, rv_ref, atol=1e-12)
    assert torch.allclose(inp.grad, ref_inp.grad, atol=1e-9)
    assert torch.allclose(g.grad, ref_g.grad, atol=1e-9)
    assert torch.allclose(b.grad, ref_b.grad, atol=1e-9)


@pytest.mark.parametrize("layout", ["contiguous", "channels_last"])
def test_autograd_bfloat16_input_with_float32_params(layout, device):
    torch.manual_seed(9)
    N, C, H, W = 8, 4, 5, 5
    x = to_layout((torch.randn(N, C, H, W, device=device) * 2 + 1).to(torch.bfloat16), layout)
    grad_output = to_layout(torch.randn(N, C, H, W, device=device).to(torch.bfloat16), layout)
    weight = torch.randn(C, device=device)
    bias = torch.randn(C, device=device)

    inp, g, b = make_leaves(x, weight, bias)
    out = batchnorm(inp, g, b)
    out.backward(grad_output)

    # reference sees the same bf16 values, computed in float32
    ref_inp, ref_g, ref_b = make_leaves(x.float(), weight, bias)
    ref = F.batch_norm(ref_inp, None, None, ref_g, ref_b, True, 0.1, EPS)
    ref.backward(grad_output.float())

    assert out.dtype == torch.bfloat16 and inp.grad.dtype == torch.bfloat16
    assert g.grad.dtype == torch.float32 and b.grad.dtype == torch.float32
    assert torch.allclose(out.float(), ref, atol=5e-2, rtol=1e-2)
    assert torch.allclose(inp.grad.float(), ref_inp.grad, atol=5e-2, rtol=1e-2)
    assert torch.allclose(g.grad, ref_g.grad, atol=1e-3, rtol=1e-3)
    assert torch.allclose(b.grad, ref_b.grad, atol=1e-3, rtol=1e-3)
