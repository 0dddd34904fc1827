import argparse
import time

import torch

from bn_engine import batchnorm, config

parser = argparse.ArgumentParser()
parser.add_argument("--shape", type=int, nargs=4, default=[64, 128, 56, 56], metavar=("N", "C", "H", "W"))
parser.add_argument("--channels_last", action="store_true", help="benchmark NHWC inputs")
parser.add_argument("--dtype", choices=["float32", "float16", "bfloat16"], default="float32")
parser.add_argument("--warmup", default=10, type=int)
parser.add_argument("--iterations", default=100, type=int)
parser.add_argument("--no_triton", action="store_true", help="route CUDA tensors through torch ops")


def synchronize():
    if torch.cuda.is_available():
        torch.cuda.synchronize()


def benchmark_forward_backward(func, input, warmup, iterations):
    """Benchmark forward and backward separately"""
    C = input.size(1)

    def make_leaves():
        inp = input.clone().detach().requires_grad_(True)
        g = torch.ones(C, device=input.device, requires_grad=True)
        b = torch.zeros(C, device=input.device, requires_grad=True)
        rm = torch.zeros(C, device=input.device)
        rv = torch.ones(C, device=input.device)
        return inp, g, b, rm, rv

    # Warmup
    for _ in range(warmup):
        inp, g, b, rm, rv = make_leaves()
        func(inp, g, b, rm, rv).sum().backward()
    synchronize()

    total_forward_time = 0
    total_backward_time = 0
    for _ in range(iterations):
        inp, g, b, rm, rv = make_leaves()

        synchronize()
        start = time.time()
        output = func(inp, g, b, rm, rv)
        synchronize()
        total_forward_time += time.time() - start

        synchronize()
        start = time.time()
        output.sum().backward()
        synchronize()
        total_backward_time += time.time() - start

    # Convert to ms
    return total_forward_time / iterations * 1000, total_backward_time / iterations * 1000


def reference(input, weight, bias, running_mean, running_var):
    return torch.nn.functional.batch_norm(
        input, running_mean, running_var, weight, bias, True, 0.1, 1e-5
    )


def main():
    args = parser.parse_args()
    config.DISABLE_TRITON = args.no_triton

    device = "cuda" if torch.cuda.is_available() else "cpu"
    N, C, H, W = args.shape
    memory_format = torch.channels_last if args.channels_last else torch.contiguous_format
    input = torch.randn(N, C, H, W, device=device).to(
        dtype=getattr(torch, args.dtype), memory_format=memory_format
    )

    print(f"\n{'='*70}")
    print(f"Performance Benchmark: N={N}, C={C}, H={H}, W={W}, dtype={args.dtype}, "
          f"channels_last={args.channels_last}, device={device}")
    print(f"{'='*70}")

    print("\n1. torch.nn.functional.batch_norm (Reference)")
    forward_ref, backward_ref = benchmark_forward_backward(reference, input, args.warmup, args.iterations)
    print(f"   Forward:  {forward_ref:.4f} ms")
    print(f"   Backward: {backward_ref:.4f} ms")

    print("\n2. bn_engine.batchnorm")
    forward_time, backward_time = benchmark_forward_backward(batchnorm, input, args.warmup, args.iterations)
    print(f"   Forward:  {forward_time:.4f} ms")
    print(f"   Speedup vs reference: {forward_ref / forward_time:.2f}x")
    print(f"   Backward: {backward_time:.4f} ms")
    print(f"   Speedup vs reference: {backward_ref / backward_time:.2f}x")


if __name__ == "__main__":
    main()
