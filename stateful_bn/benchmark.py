"""
Benchmark harness for the batch-norm variants.

Times forward and forward+backward in training mode for the naive, fused and
compiled implementations on one input shape. Compiled kernels are warmed up
before timing so compilation cost is excluded.

    python -m stateful_bn.benchmark --shape 64 28 28 32 --device cuda
"""

import argparse
import logging
import statistics
import time
from dataclasses import dataclass
from typing import Callable, List

import torch

from .compiled import CompiledBatchNorm2d, get_compiler
from .config import BatchNormConfig
from .fused import FusedBatchNorm2d
from .layers import BatchNorm2d
from .mode import Mode, execution_mode

logger = logging.getLogger(__name__)


@dataclass
class BenchmarkResult:
    name: str
    iters: int
    mean_ms: float
    min_ms: float


def _synchronize(device):
    if device.type == "cuda":
        torch.cuda.synchronize(device)


def time_fn(name: str, fn: Callable, device, warmup: int = 3, iters: int = 10) -> BenchmarkResult:
    device = torch.device(device)
    for _ in range(warmup):
        fn()
    _synchronize(device)

    times = []
    for _ in range(iters):
        t0 = time.perf_counter()
        fn()
        _synchronize(device)
        times.append(time.perf_counter() - t0)
    return BenchmarkResult(name, iters, statistics.mean(times) * 1e3, min(times) * 1e3)


def build_variants(feature_count, config: BatchNormConfig, compiler=None):
    if compiler is None:
        compiler = get_compiler(config.compile_backend)
    return {
        "naive": BatchNorm2d(feature_count, config.momentum, config.eps),
        "fused": FusedBatchNorm2d(feature_count, config.momentum, config.eps, config.fused_block_size),
        "compiled": CompiledBatchNorm2d(feature_count, config.momentum, config.eps, compiler=compiler),
    }


def benchmark_variants(shape, device="cpu", config=None, compiler=None, warmup=3, iters=10, seed=0) -> List[BenchmarkResult]:
    config = config if config is not None else BatchNormConfig.from_env()
    device = torch.device(device)
    generator = torch.Generator().manual_seed(seed)
    x = torch.rand(shape, generator=generator).to(device)

    results = []
    for name, module in build_variants(shape[-1], config, compiler).items():
        module.to(device)
        x_grad = x.clone().requires_grad_(True)

        def forward(module=module):
            with torch.no_grad():
                module(x)

        def forward_backward(module=module, x_grad=x_grad):
            module.zero_grad(set_to_none=True)
            x_grad.grad = None
            module(x_grad).sum().backward()

        with execution_mode(Mode.TRAINING):
            results.append(time_fn(f"{name}/forward", forward, device, warmup, iters))
            results.append(time_fn(f"{name}/forward+backward", forward_backward, device, warmup, iters))
        logger.debug(f"Finished {name}")
    return results


def format_results(results: List[BenchmarkResult]) -> str:
    width = max(len(r.name) for r in results)
    lines = [f"{'variant':<{width}}  {'mean ms':>10}  {'min ms':>10}"]
    for r in results:
        lines.append(f"{r.name:<{width}}  {r.mean_ms:>10.3f}  {r.min_ms:>10.3f}")
    return "\n".join(lines)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Benchmark batch-norm variants")
    parser.add_argument("--shape", type=int, nargs=4, default=[64, 28, 28, 32],
                        metavar=("N", "H", "W", "C"))
    parser.add_argument("--device", type=str, default="cuda" if torch.cuda.is_available() else "cpu")
    parser.add_argument("--backend", type=str, default=None,
                        help='torch.compile backend, or "none" to run uncompiled')
    parser.add_argument("--warmup", type=int, default=3)
    parser.add_argument("--iters", type=int, default=10)
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(name)s %(levelname)s: %(message)s")
    config = BatchNormConfig.from_env()
    if args.backend is not None:
        config.compile_backend = args.backend

    logger.info(f"Benchmarking shape={tuple(args.shape)} device={args.device} backend={config.compile_backend}")
    results = benchmark_variants(
        tuple(args.shape), device=args.device, config=config,
        warmup=args.warmup, iters=args.iters, seed=args.seed,
    )
    logger.info("\n" + format_results(results))
    return results


if __name__ == "__main__":
    main()
