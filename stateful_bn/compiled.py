"""
Compiled-kernel batch norm.

The training step is written as a pure function over an explicit state
bundle: running statistics go in as values and come back as new values
instead of being mutated. That makes the step (and its gradient, derived with
torch.func.vjp) eligible for torch.compile.

Compilation is a strategy object so callers choose the backend:

    kernel = CompiledKernel(batch_norm_step, TorchCompiler(backend="inductor"))
    result = kernel.forward(state)                       # BatchNormStepResult
    dx, dscale, doffset = kernel.backward(state, grad)   # w.r.t. input/scale/offset

`NoOpCompiler` runs everything uncompiled. A failed compilation raises
CompilationError; nothing falls back to the uncompiled path on its own.
"""

import functools
import logging
from typing import NamedTuple

import torch
import torch._dynamo
from torch import Tensor

from . import functional as bnf
from .config import DEFAULT_EPS, DEFAULT_MOMENTUM, BatchNormConfig
from .errors import CompilationError
from .layers import BatchNormBase

logger = logging.getLogger(__name__)


class BatchNormState(NamedTuple):
    input: Tensor
    scale: Tensor
    offset: Tensor
    running_mean: Tensor
    running_var: Tensor
    momentum: float
    eps: float


class BatchNormStepResult(NamedTuple):
    output: Tensor
    running_mean: Tensor
    running_var: Tensor


def batch_norm_step(state: BatchNormState) -> BatchNormStepResult:
    output, running_mean, running_var = bnf.batch_norm_training(
        state.input, state.scale, state.offset,
        state.running_mean, state.running_var,
        state.momentum, state.eps,
        warn=False,
    )
    return BatchNormStepResult(output, running_mean, running_var)


def batch_norm_inference_step(state: BatchNormState) -> Tensor:
    return bnf.batch_norm_inference(
        state.input, state.scale, state.offset,
        state.running_mean, state.running_var,
        state.eps,
    )


def _output_of(result):
    if isinstance(result, BatchNormStepResult):
        return result.output
    return result


def gradient_of(fn):
    """
    Build `grad_fn(state, cotangent) -> (grad_input, grad_scale, grad_offset)`
    for a step function `fn(state)`.

    Only the normalized output is differentiated; running statistics carry no
    gradient.
    """
    def grad_fn(state: BatchNormState, cotangent: Tensor):
        def output_of(x, scale, offset):
            return _output_of(fn(state._replace(input=x, scale=scale, offset=offset)))

        with torch.enable_grad():
            _, vjp_fn = torch.func.vjp(output_of, state.input, state.scale, state.offset)
            return vjp_fn(cotangent)

    return grad_fn


class NoOpCompiler:
    """Returns functions unchanged."""
    name = "none"

    def compile(self, fn):
        return fn


class TorchCompiler:
    """torch.compile strategy; errors while compiling surface as CompilationError."""

    def __init__(self, backend="inductor", mode=None, fullgraph=False, dynamic=None):
        self.backend = backend
        self.mode = mode
        self.fullgraph = fullgraph
        self.dynamic = dynamic

    @property
    def name(self):
        return self.backend

    def compile(self, fn):
        fn_name = getattr(fn, "__name__", repr(fn))
        try:
            compiled = torch.compile(
                fn, backend=self.backend, mode=self.mode,
                fullgraph=self.fullgraph, dynamic=self.dynamic,
            )
        except (torch._dynamo.exc.TorchDynamoException, RuntimeError) as e:
            raise CompilationError(f"failed to compile {fn_name} with backend {self.backend!r}: {e}") from e

        # torch.compile is lazy: backend failures show up on the first call
        @functools.wraps(fn)
        def run(*args, **kwargs):
            try:
                return compiled(*args, **kwargs)
            except torch._dynamo.exc.TorchDynamoException as e:
                raise CompilationError(f"failed to compile {fn_name} with backend {self.backend!r}: {e}") from e

        return run


def get_compiler(name):
    if name is None or name == NoOpCompiler.name:
        return NoOpCompiler()
    return TorchCompiler(backend=name)


class CompiledKernel:
    """A step function compiled together with its gradient."""

    def __init__(self, fn, compiler=None):
        self.compiler = compiler if compiler is not None else NoOpCompiler()
        logger.info(f"Compiling {fn.__name__} and its gradient with {self.compiler.name!r}")
        self.forward = self.compiler.compile(fn)
        self.backward = self.compiler.compile(gradient_of(fn))


class CompiledStepFunction(torch.autograd.Function):
    """
    Routes autograd through a CompiledKernel.

    Training kernels return (output, running_mean, running_var); the
    statistics are marked non-differentiable. Inference kernels return the
    output only.
    """
    @staticmethod
    def forward(ctx, kernel, input, scale, offset, running_mean, running_var, momentum, eps):
        state = BatchNormState(input, scale, offset, running_mean, running_var, momentum, eps)
        result = kernel.forward(state)

        ctx.kernel = kernel
        ctx.hyper = (momentum, eps)
        # the caller may overwrite the running stats in place after this step
        ctx.running = (running_mean.detach().clone(), running_var.detach().clone())
        ctx.save_for_backward(input, scale, offset)

        if isinstance(result, BatchNormStepResult):
            ctx.mark_non_differentiable(result.running_mean, result.running_var)
            return result.output, result.running_mean, result.running_var
        return result

    @staticmethod
    def backward(ctx, grad_output, *_):
        input, scale, offset = ctx.saved_tensors
        state = BatchNormState(input, scale, offset, *ctx.running, *ctx.hyper)
        grad_input, grad_scale, grad_offset = ctx.kernel.backward(state, grad_output.contiguous())
        return None, grad_input, grad_scale, grad_offset, None, None, None, None


class CompiledBatchNorm2d(BatchNormBase):
    """
    BatchNorm2d whose training and inference steps run through compiled kernels.

    The module threads its statistics through the pure kernel and stores the
    returned values in its cells afterwards.
    """

    def __init__(self, feature_count, momentum=DEFAULT_MOMENTUM, eps=DEFAULT_EPS, compiler=None):
        super().__init__(feature_count, momentum, eps)
        if compiler is None:
            compiler = get_compiler(BatchNormConfig.from_env().compile_backend)
        self.compiler = compiler
        self.training_kernel = CompiledKernel(batch_norm_step, compiler)
        self.inference_kernel = CompiledKernel(batch_norm_inference_step, compiler)

    def forward_training(self, x):
        bnf.check_input(x, self.feature_count)
        output, new_mean, new_var = CompiledStepFunction.apply(
            self.training_kernel, x, self.scale, self.offset,
            self.running_mean, self.running_variance,
            self.momentum, self.eps,
        )
        self.mean_cell.update(new_mean)
        self.variance_cell.update(new_var)
        return output

    def forward_inference(self, x):
        bnf.check_input(x, self.feature_count)
        return CompiledStepFunction.apply(
            self.inference_kernel, x, self.scale, self.offset,
            self.running_mean, self.running_variance,
            self.momentum, self.eps,
        )
