from typing import Tuple

import torch
from torch import Tensor

from . import functional as bnf
from .config import DEFAULT_BLOCK_SIZE, DEFAULT_EPS, DEFAULT_MOMENTUM
from .layers import BatchNormBase

REDUCE_DIMS = bnf.REDUCE_DIMS


def _to_nchw(t: Tensor) -> Tensor:
    # (N, H, W, C) -> channels_last view of (N, C, H, W)
    return t.contiguous().permute(0, 3, 1, 2)


def _to_nhwc(t: Tensor) -> Tensor:
    return t.permute(0, 2, 3, 1).contiguous()


# Step 1: custom operators. CUDA tensors go to the Triton kernels, everything
# else to ATen's fused batch-norm primitive.
@torch.library.custom_op("stateful_bn::fused_forward", mutates_args=("running_mean", "running_var"))
def fused_forward(
    input: Tensor,           # [N, H, W, C]
    scale: Tensor,           # [C]
    offset: Tensor,          # [C]
    running_mean: Tensor,    # [C]
    running_var: Tensor,     # [C]
    training: bool,
    momentum: float,
    eps: float,
    block_size: int,
) -> Tuple[Tensor, Tensor, Tensor]:
    """Fused BatchNorm forward. Returns (output, save_mean, save_invstd).

    On CUDA a negative one-pass variance is clamped in the kernel and reported
    with NumericalInstabilityWarning. On CPU ATen computes a non-negative
    variance, so the clamp after recovering it from invstd is silent.
    """
    if input.is_cuda:
        from . import triton_batchnorm
        return triton_batchnorm.launch_forward(
            input, scale, offset, running_mean, running_var, training, momentum, eps, block_size
        )

    if training:
        out, save_mean, save_invstd = torch.ops.aten.native_batch_norm(
            _to_nchw(input), scale, offset, None, None, True, 0.0, eps
        )
        # The primitive keeps invstd, not the biased variance. Its own variance is
        # never negative; a negative here is rounding in invstd^-2 - eps, clamped silently.
        var = bnf.clamp_variance(save_invstd.pow(-2) - eps, warn=False)
        running_mean.add_((save_mean - running_mean) * (1.0 - momentum))
        running_var.add_((var - running_var) * (1.0 - momentum))
    else:
        out, _, _ = torch.ops.aten.native_batch_norm(
            _to_nchw(input), scale, offset, running_mean, running_var, False, 0.0, eps
        )
        save_mean = running_mean.detach().clone()
        save_invstd = torch.rsqrt(running_var + eps)

    return _to_nhwc(out), save_mean, save_invstd


@torch.library.custom_op("stateful_bn::fused_backward", mutates_args=())
def fused_backward(
    grad_output: Tensor,     # [N, H, W, C]
    input: Tensor,           # [N, H, W, C]
    scale: Tensor,           # [C]
    save_mean: Tensor,       # [C]
    save_invstd: Tensor,     # [C]
    training: bool,
    block_size: int,
) -> Tuple[Tensor, Tensor, Tensor]:
    """Fused BatchNorm backward. Returns (grad_input, grad_scale, grad_offset)."""
    if input.is_cuda:
        from . import triton_batchnorm
        return triton_batchnorm.launch_backward(
            grad_output, input, scale, save_mean, save_invstd, training, block_size
        )

    if training:
        grad_input, grad_scale, grad_offset = torch.ops.aten.native_batch_norm_backward(
            _to_nchw(grad_output), _to_nchw(input), scale,
            None, None, save_mean, save_invstd,
            True, 0.0, [True, True, True],
        )
        return _to_nhwc(grad_input), grad_scale, grad_offset

    # Inference: mean and invstd are constants
    x_hat = (input - save_mean) * save_invstd
    grad_offset = grad_output.sum(REDUCE_DIMS)
    grad_scale = (grad_output * x_hat).sum(REDUCE_DIMS)
    grad_input = grad_output * (scale * save_invstd)
    return grad_input, grad_scale, grad_offset


# Step 2: connect forward and backward with autograd
class FusedBatchNormFunction(torch.autograd.Function):
    """
    Bridges the fused operators with autograd.

    save_mean / save_invstd are opaque to this class: whatever the forward
    operator returns is handed unchanged to the backward operator.

    Usage:
        output = FusedBatchNormFunction.apply(
            input, scale, offset, running_mean, running_var, training, momentum, eps, block_size)
    """
    @staticmethod
    def forward(ctx, input, scale, offset, running_mean, running_var, training, momentum, eps, block_size):
        output, save_mean, save_invstd = torch.ops.stateful_bn.fused_forward(
            input, scale, offset, running_mean, running_var, training, momentum, eps, block_size
        )
        ctx.save_for_backward(input, scale, save_mean, save_invstd)
        ctx.training = training
        ctx.block_size = block_size
        return output

    @staticmethod
    def backward(ctx, grad_output):
        input, scale, save_mean, save_invstd = ctx.saved_tensors
        grad_input, grad_scale, grad_offset = torch.ops.stateful_bn.fused_backward(
            grad_output, input, scale, save_mean, save_invstd, ctx.training, ctx.block_size
        )
        # None for running stats and non-tensor args
        return grad_input, grad_scale, grad_offset, None, None, None, None, None, None


class FusedBatchNorm2d(BatchNormBase):
    """BatchNorm2d backed by the fused operators; running stats are updated in place by the operator."""

    def __init__(self, feature_count, momentum=DEFAULT_MOMENTUM, eps=DEFAULT_EPS, block_size=DEFAULT_BLOCK_SIZE):
        super().__init__(feature_count, momentum, eps)
        self.block_size = block_size

    def _apply_fused(self, x, training):
        bnf.check_input(x, self.feature_count)
        return FusedBatchNormFunction.apply(
            x, self.scale, self.offset,
            self.running_mean, self.running_variance,
            training, self.momentum, self.eps, self.block_size,
        )

    def forward_training(self, x):
        return self._apply_fused(x, True)

    def forward_inference(self, x):
        return self._apply_fused(x, False)
