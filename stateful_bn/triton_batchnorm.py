"""
Triton kernels for batch normalization on channel-last tensors.

One program owns one channel and walks its N*H*W elements in BLOCK_SIZE
chunks. `_channel_block` maps a chunk to element offsets through
(stride_n, stride_c, stride_s), so the kernels serve any layout where H and W
flatten into one stride. Statistics are accumulated in fp32.

The training kernel computes the variance in one pass and clamps it inside
the kernel; it also saves the unclamped value so the launcher can report a
negative variance with NumericalInstabilityWarning.
"""

import torch
import triton
import triton.language as tl

from . import functional as bnf


@triton.jit
def _channel_block(start, c, M, spatial_dim, stride_n, stride_c, stride_s, BLOCK_SIZE: tl.constexpr):
    idx = start + tl.arange(0, BLOCK_SIZE)
    mask = idx < M
    n = idx // spatial_dim
    s = idx - n * spatial_dim
    return n * stride_n + c * stride_c + s * stride_s, mask


@triton.jit
def _normalize_channel(
    input_ptr, output_ptr, c, M, spatial_dim, stride_n, stride_c, stride_s,
    mean, normalizer, shift, BLOCK_SIZE: tl.constexpr,
):
    for start in range(0, M, BLOCK_SIZE):
        off, mask = _channel_block(start, c, M, spatial_dim, stride_n, stride_c, stride_s, BLOCK_SIZE)
        x = tl.load(input_ptr + off, mask=mask, other=0.0)
        y = (x.to(tl.float32) - mean) * normalizer + shift
        tl.store(output_ptr + off, y.to(x.dtype), mask=mask)


@triton.jit
def bn_train_forward_kernel(
    input_ptr, scale_ptr, offset_ptr, output_ptr,
    save_mean_ptr, save_invstd_ptr, raw_var_ptr,
    running_mean_ptr, running_var_ptr,
    N, C, spatial_dim, momentum, eps,
    stride_n, stride_c, stride_s,
    BLOCK_SIZE: tl.constexpr,
):
    c = tl.program_id(0)
    M = N * spatial_dim

    total = tl.zeros((), dtype=tl.float32)
    total_sq = tl.zeros((), dtype=tl.float32)
    for start in range(0, M, BLOCK_SIZE):
        off, mask = _channel_block(start, c, M, spatial_dim, stride_n, stride_c, stride_s, BLOCK_SIZE)
        x = tl.load(input_ptr + off, mask=mask, other=0.0).to(tl.float32)
        total += tl.sum(x, axis=0)
        total_sq += tl.sum(x * x, axis=0)

    count = M.to(tl.float32)
    mean = total / count
    raw_var = total_sq / count - mean * mean
    var = tl.maximum(raw_var, 0.0)
    invstd = 1.0 / tl.sqrt(var + eps)

    tl.store(save_mean_ptr + c, mean)
    tl.store(save_invstd_ptr + c, invstd)
    tl.store(raw_var_ptr + c, raw_var)

    # running <- running + (batch - running) * (1 - momentum)
    run_mean = tl.load(running_mean_ptr + c).to(tl.float32)
    run_var = tl.load(running_var_ptr + c).to(tl.float32)
    tl.store(running_mean_ptr + c, run_mean + (mean - run_mean) * (1.0 - momentum))
    tl.store(running_var_ptr + c, run_var + (var - run_var) * (1.0 - momentum))

    normalizer = invstd * tl.load(scale_ptr + c).to(tl.float32)
    shift = tl.load(offset_ptr + c).to(tl.float32)
    _normalize_channel(input_ptr, output_ptr, c, M, spatial_dim, stride_n, stride_c, stride_s,
                       mean, normalizer, shift, BLOCK_SIZE)


@triton.jit
def bn_infer_forward_kernel(
    input_ptr, scale_ptr, offset_ptr, output_ptr,
    running_mean_ptr, running_var_ptr, save_invstd_ptr,
    N, C, spatial_dim, eps,
    stride_n, stride_c, stride_s,
    BLOCK_SIZE: tl.constexpr,
):
    c = tl.program_id(0)
    M = N * spatial_dim

    mean = tl.load(running_mean_ptr + c).to(tl.float32)
    var = tl.load(running_var_ptr + c).to(tl.float32)
    invstd = 1.0 / tl.sqrt(var + eps)
    tl.store(save_invstd_ptr + c, invstd)

    normalizer = invstd * tl.load(scale_ptr + c).to(tl.float32)
    shift = tl.load(offset_ptr + c).to(tl.float32)
    _normalize_channel(input_ptr, output_ptr, c, M, spatial_dim, stride_n, stride_c, stride_s,
                       mean, normalizer, shift, BLOCK_SIZE)


@triton.jit
def bn_backward_kernel(
    grad_output_ptr, input_ptr, scale_ptr, save_mean_ptr, save_invstd_ptr,
    grad_input_ptr, grad_scale_ptr, grad_offset_ptr,
    N, C, spatial_dim,
    stride_n, stride_c, stride_s,
    BLOCK_SIZE: tl.constexpr,
    TRAINING: tl.constexpr,
):
    c = tl.program_id(0)
    M = N * spatial_dim

    mean = tl.load(save_mean_ptr + c).to(tl.float32)
    invstd = tl.load(save_invstd_ptr + c).to(tl.float32)
    normalizer = invstd * tl.load(scale_ptr + c).to(tl.float32)

    sum_dy = tl.zeros((), dtype=tl.float32)
    sum_dy_xhat = tl.zeros((), dtype=tl.float32)
    for start in range(0, M, BLOCK_SIZE):
        off, mask = _channel_block(start, c, M, spatial_dim, stride_n, stride_c, stride_s, BLOCK_SIZE)
        dy = tl.load(grad_output_ptr + off, mask=mask, other=0.0).to(tl.float32)
        x = tl.load(input_ptr + off, mask=mask, other=0.0).to(tl.float32)
        xhat = tl.where(mask, (x - mean) * invstd, 0.0)
        sum_dy += tl.sum(dy, axis=0)
        sum_dy_xhat += tl.sum(dy * xhat, axis=0)

    tl.store(grad_offset_ptr + c, sum_dy)
    tl.store(grad_scale_ptr + c, sum_dy_xhat)

    count = M.to(tl.float32)
    for start in range(0, M, BLOCK_SIZE):
        off, mask = _channel_block(start, c, M, spatial_dim, stride_n, stride_c, stride_s, BLOCK_SIZE)
        dy = tl.load(grad_output_ptr + off, mask=mask, other=0.0).to(tl.float32)
        x = tl.load(input_ptr + off, mask=mask, other=0.0)
        if TRAINING:
            xhat = (x.to(tl.float32) - mean) * invstd
            dx = normalizer * (dy - (sum_dy + xhat * sum_dy_xhat) / count)
        else:
            # statistics are constants in inference mode
            dx = normalizer * dy
        tl.store(grad_input_ptr + off, dx.to(x.dtype), mask=mask)


def _geometry(x):
    # x: (N, H, W, C) contiguous
    N, H, W, C = x.shape
    return N, C, H * W, x.stride(0), x.stride(3), x.stride(2)


def launch_forward(x, scale, offset, running_mean, running_var, training, momentum, eps, block_size=1024):
    """Returns (output, save_mean, save_invstd); updates running stats in training mode."""
    x = x.contiguous()
    N, C, spatial, stride_n, stride_c, stride_s = _geometry(x)
    output = torch.empty_like(x)
    save_invstd = torch.empty(C, device=x.device, dtype=torch.float32)

    if training:
        save_mean = torch.empty(C, device=x.device, dtype=torch.float32)
        raw_var = torch.empty(C, device=x.device, dtype=torch.float32)
        bn_train_forward_kernel[(C,)](
            x, scale, offset, output,
            save_mean, save_invstd, raw_var,
            running_mean, running_var,
            N, C, spatial, float(momentum), float(eps),
            stride_n, stride_c, stride_s,
            BLOCK_SIZE=block_size,
        )
        # the kernel already clamped; this only reports it
        bnf.clamp_variance(raw_var)
    else:
        save_mean = running_mean.detach().to(torch.float32).clone()
        bn_infer_forward_kernel[(C,)](
            x, scale, offset, output,
            running_mean, running_var, save_invstd,
            N, C, spatial, float(eps),
            stride_n, stride_c, stride_s,
            BLOCK_SIZE=block_size,
        )
    return output, save_mean, save_invstd


def launch_backward(grad_output, x, scale, save_mean, save_invstd, training, block_size=1024):
    """Returns (grad_input, grad_scale, grad_offset)."""
    x = x.contiguous()
    grad_output = grad_output.contiguous()
    N, C, spatial, stride_n, stride_c, stride_s = _geometry(x)
    grad_input = torch.empty_like(x)
    grad_scale = torch.empty(C, device=x.device, dtype=torch.float32)
    grad_offset = torch.empty(C, device=x.device, dtype=torch.float32)

    bn_backward_kernel[(C,)](
        grad_output, x, scale, save_mean, save_invstd,
        grad_input, grad_scale, grad_offset,
        N, C, spatial,
        stride_n, stride_c, stride_s,
        BLOCK_SIZE=block_size,
        TRAINING=bool(training),
    )
    return grad_input, grad_scale.to(scale.dtype), grad_offset.to(scale.dtype)
