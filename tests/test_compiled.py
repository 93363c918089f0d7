import pytest
import torch

from stateful_bn import (
    BatchNorm2d,
    BatchNormState,
    BatchNormStepResult,
    CompilationError,
    CompiledBatchNorm2d,
    CompiledKernel,
    NoOpCompiler,
    TorchCompiler,
    batch_norm_inference_step,
    batch_norm_step,
    get_compiler,
    gradient_of,
)
from stateful_bn import functional as bnf

COMPILERS = [NoOpCompiler(), TorchCompiler(backend="eager")]


def _state(generator, shape=(4, 3, 3, 5)):
    c = shape[-1]
    return BatchNormState(
        input=torch.rand(shape, generator=generator) * 2 - 0.5,
        scale=torch.linspace(0.5, 1.5, c),
        offset=torch.linspace(-0.5, 0.5, c),
        running_mean=torch.zeros(c),
        running_var=torch.ones(c),
        momentum=0.9,
        eps=1e-5,
    )


def test_step_returns_new_state_without_mutation(generator):
    state = _state(generator)
    result = batch_norm_step(state)

    assert isinstance(result, BatchNormStepResult)
    assert torch.equal(state.running_mean, torch.zeros(5))
    assert torch.equal(state.running_var, torch.ones(5))
    mean = state.input.mean(dim=(0, 1, 2))
    torch.testing.assert_close(result.running_mean, mean * (1 - 0.9))


@pytest.mark.parametrize("compiler", COMPILERS, ids=lambda c: c.name)
def test_compiled_forward_matches_formula(compiler, generator):
    state = _state(generator)
    kernel = CompiledKernel(batch_norm_step, compiler)

    compiled = kernel.forward(state)
    output, running_mean, running_var = bnf.batch_norm_training(*state)

    torch.testing.assert_close(compiled.output, output, rtol=1e-5, atol=1e-5)
    torch.testing.assert_close(compiled.running_mean, running_mean, rtol=1e-5, atol=1e-5)
    torch.testing.assert_close(compiled.running_var, running_var, rtol=1e-5, atol=1e-5)


@pytest.mark.parametrize("compiler", COMPILERS, ids=lambda c: c.name)
def test_compiled_gradient_matches_autograd(compiler, generator):
    state = _state(generator)
    cotangent = torch.rand(state.input.shape, generator=generator)
    kernel = CompiledKernel(batch_norm_step, compiler)

    grad_input, grad_scale, grad_offset = kernel.backward(state, cotangent)

    x = state.input.clone().requires_grad_(True)
    scale = state.scale.clone().requires_grad_(True)
    offset = state.offset.clone().requires_grad_(True)
    output, _, _ = bnf.batch_norm_training(x, scale, offset, state.running_mean, state.running_var, 0.9, 1e-5)
    output.backward(cotangent)

    torch.testing.assert_close(grad_input, x.grad, rtol=1e-3, atol=1e-3)
    torch.testing.assert_close(grad_scale, scale.grad, rtol=1e-3, atol=1e-3)
    torch.testing.assert_close(grad_offset, offset.grad, rtol=1e-3, atol=1e-3)


@pytest.mark.parametrize("compiler", COMPILERS, ids=lambda c: c.name)
def test_forward_and_backward_are_independent(compiler, generator):
    state = _state(generator)
    kernel = CompiledKernel(batch_norm_inference_step, compiler)

    grad_input, grad_scale, grad_offset = kernel.backward(state, torch.ones_like(state.input))
    normalizer = state.scale * torch.rsqrt(state.running_var + state.eps)
    torch.testing.assert_close(grad_input, normalizer.expand_as(state.input))
    torch.testing.assert_close(grad_offset, torch.full((5,), 36.0))

    output = kernel.forward(state)
    torch.testing.assert_close(output, bnf.batch_norm_inference(*state[:5], state.eps))


def test_gradient_ignores_running_statistics(generator):
    state = _state(generator)
    grad_fn = gradient_of(batch_norm_step)
    a = grad_fn(state, torch.ones_like(state.input))
    b = grad_fn(state._replace(running_mean=torch.full((5,), 9.0)), torch.ones_like(state.input))
    for left, right in zip(a, b):
        assert torch.equal(left, right)


def test_invalid_backend_raises_compilation_error(generator):
    state = _state(generator)
    with pytest.raises(CompilationError):
        kernel = CompiledKernel(batch_norm_step, TorchCompiler(backend="no_such_backend"))
        kernel.forward(state)


def test_get_compiler():
    assert isinstance(get_compiler("none"), NoOpCompiler)
    assert isinstance(get_compiler(None), NoOpCompiler)
    compiler = get_compiler("eager")
    assert isinstance(compiler, TorchCompiler)
    assert compiler.backend == "eager"


def test_default_compiler_comes_from_environment(monkeypatch):
    monkeypatch.setenv("STATEFUL_BN_COMPILE_BACKEND", "none")
    assert isinstance(CompiledBatchNorm2d(3).compiler, NoOpCompiler)


@pytest.mark.parametrize("compiler", COMPILERS, ids=lambda c: c.name)
def test_module_matches_standard_layer(compiler, training, generator):
    reference = BatchNorm2d(5)
    bn = CompiledBatchNorm2d(5, compiler=compiler)
    x = torch.rand(4, 3, 3, 5, generator=generator)
    xs = [x.clone().requires_grad_(True) for _ in range(2)]

    ys = [reference(xs[0]), bn(xs[1])]
    for y in ys:
        y.sum().backward()

    torch.testing.assert_close(ys[1], ys[0], rtol=1e-5, atol=1e-5)
    torch.testing.assert_close(xs[1].grad, xs[0].grad, rtol=1e-3, atol=1e-3)
    torch.testing.assert_close(bn.running_mean, reference.running_mean)
    torch.testing.assert_close(bn.running_variance, reference.running_variance)


def test_module_constant_channel_equals_offset_exactly(training, generator):
    bn = CompiledBatchNorm2d(3, compiler=NoOpCompiler())
    with torch.no_grad():
        bn.offset.copy_(torch.tensor([0.25, 0.75, -1.5]))
    x = torch.rand(2, 2, 2, 3, generator=generator)
    x[..., 1] = 2.5

    y = bn(x)

    assert torch.equal(y[..., 1], torch.full((2, 2, 2), 0.75))


def test_running_statistics_carry_no_gradient(training, generator):
    bn = CompiledBatchNorm2d(3, compiler=NoOpCompiler())
    bn(torch.rand(2, 2, 2, 3, generator=generator, requires_grad=True))
    assert bn.running_mean.grad_fn is None
    assert not bn.running_mean.requires_grad


@pytest.mark.parametrize("value", [1.7, 0.1])
def test_module_constant_channel_exact_at_full_batch(value, training, generator):
    bn = CompiledBatchNorm2d(3, compiler=NoOpCompiler())
    with torch.no_grad():
        bn.offset.copy_(torch.tensor([0.0, 0.75, 0.0]))
    x = torch.rand(64, 28, 28, 3, generator=generator)
    x[..., 1] = value

    y = bn(x)

    assert torch.equal(y[..., 1], torch.full((64, 28, 28), 0.75))
