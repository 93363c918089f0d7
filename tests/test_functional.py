import warnings

import pytest
import torch

from stateful_bn import NumericalInstabilityWarning, ShapeMismatchError
from stateful_bn import functional as bnf


def test_check_input_rejects_wrong_channel_count():
    with pytest.raises(ShapeMismatchError):
        bnf.check_input(torch.zeros(2, 4, 4, 3), 4)


def test_check_input_rejects_non_4d():
    with pytest.raises(ShapeMismatchError):
        bnf.check_input(torch.zeros(2, 4, 3), 3)


def test_batch_statistics_reduce_over_batch_height_width():
    x = torch.arange(2 * 2 * 2 * 3, dtype=torch.float64).reshape(2, 2, 2, 3)
    mean, var = bnf.batch_statistics(x)
    flat = x.reshape(-1, 3)
    torch.testing.assert_close(mean, flat.mean(0))
    torch.testing.assert_close(var, flat.var(0, unbiased=False))


def test_clamp_variance_warns_and_clamps():
    var = torch.tensor([-1e-7, 0.5])
    with pytest.warns(NumericalInstabilityWarning):
        clamped = bnf.clamp_variance(var)
    assert torch.equal(clamped, torch.tensor([0.0, 0.5]))


def test_clamp_variance_silent():
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        clamped = bnf.clamp_variance(torch.tensor([-1e-7, 0.5]), warn=False)
        bnf.clamp_variance(torch.tensor([0.0, 0.5]))
    assert clamped[0].item() == 0.0


def test_update_running_fraction_of_gap():
    running = torch.tensor([1.0, -2.0], dtype=torch.float64)
    batch = torch.tensor([3.0, 2.0], dtype=torch.float64)
    out = bnf.update_running(running, batch, 0.75)
    torch.testing.assert_close(out, running + (batch - running) * 0.25)


def test_update_running_detaches_batch():
    batch = torch.tensor([1.0, 2.0], requires_grad=True)
    out = bnf.update_running(torch.zeros(2), batch * 2, 0.9)
    assert not out.requires_grad


def test_update_running_broadcasts_scalar_placeholder():
    out = bnf.update_running(torch.tensor(0.0), torch.tensor([1.0, 2.0]), 0.5)
    torch.testing.assert_close(out, torch.tensor([0.5, 1.0]))


def test_training_output_is_pure():
    x = torch.rand(2, 3, 3, 4, generator=torch.Generator().manual_seed(1))
    rm, rv = torch.zeros(4), torch.ones(4)
    _, new_mean, new_var = bnf.batch_norm_training(x, torch.ones(4), torch.zeros(4), rm, rv, 0.9, 1e-5)
    assert torch.equal(rm, torch.zeros(4))
    assert torch.equal(rv, torch.ones(4))
    assert not torch.equal(new_mean, rm)


def test_training_input_gradient_gradcheck():
    g = torch.Generator().manual_seed(2)
    x = torch.rand(2, 2, 2, 3, generator=g, dtype=torch.float64, requires_grad=True)
    scale = (torch.rand(3, generator=g, dtype=torch.float64) + 0.5).requires_grad_()
    offset = torch.rand(3, generator=g, dtype=torch.float64).requires_grad_()
    rm, rv = torch.zeros(3, dtype=torch.float64), torch.ones(3, dtype=torch.float64)

    def fn(x, scale, offset):
        return bnf.batch_norm_training(x, scale, offset, rm, rv, 0.9, 1e-5)[0]

    assert torch.autograd.gradcheck(fn, (x, scale, offset))


def test_inference_uses_running_statistics():
    x = torch.full((1, 1, 1, 2), 3.0)
    rm = torch.tensor([1.0, 3.0])
    rv = torch.tensor([4.0, 1.0])
    y = bnf.batch_norm_inference(x, torch.ones(2), torch.zeros(2), rm, rv, 0.0)
    torch.testing.assert_close(y.flatten(), torch.tensor([1.0, 0.0]))
