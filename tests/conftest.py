import pytest
import torch

from stateful_bn import (
    BatchNorm2d,
    CompiledBatchNorm2d,
    FusedBatchNorm2d,
    Mode,
    NoOpCompiler,
    TorchCompiler,
    execution_mode,
)


@pytest.fixture
def training():
    with execution_mode(Mode.TRAINING):
        yield


@pytest.fixture
def inference():
    with execution_mode(Mode.INFERENCE):
        yield


@pytest.fixture
def generator():
    return torch.Generator().manual_seed(0)


VARIANTS = {
    "naive": lambda c, **kw: BatchNorm2d(c, **kw),
    "fused": lambda c, **kw: FusedBatchNorm2d(c, **kw),
    "compiled-noop": lambda c, **kw: CompiledBatchNorm2d(c, compiler=NoOpCompiler(), **kw),
    "compiled-eager": lambda c, **kw: CompiledBatchNorm2d(c, compiler=TorchCompiler(backend="eager"), **kw),
}


@pytest.fixture(params=list(VARIANTS))
def make_bn(request):
    return VARIANTS[request.param]
