from .cell import StatisticCell
from .compiled import (
    BatchNormState,
    BatchNormStepResult,
    CompiledBatchNorm2d,
    CompiledKernel,
    NoOpCompiler,
    TorchCompiler,
    batch_norm_inference_step,
    batch_norm_step,
    get_compiler,
    gradient_of,
)
from .config import BatchNormConfig
from .dispatch import ModeDependentModule
from .errors import (
    BatchNormError,
    CompilationError,
    InvalidModeError,
    NumericalInstabilityWarning,
    ShapeMismatchError,
)
from .fused import FusedBatchNorm2d, FusedBatchNormFunction
from .layers import BatchNorm2d, CnnModel, Conv2dNHWC, ConvNormBlock
from .mode import Mode, execution_mode, get_mode, is_training, reset_mode, set_mode

__version__ = "0.1.0"
