import os
from dataclasses import dataclass

DEFAULT_MOMENTUM = 0.9
DEFAULT_EPS = 1e-5
DEFAULT_COMPILE_BACKEND = "inductor"
DEFAULT_BLOCK_SIZE = 1024


@dataclass
class BatchNormConfig:
    """
    Defaults shared by the batch-norm variants and the benchmark CLI.

    `from_env()` reads:
      STATEFUL_BN_MOMENTUM         weight kept on history in the running stats
      STATEFUL_BN_EPS              added to the variance before rsqrt
      STATEFUL_BN_COMPILE_BACKEND  "none" (uncompiled) or a torch.compile backend name
      STATEFUL_BN_BLOCK_SIZE       Triton BLOCK_SIZE (power of two)
    """
    momentum: float = DEFAULT_MOMENTUM
    eps: float = DEFAULT_EPS
    compile_backend: str = DEFAULT_COMPILE_BACKEND
    fused_block_size: int = DEFAULT_BLOCK_SIZE

    def __post_init__(self):
        validate_hyperparameters(self.momentum, self.eps)
        if self.fused_block_size <= 0 or self.fused_block_size & (self.fused_block_size - 1):
            raise ValueError(f"fused_block_size must be a positive power of two, got {self.fused_block_size}")
        if not self.compile_backend:
            raise ValueError("compile_backend must not be empty")

    @classmethod
    def from_env(cls):
        try:
            return cls(
                momentum=float(os.getenv("STATEFUL_BN_MOMENTUM", DEFAULT_MOMENTUM)),
                eps=float(os.getenv("STATEFUL_BN_EPS", DEFAULT_EPS)),
                compile_backend=os.getenv("STATEFUL_BN_COMPILE_BACKEND", DEFAULT_COMPILE_BACKEND),
                fused_block_size=int(os.getenv("STATEFUL_BN_BLOCK_SIZE", DEFAULT_BLOCK_SIZE)),
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"invalid stateful_bn environment configuration: {e}") from e


def validate_hyperparameters(momentum, eps, feature_count=None):
    if not 0.0 < momentum < 1.0:
        raise ValueError(f"momentum must be in (0, 1), got {momentum}")
    if not eps > 0.0:
        raise ValueError(f"eps must be positive, got {eps}")
    if feature_count is not None and feature_count <= 0:
        raise ValueError(f"feature_count must be positive, got {feature_count}")
