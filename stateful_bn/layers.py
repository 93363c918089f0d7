import torch
import torch.nn as nn
from torch import Tensor

from . import functional as bnf
from .cell import StatisticCell
from .config import DEFAULT_EPS, DEFAULT_MOMENTUM, validate_hyperparameters
from .dispatch import ModeDependentModule


class BatchNormBase(ModeDependentModule):
    """Parameters and running statistics shared by every batch-norm variant."""

    def __init__(self, feature_count: int, momentum: float = DEFAULT_MOMENTUM, eps: float = DEFAULT_EPS):
        super().__init__()
        validate_hyperparameters(momentum, eps, feature_count)
        self.feature_count = feature_count
        self.momentum = momentum
        self.eps = eps

        self.scale = nn.Parameter(torch.ones(feature_count))
        self.offset = nn.Parameter(torch.zeros(feature_count))

        self.mean_cell = StatisticCell(torch.zeros(feature_count))
        self.variance_cell = StatisticCell(torch.ones(feature_count))

    @property
    def running_mean(self) -> Tensor:
        return self.mean_cell.value

    @property
    def running_variance(self) -> Tensor:
        return self.variance_cell.value

    def extra_repr(self):
        return f"{self.feature_count}, momentum={self.momentum}, eps={self.eps}"


class BatchNorm2d(BatchNormBase):
    """
    Batch normalization over [N, H, W, C] inputs, written with plain tensor ops.

    Training: normalize with batch statistics and fold them into the running
    statistics. Inference: normalize with the running statistics only.
    """

    def forward_training(self, x: Tensor) -> Tensor:
        bnf.check_input(x, self.feature_count)
        y, new_mean, new_var = bnf.batch_norm_training(
            x, self.scale, self.offset,
            self.running_mean, self.running_variance,
            self.momentum, self.eps,
        )
        self.mean_cell.update(new_mean)
        self.variance_cell.update(new_var)
        return y

    def forward_inference(self, x: Tensor) -> Tensor:
        bnf.check_input(x, self.feature_count)
        return bnf.batch_norm_inference(
            x, self.scale, self.offset,
            self.running_mean, self.running_variance,
            self.eps,
        )


class Conv2dNHWC(nn.Conv2d):
    """nn.Conv2d taking and returning channel-last tensors."""

    def forward(self, x):
        # x: (N, H, W, C)
        x = x.permute(0, 3, 1, 2)
        return super().forward(x).permute(0, 2, 3, 1)


class ConvNormBlock(nn.Module):
    def __init__(self, conv: nn.Module, norm: nn.Module):
        super().__init__()
        self.conv = conv
        self.norm = norm

    def forward(self, x):
        return self.norm(self.conv(x))


class CnnModel(nn.Module):
    def __init__(self, blocks, in_features: int, num_classes: int):
        super().__init__()
        self.blocks = nn.ModuleList(blocks)
        self.head = nn.Linear(in_features, num_classes)

    @classmethod
    def build(cls,
              in_channels,
              channels=(32, 64),
              num_classes=10,
              kernel_size=3,
              stride=1,
              norm_factory=BatchNorm2d):
        """Stack of conv -> norm blocks; `norm_factory(c)` builds each norm layer."""
        widths = [in_channels] + list(channels)
        blocks = [
            ConvNormBlock(
                Conv2dNHWC(widths[i], widths[i + 1], kernel_size, stride=stride, padding=kernel_size // 2),
                norm_factory(widths[i + 1]),
            )
            for i in range(len(channels))
        ]
        return cls(blocks, widths[-1], num_classes)

    def forward(self, x):
        # x: (N, H, W, C)
        for block in self.blocks:
            x = block(x)
        # global average pool -> (N, C)
        x = x.mean(dim=(1, 2))
        return self.head(x)
