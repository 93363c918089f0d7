import torch
import torch.nn as nn
from torch import Tensor


class StatisticCell(nn.Module):
    """
    Mutable holder for one statistic tensor (running mean or running variance).

    The tensor is a registered buffer, so it follows `.to(device)` and lands in
    `state_dict()` under `<name>.value`. Updates happen in place and never
    record autograd history.

    Before first use the cell may hold a scalar placeholder; it broadcasts
    against any channel count until the first update installs a per-channel
    tensor.
    """

    def __init__(self, initial=None):
        super().__init__()
        if initial is None:
            initial = 0.0
        if not isinstance(initial, Tensor):
            initial = torch.tensor(float(initial))
        self.register_buffer("value", initial.detach().clone())

    @property
    def is_initialized(self) -> bool:
        return self.value.dim() > 0

    @torch.no_grad()
    def update(self, new_value: Tensor) -> Tensor:
        new_value = new_value.detach()
        if new_value.shape == self.value.shape:
            self.value.copy_(new_value)
        else:
            # placeholder -> per-channel tensor
            self.value = new_value.to(device=self.value.device, dtype=self.value.dtype).clone()
        return self.value

    def extra_repr(self):
        return f"shape={tuple(self.value.shape)}"
