import torch.nn as nn

from .errors import InvalidModeError
from .mode import Mode, get_mode


class ModeDependentModule(nn.Module):
    """
    Module with one forward per execution mode.

    Subclasses implement `forward_training` and `forward_inference`; `forward`
    picks one from the ambient mode. The mode is a Python value, so autograd
    only ever records the branch that ran and never differentiates through
    the selection itself.

    `nn.Module.train()` / `.eval()` do not choose the branch here.
    """

    def forward_training(self, x):
        raise NotImplementedError

    def forward_inference(self, x):
        raise NotImplementedError

    def _branches(self):
        return {
            Mode.TRAINING: self.forward_training,
            Mode.INFERENCE: self.forward_inference,
        }

    def forward(self, x):
        mode = get_mode()
        try:
            branch = self._branches()[mode]
        except (KeyError, TypeError):
            raise InvalidModeError(f"unrecognized execution mode: {mode!r}") from None
        return branch(x)
