"""
Ambient execution mode.

Every mode-dependent operator reads the mode at forward time; the training
loop owns it. The value lives in a ContextVar, so each thread / asyncio task
sees its own mode and the default is inference.

Usage:
    with execution_mode(Mode.TRAINING):
        loss = model(x).sum()
        loss.backward()
"""

import contextlib
import contextvars
import enum


class Mode(enum.Enum):
    TRAINING = "training"
    INFERENCE = "inference"


_current_mode = contextvars.ContextVar("stateful_bn_mode", default=Mode.INFERENCE)


def get_mode():
    return _current_mode.get()


def set_mode(mode):
    """Set the ambient mode and return a token for `reset_mode`.

    Strings naming a mode are coerced. Anything else is stored unchanged and
    rejected by the operator that reads it.
    """
    if isinstance(mode, str):
        try:
            mode = Mode(mode.lower())
        except ValueError:
            pass
    return _current_mode.set(mode)


def reset_mode(token):
    _current_mode.reset(token)


@contextlib.contextmanager
def execution_mode(mode):
    token = set_mode(mode)
    try:
        yield get_mode()
    finally:
        reset_mode(token)


def is_training():
    return get_mode() is Mode.TRAINING
