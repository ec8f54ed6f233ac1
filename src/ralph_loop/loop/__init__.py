"""Loop controller, struggle detection and agent invocation."""

from ralph_loop.loop.controller import LoopController, LoopOptions, LoopState, LoopStatus
from ralph_loop.loop.controllers import RalphCliController

__all__ = [
    "LoopController",
    "LoopOptions",
    "LoopState",
    "LoopStatus",
    "RalphCliController",
]
