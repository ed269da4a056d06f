"""Sequential build steps with deferred cleanups."""

from __future__ import annotations

import abc
import contextlib
import enum
from collections.abc import Iterable


class Result(enum.Enum):
    """Outcome of running a step."""

    INVALID = 0
    CONTINUE = 1
    STOP = 2


class Step(abc.ABC):
    """A unit of work that may need undoing after later steps have run."""

    @abc.abstractmethod
    def do(self) -> Result:
        """Perform the step; raise on failure."""

    @abc.abstractmethod
    def cleanup(self) -> None:
        """Undo the side effects of do()."""


def do_steps(steps: Iterable[Step]) -> bool:
    """Run steps in order, then clean up the completed ones in reverse order.

    A step returning Result.STOP ends the run without its cleanup being
    registered. Returns True if every step ran, False if one stopped early.
    Exceptions propagate after the cleanups of completed steps have run.
    """
    with contextlib.ExitStack() as stack:
        for step in steps:
            if step.do() is Result.STOP:
                return False
            stack.callback(step.cleanup)
    return True