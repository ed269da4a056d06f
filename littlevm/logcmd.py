"""Run external commands while streaming their output into a logger."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from typing import IO, Union

_LOG = logging.getLogger(__name__)

LoggerLike = Union[logging.Logger, logging.LoggerAdapter]


class CommandTimeoutError(TimeoutError):
    """Raised when a command runs past its timeout and is killed."""

    def __init__(self, command: Sequence[str], timeout: float | None) -> None:
        super().__init__(f"command {list(command)!r} timed out after {timeout}s")
        self.command = list(command)
        self.timeout = timeout


def _log_start(log: LoggerLike, command: Sequence[str]) -> None:
    fields = {"cmd_path": command[0], "cmd_args": list(command)}
    try:
        fields["cwd"] = os.getcwd()
    except OSError:
        pass
    log.info("starting command", extra=fields)


def _pump(
    stream: IO[str],
    emit: Callable[..., None],
    prefix: str,
    report: Callable[..., None],
    name: str,
) -> None:
    try:
        for line in stream:
            emit("%s%s", prefix, line)
    except (OSError, ValueError) as err:
        report("failed to read from %s: %s", name, err)
    finally:
        try:
            stream.close()
        except OSError:
            pass


def _kill(proc: subprocess.Popen, own_group: bool) -> None:
    if own_group and hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError):
            pass
    proc.kill()


def _run(command: Sequence[str], log: LoggerLike, timeout: float | None) -> None:
    own_group = timeout is not None and os.name == "posix"
    proc = subprocess.Popen(
        list(command),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        start_new_session=own_group,
    )
    readers = [
        threading.Thread(
            target=_pump,
            args=(proc.stdout, log.info, "stdout> ", log.warning, "stdout"),
            daemon=True,
        ),
        threading.Thread(
            target=_pump,
            args=(proc.stderr, log.warning, "stderr> ", log.warning, "stderr"),
            daemon=True,
        ),
    ]
    for reader in readers:
        reader.start()

    try:
        returncode = proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill(proc, own_group)
        proc.wait()
        for reader in readers:
            reader.join(timeout=1)
        raise CommandTimeoutError(command, timeout) from None

    for reader in readers:
        reader.join()
    if returncode != 0:
        raise subprocess.CalledProcessError(returncode, list(command))


def run_and_log(
    args: Sequence[str],
    log: LoggerLike | None = None,
    timeout: float | None = None,
) -> None:
    """Run a command, logging stdout lines at INFO and stderr lines at WARNING.

    Raises CalledProcessError on a non-zero exit and CommandTimeoutError if
    the command does not finish within ``timeout`` seconds.
    """
    if not args:
        raise ValueError("command is empty")
    log = log if log is not None else _LOG
    _log_start(log, args)
    _run(args, log, timeout)


def run_and_log_commands(
    commands: Iterable[Sequence[str]],
    log: LoggerLike | None = None,
    timeout: float | None = None,
) -> None:
    """Run several commands in order, stopping at the first failure.

    The timeout, if given, applies to the whole sequence.
    """
    log = log if log is not None else _LOG
    deadline = None if timeout is None else time.monotonic() + timeout
    for index, command in enumerate(commands):
        if not command:
            raise ValueError(f"command {index} is empty")
        remaining = None
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise CommandTimeoutError(command, timeout)
        _log_start(log, command)
        try:
            _run(command, log, remaining)
        except CommandTimeoutError:
            raise
        except (subprocess.CalledProcessError, OSError) as err:
            raise RuntimeError(f"command {index} failed: {err}") from err