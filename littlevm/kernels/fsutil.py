"""File-system checks and host environment checks for kernel builds."""

from __future__ import annotations

import os
import shutil
import stat

GIT_BINARY = "git"
MAKE_BINARY = "make"

BINARIES = [GIT_BINARY]

_KERNEL_PREFIX = "vmlinuz-"


def directory_exists(path: str | os.PathLike) -> bool:
    """True if path is a directory, False if it does not exist.

    Raises NotADirectoryError if path exists but is something else, and
    OSError if it cannot be inspected.
    """
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    except OSError as err:
        raise OSError(f"error accessing `{os.fspath(path)}`: {err}") from err
    if stat.S_ISDIR(st.st_mode):
        return True
    raise NotADirectoryError(f"`{os.fspath(path)}` exists, but is not a directory")


def regular_file_exists(path: str | os.PathLike) -> bool:
    """True if path is a regular file, False if it does not exist.

    Raises OSError if path exists but is not a regular file, or cannot be
    inspected.
    """
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    except OSError as err:
        raise OSError(f"error accessing `{os.fspath(path)}`: {err}") from err
    if stat.S_ISREG(st.st_mode):
        return True
    raise OSError(f"`{os.fspath(path)}` exists, but is not a regular file")


def find_kernel(install_dir: str | os.PathLike) -> str:
    """Return the path, relative to install_dir, of the single kernel in boot/.

    Raises OSError if the boot directory cannot be read, FileNotFoundError if
    it holds no kernel, and ValueError if it holds more than one.
    """
    boot_dir = os.path.join(install_dir, "boot")
    try:
        with os.scandir(boot_dir) as entries:
            kernels = [
                entry.name
                for entry in entries
                if entry.is_file(follow_symlinks=False)
                and entry.name.startswith(_KERNEL_PREFIX)
            ]
    except OSError as err:
        try:
            cwd = os.getcwd()
        except OSError:
            cwd = ""
        raise OSError(f"failed to reading dir: {err} (working dir: {cwd})") from err

    if not kernels:
        raise FileNotFoundError(f"no kernel found in '{boot_dir}'")
    if len(kernels) > 1:
        raise ValueError(f"unhandled case: multiple kernels found in '{boot_dir}'")
    return os.path.join("boot", kernels[0])


def check_environment() -> None:
    """Raise FileNotFoundError if a required binary is not on PATH."""
    for cmd in BINARIES:
        if shutil.which(cmd) is None:
            raise FileNotFoundError(f"required cmd '{cmd}' not found")