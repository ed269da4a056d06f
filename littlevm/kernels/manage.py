"""Operations on a kernels directory: init, load, add, remove, fetch, build."""

from __future__ import annotations

import json
import logging
import os
import shutil

from littlevm.kernels.giturl import GitURL, parse_url
from littlevm.kernels.kconf import CONFIG_FNAME, Conf, KernelConf
from littlevm.kernels.kdir import KernelsDir

_LOG = logging.getLogger(__name__)

KERNELS_DIR_NAME = "kernels"


def init_dir(
    directory: str,
    conf: Conf | None = None,
    force: bool = False,
    backup_conf: bool = False,
    log=None,
) -> None:
    """Create a kernels directory (if needed) and save conf into it.

    Raises FileExistsError if a configuration already exists and force is
    not set. An empty configuration is used when conf is None.
    """
    log = log if log is not None else _LOG
    try:
        os.makedirs(directory, mode=0o755, exist_ok=True)
    except OSError as err:
        raise OSError(f"failed to create directory '{directory}': {err}") from err

    conf_fname = os.path.join(directory, CONFIG_FNAME)
    if not force and os.path.exists(conf_fname):
        raise FileExistsError(f"config file `{conf_fname}` already exists")

    if conf is None:
        conf = Conf()
    conf.save_to(directory, backup_conf, log)


def load_dir(directory: str) -> KernelsDir:
    """Load the configuration saved in directory."""
    with open(os.path.join(directory, CONFIG_FNAME), encoding="utf-8") as fh:
        data = json.load(fh)
    return KernelsDir(
        dir=os.path.join(directory, KERNELS_DIR_NAME),
        conf=Conf.from_dict(data),
    )


def add_kernel(
    directory: str,
    kconf: KernelConf,
    backup_conf: bool = False,
    fetch: bool = False,
    log=None,
) -> None:
    """Add a kernel to the configuration, optionally fetching its sources."""
    log = log if log is not None else _LOG
    kd = load_dir(directory)
    if kd.kernel_config(kconf.name) is not None:
        raise ValueError(f"kernel `{kconf.name}` already exists")

    kd.conf.kernels.append(kconf)
    kd.conf.save_to(directory, backup_conf, log)

    if fetch:
        parse_url(kconf.url).fetch(kd.dir, kconf.name, log)


def remove_kernel(
    directory: str, name: str, backup_conf: bool = False, log=None
) -> None:
    """Remove a kernel from the configuration and delete its sources.

    Removal is attempted even when the kernel is unknown or has a bad URL;
    those cases still raise once the path has been removed.
    """
    log = log if log is not None else _LOG
    kd = load_dir(directory)
    path = os.path.join(directory, name)

    kc = kd.remove_kernel_config(name)
    if kc is None:
        log.warning("kernel %s does not exist, will try to remove path %s", name, path)
        _remove_path(path, name, log)
        raise LookupError(f"kernel `{name}` does not exist in configuration")

    try:
        try:
            kurl = parse_url(kc.url)
        except ValueError:
            log.warning(
                "kernel %s has invalid URL %s, will try to remove path %s",
                name, kc.url, path,
            )
            _remove_path(path, name, log)
            raise ValueError(
                f"kernel `{name}` has invalid URL `{kc.url}`"
            ) from None
        kurl.remove(kd.dir, name, log)
    finally:
        try:
            kd.conf.save_to(directory, backup_conf, log)
        except OSError as err:
            log.warning("failed to save configuration: %s", err)


def _remove_path(path: str, name: str, log) -> None:
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        elif os.path.lexists(path):
            os.remove(path)
    except OSError as err:
        log.warning("removing path %s failed: %s", path, err)
        raise OSError(f"failed to remove kernel `{name}`: {err}") from err


def _kernel_info(directory: str, name: str) -> tuple[KernelsDir, KernelConf, GitURL]:
    kd = load_dir(directory)
    kc = kd.kernel_config(name)
    if kc is None:
        raise LookupError(f"kernel `{name}` not found")
    return kd, kc, parse_url(kc.url)


def fetch_kernel(directory: str, name: str, log=None) -> None:
    """Fetch the sources of a configured kernel."""
    log = log if log is not None else _LOG
    kd, kc, kurl = _kernel_info(directory, name)
    kurl.fetch(kd.dir, kc.name, log)


def build_kernel(
    directory: str, name: str, fetch: bool = False, arch: str = "", log=None
) -> None:
    """Build a configured kernel, optionally fetching its sources first."""
    log = log if log is not None else _LOG
    kd, kc, kurl = _kernel_info(directory, name)
    if fetch:
        try:
            kurl.fetch(kd.dir, kc.name, log)
        except Exception as err:
            raise RuntimeError(f"fetch failed: {err}") from err
    kd.build_kernel(kc, arch, log)