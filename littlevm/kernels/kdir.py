"""A kernels directory: its configuration and configuring/building kernels."""

from __future__ import annotations

import contextlib
import logging
import os
import re
import subprocess
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

from littlevm.arch import Arch, native_arch_name, new_arch
from littlevm.kernels import fsutil
from littlevm.kernels.fsutil import check_environment, regular_file_exists
from littlevm.kernels.kconf import Conf, ConfigOption, KernelConf
from littlevm.logcmd import run_and_log

_LOG = logging.getLogger(__name__)

_ENABLED_OR_MODULE_RE = re.compile(r"([a-zA-Z0-9_]+)=(y|m)")
_DISABLED_RE = re.compile(r"# ([a-zA-Z0-9_]+) is not set")

_STATE_FOR_SWITCH = {"--enable": "y", "--disable": "n", "--module": "m"}


@contextlib.contextmanager
def _working_dir(path: str) -> Iterator[None]:
    old = os.getcwd()
    os.chdir(path)
    try:
        yield
    finally:
        os.chdir(old)


def _resolve_arch(target_arch: str) -> Arch:
    return new_arch(target_arch or native_arch_name())


def validate_kconfig(opts: Sequence[ConfigOption], config_path: str = ".config") -> None:
    """Check a kernel .config file against the requested options.

    Enabled options must be set to y, module options to m, and disabled
    options must not be enabled. Raises ValueError listing every discrepancy,
    or for an unknown option switch; OSError if the file cannot be read.
    """
    expected: dict[str, str] = {}
    for opt in opts:
        try:
            expected[opt[1]] = _STATE_FOR_SWITCH[opt[0]]
        except KeyError:
            raise ValueError(f"Unknown option: {opt[0]}") from None
    checked: set[str] = set()
    problems: list[str] = []

    try:
        fh = open(config_path, encoding="utf-8", errors="replace")
    except OSError as err:
        raise OSError(f"failed to open config file: {err}") from err

    with fh:
        for raw in fh:
            line = raw.rstrip("\n")
            match = _ENABLED_OR_MODULE_RE.search(line)
            if match:
                name, state = match.group(1), match.group(2)
            else:
                match = _DISABLED_RE.search(line)
                if not match:
                    continue
                name, state = match.group(1), "n"

            want = expected.get(name)
            if want is None:
                continue
            checked.add(name)
            if want != state:
                problems.append(
                    f"value {name} misconfigured: expected: {want!r} "
                    f"but seems to be {state!r} based on {line!r}"
                )

    for name, want in expected.items():
        if name in checked:
            continue
        if want == "y":
            problems.append(f"value {name} enabled but not found")
        elif want == "m":
            problems.append(f"value {name} configured as module but not found")

    if problems:
        raise ValueError("\n".join(problems))


def _run_make(kc: KernelConf | None, args: Sequence[str], log) -> None:
    extra = kc.extra_make_args if kc is not None else []
    run_and_log([fsutil.MAKE_BINARY, *args, *extra], log)


@dataclass
class KernelsDir:
    """The directory holding kernel sources, with its configuration."""

    dir: str
    conf: Conf = field(default_factory=Conf)

    def kernel_config(self, name: str) -> KernelConf | None:
        """The configuration of the named kernel, or None."""
        return next((kc for kc in self.conf.kernels if kc.name == name), None)

    def remove_kernel_config(self, name: str) -> KernelConf | None:
        """Remove and return the named kernel's configuration, or None."""
        kc = self.kernel_config(name)
        if kc is not None:
            self.conf.kernels.remove(kc)
        return kc

    def configure_kernel(self, name: str, target_arch: str = "", log=None) -> None:
        """Configure a kernel in this directory from defconfig plus its options."""
        log = log if log is not None else _LOG
        kc = self.kernel_config(name)
        if kc is None:
            raise LookupError(f"kernel '{name}' not found")
        self._configure_kernel(kc, target_arch, log)

    def raw_configure(
        self, kernel_dir: str, name: str = "", target_arch: str = "", log=None
    ) -> None:
        """Apply the configured options to a kernel tree prepared elsewhere."""
        log = log if log is not None else _LOG
        kc = self.kernel_config(name)
        self._raw_configure(kc, kernel_dir, target_arch, log, [])

    def _configure_kernel(self, kc: KernelConf, target_arch: str, log) -> None:
        src_dir = os.path.join(self.dir, kc.name)
        arch = _resolve_arch(target_arch)
        prepare = ["defconfig", "prepare", *arch.cross_compile_make_args()]
        self._raw_configure(kc, src_dir, target_arch, log, prepare)

    def _raw_configure(
        self,
        kc: KernelConf | None,
        src_dir: str,
        target_arch: str,
        log,
        prepare_args: Sequence[str],
    ) -> None:
        with _working_dir(src_dir):
            options = self.conf.get_options(kc)

            if prepare_args:
                _run_make(kc, prepare_args, log)

            config_cmd = os.path.join(".", "scripts", "config")
            for opts in options:
                # one at a time, which makes failures easier to trace
                run_and_log([config_cmd, *opts], log)

            arch = _resolve_arch(target_arch)
            _run_make(kc, ["olddefconfig", *arch.cross_compile_make_args()], log)

            # some options exist only in certain kernels, so only warn
            try:
                validate_kconfig(options, ".config")
            except (ValueError, OSError) as err:
                log.warning("discrepancies in generated config: %s", err)

        log.info("configuration completed")

    def build_kernel(self, kc: KernelConf, target_arch: str = "", log=None) -> None:
        """Build the kernel image, modules and a tar package, configuring first if needed."""
        log = log if log is not None else _LOG
        check_environment()

        src_dir = os.path.join(self.dir, kc.name)
        if not regular_file_exists(os.path.join(src_dir, ".config")):
            log.info("Configuring kernel")
            try:
                self._configure_kernel(kc, target_arch, log)
            except (subprocess.CalledProcessError, OSError, ValueError) as err:
                raise RuntimeError(f"failed to configure kernel: {err}") from err

        arch = _resolve_arch(target_arch)
        cross = arch.cross_compile_make_args()
        ncpus = str(os.cpu_count() or 1)

        try:
            _run_make(
                kc, ["-C", src_dir, "-j", ncpus, arch.target(), "modules", *cross], log
            )
        except (subprocess.CalledProcessError, OSError) as err:
            raise RuntimeError(f"buiding bzImage && modules failed: {err}") from err

        try:
            _run_make(kc, ["-C", src_dir, "tar-pkg", *cross], log)
        except (subprocess.CalledProcessError, OSError) as err:
            raise RuntimeError(f"build dir failed: {err}") from err