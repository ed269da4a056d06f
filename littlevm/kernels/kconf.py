"""Kernel build configuration: kernels, config options and option groups."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from littlevm.kernels.fsutil import regular_file_exists
from littlevm.kernels.giturl import parse_url

_LOG = logging.getLogger(__name__)

CONFIG_FNAME = "kernels.json"

# A config option is the argument list for scripts/config, e.g. ["--enable", "X"].
ConfigOption = list[str]


def _enable(*names: str) -> list[ConfigOption]:
    return [["--enable", name] for name in names]


def _disable(*names: str) -> list[ConfigOption]:
    return [["--disable", name] for name in names]


CONFIG_OPT_GROUPS: dict[str, list[ConfigOption]] = {
    "basic": [
        *_enable(
            "CONFIG_LOCALVERSION_AUTO",
            "CONFIG_DEBUG_INFO",
            "CONFIG_DEBUG_INFO_DWARF_TOOLCHAIN_DEFAULT",
        ),
        *_disable("CONFIG_WERROR"),
    ],
    "minimize": _disable(
        "CONFIG_DRM",
        "CONFIG_GPU",
        "CONFIG_ISO9669_FS",
        "CONFIG_CFG80211",
        "CONFIG_WIRELESS",
        "CONFIG_RFKILL",
        "CONFIG_MACINTOSH_DRIVERS",
        "CONFIG_SOUND",
        "CONFIG_AGP",
        "CONFIG_USB_SUPPORT",
        "CONFIG_USB",
        "CONFIG_WLAN",
        "CONFIG_HID",
        "CONFIG_I2C",
        "CONFIG_PCMCIA",
        "CONFIG_MD",
        "CONFIG_DMADEVICES",
        "CONFIG_THERMAL",
    ),
    "bpf": _enable(
        "CONFIG_BPF",
        "CONFIG_BPF_SYSCALL",
        "CONFIG_NET_CLS_BPF",
        "CONFIG_NET_ACT_BPF",
        "CONFIG_BPF_JIT",
        "CONFIG_BPF_JIT_DEFAULT_ON",
        "CONFIG_BPF_EVENTS",
        "CONFIG_BPF_STREAM_PARSER",
        "CONFIG_DEBUG_INFO_BTF",
        "CONFIG_DEBUG_INFO_BTF_MODULES",
        "CONFIG_BPF_LSM",
        "CONFIG_CGROUP_BPF",
        "CONFIG_FTRACE_SYSCALLS",
        "CONFIG_SKB_EXTENSIONS",
        "CONFIG_NET_TC_SKB_EXT",
    ),
    "virtio": _enable(
        "CONFIG_VIRTIO",
        "CONFIG_VIRTIO_MENU",
        "CONFIG_VIRTIO_PCI_LIB",
        "CONFIG_VIRTIO_PCI",
        "CONFIG_VIRTIO_NET",
        "CONFIG_NET_9P",
        "CONFIG_9P_FS",
        "CONFIG_NET_9P_VIRTIO",
        "CONFIG_VIRTIO_BLK",
    ),
    "namespaces": _enable(
        "CONFIG_NAMESPACES",
        "CONFIG_UTS_NS",
        "CONFIG_TIME_NS",
        "CONFIG_IPC_NS",
        "CONFIG_USER_NS",
        "CONFIG_PID_NS",
        "CONFIG_NET_NS",
    ),
}

DEFAULT_CONFIG_GROUPS = ["basic", "bpf", "virtio", "minimize", "namespaces"]


def get_config_group_names() -> list[str]:
    """Names of the predefined option groups."""
    return list(CONFIG_OPT_GROUPS)


def _group_options(groups: tuple[str, ...]) -> list[ConfigOption]:
    options = []
    for group in groups:
        try:
            opts = CONFIG_OPT_GROUPS[group]
        except KeyError:
            raise ValueError(f"unknown group {group}") from None
        options.extend(list(opt) for opt in opts)
    return options


def _opts_from(data: Any) -> list[ConfigOption]:
    return [list(opt) for opt in data or []]


@dataclass
class KernelConf:
    """A kernel to build from source."""

    name: str
    url: str
    opts: list[ConfigOption] = field(default_factory=list)
    extra_make_args: list[str] = field(default_factory=list)

    def validate(self) -> None:
        """Raise ValueError if the URL is not a supported kernel URL."""
        parse_url(self.url)

    def add_groups_opts(self, *groups: str) -> None:
        """Append the options of the named groups; unknown names change nothing."""
        self.opts.extend(_group_options(groups))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "url": self.url}
        if self.opts:
            data["opts"] = [list(opt) for opt in self.opts]
        if self.extra_make_args:
            data["extra_make_args"] = list(self.extra_make_args)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KernelConf:
        return cls(
            name=data.get("name", ""),
            url=data.get("url", ""),
            opts=_opts_from(data.get("opts")),
            extra_make_args=list(data.get("extra_make_args") or []),
        )


@dataclass
class Conf:
    """Configuration of a kernels directory."""

    kernels: list[KernelConf] = field(default_factory=list)
    common_opts: list[ConfigOption] = field(default_factory=list)

    def add_groups_common_opts(self, *groups: str) -> None:
        """Append the options of the named groups to the common options."""
        self.common_opts.extend(_group_options(groups))

    def get_options(self, kc: KernelConf | None) -> list[ConfigOption]:
        """Common options followed by the kernel's own options."""
        options = [list(opt) for opt in self.common_opts]
        if kc is not None:
            options.extend(list(opt) for opt in kc.opts)
        return options

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kernels": [kc.to_dict() for kc in self.kernels]}
        if self.common_opts:
            data["common_opts"] = [list(opt) for opt in self.common_opts]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conf:
        return cls(
            kernels=[KernelConf.from_dict(kc) for kc in data.get("kernels") or []],
            common_opts=_opts_from(data.get("common_opts")),
        )

    def save_to(self, directory: str, backup: bool = False, log=None) -> None:
        """Write the configuration to directory/kernels.json.

        With backup, an existing file is first renamed with a timestamp suffix.
        """
        log = log if log is not None else _LOG
        fname = os.path.join(directory, CONFIG_FNAME)
        text = json.dumps(self.to_dict(), indent=4)

        if backup:
            try:
                exists = regular_file_exists(fname)
            except OSError:
                exists = False
            if exists:
                stamp = datetime.now().strftime("%Y%m%d.%H%M%S") + "000000"
                fname_old = f"{fname}.{stamp}"
                try:
                    os.rename(fname, fname_old)
                except OSError:
                    log.info("failed to rename %s to %s", fname, fname_old)
                else:
                    log.info("renamed %s to %s", fname, fname_old)

        try:
            with open(fname, "w", encoding="utf-8") as fh:
                fh.write(text)
        except OSError as err:
            raise OSError(f"error writing configuration: {err}") from err