"""Build qemu command lines for VM images and start qemu."""

from __future__ import annotations

import logging
import os
import re
import shutil
import sys
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from littlevm.arch import Arch, native_arch_name, new_arch

_LOG = logging.getLogger(__name__)

_PORT_RE = re.compile(r"[+-]?[0-9]+")


@dataclass
class PortForward:
    """A host port forwarded to a port inside the VM."""

    host_port: int
    vm_port: int
    protocol: str = "tcp"


@dataclass
class RunConf:
    """Configuration for running a VM."""

    image: str
    kernel_fname: str = ""
    kernel_append_args: list[str] = field(default_factory=list)
    qemu_print: bool = False
    disable_hardware_accel: bool = False
    daemonize: bool = False
    console_log_file: str = ""
    verbose: bool = False
    disable_network: bool = False
    forwarded_ports: list[PortForward] = field(default_factory=list)
    host_mount: str = ""
    serial_port: int = 0
    cpu: int = 2
    mem: str = "4G"
    cpu_kind: str = ""
    root_dev: str = "vda"
    qemu_monitor_port: int = 0
    qemu_arch: str = ""


def _parse_port(text: str) -> int:
    if not _PORT_RE.fullmatch(text):
        raise ValueError(f"'{text}' is not a valid port number")
    return int(text)


def parse_port_forwards(flags: Iterable[str]) -> list[PortForward]:
    """Parse flags of the form hostport[:vmport[:tcp|udp]]."""
    forwards = []
    for flag in flags:
        host_str, sep, rest = flag.partition(":")
        if not sep:
            port = _parse_port(flag)
            forwards.append(PortForward(port, port, "tcp"))
            continue
        host_port = _parse_port(host_str)
        vm_str, sep, proto = rest.partition(":")
        if not sep:
            forwards.append(PortForward(host_port, _parse_port(rest), "tcp"))
            continue
        vm_port = _parse_port(vm_str)
        proto = proto.lower()
        if proto not in ("tcp", "udp"):
            raise ValueError("port forward protocol must be tcp or udp")
        forwards.append(PortForward(host_port, vm_port, proto))
    return forwards


def port_forward_qemu_args(forwards: Iterable[PortForward]) -> list[str]:
    """qemu user-mode networking arguments carrying the given forwards."""
    netdev = "user,id=user.0" + "".join(
        f",hostfwd={fwd.protocol}::{fwd.host_port}-:{fwd.vm_port}" for fwd in forwards
    )
    return ["-netdev", netdev, "-device", "virtio-net-pci,netdev=user.0"]


def _arch_of(rcnf: RunConf) -> Arch:
    return new_arch(rcnf.qemu_arch or native_arch_name())


def _kvm_available() -> bool:
    try:
        fd = os.open("/dev/kvm", os.O_RDWR)
    except OSError:
        return False
    os.close(fd)
    return True


def build_qemu_args(rcnf: RunConf, log: logging.Logger | None = None) -> list[str]:
    """Assemble the qemu argument list (without the binary) for rcnf."""
    log = log if log is not None else _LOG
    args = [
        "-nodefaults",
        "-display", "none",
        "-no-reboot",
        "-smp", str(rcnf.cpu), "-m", rcnf.mem,
    ]

    qarch = _arch_of(rcnf)
    args = qarch.arch_specific_qemu_args(args)

    kvm_enabled = False
    if not rcnf.disable_hardware_accel and qarch.is_native():
        if sys.platform.startswith("linux"):
            if _kvm_available():
                args.append("-enable-kvm")
                kvm_enabled = True
            else:
                log.info("KVM disabled")
        elif sys.platform == "darwin":
            args += ["-accel", "hvf"]

    args = qarch.cpu_kind_args(args, kvm_enabled, rcnf.cpu_kind)

    if rcnf.serial_port:
        args += ["-serial", f"telnet:localhost:{rcnf.serial_port},server,nowait"]
    if rcnf.console_log_file:
        args += ["-serial", f"file:{rcnf.console_log_file}"]

    if rcnf.root_dev == "hda":
        args += ["-hda", rcnf.image]
        kernel_root = "/dev/sda"
    elif rcnf.root_dev == "vda":
        args += ["-drive", f"file={rcnf.image},if=virtio,index=0,media=disk"]
        kernel_root = "/dev/vda"
    else:
        raise ValueError(f"invalid root device: {rcnf.root_dev}")

    if rcnf.kernel_fname:
        append = [
            f"root={kernel_root}",
            f"console={qarch.console()}",
            "earlyprintk=ttyS0",
            "panic=-1",
            *rcnf.kernel_append_args,
        ]
        args += ["-kernel", rcnf.kernel_fname, "-append", " ".join(append)]

    if not rcnf.disable_network:
        args += port_forward_qemu_args(rcnf.forwarded_ports)

    if rcnf.daemonize:
        args.append("-daemonize")
    else:
        args += ["-serial", "mon:stdio", "-device", "virtio-serial-pci"]

    if rcnf.qemu_monitor_port:
        args += ["-monitor", f"tcp:localhost:{rcnf.qemu_monitor_port},server,nowait"]

    if rcnf.host_mount:
        args += [
            "-fsdev", f"local,id=host_id,path={rcnf.host_mount},security_model=none",
            "-device", "virtio-9p-pci,fsdev=host_id,mount_tag=host_mount",
        ]

    return args


def format_qemu_command(binary: str, args: Sequence[str]) -> str:
    """Render a command for display, breaking the line before each option."""
    parts = [binary]
    for arg in args:
        parts.append(" ")
        if arg.startswith("-"):
            parts.append("\\\n\t")
        parts.append(arg)
    return "".join(parts)


def start_qemu(rcnf: RunConf) -> None:
    """Replace the current process with qemu, or only print the command."""
    qarch = _arch_of(rcnf)
    binary = qarch.qemu_binary()
    args = build_qemu_args(rcnf)

    if rcnf.qemu_print or rcnf.verbose:
        print(format_qemu_command(binary, args))
        if rcnf.qemu_print:
            return

    path = shutil.which(binary)
    if path is None:
        raise FileNotFoundError(f"executable file '{binary}' not found in PATH")
    os.execve(path, [binary, *args], {})