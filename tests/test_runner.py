import pytest

from littlevm.runner import (
    PortForward,
    RunConf,
    build_qemu_args,
    format_qemu_command,
    parse_port_forwards,
    port_forward_qemu_args,
    start_qemu,
)


def _value_after(args, flag):
    return args[args.index(flag) + 1]


def test_parse_single_port():
    assert parse_port_forwards(["8080"]) == [PortForward(8080, 8080, "tcp")]


def test_parse_host_and_vm_port():
    assert parse_port_forwards(["2222:22"]) == [PortForward(2222, 22, "tcp")]


def test_parse_protocol_is_lowercased():
    assert parse_port_forwards(["53:53:UDP"]) == [PortForward(53, 53, "udp")]


def test_parse_empty():
    assert parse_port_forwards([]) == []


@pytest.mark.parametrize("flag", ["abc", "x:22", "22:y", "1:x:tcp", ""])
def test_parse_invalid_port(flag):
    with pytest.raises(ValueError, match="is not a valid port number"):
        parse_port_forwards([flag])


def test_parse_invalid_protocol():
    with pytest.raises(ValueError, match="tcp or udp"):
        parse_port_forwards(["1:2:sctp"])


def test_port_forward_args_empty():
    assert port_forward_qemu_args([]) == [
        "-netdev", "user,id=user.0", "-device", "virtio-net-pci,netdev=user.0",
    ]


def test_port_forward_args_with_forwards():
    args = port_forward_qemu_args([PortForward(8080, 80, "tcp"), PortForward(53, 53, "udp")])
    assert args == [
        "-netdev",
        "user,id=user.0,hostfwd=tcp::8080-:80,hostfwd=udp::53-:53",
        "-device",
        "virtio-net-pci,netdev=user.0",
    ]


def test_build_args_prefix_and_arm64_options():
    rcnf = RunConf(image="img.qcow2", cpu=3, mem="1G", qemu_arch="arm64",
                   disable_hardware_accel=True)
    args = build_qemu_args(rcnf)
    assert args[:8] == ["-nodefaults", "-display", "none", "-no-reboot",
                        "-smp", "3", "-m", "1G"]
    assert args[8:10] == ["-machine", "virt"]
    assert _value_after(args, "-cpu") == "max"
    assert "-enable-kvm" not in args


def test_build_args_amd64_without_accel_has_no_cpu():
    rcnf = RunConf(image="img", qemu_arch="amd64", disable_hardware_accel=True)
    args = build_qemu_args(rcnf)
    assert "-cpu" not in args
    assert "-machine" not in args


def test_build_args_explicit_cpu_kind():
    rcnf = RunConf(image="img", qemu_arch="amd64", disable_hardware_accel=True,
                   cpu_kind="host")
    assert _value_after(build_qemu_args(rcnf), "-cpu") == "host"


def test_build_args_vda_drive():
    rcnf = RunConf(image="disk.img", qemu_arch="amd64", disable_hardware_accel=True)
    args = build_qemu_args(rcnf)
    drive = _value_after(args, "-drive")
    assert drive.startswith("file=disk.img,")
    assert drive.endswith("if=virtio,index=0,media=disk")


def test_build_args_kernel_append():
    rcnf = RunConf(image="disk.img", qemu_arch="arm64", disable_hardware_accel=True,
                   root_dev="hda", kernel_fname="vmlinuz", kernel_append_args=["quiet"])
    args = build_qemu_args(rcnf)
    assert _value_after(args, "-hda") == "disk.img"
    assert _value_after(args, "-kernel") == "vmlinuz"
    assert _value_after(args, "-append").split() == [
        "root=/dev/sda", "console=ttyAMA0", "earlyprintk=ttyS0", "panic=-1", "quiet",
    ]


def test_build_args_without_kernel_has_no_append():
    rcnf = RunConf(image="disk.img", qemu_arch="amd64", disable_hardware_accel=True)
    args = build_qemu_args(rcnf)
    assert "-kernel" not in args
    assert "-append" not in args


def test_build_args_invalid_root_dev():
    rcnf = RunConf(image="disk.img", qemu_arch="amd64", disable_hardware_accel=True,
                   root_dev="sdb")
    with pytest.raises(ValueError, match="invalid root device: sdb"):
        build_qemu_args(rcnf)


def test_build_args_invalid_arch():
    with pytest.raises(ValueError, match="unsupported architecture"):
        build_qemu_args(RunConf(image="img", qemu_arch="mips"))


def test_build_args_network_toggle():
    fwds = [PortForward(2222, 22)]
    on = build_qemu_args(RunConf(image="i", qemu_arch="amd64", disable_hardware_accel=True,
                                 forwarded_ports=fwds))
    off = build_qemu_args(RunConf(image="i", qemu_arch="amd64", disable_hardware_accel=True,
                                  forwarded_ports=fwds, disable_network=True))
    assert _value_after(on, "-netdev") == port_forward_qemu_args(fwds)[1]
    assert "-netdev" not in off


def test_build_args_daemonize_replaces_stdio_serial():
    base = dict(image="i", qemu_arch="amd64", disable_hardware_accel=True)
    fg = build_qemu_args(RunConf(**base))
    bg = build_qemu_args(RunConf(daemonize=True, **base))
    assert "mon:stdio" in fg and "-daemonize" not in fg
    assert "-daemonize" in bg and "mon:stdio" not in bg


def test_build_args_ports_and_mount():
    rcnf = RunConf(image="i", qemu_arch="amd64", disable_hardware_accel=True,
                   serial_port=4444, qemu_monitor_port=5555, console_log_file="con.log",
                   host_mount="/srv/share")
    args = build_qemu_args(rcnf)
    serials = [args[i + 1] for i, a in enumerate(args) if a == "-serial"]
    assert serials[0] == "telnet:localhost:4444,server,nowait"
    assert serials[1] == "file:con.log"
    assert _value_after(args, "-monitor") == "tcp:localhost:5555,server,nowait"
    assert "path=/srv/share" in _value_after(args, "-fsdev")
    assert "virtio-9p-pci,fsdev=host_id,mount_tag=host_mount" in args


def test_format_qemu_command_invariants():
    args = ["-m", "4G", "-nodefaults", "value"]
    text = format_qemu_command("qemu", args)
    assert text.startswith("qemu")
    assert text.count("\\\n\t") == sum(a.startswith("-") for a in args)
    assert text.replace("\\\n\t", "").split(" ") == ["qemu", *args]


def test_start_qemu_print_only(capsys):
    rcnf = RunConf(image="i", qemu_arch="arm64", disable_hardware_accel=True,
                   qemu_print=True)
    start_qemu(rcnf)
    out = capsys.readouterr().out
    assert out == format_qemu_command("qemu-system-aarch64", build_qemu_args(rcnf)) + "\n"


def test_start_qemu_missing_binary(monkeypatch):
    monkeypatch.setenv("PATH", "")
    rcnf = RunConf(image="i", qemu_arch="arm64", disable_hardware_accel=True)
    with pytest.raises(FileNotFoundError):
        start_qemu(rcnf)