"""The lvh command line: build images and kernels, and run VMs."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from importlib import metadata

from littlevm.arch import native_arch_name
from littlevm.images.build import BuildConf, build_all_images, build_images
from littlevm.images.forest import ImageForest
from littlevm.images.imgconf import (
    DEFAULT_CONF_FILE,
    ImagesConf,
    ImgConf,
    example_images_conf,
)
from littlevm.kernels.examples import get_examples_text
from littlevm.kernels.kconf import (
    DEFAULT_CONFIG_GROUPS,
    Conf,
    KernelConf,
    get_config_group_names,
)
from littlevm.kernels.manage import (
    add_kernel,
    build_kernel,
    fetch_kernel,
    init_dir,
    load_dir,
    remove_kernel,
)
from littlevm.runner import RunConf, parse_port_forwards, start_qemu

_LOG = logging.getLogger("littlevm")

_DIR_HELP = "directory to place kernels"
_ARCH_HELP = (
    "target architecture to configure the kernel, e.g. 'amd64' or 'arm64' "
    "(default to native architecture)"
)


def _version() -> str:
    try:
        return metadata.version("littlevm")
    except metadata.PackageNotFoundError:
        return ""


def _comma_list(value: str) -> list[str]:
    return [item for item in value.split(",") if item]


def _format_duration(seconds: float) -> str:
    """Render a duration rounded to milliseconds, e.g. '12ms', '1.5s', '1m5s'."""
    ms = round(seconds * 1000)
    if ms == 0:
        return "0s"
    if ms < 1000:
        return f"{ms}ms"
    hours, rem = divmod(ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs = f"{rem // 1000}.{rem % 1000:03d}".rstrip("0").rstrip(".")
    out = ""
    if hours:
        out += f"{hours}h"
    if hours or minutes:
        out += f"{minutes}m"
    return f"{out}{secs}s"


# images


def _cmd_images_build(args: argparse.Namespace) -> int:
    images_dir = os.path.abspath(os.path.join(args.dir, "images"))
    config_fname = os.path.join(args.dir, DEFAULT_CONF_FILE)
    with open(config_fname, encoding="utf-8") as fh:
        data = json.load(fh)

    conf = ImagesConf(dir=images_dir, images=[ImgConf.from_dict(d) for d in data or []])
    forest = ImageForest(conf, False)

    bld_conf = BuildConf(
        log=_LOG,
        dry_run=args.dry_run,
        force_rebuild=args.force_rebuild,
        merge_steps=args.merge_steps,
    )
    start = time.monotonic()
    if args.image is None:
        res = build_all_images(forest, bld_conf)
    else:
        res = build_images(forest, bld_conf, args.image)
    elapsed = time.monotonic() - start

    err = res.error()
    if err is not None:
        _LOG.error("building images failed: %s", err)
    else:
        _LOG.info("images built successfully (time elapsed: %s)", _format_duration(elapsed))

    for img, ir in res.image_results.items():
        if ir.error is None:
            used = "true" if ir.cached_image_used else "false"
            print(
                f"image:{img:<10} cachedImageUsed:{used} "
                f"cachedImageDeleted:{ir.cached_image_deleted}"
            )

    if err is not None:
        raise err
    return 0


def _cmd_images_example(args: argparse.Namespace) -> int:
    confs = [conf.to_dict() for conf in example_images_conf()]
    sys.stdout.write(json.dumps(confs, indent=4))
    return 0


# kernels


def _cmd_kernels_init(args: argparse.Namespace) -> int:
    conf = Conf()
    try:
        conf.add_groups_common_opts(*args.config_groups)
    except ValueError as err:
        _LOG.warning("ignoring config groups: %s", err)
    init_dir(args.dir, conf, force=args.force, backup_conf=args.backup_conf, log=_LOG)
    return 0


def _cmd_kernels_list(args: argparse.Namespace) -> int:
    kd = load_dir(args.dir)
    for kc in kd.conf.kernels:
        print(f"{kc.name:<13} {kc.url}")
    return 0


def _cmd_kernels_add(args: argparse.Namespace) -> int:
    kconf = KernelConf(name=args.name, url=args.url)
    kconf.add_groups_opts(*args.config_groups)
    kconf.validate()

    if args.just_print_config:
        sys.stdout.write(json.dumps(kconf.to_dict(), indent=4))
        return 0

    if not args.dir:
        raise ValueError('required flag "dir" not set')
    add_kernel(
        args.dir, kconf, backup_conf=args.backup_conf, fetch=args.fetch, log=_LOG
    )
    return 0


def _cmd_kernels_remove(args: argparse.Namespace) -> int:
    remove_kernel(args.dir, args.name, backup_conf=args.backup_conf, log=_LOG)
    return 0


def _cmd_kernels_configure(args: argparse.Namespace) -> int:
    kd = load_dir(args.dir)
    kd.configure_kernel(args.name, args.arch, _LOG)
    return 0


def _cmd_kernels_raw_configure(args: argparse.Namespace) -> int:
    kd = load_dir(args.dir)
    kd.raw_configure(args.kernel_dir, args.kernel_name, args.arch, _LOG)
    return 0


def _cmd_kernels_build(args: argparse.Namespace) -> int:
    build_kernel(args.dir, args.name, fetch=False, arch=args.arch, log=_LOG)
    return 0


def _cmd_kernels_fetch(args: argparse.Namespace) -> int:
    fetch_kernel(args.dir, args.name, log=_LOG)
    return 0


# run


def _cmd_run(args: argparse.Namespace) -> int:
    try:
        forwards = parse_port_forwards(args.port or [])
    except ValueError as err:
        raise ValueError(f"Port flags: {err}") from err

    rcnf = RunConf(
        image=args.image,
        kernel_fname=args.kernel,
        qemu_print=args.qemu_cmd_print,
        disable_hardware_accel=args.disable_hardware_accel,
        daemonize=args.daemonize,
        console_log_file=args.console_log_file,
        verbose=args.verbose,
        forwarded_ports=forwards,
        host_mount=args.host_mount,
        serial_port=args.serial_port,
        cpu=args.cpu,
        mem=args.mem,
        cpu_kind=args.cpu_kind,
        root_dev=args.root_dev,
        qemu_monitor_port=args.qemu_monitor_port,
        qemu_arch=args.qemu_arch,
    )

    start = time.monotonic()
    try:
        start_qemu(rcnf)
    except Exception as err:
        print(f"Execution took {_format_duration(time.monotonic() - start)}")
        raise RuntimeError(f"Qemu exited with an error: {err}") from err
    print(f"Execution took {_format_duration(time.monotonic() - start)}")
    return 0


def _cmd_version(args: argparse.Namespace) -> int:
    print(_version())
    return 0


def _add_dir(parser: argparse.ArgumentParser, required: bool = True) -> None:
    parser.add_argument("--dir", required=required, default="", help=_DIR_HELP)


def _build_images_parser(subparsers) -> None:
    images = subparsers.add_parser("images", help="Build VM images")
    images.set_defaults(parser=images)
    sub = images.add_subparsers(title="commands")

    build = sub.add_parser("build", help="Build VM images")
    build.add_argument(
        "--dir",
        required=True,
        help="directory to keep the images (configuration will be saved in "
        "<dir>/images.json and images in <dir>/images)",
    )
    build.add_argument(
        "-i", "--image", action="append", default=None,
        help="images to build. If empty, all images will be built.",
    )
    build.add_argument(
        "--force-rebuild", action="store_true",
        help="rebuild all images, even if they exist",
    )
    build.add_argument(
        "--dry-run", action="store_true",
        help="do the whole thing, but instead of building actual images create empty files",
    )
    build.add_argument(
        "--merge-steps", action=argparse.BooleanOptionalAction, default=True,
        help="Merge steps when possible to improve performance.",
    )
    build.set_defaults(func=_cmd_images_build)

    example = sub.add_parser("example-config", help="Print an example config")
    example.set_defaults(func=_cmd_images_example)


def _build_kernels_parser(subparsers) -> None:
    kernels = subparsers.add_parser(
        "kernels", aliases=["kernel", "k"], help="build and pull kernels"
    )
    kernels.set_defaults(parser=kernels)
    sub = kernels.add_subparsers(title="commands")
    groups_help = (
        "add configuration options based on the following predefined groups: "
        + ",".join(get_config_group_names())
    )

    init = sub.add_parser("init", help="initialize a directory for the kernel builder")
    init.add_argument("--force", action="store_true", help="force init")
    init.add_argument("--backup-conf", action="store_true", help="backup configuration")
    init.add_argument(
        "--config-groups", type=_comma_list, default=list(DEFAULT_CONFIG_GROUPS),
        help=groups_help,
    )
    _add_dir(init)
    init.set_defaults(func=_cmd_kernels_init)

    lst = sub.add_parser(
        "list", help="list available kernels (by reading config file in directory)"
    )
    _add_dir(lst)
    lst.set_defaults(func=_cmd_kernels_list)

    add = sub.add_parser(
        "add",
        help="add kernel (by updating config file in directory)",
        epilog=get_examples_text(),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add.add_argument("name")
    add.add_argument("url")
    add.add_argument("--config-groups", type=_comma_list, default=[], help=groups_help)
    add.add_argument(
        "--just-print-config", action="store_true",
        help="do not actually add the kernel. Just print its config.",
    )
    add.add_argument("--fetch", action="store_true", help="fetch URL")
    add.add_argument("--backup-conf", action="store_true", help="backup configuration")
    _add_dir(add, required=False)
    add.set_defaults(func=_cmd_kernels_add)

    remove = sub.add_parser("remove", help="remove kernel")
    remove.add_argument("name")
    remove.add_argument("--backup-conf", action="store_true", help="backup configuration")
    _add_dir(remove)
    remove.set_defaults(func=_cmd_kernels_remove)

    configure = sub.add_parser("configure", help="configure kernel")
    configure.add_argument("name")
    configure.add_argument("--arch", default="", help=_ARCH_HELP)
    _add_dir(configure)
    configure.set_defaults(func=_cmd_kernels_configure)

    raw = sub.add_parser(
        "raw_configure", help="configure a kernel prepared by means other than lvh"
    )
    raw.add_argument("kernel_dir")
    raw.add_argument("kernel_name", nargs="?", default="")
    raw.add_argument("--arch", default="", help=_ARCH_HELP)
    _add_dir(raw)
    raw.set_defaults(func=_cmd_kernels_raw_configure)

    build = sub.add_parser("build", help="build kernel")
    build.add_argument("name")
    build.add_argument("--arch", default="", help=_ARCH_HELP)
    _add_dir(build)
    build.set_defaults(func=_cmd_kernels_build)

    fetch = sub.add_parser("fetch", help="fetch kernel")
    fetch.add_argument("name")
    _add_dir(fetch)
    fetch.set_defaults(func=_cmd_kernels_fetch)


def _build_run_parser(subparsers) -> None:
    run = subparsers.add_parser(
        "run", help="run/start VMs based on generated base images and kernels"
    )
    run.add_argument("--image", required=True, help="VM image file path")
    run.add_argument(
        "--kernel", default="",
        help="kernel filename to boot with (if empty no -kernel option is passed to qemu)",
    )
    run.add_argument(
        "--qemu-cmd-print", action="store_true",
        help="Do not run the qemu command, just print it",
    )
    run.add_argument(
        "--qemu-disable-kvm", "--no-hw-accel",
        dest="disable_hardware_accel", action="store_true",
        help="Do not use hardware acceleration, KVM for Linux or HVF for macOS",
    )
    run.add_argument(
        "--daemonize", action="store_true", help="daemonize QEMU after initializing"
    )
    run.add_argument(
        "--console-log-file", default="", help="Save VM console output to given file"
    )
    run.add_argument(
        "--host-mount", default="",
        help="Mount the specified host directory in the VM using a 'host_mount' tag",
    )
    run.add_argument(
        "-p", "--port", action="append", default=None,
        help="Forward a port (hostport[:vmport[:tcp|udp]])",
    )
    run.add_argument("--serial-port", type=int, default=0, help="Port for serial console")
    run.add_argument("--cpu", type=int, default=2, help="CPU count (-smp)")
    run.add_argument("--mem", default="4G", help="RAM size (-m)")
    run.add_argument("--cpu-kind", default="", help="CPU kind to use (-cpu)")
    run.add_argument(
        "--qemu-monitor-port", type=int, default=0, help="Port for QEMU monitor"
    )
    run.add_argument("--root-dev", default="vda", help="type of root device (hda or vda)")
    run.add_argument(
        "-v", "--verbose", action="store_true", help="Print qemu command before running it"
    )
    run.add_argument(
        "--qemu-arch", default=native_arch_name(), help="specify qemu arch to use"
    )
    run.set_defaults(func=_cmd_run)


def build_parser() -> argparse.ArgumentParser:
    """The argument parser for the lvh command and all its subcommands."""
    parser = argparse.ArgumentParser(
        prog="lvh", description="little-vm-helper -- helper to build and run VMs"
    )
    parser.set_defaults(parser=parser)
    subparsers = parser.add_subparsers(title="commands")
    _build_images_parser(subparsers)
    _build_kernels_parser(subparsers)
    _build_run_parser(subparsers)
    version = subparsers.add_parser("version", help="version")
    version.set_defaults(func=_cmd_version)
    return parser


def main(argv=None) -> int:
    """Run the lvh command; returns the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    func = getattr(args, "func", None)
    if func is None:
        args.parser.print_help()
        return 0
    try:
        return func(args)
    except Exception as err:
        print(f"Error: {err}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())