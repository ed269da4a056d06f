"""Creating image files: root images from scratch, derived images from parents."""

from __future__ import annotations

import logging
import os
import tempfile

from littlevm.arch import native_arch_name, new_arch
from littlevm.images.actions import StepConf
from littlevm.images.imgconf import (
    DEFAULT_IMAGE_SIZE,
    GUESTFISH,
    MMDEBSTRAP,
    QEMU_IMG,
    VIRT_CUSTOMIZE,
    image_format_from_fname,
)
from littlevm.logcmd import run_and_log
from littlevm.step import Result, Step

_LOG = logging.getLogger("littlevm.images")

ROOT_DEV = "/dev/vda"
ROOT_FS_TYPE = "ext4"
RESIZE_FS = "resize2fs"

EXTLINUX_CONF = f"""
default linux
timeout 0

label linux
kernel /vmlinuz
append initrd=initrd.img root={ROOT_DEV} rw console=ttyS0
"""

# Root images are bootstrapped with mmdebstrap into a tarball, which guestfish
# unpacks into a fresh disk; derived images are copies of their parent that
# virt-customize then modifies.


def resize_image(img_fname: str, size: str, log=None) -> None:
    """Grow an image file to size and resize its root filesystem to match."""
    log = log if log is not None else _LOG
    run_and_log([QEMU_IMG, "resize", img_fname, size], log)
    run_and_log(
        [GUESTFISH, "-a", img_fname, "--", "run", ":", RESIZE_FS, ROOT_DEV], log
    )


class CreateImage(Step):
    """A step that creates the image file described by its configuration."""

    def __init__(self, conf: StepConf) -> None:
        self.conf = conf

    def _require_img_conf(self):
        if self.conf is None or self.conf.img_conf is None:
            raise ValueError("step configuration or image configuration is missing")
        return self.conf.img_conf

    def _make_root_image(self) -> None:
        img_conf = self._require_img_conf()
        log = self.conf.log
        images_dir = self.conf.images_dir
        img_fname = os.path.join(images_dir, img_conf.name)
        tar_fname = os.path.join(images_dir, f"{img_conf.name}.tar")

        bootable = new_arch(native_arch_name()).bootable(img_conf.bootable)
        packages = (["linux-image-amd64"] if bootable else []) + list(img_conf.packages)

        run_and_log(
            [MMDEBSTRAP, "sid", "--include", ",".join(packages), tar_fname], log
        )
        try:
            self._fill_root_image(img_fname, tar_fname, bootable)
        finally:
            try:
                os.remove(tar_fname)
            except OSError as err:
                log.info("failed to remove tarfile: %s", err)

        if image_format_from_fname(img_fname) == "qcow2":
            tmp_image = f"{img_fname}.img"
            os.rename(img_fname, tmp_image)
            try:
                run_and_log(
                    [QEMU_IMG, "convert", "-f", "raw", "-O", "qcow2", tmp_image, img_fname],
                    log,
                )
            finally:
                try:
                    os.remove(tmp_image)
                except OSError:
                    pass

    def _fill_root_image(self, img_fname: str, tar_fname: str, bootable: bool) -> None:
        img_conf = self.conf.img_conf
        log = self.conf.log
        size = img_conf.image_size or DEFAULT_IMAGE_SIZE
        disk = ["-N", f"{img_fname}=disk:{size}", "--"]

        if not bootable:
            run_and_log(
                [
                    GUESTFISH, *disk,
                    "mkfs", ROOT_FS_TYPE, ROOT_DEV,
                    ":",
                    "mount", ROOT_DEV, "/",
                    ":",
                    "tar-in", tar_fname, "/",
                ],
                log,
            )
            return

        with tempfile.TemporaryDirectory(prefix="extlinux-") as tmp_dir:
            conf_fname = os.path.join(tmp_dir, "extlinux.conf")
            with open(conf_fname, "w", encoding="utf-8") as fh:
                fh.write(EXTLINUX_CONF)
            run_and_log(
                [
                    GUESTFISH, *disk,
                    "part-disk", ROOT_DEV, "mbr",
                    ":",
                    "part-set-bootable", ROOT_DEV, "1", "true",
                    ":",
                    "mkfs", ROOT_FS_TYPE, ROOT_DEV,
                    ":",
                    "mount", ROOT_DEV, "/",
                    ":",
                    "tar-in", tar_fname, "/",
                    ":",
                    "extlinux", "/",
                    ":",
                    "copy-in", conf_fname, "/",
                ],
                log,
            )

    def _make_derived_image(self) -> None:
        img_conf = self._require_img_conf()
        log = self.conf.log
        par_fname = os.path.join(self.conf.images_dir, img_conf.parent)
        img_fname = os.path.join(self.conf.images_dir, img_conf.name)

        run_and_log(
            [
                QEMU_IMG, "convert",
                "-f", image_format_from_fname(par_fname),
                "-O", image_format_from_fname(img_fname),
                par_fname, img_fname,
            ],
            log,
        )

        # the parent's size is not always known, so resize whenever a size is given
        if img_conf.image_size:
            resize_image(img_fname, img_conf.image_size, log)

        if img_conf.packages:
            run_and_log(
                [VIRT_CUSTOMIZE, "-a", img_fname, "--install", ",".join(img_conf.packages)],
                log,
            )

    def do(self) -> Result:
        img_conf = self._require_img_conf()
        try:
            if img_conf.parent:
                self._make_derived_image()
            else:
                self._make_root_image()
        except Exception as err:
            self.conf.log.error("error building image %s: %s", img_conf.name, err)
            raise
        return Result.CONTINUE

    def cleanup(self) -> None:
        pass