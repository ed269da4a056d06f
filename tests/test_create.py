import logging
import os
import subprocess

import pytest

from littlevm.images.actions import StepConf
from littlevm.images.create import CreateImage, resize_image
from littlevm.images.imgconf import ImgConf
from littlevm.step import Result

LOG = logging.getLogger("test_create")


@pytest.fixture
def tools(tmp_path, monkeypatch):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    log_file = tmp_path / "calls.log"
    monkeypatch.setenv("FAKE_TOOL_LOG", str(log_file))
    monkeypatch.setenv("PATH", str(bin_dir) + os.pathsep + os.environ.get("PATH", ""))

    def install(*names, code=0):
        for name in names:
            path = bin_dir / name
            path.write_text(
                "#!/bin/sh\n"
                'echo "$(basename "$0") $*" >> "$FAKE_TOOL_LOG"\n'
                f"exit {code}\n"
            )
            path.chmod(0o755)

    def calls():
        if not log_file.exists():
            return []
        return log_file.read_text().splitlines()

    install.calls = calls
    return install


def _step(images_dir, img):
    return CreateImage(StepConf(images_dir=str(images_dir), img_conf=img, log=LOG))


def test_derived_image_converts_and_installs(tools, tmp_path):
    tools("qemu-img", "virt-customize")
    img = ImgConf(name="child.qcow2", parent="base.img", packages=["a", "b"])
    assert _step(tmp_path, img).do() is Result.CONTINUE
    par = tmp_path / "base.img"
    child = tmp_path / "child.qcow2"
    assert tools.calls() == [
        f"qemu-img convert -f raw -O qcow2 {par} {child}",
        f"virt-customize -a {child} --install a,b",
    ]


def test_derived_image_without_packages_only_converts(tools, tmp_path):
    tools("qemu-img", "virt-customize")
    img = ImgConf(name="child", parent="base")
    assert _step(tmp_path, img).do() is Result.CONTINUE
    calls = tools.calls()
    assert len(calls) == 1
    assert calls[0].startswith("qemu-img convert")


def test_derived_image_with_size_resizes(tools, tmp_path):
    tools("qemu-img", "guestfish")
    img = ImgConf(name="child", parent="base", image_size="10G")
    _step(tmp_path, img).do()
    child = tmp_path / "child"
    assert tools.calls()[1:] == [
        f"qemu-img resize {child} 10G",
        f"guestfish -a {child} -- run : resize2fs /dev/vda",
    ]


def test_resize_image_filesystem_failure(tools, tmp_path):
    tools("qemu-img")
    tools("guestfish", code=1)
    with pytest.raises(subprocess.CalledProcessError):
        resize_image("disk.img", "20G", LOG)
    assert tools.calls() == [
        "qemu-img resize disk.img 20G",
        "guestfish -a disk.img -- run : resize2fs /dev/vda",
    ]


def test_root_image_not_bootable(tools, tmp_path):
    tools("mmdebstrap", "guestfish")
    img = ImgConf(name="base", bootable=False, packages=["less", "vim"])
    _step(tmp_path, img).do()
    base = tmp_path / "base"
    tar = tmp_path / "base.tar"
    assert tools.calls() == [
        f"mmdebstrap sid --include less,vim {tar}",
        f"guestfish -N {base}=disk:8G -- mkfs ext4 /dev/vda : mount /dev/vda / : tar-in {tar} /",
    ]


def test_root_image_bootable_adds_kernel_and_extlinux(tools, tmp_path):
    tools("mmdebstrap", "guestfish")
    img = ImgConf(name="base", bootable=True, packages=["vim"], image_size="4G")
    _step(tmp_path, img).do()
    calls = tools.calls()
    assert calls[0] == f"mmdebstrap sid --include linux-image-amd64,vim {tmp_path / 'base.tar'}"
    assert calls[1].startswith(f"guestfish -N {tmp_path / 'base'}=disk:4G -- part-disk /dev/vda mbr")
    assert ": extlinux / :" in calls[1]


def test_tool_failure_raises(tools, tmp_path):
    tools("qemu-img", code=1)
    img = ImgConf(name="child", parent="base", packages=["x"])
    with pytest.raises(subprocess.CalledProcessError):
        _step(tmp_path, img).do()


def test_missing_image_conf_raises(tmp_path):
    with pytest.raises(ValueError):
        _step(tmp_path, None).do()