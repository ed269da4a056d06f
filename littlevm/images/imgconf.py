"""Image configuration, defaults and the example configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from littlevm.images.actions import Action, RunCommand

MMDEBSTRAP = "mmdebstrap"
QEMU_IMG = "qemu-img"
VIRT_CUSTOMIZE = "virt-customize"
GUESTFISH = "guestfish"

BINARIES = [MMDEBSTRAP, QEMU_IMG, VIRT_CUSTOMIZE, GUESTFISH]

DEFAULT_CONF_FILE = "images.json"
DEFAULT_IMAGE_SIZE = "8G"


@dataclass
class ImgConf:
    """Configuration of a single image."""

    name: str
    parent: str = ""
    image_size: str = ""
    bootable: bool | None = None
    packages: list[str] = field(default_factory=list)
    actions: list[Action] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name}
        if self.parent:
            data["parent"] = self.parent
        if self.image_size:
            data["image_size"] = self.image_size
        if self.bootable is not None:
            data["bootable"] = self.bootable
        data["packages"] = list(self.packages)
        if self.actions:
            data["actions"] = [action.to_dict() for action in self.actions]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImgConf:
        return cls(
            name=data.get("name", ""),
            parent=data.get("parent") or "",
            image_size=data.get("image_size") or "",
            bootable=data.get("bootable"),
            packages=list(data.get("packages") or []),
            actions=[Action.from_dict(a) for a in data.get("actions") or []],
        )


@dataclass
class ImagesConf:
    """Configuration of a set of images kept in one directory."""

    dir: str
    images: list[ImgConf] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"Dir": self.dir, "Images": [img.to_dict() for img in self.images]}


def example_images_conf() -> list[ImgConf]:
    """A small example configuration: a base image and a derived one."""
    return [
        ImgConf(
            name="base.img",
            packages=["less", "vim", "sudo", "openssh-server", "curl"],
            actions=[
                Action(
                    op=RunCommand(cmd="passwd -d root"),
                    comment="disable password for root",
                )
            ],
        ),
        ImgConf(name="k8s.qcow2", parent="base.img", packages=["docker.io"]),
    ]


def image_format_from_fname(fname: str) -> str:
    """The qemu image format implied by a file name's extension."""
    base = fname.rsplit("/", 1)[-1]
    dot = base.rfind(".")
    ext = base[dot:] if dot >= 0 else ""
    return "qcow2" if ext == ".qcow2" else "raw"