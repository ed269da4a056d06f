"""Image build actions, their JSON form, and the steps they turn into."""

from __future__ import annotations

import abc
import logging
import os
from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, ClassVar

from littlevm.kernels.fsutil import find_kernel
from littlevm.logcmd import run_and_log
from littlevm.step import Result, Step

if TYPE_CHECKING:
    from littlevm.images.imgconf import ImgConf

_LOG = logging.getLogger("littlevm.images")

_VIRT_CUSTOMIZE = "virt-customize"

_ACTION_OPS: dict[str, type[ActionOp]] = {}


def _get_ci(data: dict[str, Any], key: str, default: Any = None) -> Any:
    """Look up key exactly, falling back to a case-insensitive match."""
    if key in data:
        return data[key]
    lowered = key.lower()
    for name, value in data.items():
        if name.lower() == lowered:
            return value
    return default


@dataclass(eq=False)
class StepConf:
    """Configuration shared by the steps that build one image."""

    images_dir: str = ""
    img_conf: ImgConf | None = None
    log: logging.Logger | logging.LoggerAdapter = field(default=_LOG)


@dataclass(eq=False)
class VirtCustomizeStep(Step):
    """A step that runs virt-customize on the image with the given arguments."""

    conf: StepConf
    args: list[str] = field(default_factory=list)

    def do(self) -> Result:
        img_conf = self.conf.img_conf
        img_fname = os.path.join(self.conf.images_dir, img_conf.name)
        try:
            run_and_log([_VIRT_CUSTOMIZE, "-a", img_fname, *self.args], self.conf.log)
        except Exception as err:
            self.conf.log.error(
                "error executing command for image %s: %s", img_conf.name, err
            )
            raise
        return Result.CONTINUE

    def cleanup(self) -> None:
        pass

    def merge(self, other: Step) -> None:
        """Append another virt-customize step's arguments to this one."""
        if not isinstance(other, VirtCustomizeStep):
            raise TypeError(
                f"type {type(other).__name__} cannot be merged to a VirtCustomizeStep"
            )
        if other.conf is not self.conf:
            raise ValueError(
                "actions with different step configurations cannot be merged "
                f"({self.conf!r} vs {other.conf!r})"
            )
        self.args.extend(other.args)


class ChdirStep(Step):
    """A step that changes the working directory, restoring it on cleanup."""

    def __init__(self, conf: StepConf, directory: str) -> None:
        self.conf = conf
        self.directory = directory
        self._old_dir: str | None = None

    def do(self) -> Result:
        log = self.conf.log
        try:
            self._old_dir = os.getcwd()
        except OSError as err:
            log.warning("failed to get current directory: %s", err)
            raise
        try:
            os.chdir(self.directory)
        except OSError as err:
            log.warning("failed to change directory: %s", err)
            raise
        log.info("set current working dir to '%s'", self.directory)
        return Result.CONTINUE

    def cleanup(self) -> None:
        if self._old_dir is None:
            return
        try:
            os.chdir(self._old_dir)
        except OSError as err:
            self.conf.log.warning("failed to change to old directory: %s", err)


def merge_steps(step1: Step, step2: Step) -> None:
    """Merge step2 into step1, raising if that is not possible."""
    merge = getattr(step1, "merge", None)
    if merge is None:
        raise TypeError(f"step1 ({step1!r}) not mergable")
    merge(step2)


def _json_field(key: str) -> Any:
    return field(default="", metadata={"json": key})


class ActionOp(abc.ABC):
    """An operation applied to an image while building it."""

    op_name: ClassVar[str] = ""

    def __init_subclass__(cls, op_name: str | None = None, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if op_name is not None:
            cls.op_name = op_name
            _ACTION_OPS[op_name] = cls

    @abc.abstractmethod
    def to_steps(self, conf: StepConf) -> list[Step]:
        """The build steps that carry out this operation."""

    def _to_json(self) -> dict[str, Any]:
        return {f.metadata["json"]: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def _from_json(cls, data: dict[str, Any]) -> ActionOp:
        data = data or {}
        kwargs = {f.name: _get_ci(data, f.metadata["json"], "") for f in fields(cls)}
        return cls(**kwargs)


def _virt_customize(conf: StepConf, *args: str) -> list[Step]:
    return [VirtCustomizeStep(conf, list(args))]


@dataclass
class RunCommand(ActionOp, op_name="run-command"):
    """Run a shell command inside the image."""

    cmd: str = _json_field("Cmd")

    def to_steps(self, conf: StepConf) -> list[Step]:
        return _virt_customize(conf, "--run-command", self.cmd)


@dataclass
class CopyInCommand(ActionOp, op_name="copy-in"):
    """Copy local files into a directory of the image, recursively."""

    local_path: str = _json_field("LocalPath")
    remote_dir: str = _json_field("RemoteDir")

    def to_steps(self, conf: StepConf) -> list[Step]:
        return _virt_customize(conf, "--copy-in", f"{self.local_path}:{self.remote_dir}")


@dataclass
class SetHostnameCommand(ActionOp, op_name="set-hostname"):
    """Set the hostname of the image."""

    hostname: str = _json_field("Hostname")

    def to_steps(self, conf: StepConf) -> list[Step]:
        return _virt_customize(conf, "--hostname", self.hostname)


@dataclass
class MkdirCommand(ActionOp, op_name="mkdir"):
    """Create a directory in the image."""

    dir: str = _json_field("Dir")

    def to_steps(self, conf: StepConf) -> list[Step]:
        return _virt_customize(conf, "--mkdir", self.dir)


@dataclass
class UploadCommand(ActionOp, op_name="upload"):
    """Copy a file into the image."""

    file: str = _json_field("File")
    dest: str = _json_field("Dest")

    def to_steps(self, conf: StepConf) -> list[Step]:
        return _virt_customize(conf, "--upload", f"{self.file}:{self.dest}")


@dataclass
class ChmodCommand(ActionOp, op_name="chmod"):
    """Change permissions of a file in the image."""

    permissions: str = _json_field("Permissions")
    file: str = _json_field("File")

    def to_steps(self, conf: StepConf) -> list[Step]:
        return _virt_customize(conf, "--chmod", f"{self.permissions}:{self.file}")


@dataclass
class AppendLineCommand(ActionOp, op_name="append-line"):
    """Append a line to a file in the image."""

    file: str = _json_field("File")
    line: str = _json_field("Line")

    def to_steps(self, conf: StepConf) -> list[Step]:
        return _virt_customize(conf, "--append-line", f"{self.file}:{self.line}")


@dataclass
class LinkCommand(ActionOp, op_name="link"):
    """Create a symbolic link in the image."""

    target: str = _json_field("Target")
    link: str = _json_field("Link")

    def to_steps(self, conf: StepConf) -> list[Step]:
        return _virt_customize(conf, "--link", f"{self.target}:{self.link}")


@dataclass
class InstallKernelCommand(ActionOp, op_name="install-kernel"):
    """Install a built kernel (boot files and modules) into the image."""

    kernel_install_dir: str = _json_field("KernelInstallDir")

    def to_steps(self, conf: StepConf) -> list[Step]:
        install_dir = self.kernel_install_dir
        # relative install dirs are taken relative to the images' parent dir
        if not os.path.isabs(install_dir):
            try:
                install_dir = os.path.abspath(
                    os.path.join(conf.images_dir, "..", self.kernel_install_dir)
                )
            except OSError:
                install_dir = self.kernel_install_dir
        kernel = find_kernel(install_dir)
        kernel_path = os.path.join("/", kernel)
        return [
            VirtCustomizeStep(conf, ["--copy-in", f"{install_dir}/boot:/"]),
            VirtCustomizeStep(conf, ["--copy-in", f"{install_dir}/lib/modules:/lib/"]),
            VirtCustomizeStep(conf, ["--link", f"{kernel_path}:/vmlinuz"]),
        ]


@dataclass
class Action:
    """An operation on an image, with a comment describing it."""

    op: ActionOp
    comment: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "comment": self.comment,
            "op": self.op._to_json(),
            "type": self.op.op_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Action:
        op_type = _get_ci(data, "type", "")
        try:
            op_cls = _ACTION_OPS[op_type]
        except KeyError:
            raise ValueError(f"unknown op type '{op_type}'") from None
        return cls(
            op=op_cls._from_json(_get_ci(data, "op", {})),
            comment=_get_ci(data, "comment", "") or "",
        )