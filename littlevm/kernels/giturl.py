"""Kernel source URLs and the git operations that fetch and remove them.

Non-shallow URLs share one bare repository (MAIN_GIT_DIR) with a remote and a
worktree per kernel; URLs with a depth=N query are cloned on their own.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from urllib.parse import parse_qs, unquote, urlsplit

from littlevm.kernels.fsutil import (
    GIT_BINARY,
    check_environment,
    directory_exists,
)
from littlevm.logcmd import run_and_log

_LOG = logging.getLogger(__name__)

MAIN_GIT_DIR = "git"

_INT_RE = re.compile(r"[+-]?[0-9]+")


def git_local_branch(name: str) -> str:
    """Name of the local branch used for a kernel's worktree."""
    return f"lvh-{name}"


def _git(args: list[str], log) -> None:
    run_and_log([GIT_BINARY, *args], log)


def _make_git_dir(git_dir: str, log) -> None:
    os.makedirs(git_dir, mode=0o755, exist_ok=True)
    try:
        _git(["init", "--bare", git_dir], log)
    except BaseException:
        shutil.rmtree(git_dir, ignore_errors=True)
        raise


def remove_git_workdir(directory: str, name: str, log=None) -> None:
    """Remove a kernel's worktree, remote and local branch from the shared repo.

    Every removal is attempted; if any fail, a RuntimeError listing them is
    raised at the end.
    """
    log = log if log is not None else _LOG
    bare_dir = os.path.join(directory, MAIN_GIT_DIR)
    attempts = [
        (["worktree", "remove", name], "did not remove worktree"),
        (["remote", "remove", name], "did not remove remote"),
        (
            ["branch", "--delete", "--force", git_local_branch(name)],
            "did not remove local branch",
        ),
    ]
    problems = []
    for args, what in attempts:
        try:
            _git(["--git-dir", bare_dir, *args], log)
        except (subprocess.CalledProcessError, OSError) as err:
            problems.append(f"{what}: {err}")
    if problems:
        raise RuntimeError("\n".join(problems))


@dataclass
class GitURL:
    """A git repository and branch holding kernel sources."""

    repo: str
    branch: str = "master"
    shallow_depth: int = -1

    def __post_init__(self) -> None:
        if not self.branch:
            self.branch = "master"

    @property
    def shallow(self) -> bool:
        return self.shallow_depth != -1

    def fetch(self, directory: str, name: str, log=None) -> None:
        """Fetch the sources into directory/name, creating or updating it."""
        log = log if log is not None else _LOG
        check_environment()

        if name == MAIN_GIT_DIR:
            raise ValueError(f"id `{name}` is not allowed. Please use another.")

        git_dir = os.path.join(directory, MAIN_GIT_DIR)
        id_dir = os.path.join(directory, name)

        if self.shallow:
            if directory_exists(id_dir):
                _git(["-C", id_dir, "fetch"], log)
            else:
                _git(
                    [
                        "clone",
                        "--depth", str(self.shallow_depth),
                        "--branch", self.branch,
                        self.repo,
                        id_dir,
                    ],
                    log,
                )
            return

        if directory_exists(id_dir):
            _git(["-C", id_dir, "pull"], log)
            return

        if not directory_exists(git_dir):
            _make_git_dir(git_dir, log)

        _git(
            [
                "--git-dir", git_dir,
                "remote", "add",
                "-f", "-t", self.branch, name, self.repo,
            ],
            log,
        )
        _git(
            [
                "--git-dir", git_dir,
                "worktree", "add",
                "-b", git_local_branch(name),
                "--track",
                id_dir,
                f"{name}/{self.branch}",
            ],
            log,
        )

    def remove(self, directory: str, name: str, log=None) -> None:
        """Remove the sources fetched into directory/name."""
        log = log if log is not None else _LOG
        if self.shallow:
            id_dir = os.path.join(directory, name)
            if os.path.lexists(id_dir):
                shutil.rmtree(id_dir)
            return
        try:
            remove_git_workdir(directory, name, log)
        except RuntimeError as err:
            log.warning("remove work dir encountered errors: %s", err)
            raise


def _git_url_from_parts(parts) -> GitURL:
    host = parts.netloc.rpartition("@")[2]
    repo = f"{parts.scheme}://{host}{unquote(parts.path)}"
    url = GitURL(repo=repo, branch=unquote(parts.fragment))

    query = parse_qs(parts.query, keep_blank_values=True)
    if "depth" in query:
        values = query["depth"]
        if len(values) != 1:
            raise ValueError(f"invalid depth value: `[{' '.join(values)}]`")
        value = values[0]
        if not _INT_RE.fullmatch(value) or int(value) < 0:
            raise ValueError(f"invalid depth value: `{value}`")
        url.shallow_depth = int(value)
    return url


def parse_url(url: str) -> GitURL:
    """Parse a kernel source URL; git:// and https:// are supported."""
    parts = urlsplit(url)
    if parts.scheme in ("git", "https"):
        return _git_url_from_parts(parts)
    if parts.scheme == "http":
        raise ValueError(f"{parts.scheme} support coming soon!")
    raise ValueError(f"Unsupported URL: '{url}'")