import logging
import subprocess

import pytest

from littlevm.kernels.fsutil import directory_exists, regular_file_exists
from littlevm.kernels.giturl import (
    MAIN_GIT_DIR,
    GitURL,
    git_local_branch,
    parse_url,
    remove_git_workdir,
)

LOG = logging.getLogger("test_giturl")


@pytest.mark.parametrize(
    "url, expected",
    [
        (
            "git://git.kernel.org/pub/scm/linux/kernel/git/bpf/bpf-next.git",
            GitURL(
                repo="git://git.kernel.org/pub/scm/linux/kernel/git/bpf/bpf-next.git",
                branch="master",
                shallow_depth=-1,
            ),
        ),
        (
            "git://git.kernel.org/pub/scm/linux/kernel/git/stable/linux.git#linux-5.18.y",
            GitURL(
                repo="git://git.kernel.org/pub/scm/linux/kernel/git/stable/linux.git",
                branch="linux-5.18.y",
                shallow_depth=-1,
            ),
        ),
        (
            "git://git.kernel.org/pub/scm/linux/kernel/git/stable/linux.git?depth=1#linux-5.15.y",
            GitURL(
                repo="git://git.kernel.org/pub/scm/linux/kernel/git/stable/linux.git",
                branch="linux-5.15.y",
                shallow_depth=1,
            ),
        ),
    ],
)
def test_url_examples(url, expected):
    assert parse_url(url) == expected


def test_https_url():
    assert parse_url("https://example.com/linux.git#v6") == GitURL(
        "https://example.com/linux.git", "v6", -1
    )


def test_http_not_supported():
    with pytest.raises(ValueError, match="http support coming soon"):
        parse_url("http://example.com/linux.tgz")


def test_unsupported_scheme():
    with pytest.raises(ValueError, match="Unsupported URL"):
        parse_url("ftp://example.com/linux.git")


@pytest.mark.parametrize("query", ["depth=-1", "depth=abc", "depth=1&depth=2"])
def test_invalid_depth(query):
    with pytest.raises(ValueError, match="invalid depth value"):
        parse_url(f"git://example.com/linux.git?{query}")


def test_empty_branch_defaults_to_master():
    assert GitURL("/some/repo", "").branch == "master"


def test_git_local_branch():
    assert git_local_branch("bpf-next") == "lvh-bpf-next"


def test_fetch_rejects_main_git_dir_name(tmp_path):
    with pytest.raises(ValueError, match="not allowed"):
        GitURL(str(tmp_path)).fetch(str(tmp_path), MAIN_GIT_DIR, LOG)


def _git(*args, cwd):
    subprocess.run(
        [
            "git",
            "-c", "user.name=test",
            "-c", "user.email=test@example.com",
            "-c", "commit.gpgsign=false",
            *args,
        ],
        cwd=cwd,
        check=True,
        capture_output=True,
    )


def _add_file(repo, name):
    (repo / name).write_text(name)
    _git("add", name, cwd=repo)
    _git("commit", "-m", f"add {name}", cwd=repo)


@pytest.fixture
def git_repo(tmp_path):
    """master holds file1; branch holds file1 and file2."""
    repo = tmp_path / "repo"
    repo.mkdir()
    _git("init", cwd=repo)
    _git("symbolic-ref", "HEAD", "refs/heads/master", cwd=repo)
    _add_file(repo, "file1")
    _git("checkout", "-b", "branch", cwd=repo)
    _add_file(repo, "file2")
    return repo


def test_git_fetch(tmp_path, git_repo):
    work = tmp_path / "work"
    work.mkdir()
    dir_ = str(work)

    gu1 = GitURL(str(git_repo), "")
    gu1.fetch(dir_, "src1", LOG)
    assert regular_file_exists(work / "src1" / "file1") is True
    assert regular_file_exists(work / "src1" / "file2") is False

    gu2 = GitURL(str(git_repo), "branch")
    gu2.fetch(dir_, "src2", LOG)
    assert regular_file_exists(work / "src2" / "file1") is True
    assert regular_file_exists(work / "src2" / "file2") is True

    gu1.fetch(dir_, "src1", LOG)
    assert regular_file_exists(work / "src1" / "file1") is True
    assert regular_file_exists(work / "src1" / "file2") is False
    assert regular_file_exists(work / "src1" / "file3") is False

    _git("checkout", "master", cwd=git_repo)
    _add_file(git_repo, "file3")
    gu1.fetch(dir_, "src1", LOG)
    assert regular_file_exists(work / "src1" / "file1") is True
    assert regular_file_exists(work / "src1" / "file2") is False
    assert regular_file_exists(work / "src1" / "file3") is True

    remove_git_workdir(dir_, "src1", LOG)
    assert directory_exists(work / "src1") is False
    assert directory_exists(work / "src2") is True


def test_shallow_fetch_and_remove(tmp_path, git_repo):
    work = tmp_path / "work"
    work.mkdir()
    gu = GitURL(f"file://{git_repo}", "branch", shallow_depth=1)
    gu.fetch(str(work), "shallow", LOG)
    assert regular_file_exists(work / "shallow" / "file2") is True
    assert directory_exists(work / MAIN_GIT_DIR) is False

    gu.remove(str(work), "shallow", LOG)
    assert directory_exists(work / "shallow") is False