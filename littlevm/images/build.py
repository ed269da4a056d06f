"""Building images of a forest, reusing cached image files where possible."""

from __future__ import annotations

import logging
import os
import stat
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from littlevm.images.actions import ChdirStep, StepConf, merge_steps
from littlevm.images.create import CreateImage
from littlevm.images.forest import ImageForest
from littlevm.step import Step, do_steps

_LOG = logging.getLogger("littlevm.images")


class BuildError(Exception):
    """Summary of the failures of a set of image builds."""


@dataclass
class BuildConf:
    """How a set of images is built."""

    log: logging.Logger | logging.LoggerAdapter = field(default=_LOG)
    # create empty files instead of building real images
    dry_run: bool = False
    # build images even if they already exist
    force_rebuild: bool = False
    # merge consecutive build steps where possible
    merge_steps: bool = False


@dataclass
class BuildImageResult:
    """Result of building one image."""

    error: Exception | None = None
    cached_image_used: bool = False
    # non-empty when a cached image file was deleted; says why
    cached_image_deleted: str = ""


@dataclass
class BuilderResult:
    """Result of building a set of images."""

    failure: Exception | None = None
    image_results: dict[str, BuildImageResult] = field(default_factory=dict)

    def error(self) -> Exception | None:
        """A summary error, or None if nothing failed."""
        failed = [
            f"{image}: {res.error}"
            for image, res in self.image_results.items()
            if res.error is not None
        ]
        if not failed:
            return self.failure
        summary = "images errors:" + "; ".join(failed)
        if self.failure is None:
            return BuildError(summary)
        err = BuildError(f"builder error:{self.failure} {summary}")
        err.__cause__ = self.failure
        return err

    def check(self) -> None:
        """Raise the summary error if anything failed."""
        err = self.error()
        if err is not None:
            raise err


def _build_dry_run(forest: ImageForest, image: str) -> None:
    forest.config(image)
    with open(os.path.join(forest.images_dir, image), "w", encoding="utf-8"):
        pass


def _build_real(forest: ImageForest, image: str, log, merge: bool) -> None:
    img_conf = forest.config(image)
    step_conf = StepConf(images_dir=forest.images_dir, img_conf=img_conf, log=log)

    base_dir, last = os.path.split(forest.images_dir)
    if base_dir and not base_dir.endswith(os.sep):
        base_dir += os.sep
    steps: list[Step] = [CreateImage(step_conf), ChdirStep(step_conf, base_dir)]

    # after changing directory, a relative images dir must be re-rooted
    if not os.path.isabs(step_conf.images_dir):
        step_conf = StepConf(images_dir=last, img_conf=img_conf, log=log)

    for action in img_conf.actions:
        try:
            next_steps = action.op.to_steps(step_conf)
        except Exception as err:
            raise RuntimeError(
                f"action {action.comment} ('{type(action.op).__name__}') failed: {err}"
            ) from err
        for nxt in next_steps:
            if merge:
                try:
                    merge_steps(steps[-1], nxt)
                    continue
                except (TypeError, ValueError):
                    pass
            steps.append(nxt)

    try:
        do_steps(steps)
    except Exception:
        log.warning(
            "image file '%s' not deleted so that it can be inspected",
            os.path.join(forest.images_dir, image),
        )
        raise


class _BuildState:
    def __init__(self, forest: ImageForest, conf: BuildConf) -> None:
        self.forest = forest
        self.conf = conf
        self.result = BuilderResult()

    def build(self, image: str) -> BuildImageResult:
        res = self._do_build(image)
        self.result.image_results[image] = res
        return res

    def _skip_rebuild(self, image: str) -> BuildImageResult:
        try:
            fname = self.forest.image_filename(image)
        except LookupError as err:
            return BuildImageResult(error=err)

        try:
            st = os.stat(fname)
        except OSError:
            return BuildImageResult()

        if not stat.S_ISREG(st.st_mode):
            return BuildImageResult(
                error=OSError(f"'{fname}' is not a regular file. Bailing out.")
            )

        if self.conf.force_rebuild:
            _remove_quietly(fname)
            return BuildImageResult(
                cached_image_deleted=f"image '{fname}' was deleted because a rebuild was forced"
            )

        if not self.conf.dry_run and st.st_size == 0:
            _remove_quietly(fname)
            return BuildImageResult(
                cached_image_deleted=f"image '{fname}' was an empty file, and this was not a dry run"
            )

        parent = self.forest.parent(image)
        if parent:
            parent_res = self.result.image_results.get(parent)
            if parent_res is None or not parent_res.cached_image_used:
                _remove_quietly(fname)
                return BuildImageResult(
                    cached_image_deleted=(
                        f"image '{fname}' existed, but parent '{parent}' did not use the cache"
                    )
                )

        return BuildImageResult(cached_image_used=True)

    def _do_build(self, image: str) -> BuildImageResult:
        res = self._skip_rebuild(image)
        if res.error is not None or res.cached_image_used:
            return res
        try:
            if self.conf.dry_run:
                _build_dry_run(self.forest, image)
            else:
                _build_real(self.forest, image, self.conf.log, self.conf.merge_steps)
        except Exception as err:
            res.error = err
        return res


def _remove_quietly(fname: str) -> None:
    try:
        os.remove(fname)
    except OSError:
        pass


def build_image(forest: ImageForest, conf: BuildConf, image: str) -> BuilderResult:
    """Build an image after its dependencies, stopping at the first failure.

    Raises LookupError if the image is not in the forest.
    """
    deps = forest.dependencies(image)
    state = _BuildState(forest, conf)
    images = [*deps, image]
    for name in images:
        res = state.build(name)
        if res.error is None:
            conf.log.info(
                "image %s built successfully (all deps: %s, result: %s)", name, images, res
            )
        else:
            conf.log.warning(
                "image %s build failed (all deps: %s, result: %s)", name, images, res
            )
            break
    return state.result


def build_images(
    forest: ImageForest, conf: BuildConf, queue: Iterable[str]
) -> BuilderResult:
    """Build the queued images, then the children of each one that succeeds."""
    state = _BuildState(forest, conf)
    pending = deque(queue)
    conf.log.info("starting to build images: %s", ",".join(pending))
    while pending:
        image = pending.popleft()
        res = state.build(image)
        if res.error is None:
            pending.extend(forest.children(image))
            conf.log.info(
                "image %s built successfully (queue: %s, result: %s)",
                image, ",".join(pending), res,
            )
        else:
            conf.log.warning(
                "image %s build failed (queue: %s, result: %s)",
                image, ",".join(pending), res,
            )
    return state.result


def build_all_images(forest: ImageForest, conf: BuildConf) -> BuilderResult:
    """Build every image in the forest, starting from the roots."""
    return build_images(forest, conf, forest.root_images())