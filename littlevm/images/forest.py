"""A set of image configurations arranged as a forest of parent/child trees."""

from __future__ import annotations

import json
import os

from littlevm.images.imgconf import DEFAULT_CONF_FILE, ImagesConf, ImgConf


class ImageForest:
    """Images and their parent/child relations.

    An image whose parent is not part of the configuration is treated as a
    root, so images can be derived from images built elsewhere.
    """

    def __init__(self, conf: ImagesConf, save_conf_file: bool = False) -> None:
        confs: dict[str, ImgConf] = {}
        for img in conf.images:
            if img.name in confs:
                raise ValueError(f"duplicate image name: {img.name}")
            confs[img.name] = img

        children: dict[str, list[str]] = {}
        for img in conf.images:
            if img.parent and img.parent in confs:
                children.setdefault(img.parent, []).append(img.name)

        os.makedirs(conf.dir, mode=0o755, exist_ok=True)

        if save_conf_file:
            text = json.dumps(conf.to_dict())
            try:
                with open(
                    os.path.join(conf.dir, DEFAULT_CONF_FILE), "w", encoding="utf-8"
                ) as fh:
                    fh.write(text)
            except OSError as err:
                raise OSError(f"error writing configuration: {err}") from err

        self.images_dir = conf.dir
        self._confs = confs
        self._children = children

    def config(self, image: str) -> ImgConf:
        """The configuration of an image; LookupError if unknown."""
        try:
            return self._confs[image]
        except KeyError:
            raise LookupError(f"no configuration for image '{image}'") from None

    def image_filename(self, image: str) -> str:
        """Path of the image file; LookupError if the image is unknown."""
        self.config(image)
        return os.path.join(self.images_dir, image)

    def children(self, image: str) -> list[str]:
        """Images built directly from this one."""
        return list(self._children.get(image, []))

    def _is_root(self, conf: ImgConf) -> bool:
        return not conf.parent or conf.parent not in self._children

    def parent(self, image: str) -> str:
        """The parent image within the forest, or '' for a root image."""
        conf = self.config(image)
        return "" if self._is_root(conf) else conf.parent

    def is_leaf_image(self, image: str) -> bool:
        return image not in self._children

    def leaf_images(self) -> list[str]:
        """Images that no other image is built from."""
        return [name for name in self._confs if self.is_leaf_image(name)]

    def is_root_image(self, image: str) -> bool:
        try:
            conf = self._confs[image]
        except KeyError:
            raise LookupError(f"image `{image}` does not exist in forest") from None
        return self._is_root(conf)

    def root_images(self) -> list[str]:
        """Images without a parent in the forest."""
        return [name for name, conf in self._confs.items() if self._is_root(conf)]

    def dependencies(self, image: str) -> list[str]:
        """Images that must be built before this one, root first."""
        try:
            conf = self._confs[image]
        except KeyError:
            raise LookupError(
                f"cannot build dependencies for image {image}, "
                "because image does not exist"
            ) from None
        deps = []
        while not self._is_root(conf):
            deps.append(conf.parent)
            conf = self._confs[conf.parent]
        deps.reverse()
        return deps