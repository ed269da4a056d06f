import json

import pytest

from littlevm.images.forest import ImageForest
from littlevm.images.imgconf import DEFAULT_CONF_FILE, ImagesConf, ImgConf


def _chain():
    return [
        ImgConf(name="base"),
        ImgConf(name="image1", parent="base"),
        ImgConf(name="image2", parent="image1"),
    ]


def _saved_images(directory):
    data = json.loads((directory / DEFAULT_CONF_FILE).read_text())
    return [ImgConf.from_dict(d) for d in data["Images"]]


def test_duplicate_names_rejected(tmp_path):
    conf = ImagesConf(dir=str(tmp_path), images=[ImgConf(name="base"), ImgConf(name="base")])
    with pytest.raises(ValueError, match="duplicate image name: base"):
        ImageForest(conf, True)


def test_single_image(tmp_path):
    conf = ImagesConf(dir=str(tmp_path), images=[ImgConf(name="base")])
    forest = ImageForest(conf, True)
    assert forest.root_images() == ["base"]
    assert forest.leaf_images() == ["base"]
    assert _saved_images(tmp_path) == conf.images


def test_chain(tmp_path):
    conf = ImagesConf(dir=str(tmp_path), images=_chain())
    forest = ImageForest(conf, True)
    assert forest.dependencies("image1") == ["base"]
    assert forest.dependencies("image2") == ["base", "image1"]
    assert forest.dependencies("base") == []
    assert forest.leaf_images() == ["image2"]
    assert forest.root_images() == ["base"]
    assert _saved_images(tmp_path) == conf.images


def test_no_conf_file_without_save(tmp_path):
    ImageForest(ImagesConf(dir=str(tmp_path), images=_chain()))
    assert not (tmp_path / DEFAULT_CONF_FILE).exists()


def test_creates_directory(tmp_path):
    target = tmp_path / "a" / "b"
    ImageForest(ImagesConf(dir=str(target), images=[ImgConf(name="x")]))
    assert target.is_dir()


def test_parent_outside_config_is_root(tmp_path):
    conf = ImagesConf(
        dir=str(tmp_path),
        images=[ImgConf(name="child", parent="external"), ImgConf(name="other")],
    )
    forest = ImageForest(conf)
    assert forest.is_root_image("child") is True
    assert forest.parent("child") == ""
    assert forest.dependencies("child") == []
    assert sorted(forest.root_images()) == ["child", "other"]


def test_parent_and_children(tmp_path):
    forest = ImageForest(ImagesConf(dir=str(tmp_path), images=_chain()))
    assert forest.parent("image2") == "image1"
    assert forest.parent("base") == ""
    assert forest.children("base") == ["image1"]
    assert forest.children("image2") == []
    assert forest.is_leaf_image("image1") is False
    assert forest.is_root_image("image1") is False


def test_image_filename(tmp_path):
    forest = ImageForest(ImagesConf(dir=str(tmp_path), images=_chain()))
    assert forest.image_filename("image1") == str(tmp_path / "image1")
    with pytest.raises(LookupError):
        forest.image_filename("missing")


def test_unknown_image_errors(tmp_path):
    forest = ImageForest(ImagesConf(dir=str(tmp_path), images=_chain()))
    with pytest.raises(LookupError):
        forest.dependencies("missing")
    with pytest.raises(LookupError):
        forest.is_root_image("missing")
    with pytest.raises(LookupError):
        forest.config("missing")


def test_config_lookup(tmp_path):
    images = _chain()
    forest = ImageForest(ImagesConf(dir=str(tmp_path), images=images))
    assert forest.config("image1") is images[1]