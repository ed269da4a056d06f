[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "littlevm"
version = "0.1.0"
description = "Helper to build VM images and kernels and run them with QEMU"
requires-python = ">=3.10"
dependencies = []
keywords = ["qemu", "vm", "kernel", "images", "virt-customize", "guestfish"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Operating System :: MacOS",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
lvh = "littlevm.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["littlevm"]

[tool.pytest.ini_options]
addopts = "-ra"
