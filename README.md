# littlevm

A small helper to build VM images, fetch and build Linux kernels, and run
virtual machines with QEMU.

It drives the usual external tools: `mmdebstrap`, `guestfish`,
`virt-customize` and `qemu-img` for images, `git` and `make` for kernels, and
`qemu-system-x86_64` / `qemu-system-aarch64` for running VMs. These have to be
installed and on your `PATH` for the commands that use them.

## Installation

```
pip install .
```

This installs the `lvh` command. `lvh version` prints the installed version.

## Images

Print an example image configuration:

```
lvh images example-config > _data/images.json
```

Images form a forest: each image may name a parent. Root images are
bootstrapped with `mmdebstrap` and written to a fresh disk with `guestfish`;
derived images are copies of their parent (converted with `qemu-img`, resized
if `image_size` is set) with extra packages installed. Each image may also
carry actions, applied with `virt-customize`: `run-command`, `copy-in`,
`set-hostname`, `mkdir`, `upload`, `chmod`, `append-line`, `link` and
`install-kernel`.

Build all images, or only some of them (`-i` may be repeated):

```
lvh images build --dir _data
lvh images build --dir _data -i base.img
```

The configuration is read from `<dir>/images.json` and images are written to
`<dir>/images`. Images that already exist are reused unless
`--force-rebuild` is given or their parent was rebuilt. `--dry-run` creates
empty files instead of real images. Consecutive `virt-customize` actions are
merged into one call; `--no-merge-steps` turns that off.

## Kernels

```
lvh kernels init --dir _data
lvh kernels add bpf-next git://git.kernel.org/pub/scm/linux/kernel/git/bpf/bpf-next.git --dir _data --fetch
lvh kernels list --dir _data
lvh kernels fetch bpf-next --dir _data
lvh kernels configure bpf-next --dir _data
lvh kernels build bpf-next --dir _data
lvh kernels remove bpf-next --dir _data
```

The configuration lives in `<dir>/kernels.json`; sources go under
`<dir>/kernels`. `init` adds the default option groups (`basic`, `bpf`,
`virtio`, `minimize`, `namespaces`) to the common options; `--config-groups`
chooses others. `add --just-print-config` prints the kernel's configuration
without saving it. `raw_configure <kernel_dir> [<kernel_name>]` applies the
configured options to a kernel tree prepared some other way. `configure` and
`build` take `--arch amd64|arm64` to cross-compile.

Kernel URLs use the `git` or `https` scheme. A `#branch` fragment selects the
branch (default `master`) and a `?depth=N` query gives a shallow clone of its
own; otherwise all kernels share one bare repository with a worktree each.

## Running VMs

```
lvh run --image _data/images/base.img --kernel path/to/bzImage -p 2222:22
```

Port forwards take the form `hostport[:vmport[:tcp|udp]]`. Other options
include `--cpu`, `--mem`, `--cpu-kind`, `--root-dev hda|vda`,
`--serial-port`, `--qemu-monitor-port`, `--console-log-file`,
`--host-mount`, `--daemonize`, `--no-hw-accel` and `--qemu-arch`. Use
`--qemu-cmd-print` to print the QEMU command instead of running it, or
`-v` to print it and then run it.

## What it does not do

- It does not pull images or kernels from OCI registries: `--image` must
  name a local file, and there is no command to list or download prebuilt
  kernels. Images and kernels are built locally.

## Library use

The same functionality is available from Python, e.g.
`littlevm.runner.build_qemu_args`, `littlevm.images.forest.ImageForest`,
`littlevm.images.build.build_all_images` and
`littlevm.kernels.manage.load_dir`.