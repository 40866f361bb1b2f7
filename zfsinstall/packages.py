#!/usr/bin/env python3
# Package Module
# apt package sets for the live host and the target jail

import os
import re

from .command import log_path

ZFS_PPA = "ppa:jonathonf/zfs"
DEFAULT_PPA_VERSION_THRESHOLD = "0.8"

HOST_BASE_PACKAGES = [
    "efibootmgr", "dialog", "software-properties-common",
    "debootstrap", "gdisk", "parted", "rsync", "dosfstools",
]
ZFS_DKMS_PRESEED = "zfs-dkms zfs-dkms/note-incompatible-licenses note true"


def version_tuple(version):
    """Numeric components of a dotted version; '2.1.5-1ubuntu6' -> (2, 1, 5)"""
    match = re.match(r"^\d+(\.\d+)*", version.strip()) if version else None
    if not match:
        return ()
    return tuple(int(part) for part in match.group(0).split("."))


class ZfsPackagePolicy:
    """Decides between distro-packaged and PPA-sourced ZFS userspace.

    The threshold is a knob (ZFS_PPA_VERSION_THRESHOLD) because packaging
    changes over time; versions compare numerically, component by component.
    """

    def __init__(self, threshold=DEFAULT_PPA_VERSION_THRESHOLD, force_ppa=False):
        self.threshold = threshold
        self.force_ppa = force_ppa

    @classmethod
    def from_environment(cls, environ=None):
        environ = os.environ if environ is None else environ
        return cls(
            threshold=environ.get("ZFS_PPA_VERSION_THRESHOLD") or DEFAULT_PPA_VERSION_THRESHOLD,
            force_ppa=environ.get("ZFS_USE_PPA") == "1",
        )

    def needs_ppa(self, available_version):
        if self.force_ppa:
            return True
        available = version_tuple(available_version)
        # Unknown versions are treated as too old
        return not available or available < version_tuple(self.threshold)


class AptManager:
    def __init__(self, runner):
        self.runner = runner
        self.use_ppa = False

    def _run(self, cmd, chroot=None, check=True, input=None):
        if chroot:
            return self.runner.chroot(chroot, cmd, check=check, input=input)
        return self.runner.run(cmd, check=check, input=input)

    def update(self, chroot=None):
        self._run(["apt", "update"], chroot)

    def install(self, packages, chroot=None):
        self._run(["apt", "install", "--yes"] + list(packages), chroot)

    def add_repository(self, repository, chroot=None):
        cmd = ["add-apt-repository", "--yes", repository]
        help_text = self._run(["add-apt-repository", "--help"], chroot, check=False).out or ""
        if "--no-update" in help_text:
            cmd.append("--no-update")
        self._run(cmd, chroot)

    def preseed(self, selection, chroot=None):
        self._run(["debconf-set-selections"], chroot, input=selection + "\n")

    def available_version(self, package):
        out = self.runner.run(["apt", "show", package], check=False).out or ""
        match = re.search(r"^Version: (\d+\.\d+)", out, re.MULTILINE)
        return match.group(1) if match else ""

    def decide_zfs_source(self, policy):
        version = self.available_version("zfsutils-linux")
        self.use_ppa = policy.needs_ppa(version)
        print(f"Packaged zfsutils-linux version: {version or 'unknown'}; using PPA: {'yes' if self.use_ppa else 'no'}")
        return self.use_ppa

    def install_host_zfs(self, skip_live_module=False):
        """Install ZFS userspace on the live system, rebuilding the module from the PPA if needed"""
        if self.use_ppa and not skip_live_module:
            self.add_repository(ZFS_PPA)
            self.update()
            self.preseed(ZFS_DKMS_PRESEED)
            self.install(["libelf-dev", "zfs-dkms"])

            self.runner.run(["systemctl", "stop", "zfs-zed"])
            self.runner.run(["modprobe", "-r", "zfs"])
            self.runner.run(["modprobe", "zfs"])
            self.runner.run(["systemctl", "start", "zfs-zed"])

        self.install(["zfsutils-linux"])

        version = self.runner.run(["zfs", "--version"], check=False)
        with open(log_path("updated_module_versions.log"), "w") as f:
            f.write(version.out + version.err)
