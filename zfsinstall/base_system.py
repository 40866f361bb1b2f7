#!/usr/bin/env python3
# Base System Module
# Materializes a minimal Ubuntu root on the temporary partition

import os
import re
import shutil

from .errors import NoSnapshotFoundError, ValidationError
from .plan import INSTALLED_OS_MOUNT_DIR

UBUNTU_MIRROR = "http://archive.ubuntu.com/ubuntu/"
DEBOOTSTRAP_INCLUDES = "openssh-server,curl,wget,software-properties-common"

DESKTOP_PACKAGES = {
    "kde": "kubuntu-desktop",
    "gnome": "ubuntu-desktop",
    "xfce": "xubuntu-desktop",
    "minimal": "ubuntu-server",
}

VIRTUAL_FILESYSTEMS = ("dev", "proc", "sys")


class BaseSystemInstaller:
    """Common part of the strategies: format and mount the temporary volume"""

    def __init__(self, runner, apt, mount_dir=INSTALLED_OS_MOUNT_DIR):
        self.runner = runner
        self.apt = apt
        self.mount_dir = mount_dir

    def install(self, plan, temp_device):
        raise NotImplementedError

    def _mount_temporary_volume(self, temp_device):
        self.runner.run(["mkfs.ext4", "-F", temp_device])
        os.makedirs(self.mount_dir, exist_ok=True)
        self.runner.run(["mount", temp_device, self.mount_dir])

    def _path(self, relative):
        return os.path.join(self.mount_dir, relative)

    def _write(self, relative, content, mode="w"):
        path = self._path(relative)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, mode) as f:
            f.write(content)


class DebootstrapInstaller(BaseSystemInstaller):
    name = "debootstrap"

    def install(self, plan, temp_device):
        """Bootstrap a fresh Ubuntu and configure identity, locale and desktop"""
        print(f"Installing Ubuntu {plan.ubuntu_version} ({plan.codename}) via debootstrap...")

        if shutil.which("debootstrap") is None:
            self.apt.update()
            self.apt.install(["debootstrap"])

        self._mount_temporary_volume(temp_device)

        self.runner.run([
            "debootstrap", "--arch=amd64", f"--include={DEBOOTSTRAP_INCLUDES}",
            plan.codename, self.mount_dir, UBUNTU_MIRROR,
        ])

        for fs in VIRTUAL_FILESYSTEMS:
            self.runner.run(["mount", "--bind", f"/{fs}", self._path(fs)])

        try:
            self._configure_network_identity(plan)
            self._configure_apt_sources(plan)
            self._create_user(plan)
            self._configure_localization(plan)
            self._install_desktop(plan)

            if plan.enable_ssh:
                self.runner.chroot(self.mount_dir, ["systemctl", "enable", "ssh"])
        finally:
            for fs in reversed(VIRTUAL_FILESYSTEMS):
                self.runner.run(["umount", self._path(fs)], check=False)

        print("Base system installed successfully.")
        return self.mount_dir

    def _configure_network_identity(self, plan):
        self._write("etc/hostname", f"{plan.hostname}\n")
        self._write(
            "etc/hosts",
            "127.0.0.1 localhost\n"
            f"127.0.1.1 {plan.hostname}\n"
            "::1       localhost ip6-localhost ip6-loopback\n"
            "ff02::1   ip6-allnodes\n"
            "ff02::2   ip6-allrouters\n",
        )

    def _configure_apt_sources(self, plan):
        lines = []
        for suite in ("", "-updates", "-security", "-backports"):
            lines.append(f"deb http://archive.ubuntu.com/ubuntu {plan.codename}{suite} main restricted universe multiverse\n")
        self._write("etc/apt/sources.list", "".join(lines))

    def _create_user(self, plan):
        self.runner.chroot(self.mount_dir, [
            "useradd", "-m", "-s", "/bin/bash", "-G", "sudo", "-c", plan.user_fullname, plan.username,
        ])
        # chpasswd reads user:password from stdin
        self.runner.chroot(
            self.mount_dir,
            ["chpasswd"],
            input=f"{plan.username}:{plan.user_password.reveal()}\n",
        )

    def _configure_localization(self, plan):
        self.runner.chroot(self.mount_dir, ["ln", "-sf", f"/usr/share/zoneinfo/{plan.timezone}", "/etc/localtime"])

        self._write("etc/locale.gen", f"{plan.locale} UTF-8\n", mode="a")
        self.runner.chroot(self.mount_dir, ["locale-gen"])
        self._write("etc/default/locale", f"LANG={plan.locale}\n")

        self._write(
            "etc/default/keyboard",
            f'XKBMODEL="pc105"\nXKBLAYOUT="{plan.keyboard_layout}"\nXKBVARIANT=""\nXKBOPTIONS=""\n',
        )

    def _install_desktop(self, plan):
        self.apt.update(chroot=self.mount_dir)
        self.apt.install([DESKTOP_PACKAGES[plan.desktop_environment]], chroot=self.mount_dir)


class TimeshiftRestoreInstaller(BaseSystemInstaller):
    name = "timeshift_restore"

    def latest_snapshot(self, backup_path):
        """Newest snapshot directory; Timeshift names them by date so the last one sorts highest"""
        if not os.path.isdir(backup_path):
            raise NoSnapshotFoundError(f"Timeshift backup path not found: {backup_path}")

        snapshots_dir = os.path.join(backup_path, "snapshots")
        snapshots = []
        if os.path.isdir(snapshots_dir):
            snapshots = sorted(
                entry for entry in os.listdir(snapshots_dir)
                if os.path.isdir(os.path.join(snapshots_dir, entry, "localhost"))
            )
        if not snapshots:
            raise NoSnapshotFoundError(f"No Timeshift snapshots found in {snapshots_dir}")
        return os.path.join(snapshots_dir, snapshots[-1])

    def install(self, plan, temp_device):
        print("Restoring from Timeshift backup...")

        snapshot = self.latest_snapshot(plan.timeshift_backup_path)
        print(f"Restoring from snapshot: {os.path.basename(snapshot)}")

        self._mount_temporary_volume(temp_device)

        self.runner.run(["rsync", "-aAX", os.path.join(snapshot, "localhost") + "/", self.mount_dir + "/"])

        if plan.hostname:
            self._rewrite_hostname(plan.hostname)

        print("Timeshift snapshot restored successfully.")
        return self.mount_dir

    def _rewrite_hostname(self, hostname):
        self._write("etc/hostname", f"{hostname}\n")

        hosts_path = self._path("etc/hosts")
        hosts_lines = []
        if os.path.exists(hosts_path):
            with open(hosts_path, "r") as f:
                hosts_lines = f.readlines()

        replaced = False
        for i, line in enumerate(hosts_lines):
            if re.match(r"^127\.0\.1\.1\s", line):
                hosts_lines[i] = f"127.0.1.1 {hostname}\n"
                replaced = True
        if not replaced:
            hosts_lines.append(f"127.0.1.1 {hostname}\n")

        with open(hosts_path, "w") as f:
            f.writelines(hosts_lines)


STRATEGIES = {
    DebootstrapInstaller.name: DebootstrapInstaller,
    TimeshiftRestoreInstaller.name: TimeshiftRestoreInstaller,
}


def make_installer(method, runner, apt, mount_dir=INSTALLED_OS_MOUNT_DIR):
    try:
        strategy = STRATEGIES[method]
    except KeyError:
        raise ValidationError(f"Unknown installation method: {method}")
    return strategy(runner, apt, mount_dir)
