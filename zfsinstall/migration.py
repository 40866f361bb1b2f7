#!/usr/bin/env python3
# Migration Module
# Moves the temporary installation onto the ZFS root and reclaims the temporary partition

import os
import re
import shutil

from rich.progress import BarColumn, Progress, TextColumn

from .command import udev_settle
from .plan import INSTALLED_OS_MOUNT_DIR, TEMPORARY_VOLUME_SIZE_GIB, ZFS_MOUNT_DIR

RSYNC_EXCLUDES = [
    "--exclude=/run", "--exclude=/proc/*", "--exclude=/sys/*", "--exclude=/dev/*",
    # The pool cache is already in place on the root pool
    "--exclude=/etc/zfs/zpool.cache",
]

_PROGRESS = re.compile(r"^(\d+)%$")


def parse_progress(chunk):
    """Percentage from one ``rsync --info=progress2`` status line, or None"""
    fields = chunk.split()
    if len(fields) < 2:
        return None
    match = _PROGRESS.match(fields[1])
    return int(match.group(1)) if match else None


def _unescape_mount_path(path):
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), path)


class MigrationEngine:
    def __init__(self, runner, zfs_manager, source_dir=INSTALLED_OS_MOUNT_DIR, target_dir=ZFS_MOUNT_DIR,
                 mounts_path="/proc/mounts", host_root="/"):
        self.runner = runner
        self.zfs_manager = zfs_manager
        self.source_dir = source_dir.rstrip("/")
        self.target_dir = target_dir.rstrip("/")
        self.mounts_path = mounts_path
        self.host_root = host_root

    def migrate(self, plan):
        self.sync_to_root_pool()
        self.reclaim_temporary_partition(plan)

    def submounts(self):
        """Mount points below the temporary install dir, deepest first"""
        mountpoints = []
        with open(self.mounts_path, "r") as f:
            for line in f:
                fields = line.split()
                if len(fields) < 2:
                    continue
                mountpoint = _unescape_mount_path(fields[1])
                if mountpoint.startswith(self.source_dir + "/"):
                    mountpoints.append(mountpoint)
        return sorted(mountpoints, key=lambda p: p.count("/"), reverse=True)

    def sync_to_root_pool(self):
        """Copy the installed O/S onto the root pool file systems"""
        for mountpoint in self.submounts():
            self.runner.run(["umount", mountpoint])

        cmd = [
            "rsync", "-aAX",
            *RSYNC_EXCLUDES,
            "--info=progress2", "--no-inc-recursive", "--human-readable",
            self.source_dir + "/", self.target_dir,
        ]

        with Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
        ) as progress:
            task = progress.add_task("Syncing the installed O/S to the root pool FS...", total=100)
            for chunk in self.runner.stream(cmd):
                percentage = parse_progress(chunk)
                if percentage is not None:
                    progress.update(task, completed=percentage)
            progress.update(task, completed=100)

        self.stage_resolver()
        self.runner.run(["umount", self.source_dir])
        print("Installed O/S synced to the root pool.")

    def stage_resolver(self):
        """Recreate the target of a symlinked /etc/resolv.conf under /run on the new root.

        /run is excluded from the sync, so systemd-resolved's stub file would
        otherwise leave resolv.conf dangling inside the jail.
        """
        resolv_conf = os.path.join(self.target_dir, "etc/resolv.conf")
        if not os.path.islink(resolv_conf):
            return None

        link = os.readlink(resolv_conf)
        if os.path.isabs(link):
            inner_path = os.path.normpath(link)
        else:
            inner_path = os.path.normpath(os.path.join("/etc", link))

        staged = os.path.join(self.target_dir, inner_path.lstrip("/"))
        os.makedirs(os.path.dirname(staged), exist_ok=True)

        host_file = os.path.join(self.host_root, inner_path.lstrip("/"))
        if os.path.isfile(host_file):
            shutil.copy(host_file, staged)
        else:
            open(staged, "a").close()
        return staged

    def reclaim_temporary_partition(self, plan):
        """Give the temporary partition back to the root pool, or wipe it in place.

        The export/resize/import round trip only happens when the operator
        asked for less tail space than the temporary partition occupies.
        """
        if plan.free_tail_space < TEMPORARY_VOLUME_SIZE_GIB:
            resize_reference = "100%" if plan.free_tail_space == 0 else f"-{plan.free_tail_space}G"

            self.zfs_manager.export_all()

            for disk in plan.selected_disks:
                self.runner.run(["parted", "-s", disk, "rm", "4"])
                self.runner.run(["parted", "-s", disk, "unit", "s", "resizepart", "3", "--", resize_reference])

            udev_settle(self.runner)

            self.zfs_manager.import_pools(plan)
            self.zfs_manager.online_expand(plan)
            print(f"Temporary partitions removed; root pool expanded to {resize_reference}.")
        else:
            for disk in plan.selected_disks:
                self.runner.run(["wipefs", "--all", f"{disk}-part4"])
            print("Temporary partitions wiped and left as free tail space.")
