#!/usr/bin/env python3
# System Configuration Module
# Configures the migrated system from inside its chroot jail

import glob
import json
import os
import re

from .boot_manager import efi_mountpoint
from .command import wait_for
from .errors import CacheIntegrityError
from .packages import ZFS_DKMS_PRESEED, ZFS_PPA
from .plan import BPOOL_NAME, DNS_SERVER, ZFS_MOUNT_DIR

JAIL_FILESYSTEMS = ("proc", "sys", "dev")

EFI_FSTAB_OPTIONS = "nofail,x-systemd.requires=zfs-mount.service,x-systemd.device-timeout=10"

ZFS_LIST_CACHE_DIR = "etc/zfs/zfs-list.cache"
ZFS_LIST_CACHER = "/usr/lib/zfs-linux/zed.d/history_event-zfs-list-cacher.sh"

ZED_POLL_INTERVAL = 0.25
ZED_TIMEOUT = 5
UNMOUNT_TIMEOUT = 5

TIMESHIFT_CONFIG = {
    "backup_device_uuid": "",
    "parent_device_uuid": "",
    "do_first_run": "false",
    "btrfs_mode": "false",
    "include_btrfs_home_for_backup": "false",
    "include_btrfs_home_for_restore": "false",
    "stop_cron_emails": "true",
    "schedule_monthly": "false",
    "schedule_weekly": "false",
    "schedule_daily": "true",
    "schedule_hourly": "false",
    "schedule_boot": "false",
    "count_monthly": "2",
    "count_weekly": "3",
    "count_daily": "5",
    "count_hourly": "6",
    "count_boot": "5",
    "snapshot_size": "0",
    "snapshot_count": "0",
    "date_format": "%Y-%m-%d %H:%M:%S",
    "exclude": ["/root/cache/**"],
    "exclude_apps": [],
}


def strip_mount_prefix(text, mount_dir=ZFS_MOUNT_DIR):
    """Drop the installer's mount prefix from the mountpoint column of a zfs-list cache.

    Each line is ``name<TAB>mountpoint<TAB>...``; only the second field is
    rewritten, and only when it is the mount dir or lies below it.
    """
    pattern = re.compile("^" + re.escape(mount_dir.rstrip("/")) + "(/|$)")
    lines = []
    for line in text.splitlines(True):
        fields = line.split("\t")
        if len(fields) > 1:
            fields[1] = pattern.sub("/", fields[1], count=1)
        lines.append("\t".join(fields))
    return "".join(lines)


class SystemConfig:
    def __init__(self, runner, apt, zfs_manager, root_mount=ZFS_MOUNT_DIR, wait=wait_for):
        self.runner = runner
        self.apt = apt
        self.zfs_manager = zfs_manager
        self.root_mount = root_mount
        self.wait = wait

    def _chroot(self, cmd, check=True):
        return self.runner.chroot(self.root_mount, cmd, check=check)

    def _path(self, relative):
        return os.path.join(self.root_mount, relative)

    def prepare_jail(self):
        """Bind the virtual filesystems into the target and give it a resolver"""
        for fs in JAIL_FILESYSTEMS:
            os.makedirs(self._path(fs), exist_ok=True)
            self.runner.run(["mount", "--rbind", f"/{fs}", self._path(fs)])

        # Appended through the jail's shell, so a resolv.conf symlink resolves inside the target
        self._chroot(f"echo 'nameserver {DNS_SERVER}' >> /etc/resolv.conf")

    def install_base_packages(self, plan):
        packages = ["rsync", "software-properties-common"]
        if not plan.use_zfsbootmenu:
            packages[1:1] = ["grub-efi-amd64-signed", "shim-signed"]
        self.apt.install(packages, chroot=self.root_mount)

    def install_zfs_packages(self):
        if self.apt.use_ppa:
            self.apt.add_repository(ZFS_PPA, chroot=self.root_mount)
            self.apt.update(chroot=self.root_mount)
            self.apt.preseed(ZFS_DKMS_PRESEED, chroot=self.root_mount)
            self.apt.install(["libelf-dev", "zfs-initramfs", "zfs-dkms"], chroot=self.root_mount)
        else:
            self.apt.install(["zfs-initramfs", "zfs-zed", "zfsutils-linux"], chroot=self.root_mount)

    def install_timeshift(self, plan):
        """Install Timeshift in the target with a daily schedule"""
        if not plan.install_timeshift:
            return

        print("Installing and configuring Timeshift...")
        self.apt.update(chroot=self.root_mount)
        self.apt.install(["timeshift"], chroot=self.root_mount)

        config_path = self._path("etc/timeshift/timeshift.json")
        os.makedirs(os.path.dirname(config_path), exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(TIMESHIFT_CONFIG, f, indent=2)
            f.write("\n")

    def fstab_entries(self, plan):
        entries = []
        for i, disk in enumerate(plan.selected_disks):
            uuid = self.runner.run(["blkid", "-s", "UUID", "-o", "value", f"{disk}-part1"]).out.strip()
            entries.append(f"/dev/disk/by-uuid/{uuid} {efi_mountpoint(i)} vfat {EFI_FSTAB_OPTIONS} 0 0")

        if plan.swap_size > 0:
            entries.append(f"/dev/zvol/{plan.rpool_name}/swap none swap discard 0 0")
        return entries

    def prepare_fstab(self, plan):
        """Write one EFI entry per disk plus the swap zvol; ZFS mounts itself"""
        entries = self.fstab_entries(plan)
        with open(self._path("etc/fstab"), "w") as f:
            f.write("\n".join(entries) + "\n")
        print("fstab written.")

    def update_initramfs(self):
        self._chroot(["update-initramfs", "-u"])

    def _cache_files(self, plan):
        cache_dir = self._path(ZFS_LIST_CACHE_DIR)
        return [os.path.join(cache_dir, BPOOL_NAME), os.path.join(cache_dir, plan.rpool_name)]

    def _caches_populated(self, plan):
        return all(os.path.getsize(path) > 0 for path in self._cache_files(plan))

    def fix_filesystem_mount_ordering(self, plan):
        """Have ZED populate the zfs-list cache that orders the target's mounts at boot.

        ZED only writes the cache on dataset events, so when the files are
        still empty after startup the root and boot datasets get their
        ``canmount`` toggled and ZED gets a bounded time to react. An empty
        cache after that is an integrity failure: the installed system would
        not mount / and /boot in the right order.
        """
        for path in self._cache_files(plan):
            os.makedirs(os.path.dirname(path), exist_ok=True)
            open(path, "a").close()

        zed_script = self._path("etc/zfs/zed.d/" + os.path.basename(ZFS_LIST_CACHER))
        if not os.path.lexists(zed_script):
            os.makedirs(os.path.dirname(zed_script), exist_ok=True)
            os.symlink(ZFS_LIST_CACHER, zed_script)

        os.makedirs(self._path("run/lock"), exist_ok=True)

        self.runner.spawn(["chroot", self.root_mount, "zed", "-F"])

        try:
            populated = self._caches_populated(plan)
            if not populated:
                root_fs = self._chroot(["zfs", "list", "-H", "-o", "name", "/"]).out.strip()
                boot_fs = self._chroot(["zfs", "list", "-H", "-o", "name", "/boot"]).out.strip()

                self._chroot(["zfs", "set", "canmount=on", boot_fs])
                self._chroot(["zfs", "set", "canmount=on", root_fs])

                populated = self.wait(
                    lambda: self._caches_populated(plan),
                    timeout=ZED_TIMEOUT,
                    interval=ZED_POLL_INTERVAL,
                )
        finally:
            self._chroot(["pkill", "zed"], check=False)

        if not populated:
            raise CacheIntegrityError("The ZFS cache hasn't been updated by ZED!")

        for path in glob.glob(os.path.join(self._path(ZFS_LIST_CACHE_DIR), "*")):
            with open(path, "r") as f:
                content = f.read()
            with open(path, "w") as f:
                f.write(strip_mount_prefix(content, self.zfs_manager.mount_dir))

    def configure_remaining_settings(self):
        resume_path = self._path("etc/initramfs-tools/conf.d/resume")
        os.makedirs(os.path.dirname(resume_path), exist_ok=True)
        with open(resume_path, "w") as f:
            f.write("RESUME=none\n")

    def _mounted(self, fs):
        return self.runner.run(["mountpoint", "-q", self._path(fs)], check=False).ok

    def prepare_for_system_exit(self):
        """Tear down the jail mounts and export every pool"""
        for fs in reversed(JAIL_FILESYSTEMS):
            self.runner.run(["umount", "--recursive", "--force", "--lazy", self._path(fs)], check=False)

        print("Waiting for virtual filesystems to unmount...")
        self.wait(
            lambda: not any(self._mounted(fs) for fs in JAIL_FILESYSTEMS),
            timeout=UNMOUNT_TIMEOUT,
            interval=0.5,
        )

        for fs in reversed(JAIL_FILESYSTEMS):
            if self._mounted(fs):
                print(f"Re-issuing umount for {self._path(fs)}")
                self.runner.run(["umount", "--recursive", "--force", "--lazy", self._path(fs)], check=False)

        self.zfs_manager.export_all()
