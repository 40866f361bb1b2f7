#!/usr/bin/env python3
# Boot Manager Module
# Handles bootloader installation and configuration inside the target jail

import os
import re

import yaml

from .errors import CommandError
from .plan import ZFS_MOUNT_DIR

ZBM_KEY_URL = "https://get.zfsbootmenu.org/ascii-armored-key"
ZBM_REPOSITORY = "deb https://zbm.dev/ubuntu focal main"
ZBM_EFI_LOADER = "\\EFI\\zbm\\vmlinuz.efi"
GRUB_EFI_LOADER = "\\EFI\\ubuntu\\grubx64.efi"

ZBM_CONFIG = {
    "Global": {
        "ManageImages": True,
        "BootMountPoint": "/boot/efi",
    },
    "Components": {
        "Enabled": False,
    },
    "EFI": {
        "ImageDir": "/boot/efi/EFI/zbm",
        "Versions": 3,
    },
    "Kernel": {
        "CommandLine": "ro quiet loglevel=0 zbm.import_policy=hostid zbm.set_hostid",
    },
}


def efi_mountpoint(index):
    """/boot/efi for the first disk, /boot/efi<n> (1-based) for the others"""
    return "/boot/efi" if index == 0 else f"/boot/efi{index + 1}"


def patch_grub_defaults(lines):
    """Rewrite /etc/default/grub so the menu is visible and boot messages are readable"""
    patched = []
    seen = set()

    for line in lines:
        if line.startswith("GRUB_CMDLINE_LINUX_DEFAULT="):
            value = line.split("=", 1)[1].strip().strip('"')
            args = [arg for arg in value.split() if arg not in ("quiet", "splash")]
            if "init_on_alloc=0" not in args:
                args.insert(0, "init_on_alloc=0")
            line = f'GRUB_CMDLINE_LINUX_DEFAULT="{" ".join(args)}"\n'
        elif line.startswith("GRUB_TIMEOUT_STYLE=hidden") or line.startswith("GRUB_HIDDEN_"):
            line = "#" + line
        elif re.match(r"^GRUB_TIMEOUT=0\s*$", line):
            line = "GRUB_TIMEOUT=5\n"
        elif line.startswith("#GRUB_TERMINAL=console"):
            line = line[1:]
        elif line.startswith("GRUB_DISABLE_OS_PROBER="):
            line = "GRUB_DISABLE_OS_PROBER=true\n"
        elif line.startswith("GRUB_RECORDFAIL_TIMEOUT="):
            line = "GRUB_RECORDFAIL_TIMEOUT=5\n"

        seen.add(line.split("=", 1)[0])
        patched.append(line if line.endswith("\n") else line + "\n")

    if "GRUB_DISABLE_OS_PROBER" not in seen:
        patched.append("GRUB_DISABLE_OS_PROBER=true\n")
    if "GRUB_RECORDFAIL_TIMEOUT" not in seen:
        patched.append("GRUB_RECORDFAIL_TIMEOUT=5\n")
    return patched


class BootManager:
    def __init__(self, runner, apt, root_mount=ZFS_MOUNT_DIR):
        self.runner = runner
        self.apt = apt
        self.root_mount = root_mount

    def _chroot(self, cmd, check=True):
        return self.runner.chroot(self.root_mount, cmd, check=check)

    def prepare_efi_partition(self, plan):
        """Mount the primary EFI partition and install the selected bootloader on it"""
        self._chroot(["mkdir", "-p", "/boot/efi"])
        self._chroot(["mount", "/boot/efi"])

        if plan.use_zfsbootmenu:
            self.install_zfsbootmenu(plan)
        else:
            self._chroot(["grub-install"])

    def install_zfsbootmenu(self, plan):
        print("Installing ZFSBootMenu...")

        self.apt.update(chroot=self.root_mount)
        self.apt.install(["curl", "gpg"], chroot=self.root_mount)

        self._chroot(f"curl -L {ZBM_KEY_URL} | gpg --dearmor -o /etc/apt/trusted.gpg.d/zfsbootmenu.gpg")

        sources_path = os.path.join(self.root_mount, "etc/apt/sources.list.d/zfsbootmenu.list")
        os.makedirs(os.path.dirname(sources_path), exist_ok=True)
        with open(sources_path, "w") as f:
            f.write(ZBM_REPOSITORY + "\n")

        self.apt.update(chroot=self.root_mount)
        self.apt.install(["zfsbootmenu"], chroot=self.root_mount)

        config_path = os.path.join(self.root_mount, "etc/zfsbootmenu/config.yaml")
        os.makedirs(os.path.dirname(config_path), exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump(ZBM_CONFIG, f, default_flow_style=False, sort_keys=False)

        self._chroot(["generate-zbm"])

        for i, disk in enumerate(plan.selected_disks):
            self.runner.run([
                "efibootmgr", "--create", "--disk", disk,
                "--label", f"ZFSBootMenu-{i + 1}", "--loader", ZBM_EFI_LOADER,
            ])

        print("ZFSBootMenu installed successfully.")

    def configure_grub(self, plan):
        """Patch /etc/default/grub and regenerate the GRUB configuration"""
        if plan.use_zfsbootmenu:
            return

        grub_default_path = os.path.join(self.root_mount, "etc/default/grub")
        grub_lines = []
        if os.path.exists(grub_default_path):
            with open(grub_default_path, "r") as f:
                grub_lines = f.readlines()

        with open(grub_default_path, "w") as f:
            f.writelines(patch_grub_defaults(grub_lines))

        # update-grub exits non-zero on some informational warnings
        result = self._chroot(["update-grub"], check=False)
        if not result.ok:
            print(f"Warning: update-grub exited with status {result.rc}: {result.err.strip()}")

    def sync_efi_partitions(self, plan):
        """Mirror the primary EFI partition onto the other disks and register boot entries"""
        if not plan.use_zfsbootmenu:
            for i in range(1, len(plan.selected_disks)):
                mountpoint = efi_mountpoint(i)
                try:
                    self._chroot(["mkdir", "-p", mountpoint])
                    self._chroot(["mount", mountpoint])
                    self._chroot(["rsync", "--archive", "--delete", "--verbose", "/boot/efi/", mountpoint])
                    self.runner.run([
                        "efibootmgr", "--create", "--disk", plan.selected_disks[i],
                        "--label", f"ubuntu-{i + 1}", "--loader", GRUB_EFI_LOADER,
                    ])
                except CommandError as e:
                    print(f"Warning: Failed to sync EFI partition {mountpoint}: {e}")
                finally:
                    self._chroot(["umount", mountpoint], check=False)

        self._chroot(["umount", "/boot/efi"])
