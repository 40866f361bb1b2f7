#!/usr/bin/env python3
# ZFS Manager Module
# Handles ZFS pool and dataset operations

import os
import shutil

from .errors import CommandError, PoolOperationError
from .plan import BPOOL_NAME, ZFS_MOUNT_DIR, VdevKind

ENCRYPTION_OPTIONS = [
    "-O", "encryption=aes-256-gcm",
    "-O", "keylocation=prompt",
    "-O", "keyformat=passphrase",
]

POOL_PARTITION_SUFFIXES = {
    "rpool": "-part3",
    "bpool": "-part2",
    None: "",
}


def compose_vdev_args(groups, disks, pool=None):
    """Device list for ``zpool create``; striped disks first, then each redundancy group"""
    suffix = POOL_PARTITION_SUFFIXES[pool]
    args = []
    for group in groups:
        if group.kind is VdevKind.STRIPE:
            args.extend(f"{disks[i]}{suffix}" for i in group.indexes)
    for group in groups:
        if group.kind is not VdevKind.STRIPE:
            args.append(group.kind.zpool_keyword)
            args.extend(f"{disks[i]}{suffix}" for i in group.indexes)
    return args


class ZFSManager:
    def __init__(self, runner, mount_dir=ZFS_MOUNT_DIR):
        self.runner = runner
        self.mount_dir = mount_dir
        self.datasets = []

    def build(self, plan, timestamp):
        """Create root pool, dataset tree, boot pool and the bootable marker, in that order"""
        self.create_root_pool(plan)
        self.create_datasets(plan, timestamp)
        self.create_boot_pool(plan)
        self.set_bootfs(plan)
        self.create_swap_volume(plan)

    def create_root_pool(self, plan):
        """Create the root pool, encrypted when a passphrase was given"""
        print(f"\nCreating ZFS pool '{plan.rpool_name}'...")

        cmd = ["zpool", "create"]
        if plan.encrypted:
            cmd.extend(ENCRYPTION_OPTIONS)
        cmd.extend(plan.rpool_create_options)
        cmd.extend([
            "-O", "mountpoint=/",
            "-O", "canmount=off",
            "-R", self.mount_dir,
            "-f",
            plan.rpool_name,
        ])
        cmd.extend(compose_vdev_args(plan.vdev_groups, plan.selected_disks, "rpool"))

        try:
            # The passphrase goes through the child's stdin, never argv or environment
            self.runner.run(cmd, input=plan.passphrase.reveal() if plan.encrypted else None)
        except CommandError as e:
            raise PoolOperationError(f"Error creating ZFS pool {plan.rpool_name}: {e}") from e

        print(f"ZFS pool '{plan.rpool_name}' created successfully.")

    def create_datasets(self, plan, timestamp):
        """Create the ROOT/USERDATA hierarchy from the dataset table"""
        print("\nCreating ZFS datasets...")

        self.datasets = plan.datasets(timestamp)
        for spec in self.datasets:
            self._create_dataset(f"{plan.rpool_name}/{spec.path}", spec.option_args())

        print("ZFS datasets created successfully.")
        return self.datasets

    def create_boot_pool(self, plan):
        print(f"\nCreating ZFS pool '{BPOOL_NAME}'...")

        cmd = ["zpool", "create", "-o", "cachefile=/etc/zfs/zpool.cache"]
        cmd.extend(plan.bpool_create_options)
        cmd.extend([
            "-O", "mountpoint=/boot",
            "-O", "canmount=off",
            "-R", self.mount_dir,
            "-f",
            BPOOL_NAME,
        ])
        cmd.extend(compose_vdev_args(plan.vdev_groups, plan.selected_disks, "bpool"))

        try:
            self.runner.run(cmd)
        except CommandError as e:
            raise PoolOperationError(f"Error creating ZFS pool {BPOOL_NAME}: {e}") from e

        self._create_dataset(f"{BPOOL_NAME}/BOOT", ["-o", "canmount=off", "-o", "mountpoint=none"])
        self._create_dataset(plan.boot_dataset, ["-o", "mountpoint=/boot"])

    def set_bootfs(self, plan):
        """Mark the root dataset as the pool's boot filesystem"""
        try:
            self.runner.run(["zpool", "set", f"bootfs={plan.root_dataset}", plan.rpool_name])
        except CommandError as e:
            raise PoolOperationError(f"Error setting bootfs on {plan.rpool_name}: {e}") from e

    def _create_dataset(self, name, options):
        try:
            self.runner.run(["zfs", "create"] + list(options) + [name])
        except CommandError as e:
            raise PoolOperationError(f"Error creating dataset {name}: {e}") from e

    def create_swap_volume(self, plan):
        """Create and format the swap zvol when a swap size was requested"""
        if plan.swap_size <= 0:
            return None

        swap_device = f"/dev/zvol/{plan.rpool_name}/swap"
        try:
            self.runner.run([
                "zfs", "create",
                "-V", f"{plan.swap_size}G",
                "-b", str(os.sysconf("SC_PAGE_SIZE")),
                "-o", "compression=zle",
                "-o", "logbias=throughput",
                "-o", "sync=always",
                "-o", "primarycache=metadata",
                "-o", "secondarycache=none",
                "-o", "com.sun:auto-snapshot=false",
                f"{plan.rpool_name}/swap",
            ])
            self.runner.run(["mkswap", "-f", swap_device])
        except CommandError as e:
            raise PoolOperationError(f"Error creating swap volume: {e}") from e

        print(f"Created and formatted swap volume: {swap_device}")
        return swap_device

    def copy_zpool_cache(self, source="/etc/zfs/zpool.cache"):
        target_dir = os.path.join(self.mount_dir, "etc/zfs")
        os.makedirs(target_dir, exist_ok=True)
        shutil.copy(source, target_dir)

    def export_all(self):
        self.runner.run(["zpool", "export", "-a"])

    def import_pools(self, plan):
        """Re-import both pools under the mount dir, unlocking the root pool"""
        try:
            self.runner.run(
                ["zpool", "import", "-l", "-R", self.mount_dir, plan.rpool_name],
                input=plan.passphrase.reveal() if plan.encrypted else None,
            )
            self.runner.run(["zpool", "import", "-l", "-R", self.mount_dir, BPOOL_NAME])
        except CommandError as e:
            raise PoolOperationError(f"Error importing ZFS pools: {e}") from e

    def online_expand(self, plan):
        """Let the root pool grow into its enlarged partitions"""
        for disk in plan.selected_disks:
            try:
                self.runner.run(["zpool", "online", "-e", plan.rpool_name, f"{disk}-part3"])
            except CommandError as e:
                raise PoolOperationError(f"Error expanding {disk}-part3: {e}") from e
