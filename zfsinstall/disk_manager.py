#!/usr/bin/env python3
# Disk Manager Module
# Handles hardware discovery, disk selection candidates and partitioning

import glob
import os
import re
from dataclasses import dataclass

from .command import log_path, udev_settle
from .errors import NoSuitableDisksError, ValidationError
from .plan import EFI_PARTITION_SIZE_MIB

MEMORY_WARNING_LIMIT_MIB = 3584 - 128
CANDIDATE_DISK_PATTERN = re.compile(r".+/(ata|nvme|scsi|mmc)-.+")
PARTITION_PATTERN = re.compile(r".+-part[0-9]+$")

MIB = 1024 ** 2
GIB = 1024 ** 3

# Partition 1 starts at 1M; the backup GPT and sgdisk alignment take up to another 1M at the end
GPT_OVERHEAD_BYTES = 2 * MIB


def partition(disk, number):
    """Stable by-id path of a disk's partition"""
    return f"{disk}-part{number}"


@dataclass
class HardwareInfo:
    cpu_cores: int
    total_ram_mib: int
    has_nvidia: bool

    @property
    def total_ram_gib(self):
        return self.total_ram_mib // 1024

    @property
    def low_memory(self):
        return self.total_ram_mib < MEMORY_WARNING_LIMIT_MIB

    @property
    def suggested_swap_size(self):
        # Half the RAM, between 2G and 32G
        return min(max(self.total_ram_gib // 2, 2), 32)


@dataclass
class PartitionLayout:
    disk_bytes: int
    efi_bytes: int
    boot_bytes: int
    root_bytes: int
    temporary_bytes: int


def compute_layout(disk_bytes, boot_bytes, free_tail_space_gib, temporary_minimum_gib):
    """Sizes of the four partitions of one disk.

    Partition 4 takes max(tail request, temporary minimum); partition 3 gets
    whatever is left once the GPT overhead is taken out and must not be empty.
    """
    efi_bytes = EFI_PARTITION_SIZE_MIB * MIB
    temporary_bytes = max(free_tail_space_gib, temporary_minimum_gib) * GIB
    root_bytes = disk_bytes - (GPT_OVERHEAD_BYTES + efi_bytes + boot_bytes + temporary_bytes)
    if root_bytes <= 0:
        raise ValidationError(
            f"Disk too small: {disk_bytes} bytes cannot hold EFI ({efi_bytes}), boot ({boot_bytes}) "
            f"and temporary ({temporary_bytes}) partitions, GPT overhead ({GPT_OVERHEAD_BYTES}) and a root pool partition"
        )
    return PartitionLayout(disk_bytes, efi_bytes, boot_bytes, root_bytes, temporary_bytes)


class DiskManager:
    def __init__(self, runner, by_id_dir="/dev/disk/by-id", sysfs_root="/sys", meminfo_path="/proc/meminfo"):
        self.runner = runner
        self.by_id_dir = by_id_dir
        self.sysfs_root = sysfs_root
        self.meminfo_path = meminfo_path
        self.suitable_disks = []
        self.hardware = None

    def detect_hardware(self):
        """Detect CPU, RAM and GPU capabilities"""
        print("Detecting hardware...")

        total_ram_mib = 0
        try:
            with open(self.meminfo_path, "r") as f:
                for line in f:
                    if line.startswith("MemTotal:"):
                        total_ram_mib = int(line.split()[1]) // 1024
                        break
        except OSError as e:
            print(f"Warning: Could not read memory size: {e}")

        lspci = self.runner.run(["lspci"], check=False)
        has_nvidia = "nvidia" in (lspci.out or "").lower()

        self.hardware = HardwareInfo(os.cpu_count() or 1, total_ram_mib, has_nvidia)
        print(
            f"Hardware: {self.hardware.cpu_cores} cores, {self.hardware.total_ram_gib}GB RAM, "
            f"NVIDIA: {'yes' if has_nvidia else 'no'}"
        )
        return self.hardware

    def save_disks_log(self):
        """Write the by-id listing and udev properties of every disk to the log dir"""
        disk_ids = self._all_disk_ids()
        with open(log_path("disks.log"), "w") as f:
            for disk_id in disk_ids:
                f.write(f"{disk_id} -> {os.path.realpath(disk_id)}\n")
            for disk_id in disk_ids:
                info = self.runner.run(
                    ["udevadm", "info", "--query=property", os.path.realpath(disk_id)], check=False
                ).out
                f.write(f"\n## DEVICE: {disk_id} ################################\n\n{info}\n")

    def _all_disk_ids(self):
        paths = glob.glob(os.path.join(self.by_id_dir, "*"))
        return sorted(p for p in paths if not PARTITION_PATTERN.match(p))

    def _mounted_devices(self):
        """Kernel names of every block device backing a mounted filesystem, ancestors included"""
        names = set()
        df = self.runner.run(["df", "--output=source"], check=False).out
        for source in df.splitlines()[1:]:
            source = source.strip()
            if not source.startswith("/dev/"):
                continue
            names.add(os.path.basename(os.path.realpath(source)))
            ancestors = self.runner.run(["lsblk", "-nrso", "NAME", source], check=False).out
            names.update(name.strip() for name in ancestors.splitlines() if name.strip())
        return names

    def _is_removable(self, block_device):
        try:
            with open(os.path.join(self.sysfs_root, "block", block_device, "removable")) as f:
                return f.read().strip() == "1"
        except OSError:
            return False

    def find_suitable_disks(self):
        """List stable disk ids that are not optical, removable or in use"""
        self.runner.run(["udevadm", "trigger"], check=False)

        candidates = [p for p in self._all_disk_ids() if CANDIDATE_DISK_PATTERN.match(p)]
        mounted_devices = self._mounted_devices()

        self.suitable_disks = []
        for disk_id in candidates:
            device = os.path.realpath(disk_id)
            block_device = os.path.basename(device)
            info = self.runner.run(["udevadm", "info", "--query=property", device], check=False).out

            if re.search(r"^ID_TYPE=cd$", info, re.MULTILINE):
                continue
            if block_device in mounted_devices:
                continue
            if self._is_removable(block_device):
                continue
            self.suitable_disks.append(disk_id)

        if not self.suitable_disks:
            raise NoSuitableDisksError(
                "No suitable disks have been found! If you're running inside a VMWare virtual machine, "
                'you need to set `disk.EnableUUID = "TRUE"` in the .vmx configuration file.'
            )

        print(f"Suitable disks: {', '.join(self.suitable_disks)}")
        return self.suitable_disks

    def disk_size_bytes(self, disk):
        return int(self.runner.run(["blockdev", "--getsize64", disk]).out.strip())

    def clear_disk(self, disk):
        """Remove leftover ZFS labels and filesystem signatures from a previous run"""
        for part in sorted(glob.glob(glob.escape(disk) + "-part*")):
            self.runner.run(["zpool", "labelclear", "-f", part], check=False)
        self.runner.run(["wipefs", "--all", disk])

    def create_partitions(self, plan, temporary_minimum_gib):
        """Lay out EFI, boot pool, root pool and temporary partitions on every disk.

        Returns the resolved device node of the first disk's temporary partition.
        """
        # Size check for every disk before the first one is wiped
        for disk in plan.selected_disks:
            compute_layout(self.disk_size_bytes(disk), plan.boot_partition_bytes,
                           plan.free_tail_space, temporary_minimum_gib)

        required_tail_space = max(plan.free_tail_space, temporary_minimum_gib)

        for disk in plan.selected_disks:
            print(f"\nCreating partitions on {disk}...")
            self.clear_disk(disk)

            self.runner.run(["sgdisk", f"-n1:1M:+{EFI_PARTITION_SIZE_MIB}M", "-t1:EF00", disk])  # EFI boot
            self.runner.run(["sgdisk", f"-n2:0:+{plan.boot_partition_size}", "-t2:BF01", disk])  # Boot pool
            self.runner.run(["sgdisk", f"-n3:0:-{required_tail_space}G", "-t3:BF01", disk])  # Root pool
            self.runner.run(["sgdisk", "-n4:0:0", "-t4:8300", disk])  # Temporary partition

        udev_settle(self.runner)

        for disk in plan.selected_disks:
            self.runner.run(["mkfs.fat", "-F", "32", "-n", "EFI", partition(disk, 1)])

        print("Partitions created and formatted successfully.")
        return os.path.realpath(partition(plan.selected_disks[0], 4))
