#!/usr/bin/env python3
# Installer Module
# Step table and phase state machine driving the whole installation

import enum
import os
import time
from collections import namedtuple

from .base_system import make_installer
from .command import log_path
from .config_collector import ConfigCollector
from .errors import InstallerError, PreconditionError
from .packages import HOST_BASE_PACKAGES, ZfsPackagePolicy
from .plan import DNS_SERVER, MIN_PASSPHRASE_LENGTH, TEMPORARY_VOLUME_SIZE_GIB, InstallationPlan

DISTRIBUTION = "Ubuntu"


class Phase(enum.Enum):
    SURVEYING = "Surveying"
    CONFIGURING = "Configuring"
    PARTITIONING = "Partitioning"
    POOL_BUILDING = "PoolBuilding"
    BASE_INSTALLING = "BaseInstalling"
    MIGRATING = "Migrating"
    CHROOT_CONFIGURING = "ChrootConfiguring"
    EXITING = "Exiting"
    COMPLETED = "Completed"
    ABORTED = "Aborted"


PHASE_ORDER = [
    Phase.SURVEYING,
    Phase.CONFIGURING,
    Phase.PARTITIONING,
    Phase.POOL_BUILDING,
    Phase.BASE_INSTALLING,
    Phase.MIGRATING,
    Phase.CHROOT_CONFIGURING,
    Phase.EXITING,
]

TERMINAL_PHASES = (Phase.COMPLETED, Phase.ABORTED)

# (step name, phase, Installer method name)
DEFAULT_STEPS = [
    ("store_os_distro_information", Phase.SURVEYING, "store_os_distro_information"),
    ("store_running_processes", Phase.SURVEYING, "store_running_processes"),
    ("check_prerequisites", Phase.SURVEYING, "check_prerequisites"),
    ("display_intro_banner", Phase.SURVEYING, "display_intro_banner"),
    ("check_system_memory", Phase.SURVEYING, "check_system_memory"),
    ("save_disks_log", Phase.SURVEYING, "save_disks_log"),
    ("find_suitable_disks", Phase.SURVEYING, "find_suitable_disks"),
    ("prepare_standard_repositories", Phase.SURVEYING, "prepare_standard_repositories"),
    ("update_apt_index", Phase.SURVEYING, "update_apt_index"),
    ("set_use_zfs_ppa", Phase.SURVEYING, "set_use_zfs_ppa"),
    ("install_host_base_packages", Phase.SURVEYING, "install_host_base_packages"),
    ("collect_configuration", Phase.CONFIGURING, "collect_configuration"),
    ("install_host_zfs_packages", Phase.PARTITIONING, "install_host_zfs_packages"),
    ("setup_partitions", Phase.PARTITIONING, "setup_partitions"),
    ("create_pools_and_datasets", Phase.POOL_BUILDING, "create_pools_and_datasets"),
    ("install_operating_system", Phase.BASE_INSTALLING, "install_operating_system"),
    ("copy_zpool_cache", Phase.MIGRATING, "copy_zpool_cache"),
    ("sync_os_temp_installation_dir_to_rpool", Phase.MIGRATING, "sync_os_temp_installation_dir_to_rpool"),
    ("remove_temp_partition_and_expand_rpool", Phase.MIGRATING, "remove_temp_partition_and_expand_rpool"),
    ("prepare_jail", Phase.CHROOT_CONFIGURING, "prepare_jail"),
    ("install_jail_base_packages", Phase.CHROOT_CONFIGURING, "install_jail_base_packages"),
    ("install_jail_zfs_packages", Phase.CHROOT_CONFIGURING, "install_jail_zfs_packages"),
    ("install_timeshift", Phase.CHROOT_CONFIGURING, "install_timeshift"),
    ("prepare_fstab", Phase.CHROOT_CONFIGURING, "prepare_fstab"),
    ("prepare_efi_partition", Phase.CHROOT_CONFIGURING, "prepare_efi_partition"),
    ("configure_and_update_grub", Phase.CHROOT_CONFIGURING, "configure_and_update_grub"),
    ("sync_efi_partitions", Phase.CHROOT_CONFIGURING, "sync_efi_partitions"),
    ("update_initramfs", Phase.CHROOT_CONFIGURING, "update_initramfs"),
    ("fix_filesystem_mount_ordering", Phase.CHROOT_CONFIGURING, "fix_filesystem_mount_ordering"),
    ("configure_remaining_settings", Phase.CHROOT_CONFIGURING, "configure_remaining_settings"),
    ("prepare_for_system_exit", Phase.EXITING, "prepare_for_system_exit"),
    ("display_exit_banner", Phase.EXITING, "display_exit_banner"),
]

Step = namedtuple("Step", ["name", "phase", "action"])


def print_step_info_header(name):
    print("\n" + "#" * 79)
    print(f"# {name}")
    print("#" * 79)


def print_phase_banner(phase):
    print("\n" + "=" * 80)
    print(f"Phase: {phase.value}")
    print("=" * 80)


class Installer:
    """Runs the installation steps in order, tracking the current phase.

    ``overrides`` maps a distribution name to ``{step name: callable}``; an
    override for the running distribution replaces the default step and is
    called with the installer. The table is resolved once, here.
    """

    def __init__(self, runner, disk_manager, zfs_manager, apt, migration, boot_manager, system_config,
                 plan=None, environ=None, overrides=None, distribution=DISTRIBUTION,
                 firmware_dir="/sys/firmware/efi", os_release_path="/etc/os-release"):
        self.runner = runner
        self.disk_manager = disk_manager
        self.zfs_manager = zfs_manager
        self.apt = apt
        self.migration = migration
        self.boot_manager = boot_manager
        self.system_config = system_config
        self.plan = plan if plan is not None else InstallationPlan()
        self.environ = os.environ if environ is None else environ
        self.distribution = distribution
        self.firmware_dir = firmware_dir
        self.os_release_path = os_release_path

        self.phase = None
        self.failed_phase = None
        self.completed_steps = []
        self.temp_volume_device = None
        self.steps = self.resolve_steps(overrides or {})

    def resolve_steps(self, overrides):
        distro_overrides = overrides.get(self.distribution, {})
        steps = []
        for name, phase, method_name in DEFAULT_STEPS:
            if name in distro_overrides:
                override = distro_overrides[name]
                steps.append(Step(f"{name}_{self.distribution}", phase, lambda fn=override: fn(self)))
            else:
                steps.append(Step(name, phase, getattr(self, method_name)))
        return steps

    def enter_phase(self, phase):
        """Move the state machine forward; a phase that was left cannot be entered again"""
        if phase is self.phase:
            return
        if self.phase in TERMINAL_PHASES:
            raise InstallerError(f"Cannot enter {phase.value}: the installation already ended ({self.phase.value})")
        if self.phase is not None and phase in PHASE_ORDER and \
                PHASE_ORDER.index(phase) < PHASE_ORDER.index(self.phase):
            raise InstallerError(f"Cannot re-enter phase {phase.value} from {self.phase.value}")
        self.phase = phase
        if phase not in TERMINAL_PHASES:
            print_phase_banner(phase)

    def run(self):
        try:
            for step in self.steps:
                self.enter_phase(step.phase)
                print_step_info_header(step.name)
                step.action()
                self.completed_steps.append(step.name)
        except BaseException:
            self.failed_phase = self.phase
            self.enter_phase(Phase.ABORTED)
            raise
        self.enter_phase(Phase.COMPLETED)
        return self.plan

    def _info_messages_enabled(self):
        return not self.environ.get("ZFS_NO_INFO_MESSAGES")

    # Surveying

    def store_os_distro_information(self):
        with open(log_path("os_information.log"), "w") as f:
            try:
                with open(self.os_release_path, "r") as release:
                    f.write(release.read())
            except OSError as e:
                f.write(f"os-release unavailable: {e}\n")
            f.write(f"DESKTOP_SESSION={self.environ.get('DESKTOP_SESSION') or 'unknown'}\n")

    def store_running_processes(self):
        with open(log_path("running_processes.log"), "w") as f:
            f.write(self.runner.run(["ps", "ax", "--forest"], check=False).out)

    def check_prerequisites(self):
        """Refuse to run when the machine cannot be installed to; nothing is touched yet"""
        if not os.path.isdir(self.firmware_dir):
            raise PreconditionError("System firmware directory not found; make sure to boot in EFI mode!")
        if os.geteuid() != 0:
            raise PreconditionError("This script must be run with administrative privileges!")
        if not self.runner.run(["ping", "-c", "1", DNS_SERVER], check=False).ok:
            raise PreconditionError(f"Can't contact the DNS ({DNS_SERVER})!")

        passphrase = self.environ.get("ZFS_PASSPHRASE", "")
        if 0 < len(passphrase) < MIN_PASSPHRASE_LENGTH:
            raise PreconditionError(
                f"The passphrase provided is too short; at least {MIN_PASSPHRASE_LENGTH} chars required."
            )

    def display_intro_banner(self):
        if not self._info_messages_enabled():
            return
        print("\nUbuntu ZFS Installer\n")
        print("This installer will:")
        print("- Install Ubuntu with a ZFS root filesystem")
        print("- Configure the user account and system settings")
        print("- Optionally install Timeshift for system snapshots")
        print("- Optionally use ZFSBootMenu for boot environment management")
        print("\nWARNING: The selected disks will be wiped. Press Ctrl+C to abort at any time.\n")

    def check_system_memory(self):
        hardware = self.disk_manager.detect_hardware()
        if hardware.low_memory and self._info_messages_enabled():
            print("Warning: ZFS module compilation may fail on systems with limited RAM.")
            print("Consider adding swap or reducing CPU threads if compilation fails.")

    def save_disks_log(self):
        self.disk_manager.save_disks_log()

    def find_suitable_disks(self):
        self.disk_manager.find_suitable_disks()

    def prepare_standard_repositories(self):
        self.apt.add_repository("universe")

    def update_apt_index(self):
        self.apt.update()

    def set_use_zfs_ppa(self):
        self.apt.decide_zfs_source(ZfsPackagePolicy.from_environment(self.environ))

    def install_host_base_packages(self):
        self.apt.install(HOST_BASE_PACKAGES)

    # Configuring

    def collect_configuration(self):
        ConfigCollector(
            self.plan,
            environ=self.environ,
            suitable_disks=self.disk_manager.suitable_disks,
            hardware=self.disk_manager.hardware,
        ).collect()
        self.plan.finalize()

    # Partitioning, pools, base system

    def install_host_zfs_packages(self):
        self.apt.install_host_zfs(skip_live_module=self.environ.get("ZFS_SKIP_LIVE_ZFS_MODULE_INSTALL") == "1")

    def setup_partitions(self):
        self.temp_volume_device = self.disk_manager.create_partitions(self.plan, TEMPORARY_VOLUME_SIZE_GIB)

    def create_pools_and_datasets(self):
        self.zfs_manager.build(self.plan, timestamp=int(time.time()))

    def install_operating_system(self):
        base_installer = make_installer(
            self.plan.install_method, self.runner, self.apt, self.migration.source_dir
        )
        base_installer.install(self.plan, self.temp_volume_device)

    # Migrating

    def copy_zpool_cache(self):
        # Must run before the reclaim: exporting drops the pools from the host cache
        self.zfs_manager.copy_zpool_cache()

    def sync_os_temp_installation_dir_to_rpool(self):
        self.migration.sync_to_root_pool()

    def remove_temp_partition_and_expand_rpool(self):
        self.migration.reclaim_temporary_partition(self.plan)

    # Chroot configuring

    def prepare_jail(self):
        self.system_config.prepare_jail()

    def install_jail_base_packages(self):
        self.system_config.install_base_packages(self.plan)

    def install_jail_zfs_packages(self):
        self.system_config.install_zfs_packages()

    def install_timeshift(self):
        self.system_config.install_timeshift(self.plan)

    def prepare_fstab(self):
        self.system_config.prepare_fstab(self.plan)

    def prepare_efi_partition(self):
        self.boot_manager.prepare_efi_partition(self.plan)

    def configure_and_update_grub(self):
        self.boot_manager.configure_grub(self.plan)

    def sync_efi_partitions(self):
        self.boot_manager.sync_efi_partitions(self.plan)

    def update_initramfs(self):
        self.system_config.update_initramfs()

    def fix_filesystem_mount_ordering(self):
        self.system_config.fix_filesystem_mount_ordering(self.plan)

    def configure_remaining_settings(self):
        self.system_config.configure_remaining_settings()

    # Exiting

    def prepare_for_system_exit(self):
        self.system_config.prepare_for_system_exit()

    def display_exit_banner(self):
        if not self._info_messages_enabled():
            return
        plan = self.plan
        print("\nZFS Ubuntu installation completed successfully!\n")
        print("System Configuration:")
        print(f"- Ubuntu {plan.ubuntu_version}")
        print(f"- Hostname: {plan.hostname}")
        print(f"- User: {plan.username}")
        print(f"- Desktop: {plan.desktop_environment}")
        print(f"- Boot Manager: {'ZFSBootMenu' if plan.use_zfsbootmenu else 'GRUB'}")
        print(f"- Timeshift: {'Installed' if plan.install_timeshift else 'Not installed'}")
        print("\nYou can now reboot to enjoy your ZFS system!")
