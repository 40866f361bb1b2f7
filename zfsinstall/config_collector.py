#!/usr/bin/env python3
# Configuration Collector Module
# Gathers installation parameters from ZFS_* variables or interactive prompts

import os
import shlex

from InquirerPy import inquirer
from InquirerPy.base.control import Choice

from .errors import ValidationError
from .plan import (
    DEFAULT_BOOT_PARTITION_SIZE,
    DEFAULT_BPOOL_CREATE_OPTIONS,
    DEFAULT_DATASET_CREATE_OPTIONS,
    DEFAULT_RPOOL_CREATE_OPTIONS,
    MIN_PASSPHRASE_LENGTH,
    VdevGroup,
    VdevKind,
    check_vdev_topology,
    is_acceptable_passphrase,
    is_valid,
    parse_flag,
    parse_vdev_configs,
    unassigned_indexes,
    validate,
)
from .secret import Secret
from .zfs_manager import compose_vdev_args

BY_ID_PREFIX = "/dev/disk/by-id/"


def is_automated(environ):
    return environ.get("ZFS_AUTOMATED", "") not in ("", "0")


class ConfigCollector:
    """Fills an InstallationPlan, environment first, prompting for the rest.

    Values coming from the environment cannot be re-prompted, so an invalid
    one is fatal. Prompted values are re-asked until they are valid.
    """

    def __init__(self, plan, environ=None, suitable_disks=(), hardware=None):
        self.plan = plan
        self.environ = os.environ if environ is None else environ
        self.suitable_disks = list(suitable_disks)
        self.hardware = hardware
        self.automated = is_automated(self.environ)

    def collect(self):
        """Run every question in order and return the plan"""
        self.ask_ubuntu_version()
        self.ask_installation_method()
        self.ask_user_configuration()
        self.ask_hostname()
        self.ask_system_configuration()
        self.ask_desktop_environment()
        self.ask_additional_options()

        self.select_disks()
        self.select_vdev_configs()
        self.ask_encryption()
        self.ask_boot_partition_size()
        self.ask_swap_size()
        self.ask_free_tail_space()
        self.ask_rpool_name()
        self.ask_pool_create_options()
        self.ask_dataset_create_options()
        return self.plan

    # Helpers

    def _env(self, name):
        value = self.environ.get(name)
        return value if value else None

    def _resolve(self, field_name, env_name, default, prompt):
        value = self._env(env_name)
        if value is not None:
            return validate(field_name, value)
        if self.automated:
            if default is None:
                raise ValidationError(f"{env_name} must be set for an automated installation")
            return validate(field_name, default)
        return prompt()

    def _text(self, field_name, env_name, message, default, invalid_message=None):
        return self._resolve(
            field_name,
            env_name,
            default,
            lambda: inquirer.text(
                message=message,
                default=default or "",
                validate=lambda text: is_valid(field_name, text),
                invalid_message=invalid_message or f"Invalid {field_name.replace('_', ' ')}!",
            ).execute(),
        )

    def _select(self, field_name, env_name, message, choices, default):
        return self._resolve(
            field_name,
            env_name,
            default,
            lambda: inquirer.select(message=message, choices=choices, default=default).execute(),
        )

    def _flag(self, env_name, message, default):
        value = self._env(env_name)
        if value is not None:
            return parse_flag(value)
        if self.automated:
            return default
        return inquirer.confirm(message=message, default=default).execute()

    def _show(self, **values):
        for name, value in values.items():
            print(f"{name}: {value}")

    # Operating system and identity

    def ask_ubuntu_version(self):
        self.plan.ubuntu_version = self._select(
            "ubuntu_version",
            "ZFS_UBUNTU_VERSION",
            "Select Ubuntu version to install:",
            [
                Choice("20.04", "Ubuntu 20.04 LTS (Focal)"),
                Choice("22.04", "Ubuntu 22.04 LTS (Jammy)"),
                Choice("24.04", "Ubuntu 24.04 LTS (Noble)"),
                Choice("25.04", "Ubuntu 25.04 (Plucky)"),
            ],
            "22.04",
        )
        self._show(ubuntu_version=self.plan.ubuntu_version)

    def ask_installation_method(self):
        self.plan.install_method = self._select(
            "install_method",
            "ZFS_INSTALL_METHOD",
            "Select installation method:",
            [
                Choice("debootstrap", "Fresh installation via debootstrap"),
                Choice("timeshift_restore", "Restore from Timeshift backup"),
            ],
            "debootstrap",
        )

        backup_path = self._env("ZFS_TIMESHIFT_BACKUP_PATH")
        if backup_path is not None:
            self.plan.timeshift_backup_path = backup_path
        elif self.plan.install_method == "timeshift_restore" and not self.automated:
            self.plan.timeshift_backup_path = inquirer.text(
                message="Enter the Timeshift backup path:",
                default=self.plan.timeshift_backup_path,
                validate=lambda text: len(text) > 0,
            ).execute()

        self._show(install_method=self.plan.install_method)

    def ask_user_configuration(self):
        """Username, password (entered twice) and full name of the primary user"""
        self.plan.username = self._text(
            "username", "ZFS_USERNAME", "Enter username (lowercase, alphanumeric):", "user"
        )

        password = self._env("ZFS_USER_PASSWORD")
        if password is None:
            if self.automated:
                raise ValidationError("ZFS_USER_PASSWORD must be set for an automated installation")
            while True:
                password = inquirer.secret(
                    message=f"Enter password for {self.plan.username}:",
                    validate=lambda text: len(text) > 0,
                    invalid_message="The password must not be empty!",
                ).execute()
                repeat = inquirer.secret(message="Repeat password:").execute()
                if password == repeat:
                    break
                print("Passwords do not match. Please try again.")
        self.plan.user_password = Secret(password)

        fullname = self._env("ZFS_USER_FULLNAME")
        if fullname is None:
            if self.automated:
                fullname = "User"
            else:
                fullname = inquirer.text(message=f"Enter full name for {self.plan.username}:", default="User").execute()
        self.plan.user_fullname = fullname

        self._show(username=self.plan.username, user_fullname=self.plan.user_fullname)

    def ask_hostname(self):
        self.plan.hostname = self._text("hostname", "ZFS_HOSTNAME", "Enter system hostname:", "zfs-system")
        self._show(hostname=self.plan.hostname)

    def ask_system_configuration(self):
        self.plan.timezone = self._text(
            "timezone", "ZFS_TIMEZONE", "Enter timezone (e.g. America/New_York):", "UTC"
        )
        self.plan.locale = self._text("locale", "ZFS_LOCALE", "Enter system locale:", "en_US.UTF-8")
        self.plan.keyboard_layout = self._text(
            "keyboard_layout", "ZFS_KEYBOARD_LAYOUT", "Enter keyboard layout:", "us"
        )
        self._show(
            timezone=self.plan.timezone,
            locale=self.plan.locale,
            keyboard_layout=self.plan.keyboard_layout,
        )

    def ask_desktop_environment(self):
        self.plan.desktop_environment = self._select(
            "desktop_environment",
            "ZFS_DESKTOP_ENVIRONMENT",
            "Select desktop environment:",
            [
                Choice("kde", "KDE Plasma Desktop"),
                Choice("gnome", "GNOME Desktop"),
                Choice("xfce", "XFCE Desktop"),
                Choice("minimal", "Minimal (no desktop)"),
            ],
            "gnome",
        )
        self._show(desktop_environment=self.plan.desktop_environment)

    def ask_additional_options(self):
        use_zfsbootmenu = self._flag(
            "ZFS_USE_ZFSBOOTMENU",
            "Use ZFSBootMenu instead of GRUB? (better ZFS snapshot management and boot options)",
            False,
        )
        self.plan.bootloader = "zfsbootmenu" if use_zfsbootmenu else "grub"
        self.plan.enable_ssh = self._flag("ZFS_ENABLE_SSH", "Enable SSH server?", False)

        install_timeshift = self._env("ZFS_INSTALL_TIMESHIFT")
        if install_timeshift is not None:
            self.plan.install_timeshift = parse_flag(install_timeshift)

        self._show(
            bootloader=self.plan.bootloader,
            enable_ssh=self.plan.enable_ssh,
            install_timeshift=self.plan.install_timeshift,
        )

    # Disks and pools

    def select_disks(self):
        raw = self._env("ZFS_SELECTED_DISKS")
        if raw is not None:
            disks = [disk for disk in raw.split(",") if disk]
            if not disks:
                raise ValidationError(f"ZFS_SELECTED_DISKS lists no disk: {raw!r}")
            self._check_disks(disks)
        elif self.automated:
            if len(self.suitable_disks) != 1:
                raise ValidationError("ZFS_SELECTED_DISKS must be set when more than one disk is suitable")
            disks = list(self.suitable_disks)
        else:
            enabled = len(self.suitable_disks) == 1
            choices = [
                Choice(disk, f"{disk} ({os.path.basename(os.path.realpath(disk))})", enabled)
                for disk in self.suitable_disks
            ]
            print("\nDevices with mounted partitions, cdroms, and removable devices are not displayed!")
            disks = inquirer.checkbox(
                message="Select the ZFS devices:",
                choices=choices,
                validate=lambda result: len(result) >= 1,
                invalid_message="Select at least one disk!",
            ).execute()

        self.plan.selected_disks = disks
        self._show(selected_disks=" ".join(disks))

    def _check_disks(self, disks):
        """Only by-id paths of disks that survived the survey may be wiped"""
        for disk in disks:
            if not disk.startswith(BY_ID_PREFIX):
                raise ValidationError(f"{disk} is not a {BY_ID_PREFIX} identifier")
            if disk not in self.suitable_disks:
                raise ValidationError(f"{disk} is not a suitable disk (missing, mounted, removable or a cdrom)")
        if len(set(disks)) != len(disks):
            raise ValidationError(f"ZFS_SELECTED_DISKS lists a disk more than once: {','.join(disks)}")

    def select_vdev_configs(self):
        """Split the selected disks into vdev groups, every disk in exactly one group"""
        disks = self.plan.selected_disks
        raw = self._env("ZFS_VDEV_CONFIGS")

        if raw is not None:
            groups = check_vdev_topology(parse_vdev_configs(raw), len(disks))
        elif len(disks) == 1:
            groups = [VdevGroup((0,), VdevKind.STRIPE)]
        elif self.automated:
            raise ValidationError("ZFS_VDEV_CONFIGS must be set when more than one disk is selected")
        else:
            groups = self._ask_vdev_groups(disks)

        self.plan.vdev_groups = groups
        self._show(vdev_configs=" ".join(compose_vdev_args(groups, disks)))

    def _ask_vdev_groups(self, disks):
        groups = []
        while True:
            remaining = unassigned_indexes(groups, len(disks))
            if not remaining:
                return groups

            current_setup = " ".join(compose_vdev_args(groups, disks)) or "(none)"
            print(f"\nCurrent pool creation setup: {current_setup}")

            kind = inquirer.select(
                message="Choose the disk group type:",
                choices=[Choice(k, k.label) for k in VdevKind],
            ).execute()

            indexes = inquirer.checkbox(
                message="Choose the disks for the current disk group:",
                choices=[Choice(i, os.path.basename(disks[i])) for i in remaining],
            ).execute()

            if not indexes:
                continue
            if len(indexes) < kind.min_disks:
                print(f"A {kind.label} group needs at least {kind.min_disks} disks. Please try again.")
                continue
            groups.append(VdevGroup(tuple(sorted(indexes)), kind))

    def ask_encryption(self):
        """Passphrase for native encryption; blank keeps encryption disabled"""
        if "ZFS_PASSPHRASE" in self.environ:
            passphrase = self.environ["ZFS_PASSPHRASE"]
            if not is_acceptable_passphrase(passphrase):
                raise ValidationError(f"The passphrase provided is too short; at least {MIN_PASSPHRASE_LENGTH} chars required.")
        elif self.automated:
            passphrase = ""
        else:
            while True:
                passphrase = inquirer.secret(
                    message=f"Please enter the passphrase ({MIN_PASSPHRASE_LENGTH} chars min.). Leave blank to keep encryption disabled:",
                ).execute()
                if not passphrase:
                    break
                repeat = inquirer.secret(message="Please repeat the passphrase:").execute()
                if passphrase == repeat and is_acceptable_passphrase(passphrase):
                    break
                print("Passphrase too short, or not matching! Please try again.")

        self.plan.passphrase = Secret(passphrase)
        self._show(encryption="enabled" if passphrase else "disabled")

    def ask_boot_partition_size(self):
        self.plan.boot_partition_size = self._text(
            "boot_partition_size",
            "ZFS_BOOT_PARTITION_SIZE",
            "Enter the boot partition size. Supported formats: '512M', '3G':",
            DEFAULT_BOOT_PARTITION_SIZE,
            "Invalid boot partition size!",
        )
        self._show(boot_partition_size=self.plan.boot_partition_size)

    def ask_swap_size(self):
        default = self.hardware.suggested_swap_size if self.hardware else 2
        self.plan.swap_size = int(self._text(
            "swap_size",
            "ZFS_SWAP_SIZE",
            "Enter the swap size in GiB (0 for no swap):",
            str(default),
            "Invalid swap size!",
        ))
        self._show(swap_size=self.plan.swap_size)

    def ask_free_tail_space(self):
        self.plan.free_tail_space = int(self._text(
            "free_tail_space",
            "ZFS_FREE_TAIL_SPACE",
            "Enter the space in GiB to leave at the end of each disk (0 for none):",
            "0",
            "Invalid size!",
        ))
        self._show(free_tail_space=self.plan.free_tail_space)

    def ask_rpool_name(self):
        self.plan.rpool_name = self._text(
            "rpool_name", "ZFS_RPOOL_NAME", "Insert the name for the root pool:", "rpool", "Invalid pool name!"
        )
        self._show(rpool_name=self.plan.rpool_name)

    def ask_pool_create_options(self):
        """Extra create options; mount and encryption options are added automatically"""
        self.plan.bpool_create_options = self._options(
            "ZFS_BPOOL_CREATE_OPTIONS",
            "Insert the create options for the boot pool (mount-related options are added automatically):",
            DEFAULT_BPOOL_CREATE_OPTIONS,
        )
        self.plan.rpool_create_options = self._options(
            "ZFS_RPOOL_CREATE_OPTIONS",
            "Insert the create options for the root pool (encryption/mount-related options are added automatically):",
            DEFAULT_RPOOL_CREATE_OPTIONS,
        )
        self._show(
            bpool_create_options=" ".join(self.plan.bpool_create_options),
            rpool_create_options=" ".join(self.plan.rpool_create_options),
        )

    def _options(self, env_name, message, default):
        raw = self._env(env_name)
        if raw is None:
            if self.automated:
                return list(default)
            raw = inquirer.text(message=message, default=" ".join(default)).execute()
        return shlex.split(raw)

    def ask_dataset_create_options(self):
        self.plan.dataset_create_options = self._env("ZFS_DATASET_CREATE_OPTIONS") or DEFAULT_DATASET_CREATE_OPTIONS
