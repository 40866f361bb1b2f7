#!/usr/bin/env python3
# Installation Plan Module
# Parameters of one installer run, their validation and environment round-trip

import enum
import re
import shlex
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .errors import PlanFinalizedError, ValidationError
from .secret import Secret

BPOOL_NAME = "bpool"
EFI_PARTITION_SIZE_MIB = 512
DEFAULT_BOOT_PARTITION_SIZE = "2048M"
TEMPORARY_VOLUME_SIZE_GIB = 12
ZFS_MOUNT_DIR = "/mnt"
INSTALLED_OS_MOUNT_DIR = "/target"
DNS_SERVER = "8.8.8.8"
DEFAULT_TIMESHIFT_BACKUP_PATH = "/media/timeshift"

SUPPORTED_UBUNTU_VERSIONS = {
    "20.04": "focal",
    "22.04": "jammy",
    "24.04": "noble",
    "25.04": "plucky",
}
INSTALL_METHODS = ("debootstrap", "timeshift_restore")
DESKTOP_ENVIRONMENTS = ("kde", "gnome", "xfce", "minimal")
BOOTLOADERS = ("grub", "zfsbootmenu")

DEFAULT_BPOOL_CREATE_OPTIONS = [
    "-o", "ashift=12",
    "-o", "autotrim=on",
    "-d",
    "-o", "feature@async_destroy=enabled",
    "-o", "feature@bookmarks=enabled",
    "-o", "feature@embedded_data=enabled",
    "-o", "feature@empty_bpobj=enabled",
    "-o", "feature@enabled_txg=enabled",
    "-o", "feature@extensible_dataset=enabled",
    "-o", "feature@filesystem_limits=enabled",
    "-o", "feature@hole_birth=enabled",
    "-o", "feature@large_blocks=enabled",
    "-o", "feature@lz4_compress=enabled",
    "-o", "feature@spacemap_histogram=enabled",
    "-O", "acltype=posixacl",
    "-O", "compression=lz4",
    "-O", "devices=off",
    "-O", "normalization=formD",
    "-O", "relatime=on",
    "-O", "xattr=sa",
]

DEFAULT_RPOOL_CREATE_OPTIONS = [
    "-o", "ashift=12",
    "-o", "autotrim=on",
    "-O", "acltype=posixacl",
    "-O", "compression=lz4",
    "-O", "dnodesize=auto",
    "-O", "normalization=formD",
    "-O", "relatime=on",
    "-O", "xattr=sa",
    "-O", "devices=off",
]

# One dataset per line: path relative to the root pool, then its properties.
DEFAULT_DATASET_CREATE_OPTIONS = """
ROOT                              canmount=off mountpoint=none
ROOT/{hostname}                   mountpoint=/ com.ubuntu.zsys:bootfs=yes com.ubuntu.zsys:last-used={timestamp}
ROOT/{hostname}/srv               com.ubuntu.zsys:bootfs=no
ROOT/{hostname}/usr               canmount=off com.ubuntu.zsys:bootfs=no
ROOT/{hostname}/usr/local
ROOT/{hostname}/var               canmount=off com.ubuntu.zsys:bootfs=no
ROOT/{hostname}/var/games
ROOT/{hostname}/var/lib
ROOT/{hostname}/var/lib/AccountsService
ROOT/{hostname}/var/lib/apt
ROOT/{hostname}/var/lib/dpkg
ROOT/{hostname}/var/lib/NetworkManager
ROOT/{hostname}/var/log
ROOT/{hostname}/var/mail
ROOT/{hostname}/var/snap
ROOT/{hostname}/var/spool
ROOT/{hostname}/var/www
ROOT/{hostname}/tmp               com.ubuntu.zsys:bootfs=no

USERDATA                          mountpoint=/ canmount=off
USERDATA/root                     mountpoint=/root canmount=on com.ubuntu.zsys:bootfs-datasets={rpool_name}/ROOT/{hostname}
USERDATA/{username}               mountpoint=/home/{username} canmount=on com.ubuntu.zsys:bootfs-datasets={rpool_name}/ROOT/{hostname}
"""

# VALIDATION ###################################################################

_PATTERNS = {
    "username": (r"^[a-z][a-z0-9_-]*$", "Invalid username! Use lowercase letters, digits, '_' and '-'."),
    "hostname": (r"^[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9]$", "Invalid hostname!"),
    "rpool_name": (r"^[a-z][a-zA-Z_:.-]+$", "Invalid pool name!"),
    "boot_partition_size": (r"^[0-9]+[MGmg]$", "Invalid boot partition size! Supported formats: '512M', '3G'."),
    "swap_size": (r"^[0-9]+$", "Invalid swap size!"),
    "free_tail_space": (r"^[0-9]+$", "Invalid size!"),
}

_CHOICES = {
    "ubuntu_version": tuple(SUPPORTED_UBUNTU_VERSIONS),
    "install_method": INSTALL_METHODS,
    "desktop_environment": DESKTOP_ENVIRONMENTS,
    "bootloader": BOOTLOADERS,
}

MIN_PASSPHRASE_LENGTH = 8


def is_valid(field_name, value):
    """Return True when ``value`` satisfies the constraint of ``field_name``"""
    if field_name in _PATTERNS:
        return re.match(_PATTERNS[field_name][0], value or "") is not None
    if field_name in _CHOICES:
        return value in _CHOICES[field_name]
    return bool(value)


def validate(field_name, value):
    if not is_valid(field_name, value):
        if field_name in _PATTERNS:
            message = _PATTERNS[field_name][1]
        elif field_name in _CHOICES:
            message = f"Invalid {field_name}: expected one of {', '.join(_CHOICES[field_name])}"
        else:
            message = f"{field_name} must not be empty"
        raise ValidationError(f"{message} (got {value!r})")
    return value


def is_acceptable_passphrase(passphrase):
    """Empty disables encryption; anything else needs the minimum length"""
    return len(passphrase) == 0 or len(passphrase) >= MIN_PASSPHRASE_LENGTH


def validate_passphrase(passphrase, confirmation):
    if passphrase != confirmation:
        raise ValidationError("Passphrase and confirmation do not match")
    if not is_acceptable_passphrase(passphrase):
        raise ValidationError(f"Passphrase too short; at least {MIN_PASSPHRASE_LENGTH} chars required")
    return passphrase


def parse_size_bytes(size):
    """Convert '512M' / '3G' to bytes"""
    validate("boot_partition_size", size)
    units = {"m": 1024 ** 2, "g": 1024 ** 3}
    return int(size[:-1]) * units[size[-1].lower()]


def parse_flag(value):
    if value not in ("0", "1"):
        raise ValidationError(f"Expected 0 or 1, got {value!r}")
    return value == "1"


# VDEV TOPOLOGY ################################################################

class VdevKind(str, enum.Enum):
    STRIPE = "stripe"
    MIRROR = "mirror"
    RAIDZ1 = "raidz1"
    RAIDZ2 = "raidz2"
    RAIDZ3 = "raidz3"

    @classmethod
    def parse(cls, text):
        aliases = {"": cls.STRIPE, "raidz": cls.RAIDZ1}
        if text in aliases:
            return aliases[text]
        try:
            return cls(text)
        except ValueError:
            raise ValidationError(f"Unknown vdev type: {text!r}")

    @property
    def zpool_keyword(self):
        """Keyword placed before the group's devices on the zpool command line"""
        return {
            VdevKind.STRIPE: None,
            VdevKind.MIRROR: "mirror",
            VdevKind.RAIDZ1: "raidz",
            VdevKind.RAIDZ2: "raidz2",
            VdevKind.RAIDZ3: "raidz3",
        }[self]

    @property
    def label(self):
        return {
            VdevKind.STRIPE: "Striping",
            VdevKind.MIRROR: "Mirroring",
            VdevKind.RAIDZ1: "RAIDZ1",
            VdevKind.RAIDZ2: "RAIDZ2",
            VdevKind.RAIDZ3: "RAIDZ3",
        }[self]

    @property
    def min_disks(self):
        return {
            VdevKind.STRIPE: 1,
            VdevKind.MIRROR: 2,
            VdevKind.RAIDZ1: 2,
            VdevKind.RAIDZ2: 3,
            VdevKind.RAIDZ3: 4,
        }[self]


@dataclass(frozen=True)
class VdevGroup:
    indexes: Tuple[int, ...]
    kind: VdevKind


def assigned_indexes(groups):
    return [index for group in groups for index in group.indexes]


def unassigned_indexes(groups, disk_count):
    assigned = set(assigned_indexes(groups))
    return [i for i in range(disk_count) if i not in assigned]


def check_vdev_topology(groups, disk_count):
    """Every disk index must belong to exactly one group"""
    indexes = assigned_indexes(groups)
    for group in groups:
        if len(group.indexes) < group.kind.min_disks:
            raise ValidationError(
                f"A {group.kind.label} group needs at least {group.kind.min_disks} disks, got {list(group.indexes)}"
            )
    if len(indexes) != len(set(indexes)):
        raise ValidationError(f"A disk is assigned to more than one vdev group: {indexes}")
    if set(indexes) != set(range(disk_count)):
        raise ValidationError(
            f"Vdev groups {sorted(indexes)} do not cover exactly the selected disks 0..{disk_count - 1}"
        )
    return groups


_VDEV_ENTRY = re.compile(r'\[([0-9, ]+)\]="?([a-z0-9]*)"?')


def parse_vdev_configs(text):
    """Parse ``[0,1]="mirror" [2]=""`` into vdev groups"""
    groups = []
    consumed = _VDEV_ENTRY.sub("", text).strip()
    if consumed:
        raise ValidationError(f"Malformed vdev configuration: {text!r}")
    for indexes, kind in _VDEV_ENTRY.findall(text):
        groups.append(VdevGroup(tuple(int(i) for i in indexes.split(",") if i.strip()), VdevKind.parse(kind)))
    return groups


def format_vdev_configs(groups):
    entries = []
    for group in groups:
        kind = "" if group.kind is VdevKind.STRIPE else group.kind.value
        entries.append(f'[{",".join(str(i) for i in group.indexes)}]="{kind}"')
    return " ".join(entries)


# DATASET LAYOUT ###############################################################

@dataclass(frozen=True)
class DatasetSpec:
    path: str
    properties: Tuple[Tuple[str, str], ...] = ()

    def option_args(self):
        args = []
        for name, value in self.properties:
            args.extend(["-o", f"{name}={value}"])
        return args

    def get(self, name, default=None):
        return dict(self.properties).get(name, default)


def dataset_layout(template, username, hostname, rpool_name, timestamp):
    """Expand the dataset table; placeholders are substituted exactly once"""
    values = {
        "{username}": username,
        "{hostname}": hostname,
        "{rpool_name}": rpool_name,
        "{timestamp}": str(timestamp),
    }
    pattern = re.compile("|".join(re.escape(k) for k in values))
    expanded = pattern.sub(lambda m: values[m.group(0)], template)

    layout = []
    for line in expanded.splitlines():
        entries = line.split()
        if not entries:
            continue
        properties = []
        for entry in entries[1:]:
            if "=" not in entry:
                raise ValidationError(f"Malformed dataset property {entry!r} in line {line.strip()!r}")
            name, value = entry.split("=", 1)
            properties.append((name, value))
        layout.append(DatasetSpec(entries[0], tuple(properties)))
    return layout


# PLAN #########################################################################

@dataclass
class InstallationPlan:
    ubuntu_version: str = ""
    install_method: str = ""
    username: str = ""
    user_password: Secret = field(default_factory=Secret)
    user_fullname: str = ""
    hostname: str = ""
    timezone: str = ""
    locale: str = ""
    keyboard_layout: str = ""
    desktop_environment: str = ""
    bootloader: str = ""
    enable_ssh: Optional[bool] = None
    install_timeshift: bool = True
    timeshift_backup_path: str = DEFAULT_TIMESHIFT_BACKUP_PATH
    selected_disks: List[str] = field(default_factory=list)
    vdev_groups: List[VdevGroup] = field(default_factory=list)
    passphrase: Secret = field(default_factory=Secret)
    boot_partition_size: str = ""
    swap_size: Optional[int] = None
    free_tail_space: Optional[int] = None
    rpool_name: str = ""
    bpool_create_options: List[str] = field(default_factory=list)
    rpool_create_options: List[str] = field(default_factory=list)
    dataset_create_options: str = ""

    def __setattr__(self, name, value):
        if getattr(self, "_finalized", False):
            raise PlanFinalizedError(f"Cannot change {name}: the installation plan is finalized")
        super().__setattr__(name, value)

    @property
    def finalized(self):
        return getattr(self, "_finalized", False)

    def finalize(self):
        """Check cross-field invariants and freeze the plan"""
        for name in ("ubuntu_version", "install_method", "username", "hostname",
                     "desktop_environment", "bootloader", "rpool_name", "boot_partition_size"):
            validate(name, getattr(self, name))
        if not self.selected_disks:
            raise ValidationError("No disks selected")
        check_vdev_topology(self.vdev_groups, len(self.selected_disks))
        if not is_acceptable_passphrase(self.passphrase.reveal()):
            raise ValidationError("Passphrase too short; at least 8 chars required")
        if self.swap_size is None or self.free_tail_space is None:
            raise ValidationError("Swap size and free tail space must be set")

        self.selected_disks = tuple(self.selected_disks)
        self.vdev_groups = tuple(self.vdev_groups)
        self.bpool_create_options = tuple(self.bpool_create_options)
        self.rpool_create_options = tuple(self.rpool_create_options)
        object.__setattr__(self, "_finalized", True)
        return self

    @property
    def codename(self):
        return SUPPORTED_UBUNTU_VERSIONS[self.ubuntu_version]

    @property
    def bpool_name(self):
        return BPOOL_NAME

    @property
    def pool_names(self):
        return {"root": self.rpool_name, "boot": BPOOL_NAME}

    @property
    def encrypted(self):
        return bool(self.passphrase)

    @property
    def use_zfsbootmenu(self):
        return self.bootloader == "zfsbootmenu"

    @property
    def boot_partition_bytes(self):
        return parse_size_bytes(self.boot_partition_size)

    @property
    def temporary_partition_gib(self):
        """Size of partition 4: the tail reservation, never below the base OS minimum"""
        return max(self.free_tail_space, TEMPORARY_VOLUME_SIZE_GIB)

    @property
    def root_dataset(self):
        return f"{self.rpool_name}/ROOT/{self.hostname}"

    @property
    def boot_dataset(self):
        return f"{BPOOL_NAME}/BOOT/{self.hostname}"

    def datasets(self, timestamp):
        return dataset_layout(
            self.dataset_create_options or DEFAULT_DATASET_CREATE_OPTIONS,
            self.username,
            self.hostname,
            self.rpool_name,
            timestamp,
        )


# ENVIRONMENT ROUND-TRIP #######################################################

SECRET_VARIABLES = ("ZFS_USER_PASSWORD", "ZFS_PASSPHRASE")


def _flag(value):
    return "" if value is None else ("1" if value else "0")


def to_environment(plan):
    """Plan values as ZFS_* variables, in transcript order"""
    return [
        ("ZFS_UBUNTU_VERSION", plan.ubuntu_version),
        ("ZFS_INSTALL_METHOD", plan.install_method),
        ("ZFS_USERNAME", plan.username),
        ("ZFS_USER_PASSWORD", plan.user_password.reveal()),
        ("ZFS_USER_FULLNAME", plan.user_fullname),
        ("ZFS_HOSTNAME", plan.hostname),
        ("ZFS_TIMEZONE", plan.timezone),
        ("ZFS_LOCALE", plan.locale),
        ("ZFS_KEYBOARD_LAYOUT", plan.keyboard_layout),
        ("ZFS_DESKTOP_ENVIRONMENT", plan.desktop_environment),
        ("ZFS_USE_ZFSBOOTMENU", _flag(plan.use_zfsbootmenu if plan.bootloader else None)),
        ("ZFS_ENABLE_SSH", _flag(plan.enable_ssh)),
        ("ZFS_INSTALL_TIMESHIFT", _flag(plan.install_timeshift)),
        ("ZFS_TIMESHIFT_BACKUP_PATH", plan.timeshift_backup_path),
        ("ZFS_SELECTED_DISKS", ",".join(plan.selected_disks)),
        ("ZFS_VDEV_CONFIGS", format_vdev_configs(plan.vdev_groups)),
        ("ZFS_BOOT_PARTITION_SIZE", plan.boot_partition_size),
        ("ZFS_PASSPHRASE", plan.passphrase.reveal()),
        ("ZFS_RPOOL_NAME", plan.rpool_name),
        ("ZFS_SWAP_SIZE", "" if plan.swap_size is None else str(plan.swap_size)),
        ("ZFS_FREE_TAIL_SPACE", "" if plan.free_tail_space is None else str(plan.free_tail_space)),
        ("ZFS_BPOOL_CREATE_OPTIONS", " ".join(plan.bpool_create_options)),
        ("ZFS_RPOOL_CREATE_OPTIONS", " ".join(plan.rpool_create_options)),
        ("ZFS_DATASET_CREATE_OPTIONS", plan.dataset_create_options),
    ]


def _redacted(name):
    # ${VAR:?} stops a shell replaying the transcript when VAR is unset or empty
    return f'"${{{name}:?{name} must be set to replay this installation}}"'


def transcript(plan, reveal_secrets=False):
    """Shell ``export`` lines that replay this plan unattended"""
    lines = []
    for name, value in to_environment(plan):
        if name in SECRET_VARIABLES and value and not reveal_secrets:
            lines.append(f"export {name}={_redacted(name)}")
        else:
            lines.append(f"export {name}={shlex.quote(value)}")
    return "\n".join(lines)


_REFERENCE = re.compile(r"^\$\{(\w+)(:\?(.*))?\}$", re.DOTALL)


def parse_transcript(text, environ=None):
    """Turn transcript text back into an environment mapping.

    Redacted secret lines resolve against ``environ``, the way a shell
    would when sourcing the transcript; a required one that is unset or
    empty is an error there too.
    """
    environ = environ or {}
    result = {}
    for token in shlex.split(text, comments=True):
        if token == "export" or "=" not in token:
            continue
        name, value = token.split("=", 1)
        reference = _REFERENCE.match(value)
        if reference and reference.group(1) == name:
            value = environ.get(name, "")
            if reference.group(2) and not value:
                raise ValidationError(reference.group(3) or f"{name} must be set")
        result[name] = value
    return result
