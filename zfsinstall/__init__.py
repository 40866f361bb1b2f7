#!/usr/bin/env python3
# Ubuntu ZFS Installer
# Package initialization file

from .command import CommandRunner
from .plan import InstallationPlan
from .packages import AptManager
from .disk_manager import DiskManager
from .zfs_manager import ZFSManager
from .migration import MigrationEngine
from .boot_manager import BootManager
from .system_config import SystemConfig
from .exit_hook import ExitHook
from .installer import Installer
