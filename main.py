#!/usr/bin/env python3
# Ubuntu ZFS Installer
# Main entry point for the installer

import os
import sys
import argparse

from zfsinstall.command import CommandRunner
from zfsinstall.errors import InstallerError
from zfsinstall.plan import InstallationPlan
from zfsinstall.packages import AptManager
from zfsinstall.disk_manager import DiskManager
from zfsinstall.zfs_manager import ZFSManager
from zfsinstall.migration import MigrationEngine
from zfsinstall.boot_manager import BootManager
from zfsinstall.system_config import SystemConfig
from zfsinstall.exit_hook import ExitHook
from zfsinstall.installer import Installer


def build_installer(runner, plan, environ=None):
    """Wire the managers together around one installation plan"""
    apt = AptManager(runner)
    disk_manager = DiskManager(runner)
    zfs_manager = ZFSManager(runner)
    migration = MigrationEngine(runner, zfs_manager)
    boot_manager = BootManager(runner, apt)
    system_config = SystemConfig(runner, apt, zfs_manager)
    return Installer(
        runner, disk_manager, zfs_manager, apt, migration, boot_manager, system_config,
        plan=plan, environ=environ,
    )


def main(argv=None):
    parser = argparse.ArgumentParser(description="Ubuntu ZFS root installer")
    parser.add_argument("--debug", action="store_true", help="Print the traceback of a fatal error")
    parser.add_argument("--show-secrets", action="store_true",
                        help="Print passwords and passphrases literally in the exit transcript")
    args = parser.parse_args(argv)

    print("=" * 80)
    print("Ubuntu ZFS Installer")
    print("=" * 80)
    print("\nWARNING: This installer will wipe the selected disks. Make sure you have")
    print("a backup of all important data before proceeding.\n")

    # Check for root privileges
    if os.geteuid() != 0:
        print("Error: This installer must be run with root privileges.")
        print("Please run this script with sudo or as the root user.")
        sys.exit(1)

    plan = InstallationPlan()
    installer = build_installer(CommandRunner(), plan)

    try:
        with ExitHook(plan, reveal_secrets=args.show_secrets):
            installer.run()
    except KeyboardInterrupt:
        print("\nInstallation cancelled by user.")
        sys.exit(130)
    except InstallerError as e:
        phase = installer.failed_phase.value if installer.failed_phase else "startup"
        print(f"\nError during installation ({phase}): {e}")
        if args.debug:
            import traceback
            traceback.print_exc()
        sys.exit(1)
    except Exception as e:
        print(f"\nUnexpected error during installation: {e}")
        if args.debug:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
