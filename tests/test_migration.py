import os

import pytest

from zfsinstall.command import Result
from zfsinstall.migration import MigrationEngine, parse_progress
from zfsinstall.plan import VdevGroup, VdevKind
from zfsinstall.secret import Secret
from zfsinstall.zfs_manager import ZFSManager

DISK_A = "/dev/disk/by-id/ata-A"
DISK_B = "/dev/disk/by-id/ata-B"


@pytest.mark.parametrize("chunk, expected", [
    ("    1,234,567  42%   10.00MB/s    0:00:12 (xfr#10, to-chk=5/100)", 42),
    ("      9.87G 100%  120.00MB/s    0:01:18 (xfr#123, ir-chk=0/456)", 100),
    ("sending incremental file list", None),
    ("", None),
])
def test_parse_progress(chunk, expected):
    assert parse_progress(chunk) == expected


def engine(runner, tmp_path, mounts="", zfs_manager=None):
    mounts_file = tmp_path / "mounts"
    mounts_file.write_text(mounts)
    return MigrationEngine(
        runner,
        zfs_manager or ZFSManager(runner),
        source_dir="/target",
        target_dir=str(tmp_path / "mnt"),
        mounts_path=str(mounts_file),
        host_root=str(tmp_path / "host"),
    )


def test_submounts_deepest_first(runner, tmp_path):
    mounts = (
        "/dev/sda4 /target ext4 rw 0 0\n"
        "proc /target/proc proc rw 0 0\n"
        "tmpfs /target/run/user/1000 tmpfs rw 0 0\n"
        "tmpfs /target/run tmpfs rw 0 0\n"
        "tmpfs /targetfoo tmpfs rw 0 0\n"
        "/dev/sdb1 /media/my\\040disk vfat rw 0 0\n"
    )
    assert engine(runner, tmp_path, mounts).submounts() == [
        "/target/run/user/1000", "/target/proc", "/target/run",
    ]


def test_sync_to_root_pool(runner, tmp_path):
    runner.stream_output = ["  1.00G  10%", "  9.00G  100%"]
    (tmp_path / "mnt").mkdir()
    mounts = "/dev/sda4 /target ext4 rw 0 0\nproc /target/proc proc rw 0 0\n"

    engine(runner, tmp_path, mounts).sync_to_root_pool()

    commands = runner.commands
    assert commands[0] == ["umount", "/target/proc"]
    rsync = commands[1]
    assert rsync[:2] == ["rsync", "-aAX"]
    assert "--exclude=/run" in rsync and "--info=progress2" in rsync
    assert "--exclude=/etc/zfs/zpool.cache" in rsync
    assert rsync[-2:] == ["/target/", str(tmp_path / "mnt")]
    assert commands[-1] == ["umount", "/target"]


def test_stage_resolver_follows_the_symlink(runner, tmp_path):
    etc = tmp_path / "mnt" / "etc"
    etc.mkdir(parents=True)
    os.symlink("../run/systemd/resolve/stub-resolv.conf", etc / "resolv.conf")
    host_file = tmp_path / "host" / "run" / "systemd" / "resolve" / "stub-resolv.conf"
    host_file.parent.mkdir(parents=True)
    host_file.write_text("nameserver 127.0.0.53\n")

    staged = engine(runner, tmp_path).stage_resolver()

    assert staged == str(tmp_path / "mnt" / "run" / "systemd" / "resolve" / "stub-resolv.conf")
    assert (etc / "resolv.conf").read_text() == "nameserver 127.0.0.53\n"


def test_stage_resolver_touches_when_host_has_no_file(runner, tmp_path):
    etc = tmp_path / "mnt" / "etc"
    etc.mkdir(parents=True)
    os.symlink("/run/resolvconf/resolv.conf", etc / "resolv.conf")

    staged = engine(runner, tmp_path).stage_resolver()
    assert os.path.isfile(staged)
    assert os.path.getsize(staged) == 0


def test_stage_resolver_leaves_regular_files_alone(runner, tmp_path):
    etc = tmp_path / "mnt" / "etc"
    etc.mkdir(parents=True)
    (etc / "resolv.conf").write_text("nameserver 1.1.1.1\n")
    assert engine(runner, tmp_path).stage_resolver() is None


def test_reclaim_without_tail_space_grows_the_root_partition(runner, tmp_path, make_plan):
    plan = make_plan(
        selected_disks=[DISK_A, DISK_B],
        vdev_groups=[VdevGroup((0, 1), VdevKind.MIRROR)],
        passphrase=Secret("longenough"),
        free_tail_space=0,
    )
    engine(runner, tmp_path).reclaim_temporary_partition(plan)

    assert runner.commands == [
        ["zpool", "export", "-a"],
        ["parted", "-s", DISK_A, "rm", "4"],
        ["parted", "-s", DISK_A, "unit", "s", "resizepart", "3", "--", "100%"],
        ["parted", "-s", DISK_B, "rm", "4"],
        ["parted", "-s", DISK_B, "unit", "s", "resizepart", "3", "--", "100%"],
        ["udevadm", "settle", "--timeout", "10"],
        ["zpool", "import", "-l", "-R", "/mnt", "rpool"],
        ["zpool", "import", "-l", "-R", "/mnt", "bpool"],
        ["zpool", "online", "-e", "rpool", f"{DISK_A}-part3"],
        ["zpool", "online", "-e", "rpool", f"{DISK_B}-part3"],
    ]
    assert runner.find("zpool", "import")[0].input == "longenough"


def test_reclaim_keeps_requested_tail_space(runner, tmp_path, make_plan):
    engine(runner, tmp_path).reclaim_temporary_partition(make_plan(free_tail_space=5))
    resize = runner.find("parted", "-s", "/dev/disk/by-id/ata-X", "unit")[0].cmd
    assert resize[-1] == "-5G"


def test_reclaim_wipes_large_tail_partition(runner, tmp_path, make_plan):
    engine(runner, tmp_path).reclaim_temporary_partition(make_plan(free_tail_space=12))
    assert runner.commands == [["wipefs", "--all", "/dev/disk/by-id/ata-X-part4"]]


def test_pool_cache_survives_the_reclaim(runner, tmp_path, make_plan):
    host_cache = tmp_path / "zpool.cache"
    host_cache.write_bytes(b"rpool+bpool")

    def export(cmd):
        # Exporting the last pools deletes the host cache file
        host_cache.unlink()
        return Result(0, "", "", 0.0)

    runner.respond(["zpool", "export"], out=export)
    zfs_manager = ZFSManager(runner, mount_dir=str(tmp_path / "mnt"))

    zfs_manager.copy_zpool_cache(str(host_cache))
    engine(runner, tmp_path, zfs_manager=zfs_manager).reclaim_temporary_partition(make_plan(free_tail_space=0))

    assert not host_cache.exists()
    assert (tmp_path / "mnt" / "etc" / "zfs" / "zpool.cache").read_bytes() == b"rpool+bpool"
