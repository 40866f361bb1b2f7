import pytest

from zfsinstall.packages import AptManager, ZfsPackagePolicy, version_tuple


@pytest.mark.parametrize("version, expected", [
    ("2.1.5-1ubuntu6~22.04.1", (2, 1, 5)),
    ("0.8", (0, 8)),
    ("", ()),
    ("unknown", ()),
])
def test_version_tuple(version, expected):
    assert version_tuple(version) == expected


def test_policy_compares_numerically():
    policy = ZfsPackagePolicy(threshold="0.8")
    assert not policy.needs_ppa("2.1")
    assert not policy.needs_ppa("0.10")
    assert policy.needs_ppa("0.7")
    assert policy.needs_ppa("")


def test_policy_from_environment():
    policy = ZfsPackagePolicy.from_environment({"ZFS_USE_PPA": "1", "ZFS_PPA_VERSION_THRESHOLD": "2.2"})
    assert policy.force_ppa
    assert policy.needs_ppa("9.9")
    assert ZfsPackagePolicy.from_environment({}).threshold == "0.8"


def test_decide_zfs_source_reads_apt_show(runner):
    runner.respond(["apt", "show", "zfsutils-linux"], out="Package: zfsutils-linux\nVersion: 2.1.5-1ubuntu6\n")
    apt = AptManager(runner)
    assert apt.decide_zfs_source(ZfsPackagePolicy(threshold="2.2")) is True
    assert apt.use_ppa


def test_add_repository_skips_update_when_supported(runner):
    runner.respond(["add-apt-repository", "--help"], out="  -n, --no-update  Do not update package cache\n")
    AptManager(runner).add_repository("universe")
    assert runner.commands[-1] == ["add-apt-repository", "--yes", "universe", "--no-update"]


def test_install_host_zfs_from_ppa_reloads_module(runner, log_dir):
    runner.respond(["zfs", "--version"], out="zfs-2.2.2\nzfs-kmod-2.2.2\n")
    apt = AptManager(runner)
    apt.use_ppa = True
    apt.install_host_zfs()

    commands = runner.commands
    assert ["modprobe", "-r", "zfs"] in commands
    assert commands.index(["apt", "install", "--yes", "libelf-dev", "zfs-dkms"]) < commands.index(["modprobe", "zfs"])
    assert runner.find("debconf-set-selections")[0].input.startswith("zfs-dkms zfs-dkms/")
    assert "zfs-kmod-2.2.2" in (log_dir / "updated_module_versions.log").read_text()


def test_install_host_zfs_can_skip_live_module(runner):
    apt = AptManager(runner)
    apt.use_ppa = True
    apt.install_host_zfs(skip_live_module=True)
    assert not runner.find("modprobe")
    assert ["apt", "install", "--yes", "zfsutils-linux"] in runner.commands
