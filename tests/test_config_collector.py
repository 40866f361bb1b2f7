import pytest

from zfsinstall import config_collector
from zfsinstall.config_collector import ConfigCollector
from zfsinstall.disk_manager import HardwareInfo
from zfsinstall.errors import ValidationError
from zfsinstall.plan import DEFAULT_RPOOL_CREATE_OPTIONS, InstallationPlan, VdevGroup, VdevKind

from conftest import FakeInquirer

DISKS = ["/dev/disk/by-id/ata-A", "/dev/disk/by-id/ata-B", "/dev/disk/by-id/ata-C"]


def collector(monkeypatch, environ, answers=(), disks=DISKS, hardware=None):
    fake = FakeInquirer(answers)
    monkeypatch.setattr(config_collector, "inquirer", fake)
    return ConfigCollector(InstallationPlan(), environ=environ, suitable_disks=disks, hardware=hardware), fake


def test_automated_single_disk_uses_defaults(monkeypatch):
    env = {
        "ZFS_AUTOMATED": "1",
        "ZFS_USER_PASSWORD": "secret-pw",
        "ZFS_HOSTNAME": "box",
    }
    c, fake = collector(monkeypatch, env, disks=DISKS[:1])
    plan = c.collect().finalize()

    assert fake.prompts == []
    assert plan.selected_disks == (DISKS[0],)
    assert plan.vdev_groups == (VdevGroup((0,), VdevKind.STRIPE),)
    assert plan.rpool_name == "rpool"
    assert plan.boot_partition_size == "2048M"
    assert plan.free_tail_space == 0
    assert not plan.encrypted
    assert plan.bootloader == "grub"
    assert plan.rpool_create_options == tuple(DEFAULT_RPOOL_CREATE_OPTIONS)


def test_automated_requires_password(monkeypatch):
    c, _ = collector(monkeypatch, {"ZFS_AUTOMATED": "1"})
    with pytest.raises(ValidationError):
        c.ask_user_configuration()


def test_automated_with_several_disks_needs_explicit_selection(monkeypatch):
    c, _ = collector(monkeypatch, {"ZFS_AUTOMATED": "1"})
    with pytest.raises(ValidationError):
        c.select_disks()


def test_invalid_environment_value_is_fatal(monkeypatch):
    c, _ = collector(monkeypatch, {"ZFS_HOSTNAME": "bad_host!"})
    with pytest.raises(ValidationError):
        c.ask_hostname()


def test_short_environment_passphrase_is_rejected(monkeypatch):
    c, _ = collector(monkeypatch, {"ZFS_PASSPHRASE": "shortpw"})
    with pytest.raises(ValidationError):
        c.ask_encryption()


def test_empty_environment_passphrase_disables_encryption(monkeypatch):
    c, fake = collector(monkeypatch, {"ZFS_PASSPHRASE": ""})
    c.ask_encryption()
    assert not c.plan.passphrase
    assert fake.prompts == []


def test_interactive_passphrase_requires_matching_confirmation(monkeypatch):
    c, fake = collector(monkeypatch, {}, answers=[
        "short", "short",                 # too short
        "longenough", "different1",       # mismatch
        "longenough", "longenough",
    ])
    c.ask_encryption()
    assert c.plan.passphrase.reveal() == "longenough"
    assert [kind for kind, _ in fake.prompts] == ["secret"] * 6


def test_interactive_blank_passphrase(monkeypatch):
    c, fake = collector(monkeypatch, {}, answers=[""])
    c.ask_encryption()
    assert not c.plan.encrypted
    assert len(fake.prompts) == 1


def test_interactive_password_double_entry(monkeypatch):
    c, _ = collector(monkeypatch, {"ZFS_USERNAME": "alice"}, answers=[
        "pw-one", "pw-two",
        "pw-one", "pw-one",
        "Alice Example",
    ])
    c.ask_user_configuration()
    assert c.plan.user_password.reveal() == "pw-one"
    assert c.plan.user_fullname == "Alice Example"


def test_vdev_groups_from_environment(monkeypatch):
    env = {"ZFS_SELECTED_DISKS": ",".join(DISKS[:2]), "ZFS_VDEV_CONFIGS": '[0,1]="mirror"'}
    c, _ = collector(monkeypatch, env)
    c.select_disks()
    c.select_vdev_configs()
    assert c.plan.vdev_groups == [VdevGroup((0, 1), VdevKind.MIRROR)]


def test_incomplete_vdev_environment_is_rejected(monkeypatch):
    env = {"ZFS_SELECTED_DISKS": ",".join(DISKS), "ZFS_VDEV_CONFIGS": '[0,1]="mirror"'}
    c, _ = collector(monkeypatch, env)
    c.select_disks()
    with pytest.raises(ValidationError):
        c.select_vdev_configs()


def test_interactive_vdev_loop_covers_every_disk(monkeypatch):
    c, fake = collector(monkeypatch, {"ZFS_SELECTED_DISKS": ",".join(DISKS)}, answers=[
        VdevKind.MIRROR, [0],             # too few for a mirror, asked again
        VdevKind.MIRROR, [0, 2],
        VdevKind.STRIPE, [1],
    ])
    c.select_disks()
    c.select_vdev_configs()

    assert c.plan.vdev_groups == [
        VdevGroup((0, 2), VdevKind.MIRROR),
        VdevGroup((1,), VdevKind.STRIPE),
    ]
    last_checkbox = [kwargs for kind, kwargs in fake.prompts if kind == "checkbox"][-1]
    assert [choice.value for choice in last_checkbox["choices"]] == [1]


def test_swap_default_follows_hardware(monkeypatch):
    hardware = HardwareInfo(cpu_cores=8, total_ram_mib=16384, has_nvidia=False)
    c, fake = collector(monkeypatch, {}, answers=["8"], hardware=hardware)
    c.ask_swap_size()
    assert fake.prompts[0][1]["default"] == "8"
    assert c.plan.swap_size == 8


def test_pool_options_are_split_like_a_shell(monkeypatch):
    env = {"ZFS_RPOOL_CREATE_OPTIONS": "-o ashift=13 -O compression=zstd", "ZFS_BPOOL_CREATE_OPTIONS": "-o ashift=13"}
    c, _ = collector(monkeypatch, env)
    c.ask_pool_create_options()
    assert c.plan.rpool_create_options == ["-o", "ashift=13", "-O", "compression=zstd"]
    assert c.plan.bpool_create_options == ["-o", "ashift=13"]


def test_bootloader_and_timeshift_flags(monkeypatch):
    env = {"ZFS_USE_ZFSBOOTMENU": "1", "ZFS_ENABLE_SSH": "1", "ZFS_INSTALL_TIMESHIFT": "0"}
    c, _ = collector(monkeypatch, env)
    c.ask_additional_options()
    assert c.plan.use_zfsbootmenu
    assert c.plan.enable_ssh is True
    assert c.plan.install_timeshift is False

    c, _ = collector(monkeypatch, {"ZFS_USE_ZFSBOOTMENU": "0", "ZFS_ENABLE_SSH": "yes"})
    with pytest.raises(ValidationError):
        c.ask_additional_options()


@pytest.mark.parametrize("selected", [
    "/dev/sda",
    "/dev/disk/by-id/usb-STICK",
    f"{DISKS[0]},{DISKS[0]}",
])
def test_environment_disks_must_come_from_the_survey(monkeypatch, selected):
    c, _ = collector(monkeypatch, {"ZFS_AUTOMATED": "1", "ZFS_SELECTED_DISKS": selected})
    with pytest.raises(ValidationError):
        c.select_disks()
    assert c.plan.selected_disks == []
