import yaml

from zfsinstall.boot_manager import BootManager, efi_mountpoint, patch_grub_defaults
from zfsinstall.packages import AptManager
from zfsinstall.plan import VdevGroup, VdevKind

DISK_A = "/dev/disk/by-id/ata-A"
DISK_B = "/dev/disk/by-id/ata-B"
DISK_C = "/dev/disk/by-id/ata-C"

UBUNTU_GRUB_DEFAULTS = [
    "GRUB_DEFAULT=0\n",
    "GRUB_TIMEOUT_STYLE=hidden\n",
    "GRUB_TIMEOUT=0\n",
    'GRUB_CMDLINE_LINUX_DEFAULT="quiet splash"\n',
    'GRUB_CMDLINE_LINUX=""\n',
    "#GRUB_TERMINAL=console\n",
]


def test_efi_mountpoint():
    assert efi_mountpoint(0) == "/boot/efi"
    assert efi_mountpoint(1) == "/boot/efi2"
    assert efi_mountpoint(3) == "/boot/efi4"


def test_patch_grub_defaults():
    assert patch_grub_defaults(UBUNTU_GRUB_DEFAULTS) == [
        "GRUB_DEFAULT=0\n",
        "#GRUB_TIMEOUT_STYLE=hidden\n",
        "GRUB_TIMEOUT=5\n",
        'GRUB_CMDLINE_LINUX_DEFAULT="init_on_alloc=0"\n',
        'GRUB_CMDLINE_LINUX=""\n',
        "GRUB_TERMINAL=console\n",
        "GRUB_DISABLE_OS_PROBER=true\n",
        "GRUB_RECORDFAIL_TIMEOUT=5\n",
    ]


def test_patch_grub_defaults_is_stable():
    once = patch_grub_defaults(UBUNTU_GRUB_DEFAULTS)
    assert patch_grub_defaults(once) == once


def test_patch_grub_defaults_keeps_other_kernel_args():
    patched = patch_grub_defaults(['GRUB_CMDLINE_LINUX_DEFAULT="quiet nomodeset"\n', "GRUB_DISABLE_OS_PROBER=false\n"])
    assert patched == [
        'GRUB_CMDLINE_LINUX_DEFAULT="init_on_alloc=0 nomodeset"\n',
        "GRUB_DISABLE_OS_PROBER=true\n",
        "GRUB_RECORDFAIL_TIMEOUT=5\n",
    ]


def boot_manager(runner, tmp_path):
    return BootManager(runner, AptManager(runner), root_mount=str(tmp_path))


def test_prepare_efi_partition_with_grub(runner, tmp_path, make_plan):
    boot_manager(runner, tmp_path).prepare_efi_partition(make_plan())
    root = str(tmp_path)
    assert runner.commands == [
        ["chroot", root, "mkdir", "-p", "/boot/efi"],
        ["chroot", root, "mount", "/boot/efi"],
        ["chroot", root, "grub-install"],
    ]


def test_zfsbootmenu_install(runner, tmp_path, make_plan):
    plan = make_plan(
        bootloader="zfsbootmenu",
        selected_disks=[DISK_A, DISK_B],
        vdev_groups=[VdevGroup((0, 1), VdevKind.MIRROR)],
    )
    boot_manager(runner, tmp_path).prepare_efi_partition(plan)

    assert not runner.find("chroot", str(tmp_path), "grub-install")
    assert ["chroot", str(tmp_path), "generate-zbm"] in runner.commands

    config = yaml.safe_load((tmp_path / "etc" / "zfsbootmenu" / "config.yaml").read_text())
    assert config["Global"]["ManageImages"] is True
    assert config["EFI"]["ImageDir"] == "/boot/efi/EFI/zbm"

    sources = (tmp_path / "etc" / "apt" / "sources.list.d" / "zfsbootmenu.list").read_text()
    assert sources.startswith("deb https://zbm.dev/ubuntu")

    labels = [c.cmd[c.cmd.index("--label") + 1] for c in runner.find("efibootmgr")]
    assert labels == ["ZFSBootMenu-1", "ZFSBootMenu-2"]


def test_configure_grub_warns_when_update_grub_fails(runner, tmp_path, make_plan, capsys):
    (tmp_path / "etc" / "default").mkdir(parents=True)
    (tmp_path / "etc" / "default" / "grub").write_text("".join(UBUNTU_GRUB_DEFAULTS))
    runner.respond(["chroot", str(tmp_path), "update-grub"], rc=1, err="warning: os-prober")

    boot_manager(runner, tmp_path).configure_grub(make_plan())

    assert "Warning: update-grub" in capsys.readouterr().out
    assert "GRUB_TIMEOUT=5" in (tmp_path / "etc" / "default" / "grub").read_text()


def test_configure_grub_skipped_for_zfsbootmenu(runner, tmp_path, make_plan):
    boot_manager(runner, tmp_path).configure_grub(make_plan(bootloader="zfsbootmenu"))
    assert runner.commands == []


def test_sync_efi_partitions_is_best_effort(runner, tmp_path, make_plan, capsys):
    plan = make_plan(selected_disks=[DISK_A, DISK_B, DISK_C], vdev_groups=[VdevGroup((0, 1, 2), VdevKind.RAIDZ1)])
    root = str(tmp_path)
    runner.respond(["chroot", root, "mount", "/boot/efi2"], rc=32, err="special device does not exist")

    boot_manager(runner, tmp_path).sync_efi_partitions(plan)

    assert "Warning: Failed to sync EFI partition /boot/efi2" in capsys.readouterr().out
    assert ["chroot", root, "umount", "/boot/efi2"] in runner.commands
    assert ["chroot", root, "rsync", "--archive", "--delete", "--verbose", "/boot/efi/", "/boot/efi3"] in runner.commands
    labels = [c.cmd[c.cmd.index("--label") + 1] for c in runner.find("efibootmgr")]
    assert labels == ["ubuntu-3"]
    assert runner.commands[-1] == ["chroot", root, "umount", "/boot/efi"]
