"""Tests for preseed/generator.py."""

import copy
import json

import pytest

from emcomm_isogen.errors import PreseedGenerationError
from emcomm_isogen.image import mount
from emcomm_isogen.image.mount import ImageContext, new_context
from emcomm_isogen.preseed import generator
from emcomm_isogen.preseed.generator import PreseedProfile
from emcomm_isogen.types import PartitionStrategy


def _profile(**overrides):
    values = {
        "hostname": "ETC-KX9TST",
        "username": "kx9tst",
        "fullname": "Test Operator",
        "password_hash": "$6$salt$hash",
        "install_disk": "/dev/sda5",
        "strategy": PartitionStrategy.EXISTING_PARTITION,
    }
    values.update(overrides)
    return PreseedProfile(**values)


class TestGenerate:
    """Tests for generate()."""

    def test_round_trip(self):
        output = generator.generate(_profile())

        answers = generator.parse_preseed(output.preseed_text)

        assert answers["netcfg/get_hostname"] == "ETC-KX9TST"
        assert answers["passwd/username"] == "kx9tst"
        assert answers["passwd/user-fullname"] == "Test Operator"
        assert answers["passwd/user-password-crypted"] == "$6$salt$hash"
        assert answers["time/zone"] == "America/Denver"
        assert answers["grub-installer/bootdev"] == "/dev/sda"
        assert generator.strategy_from_answers(answers) == output.strategy
        assert output.boot_params == generator.BOOT_PARAMS

    def test_never_contains_plaintext(self):
        text = generator.generate(_profile()).preseed_text
        assert "user-password password" not in text

    def test_no_hash_omits_password(self):
        answers = generator.parse_preseed(
            generator.generate(_profile(password_hash=None)).preseed_text
        )
        assert "passwd/user-password-crypted" not in answers

    def test_free_space(self):
        output = generator.generate(
            _profile(strategy=PartitionStrategy.FREE_SPACE, install_disk="/dev/nvme0n1")
        )
        answers = generator.parse_preseed(output.preseed_text)
        assert answers["partman-auto/disk"] == "/dev/nvme0n1"
        assert generator.strategy_from_answers(answers) == PartitionStrategy.FREE_SPACE

    def test_entire_disk_requires_confirmation(self):
        with pytest.raises(PreseedGenerationError) as exc_info:
            generator.generate(
                _profile(strategy=PartitionStrategy.ENTIRE_DISK, install_disk="/dev/sda")
            )
        assert exc_info.value.code == "entire_disk_unconfirmed"

    def test_entire_disk_confirmed(self):
        output = generator.generate(
            _profile(
                strategy=PartitionStrategy.ENTIRE_DISK,
                install_disk="/dev/sda",
                confirm_entire_disk=True,
            )
        )
        answers = generator.parse_preseed(output.preseed_text)
        assert answers["partman-auto/method"] == "lvm"
        assert generator.strategy_from_answers(answers) == PartitionStrategy.ENTIRE_DISK

    def test_existing_partition_needs_partition(self):
        with pytest.raises(PreseedGenerationError) as exc_info:
            generator.generate(_profile(install_disk="/dev/sda"))
        assert exc_info.value.code == "not_a_partition"

    def test_extra_packages(self):
        answers = generator.parse_preseed(
            generator.generate(_profile(packages=["vim", "htop"])).preseed_text
        )
        assert answers["pkgsel/include"] == "vim htop"

    def test_profile_rejects_plain_password(self):
        with pytest.raises(ValueError):
            _profile(password_hash="hunter22")


def test_profile_from_station(station):
    profile = generator.profile_from_station(station)
    assert profile.hostname == "ETC-KX9TST"
    assert profile.username == "kx9tst"
    assert profile.strategy == PartitionStrategy.AUTO_DETECT
    assert profile.password_hash == station.user.password_hash


def test_hash_password_uses_openssl(fake_system, fake_hash):
    assert generator.hash_password("hunter22") == fake_hash
    (call,) = fake_system.commands("openssl")
    assert "hunter22" not in call


def test_hash_password_failure(fake_system):
    fake_system.fail_on("openssl")
    with pytest.raises(PreseedGenerationError) as exc_info:
        generator.hash_password("hunter22")
    assert exc_info.value.code == "hash_failed"


class TestDetectStrategy:
    """Tests for auto-detection."""

    @pytest.fixture
    def layout(self):
        return {
            "blockdevices": [
                {
                    "name": "sda",
                    "path": "/dev/sda",
                    "type": "disk",
                    "size": 500 * 1024**3,
                    "children": [
                        {"name": "sda1", "path": "/dev/sda1", "type": "part",
                         "size": 400 * 1024**3, "mountpoint": "/"},
                        {"name": "sda5", "path": "/dev/sda5", "type": "part",
                         "size": 90 * 1024**3, "mountpoint": None},
                    ],
                },
                {"name": "sdb", "path": "/dev/sdb", "type": "disk",
                 "size": 64 * 1024**3, "children": []},
            ]
        }

    def test_without_layout_uses_device_form(self):
        assert generator.detect_strategy(_profile()) == PartitionStrategy.EXISTING_PARTITION
        assert (
            generator.detect_strategy(_profile(install_disk="/dev/sdb"))
            == PartitionStrategy.ENTIRE_DISK
        )

    def test_unmounted_partition(self, layout):
        assert (
            generator.detect_strategy(_profile(), layout)
            == PartitionStrategy.EXISTING_PARTITION
        )

    def test_mounted_partition(self, layout):
        with pytest.raises(PreseedGenerationError) as exc_info:
            generator.detect_strategy(_profile(install_disk="/dev/sda1"), layout)
        assert exc_info.value.code == "partition_in_use"

    def test_empty_disk(self, layout):
        assert (
            generator.detect_strategy(_profile(install_disk="/dev/sdb"), layout)
            == PartitionStrategy.FREE_SPACE
        )

    def test_small_empty_disk(self, layout):
        small = copy.deepcopy(layout)
        small["blockdevices"][1]["size"] = 16 * 1024**3
        assert (
            generator.detect_strategy(_profile(install_disk="/dev/sdb"), small)
            == PartitionStrategy.ENTIRE_DISK
        )

    def test_full_disk_without_confirmation(self, layout):
        with pytest.raises(PreseedGenerationError) as exc_info:
            generator.detect_strategy(_profile(install_disk="/dev/sda"), layout)
        assert exc_info.value.code == "no_viable_strategy"

    def test_unknown_device(self, layout):
        with pytest.raises(PreseedGenerationError) as exc_info:
            generator.detect_strategy(_profile(install_disk="/dev/sdz"), layout)
        assert exc_info.value.code == "disk_not_found"

    def test_generate_resolves_auto_detect(self, layout):
        output = generator.generate(_profile(strategy=PartitionStrategy.AUTO_DETECT), layout)
        assert output.strategy == PartitionStrategy.EXISTING_PARTITION

    def test_read_layout(self, fake_system):
        layout = generator.read_layout()
        assert layout["blockdevices"][0]["name"] == "sda"


@pytest.mark.parametrize(
    "device,disk",
    [
        ("/dev/sda5", "/dev/sda"),
        ("/dev/nvme0n1p3", "/dev/nvme0n1"),
        ("/dev/mmcblk0p1", "/dev/mmcblk0"),
        ("/dev/sdb", "/dev/sdb"),
    ],
)
def test_parent_disk(device, disk):
    assert generator.parent_disk(device) == disk


class TestLoadLayout:
    """Tests for load_layout()."""

    def test_loads_captured_layout(self, tmp_path, fake_system):
        path = tmp_path / "target-lsblk.json"
        path.write_text(json.dumps(fake_system.layout))

        layout = generator.load_layout(path)

        strategy = generator.detect_strategy(_profile(), layout)
        assert strategy == PartitionStrategy.EXISTING_PARTITION
        assert fake_system.calls == []

    @pytest.mark.parametrize("content", ["not json", "[]", '{"devices": []}'])
    def test_rejects_other_files(self, tmp_path, content):
        path = tmp_path / "target-lsblk.json"
        path.write_text(content)

        with pytest.raises(PreseedGenerationError) as exc_info:
            generator.load_layout(path)

        assert exc_info.value.code == "layout_invalid"

    def test_missing_file(self, tmp_path):
        with pytest.raises(PreseedGenerationError) as exc_info:
            generator.load_layout(tmp_path / "absent.json")

        assert exc_info.value.code == "layout_invalid"


class TestBootConfig:
    """Tests for boot loader patching."""

    LINE = "\tlinux\t/casper/vmlinuz  file=/cdrom/preseed/ubuntu.seed quiet splash ---\n"

    def test_replaces_seed_reference(self):
        patched = generator.patch_boot_config(self.LINE)
        assert generator.BOOT_PARAMS in patched
        assert "ubuntu.seed" not in patched
        assert patched.endswith("quiet splash ---\n")

    def test_inserts_before_separator(self):
        patched = generator.patch_boot_config("linux /casper/vmlinuz quiet ---\n")
        assert patched == f"linux /casper/vmlinuz quiet {generator.BOOT_PARAMS} ---\n"

    def test_is_idempotent(self):
        once = generator.patch_boot_config(self.LINE)
        assert generator.patch_boot_config(once) == once

    def test_leaves_other_lines(self):
        text = "set timeout=5\n" + self.LINE
        assert generator.patch_boot_config(text).startswith("set timeout=5\n")


class TestWrite:
    """Tests for write()."""

    def test_writes_into_iso_root(self, tmp_path, fake_system):
        iso = tmp_path / "ubuntu.iso"
        iso.write_bytes(b"iso")
        ctx = mount.extract(iso, tmp_path / "work")
        output = generator.generate(_profile())

        target = generator.write(output, ctx)

        assert target == ctx.iso_root / generator.PRESEED_REL_PATH
        assert target.read_text() == output.preseed_text
        assert not (ctx.squashfs_root / generator.PRESEED_REL_PATH).exists()
        for rel in generator.BOOT_CONFIGS:
            assert generator.BOOT_PARAMS in (ctx.iso_root / rel).read_text()

    def test_refuses_target_in_squashfs(self, tmp_path):
        base = new_context(tmp_path / "work")
        ctx = ImageContext(
            work_dir=base.work_dir,
            iso_root=base.squashfs_root / "iso",
            squashfs_root=base.squashfs_root,
        )

        with pytest.raises(PreseedGenerationError) as exc_info:
            generator.write(generator.generate(_profile()), ctx)

        assert exc_info.value.code == "target_in_squashfs"
        assert not (ctx.iso_root / generator.PRESEED_REL_PATH).exists()
