"""Tests for image/repack.py."""

import json

import pytest

from emcomm_isogen.errors import RepackError
from emcomm_isogen.image import mount, repack


@pytest.fixture
def unmounted(fake_system, tmp_path):
    iso = tmp_path / "ubuntu.iso"
    iso.write_bytes(b"iso")
    ctx = mount.extract(iso, tmp_path / "work")
    mount.unmount(ctx, fake_system.mounts_file)
    return ctx


class TestCommands:
    """Tests for command line composition."""

    def test_squashfs_command_xz(self, tmp_path):
        cmd = repack.squashfs_command(tmp_path / "root", tmp_path / "fs", "xz")
        assert cmd[:3] == ["mksquashfs", tmp_path / "root", tmp_path / "fs"]
        assert "-noappend" in cmd
        assert "-Xbcj" in cmd

    def test_squashfs_command_zstd_has_no_bcj(self, tmp_path):
        cmd = repack.squashfs_command(tmp_path / "root", tmp_path / "fs", "zstd")
        assert "-Xbcj" not in cmd
        assert cmd[cmd.index("-comp") + 1] == "zstd"

    def test_xorriso_command_uefi(self, tmp_path):
        cmd = repack.xorriso_command(tmp_path, tmp_path / "out.iso", "ETC_R5_CUSTOM")
        assert cmd[cmd.index("-V") + 1] == "ETC_R5_CUSTOM"
        assert "-append_partition" in cmd
        assert cmd[-3:] == ["-o", tmp_path / "out.iso", tmp_path]

    def test_xorriso_command_plain(self, tmp_path):
        cmd = repack.xorriso_command(tmp_path, tmp_path / "out.iso", "L", uefi=False)
        assert "-e" not in cmd


class TestMetadata:
    """Tests for version metadata and checksums."""

    def test_version_metadata(self, tmp_path):
        path = repack.write_version_metadata(
            tmp_path, {"release_tag": "r5", "build_id": "20250101_120000"}
        )

        data = json.loads(path.read_text())
        assert data["release_tag"] == "r5"
        assert "built_at" in data
        info = (tmp_path / ".disk" / "info").read_text()
        assert info.startswith("EmComm Tools Community r5")

    def test_md5sums_skip_excluded_files(self, tmp_path):
        (tmp_path / "casper").mkdir()
        (tmp_path / "casper" / "vmlinuz").write_bytes(b"kernel")
        (tmp_path / "boot.catalog").write_bytes(b"catalog")

        path = repack.write_md5sums(tmp_path)

        lines = path.read_text().splitlines()
        assert any(line.endswith("  ./casper/vmlinuz") for line in lines)
        assert not any("boot.catalog" in line for line in lines)

    def test_tree_size_ignores_symlinks(self, tmp_path):
        (tmp_path / "a").write_bytes(b"12345")
        (tmp_path / "link").symlink_to(tmp_path / "a")
        assert repack.tree_size(tmp_path) == 5


class TestPack:
    """Tests for pack()."""

    def test_pack_produces_iso(self, unmounted, fake_system, tmp_path):
        output = tmp_path / "out" / "custom.iso"

        iso = repack.pack(unmounted, output, "ETC_R5_CUSTOM", {"release_tag": "r5"})

        assert iso == output
        assert output.stat().st_size > 0
        size_file = unmounted.iso_root / "casper" / "filesystem.size"
        assert int(size_file.read_text()) == repack.tree_size(unmounted.squashfs_root)
        assert unmounted.squashfs_file.read_bytes() == b"squashfs image"
        assert (unmounted.iso_root / "md5sum.txt").exists()

    def test_pack_refuses_mounted_image(self, fake_system, tmp_path):
        iso = tmp_path / "ubuntu.iso"
        iso.write_bytes(b"iso")
        ctx = mount.extract(iso, tmp_path / "work")
        mount.enter_chroot(ctx)

        with pytest.raises(RepackError) as exc_info:
            repack.pack(ctx, tmp_path / "out.iso", "L", {})

        assert exc_info.value.code == "not_unmounted"
        assert fake_system.commands("mksquashfs") == []
        mount.leave_chroot(ctx)

    def test_plain_iso_fallback(self, unmounted, fake_system, tmp_path):
        fake_system.fail_on("xorriso", "-as", "mkisofs", "-r", "-V", "L", "-iso-level", "3",
                            "-J", "-joliet-long", "-l", "-eltorito-alt-boot")
        output = tmp_path / "out.iso"

        repack.pack(unmounted, output, "L", {})

        assert output.exists()
        assert len(fake_system.commands("xorriso")) == 3  # extract, UEFI, plain

    def test_missing_efi_image_builds_plain(self, unmounted, fake_system, tmp_path):
        (unmounted.iso_root / repack.EFI_IMAGE).unlink()

        repack.pack(unmounted, tmp_path / "out.iso", "L", {})

        last = fake_system.commands("xorriso")[-1]
        assert "-append_partition" not in last

    def test_squashfs_failure(self, unmounted, fake_system, tmp_path):
        fake_system.fail_on("mksquashfs")

        with pytest.raises(RepackError) as exc_info:
            repack.pack(unmounted, tmp_path / "out.iso", "L", {})

        assert exc_info.value.code == "squashfs_failed"
        assert unmounted.squashfs_file.read_bytes() == b"original squashfs"

    def test_iso_failure(self, unmounted, fake_system, tmp_path):
        fake_system.fail_on("xorriso", "-as")

        with pytest.raises(RepackError) as exc_info:
            repack.pack(unmounted, tmp_path / "out.iso", "L", {})

        assert exc_info.value.code == "iso_failed"
