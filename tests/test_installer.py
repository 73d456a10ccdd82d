"""Tests for installer/runner.py."""

import io
import tarfile

import pytest

from emcomm_isogen.errors import InstallerFailure
from emcomm_isogen.image import mount
from emcomm_isogen.installer import runner
from emcomm_isogen.types import MountState


def _make_tarball(path, members):
    with tarfile.open(path, "w:gz") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return path


@pytest.fixture
def installer_archive(tmp_path):
    return _make_tarball(
        tmp_path / "emcomm-tools-os-community-r5.tar.gz",
        {
            "emcomm-tools-os-community-r5/scripts/install.sh": b"#!/bin/bash\n",
            "emcomm-tools-os-community-r5/overlay/etc/motd": b"hello\n",
        },
    )


@pytest.fixture
def bound(fake_system, tmp_path):
    iso = tmp_path / "ubuntu.iso"
    iso.write_bytes(b"iso")
    ctx = mount.extract(iso, tmp_path / "work")
    mount.enter_chroot(ctx)
    yield ctx
    if ctx.state == MountState.CHROOT_BOUND:
        mount.leave_chroot(ctx)


class TestUnpack:
    """Tests for unpack_installer."""

    def test_strips_top_level_directory(self, installer_archive, tmp_path):
        dest = tmp_path / "dest"

        script = runner.unpack_installer(installer_archive, dest)

        assert script == dest / "scripts" / "install.sh"
        assert script.stat().st_mode & 0o111
        assert (dest / "overlay" / "etc" / "motd").read_text() == "hello\n"

    def test_rejects_traversal(self, tmp_path):
        archive = _make_tarball(tmp_path / "evil.tar.gz", {"top/../../escape": b"x"})

        with pytest.raises(InstallerFailure) as exc_info:
            runner.unpack_installer(archive, tmp_path / "dest")

        assert exc_info.value.code == "path_traversal"
        assert not (tmp_path / "escape").exists()

    def test_missing_script(self, tmp_path):
        archive = _make_tarball(tmp_path / "bad.tar.gz", {"top/install.sh": b"x"})

        with pytest.raises(InstallerFailure) as exc_info:
            runner.unpack_installer(archive, tmp_path / "dest")

        assert exc_info.value.code == "script_missing"
        assert "found" in str(exc_info.value)

    def test_unreadable_archive(self, tmp_path):
        archive = tmp_path / "broken.tar.gz"
        archive.write_bytes(b"not a tarball")

        with pytest.raises(InstallerFailure) as exc_info:
            runner.unpack_installer(archive, tmp_path / "dest")

        assert exc_info.value.code == "unpack_failed"


def test_archive_mirror(tmp_path):
    sources = tmp_path / "etc" / "apt" / "sources.list"
    sources.parent.mkdir(parents=True)
    sources.write_text(
        "deb http://archive.ubuntu.com/ubuntu kinetic main\n"
        "deb http://security.ubuntu.com/ubuntu kinetic-security main\n"
    )

    assert runner.use_archive_mirror(tmp_path) is True
    assert "old-releases.ubuntu.com" in sources.read_text()
    assert "archive.ubuntu.com" not in sources.read_text()
    assert runner.use_archive_mirror(tmp_path) is False


class TestRun:
    """Tests for run()."""

    def test_successful_run(self, bound, fake_system, installer_archive):
        status = runner.run(bound, installer_archive, env={"ET_EXPERT": "1"})

        assert status.exit_code == 0
        assert status.marker == bound.squashfs_root / "opt" / "emcomm-tools"
        assert status.warnings == []
        assert not (bound.squashfs_root / "tmp" / "etc-installer").exists()

        install_calls = [
            i for i, c in enumerate(fake_system.calls) if "install.sh" in " ".join(c)
        ]
        assert len(install_calls) == 1
        env = fake_system.envs[install_calls[0]]
        assert env["ET_EXPERT"] == "1"
        assert env["DEBIAN_FRONTEND"] == "noninteractive"

    def test_apt_sources_use_archive_mirror(self, bound, installer_archive):
        runner.run(bound, installer_archive)

        sources = bound.squashfs_root / "etc" / "apt" / "sources.list"
        assert "old-releases.ubuntu.com" in sources.read_text()

    def test_nonzero_exit_is_fatal(self, bound, fake_system, installer_archive):
        fake_system.installer_exit = 100

        with pytest.raises(InstallerFailure) as exc_info:
            runner.run(bound, installer_archive)

        assert exc_info.value.installer_exit_code == 100
        assert not (bound.squashfs_root / "tmp" / "etc-installer").exists()
        # Never retried
        assert sum("install.sh" in " ".join(c) for c in fake_system.calls) == 1

    def test_missing_marker(self, bound, fake_system, installer_archive):
        fake_system.installer_marker = "opt/elsewhere"

        with pytest.raises(InstallerFailure) as exc_info:
            runner.run(bound, installer_archive)

        assert exc_info.value.code == "marker_missing"

    def test_missing_tool_is_a_warning(self, bound, fake_system, installer_archive):
        fake_system.fail_on(
            "chroot", str(bound.squashfs_root), "/bin/bash", "-c", "command -v pat"
        )

        status = runner.run(bound, installer_archive)

        assert status.warnings == ["Expected tool not found in image: pat"]
