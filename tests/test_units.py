"""Tests for the shipped customization units."""

import stat
from datetime import datetime

import pytest

from emcomm_isogen.artifacts.cache import Artifact
from emcomm_isogen.artifacts.releases import ReleaseInfo
from emcomm_isogen.backups.coordinator import create_golden_master
from emcomm_isogen.errors import NetworkProfileError
from emcomm_isogen.image import mount
from emcomm_isogen.station.schema import WifiNetworkSchema
from emcomm_isogen.types import FetchState, UnitOutcome
from emcomm_isogen.units import desktop, extras, network, system
from emcomm_isogen.units.defaults import default_registry
from emcomm_isogen.units.files import image_path, write_file
from emcomm_isogen.units.registry import UnitSkipped


def _with_user(build, **changes):
    user = build.station.user.model_copy(update=changes)
    build.station = build.station.model_copy(update={"user": user})
    return build


class TestFiles:
    """Tests for the file helpers."""

    @pytest.mark.parametrize("rel", ["/etc/hostname", "../outside", "etc/../../x"])
    def test_image_path_refuses_escapes(self, tmp_path, rel):
        with pytest.raises(ValueError):
            image_path(tmp_path, rel)

    def test_write_file_replaces_symlink(self, tmp_path):
        target = tmp_path / "host-file"
        target.write_text("host")
        (tmp_path / "etc").mkdir()
        (tmp_path / "etc" / "hosts").symlink_to(target)

        write_file(tmp_path, "etc/hosts", "image", mode=0o600)

        assert target.read_text() == "host"
        assert not (tmp_path / "etc" / "hosts").is_symlink()
        assert stat.S_IMODE((tmp_path / "etc" / "hosts").stat().st_mode) == 0o600


class TestNetworkProfiles:
    """Tests for NetworkManager keyfiles."""

    @pytest.mark.parametrize(
        "value",
        ["plain", " leading", "trailing ", "back\\slash", "tab\there", "  both  "],
    )
    def test_escape_round_trip(self, value):
        assert network.unescape_value(network.escape_value(value)) == value

    def test_escape_uses_gkeyfile_space_escape(self):
        assert network.escape_value(" a ") == "\\sa\\s"

    def test_invalid_escape(self):
        with pytest.raises(ValueError):
            network.unescape_value("bad\\q")

    def test_profiles_are_private_and_round_trip(self, image_root, station):
        paths = network.write_profiles(image_root, station.networks)

        assert [p.name for p in paths] == ["FIELD.nmconnection", "HOME.nmconnection"]
        for path in paths:
            assert stat.S_IMODE(path.stat().st_mode) == network.PROFILE_MODE

        home = network.parse_keyfile(paths[1].read_text())
        assert home["wifi"]["ssid"] == "Home Net"
        assert home["wifi-security"]["psk"] == "correct horse"
        assert home["wifi-security"]["key-mgmt"] == "wpa-psk"
        assert home["connection"]["autoconnect"] == "true"
        assert home["connection"]["uuid"] == network.profile_uuid("HOME")
        field = network.parse_keyfile(paths[0].read_text())
        assert field["connection"]["autoconnect"] == "false"

    def test_awkward_passphrase_round_trips(self, image_root):
        nets = {"ODD": WifiNetworkSchema(ssid=" Net ", password=" p\\ss word ")}

        (path,) = network.write_profiles(image_root, nets)

        parsed = network.parse_keyfile(path.read_text())
        assert parsed["wifi"]["ssid"] == " Net "
        assert parsed["wifi-security"]["psk"] == " p\\ss word "

    def test_rewrite_is_idempotent(self, image_root, station):
        first = [p.read_bytes() for p in network.write_profiles(image_root, station.networks)]
        second = [p.read_bytes() for p in network.write_profiles(image_root, station.networks)]
        assert first == second

    def test_existing_loose_mode_is_tightened(self, image_root, station):
        directory = image_root / network.CONNECTIONS_DIR
        directory.mkdir(parents=True)
        stale = directory / "HOME.nmconnection"
        stale.write_text("old")
        stale.chmod(0o644)

        network.write_profiles(image_root, station.networks)

        assert stat.S_IMODE(stale.stat().st_mode) == 0o600

    def test_unwritable_directory(self, image_root, station, monkeypatch):
        def refuse(*args, **kwargs):
            raise PermissionError("read-only")

        monkeypatch.setattr(network.os, "open", refuse)

        with pytest.raises(NetworkProfileError) as exc_info:
            network.write_profiles(image_root, station.networks)

        assert exc_info.value.code == "write_failed"

    def test_unit_skips_without_networks(self, image_root, build):
        build.station = build.station.model_copy(update={"networks": {}})
        with pytest.raises(UnitSkipped):
            system.apply_wifi_networks(image_root, build)


class TestSystemUnits:
    """Tests for hostname, user account and timezone units."""

    def test_hostname(self, image_root, build):
        system.apply_hostname(image_root, build)

        assert (image_root / "etc" / "hostname").read_text() == "ETC-KX9TST\n"
        assert "127.0.1.1       ETC-KX9TST" in (image_root / "etc" / "hosts").read_text()

    def test_autologin(self, image_root, build):
        system.apply_user_account(image_root, build)

        conf = (image_root / system.AUTOLOGIN_CONF).read_text()
        assert "autologin-user=kx9tst" in conf

    def test_autologin_disabled_removes_conf(self, image_root, build):
        system.apply_user_account(image_root, build)
        _with_user(build, autologin=False)

        system.apply_user_account(image_root, build)

        assert not (image_root / system.AUTOLOGIN_CONF).exists()

    def test_password_hash_goes_into_shadow(self, image_root, build, fake_hash):
        shadow = image_root / "etc" / "shadow"
        shadow.write_text("root:*:19000:0:99999:7:::\nkx9tst:!:19000:0:99999:7:::\n")
        shadow.chmod(0o640)

        system.apply_user_account(image_root, build)

        assert f"kx9tst:{fake_hash}:19000" in shadow.read_text()
        assert stat.S_IMODE(shadow.stat().st_mode) == 0o640
        assert not (image_root / system.FIRST_BOOT_PASSWORD_SCRIPT).exists()

    def test_first_boot_script_when_user_missing(self, image_root, build, fake_hash):
        system.apply_user_account(image_root, build)

        script = image_root / system.FIRST_BOOT_PASSWORD_SCRIPT
        assert f"usermod -p '{fake_hash}' 'kx9tst'" in script.read_text()
        assert script.stat().st_mode & 0o111

    def test_plain_password_is_hashed(self, image_root, build, fake_system, fake_hash):
        _with_user(build, password_hash=None, password="hunter22")

        system.apply_user_account(image_root, build)

        assert fake_system.commands("openssl")
        assert fake_hash in (image_root / system.FIRST_BOOT_PASSWORD_SCRIPT).read_text()

    def test_timezone(self, image_root, build):
        system.apply_timezone(image_root, build)

        localtime = image_root / "etc" / "localtime"
        assert localtime.is_symlink()
        assert str(localtime.readlink()) == "/usr/share/zoneinfo/America/Denver"
        assert (image_root / "etc" / "timezone").read_text() == "America/Denver\n"

    def test_timezone_replaces_existing_link(self, image_root, build):
        (image_root / "etc" / "localtime").symlink_to("/usr/share/zoneinfo/UTC")
        system.apply_timezone(image_root, build)
        assert str((image_root / "etc" / "localtime").readlink()).endswith("Denver")

    def test_additional_packages_skip(self, image_root, build):
        with pytest.raises(UnitSkipped):
            system.apply_additional_packages(image_root, build)


class TestDesktopUnits:
    """Tests for desktop and power defaults."""

    def test_desktop_defaults(self, image_root, build):
        desktop.apply_desktop_defaults(image_root, build)

        assert (image_root / desktop.DCONF_PROFILE).read_text() == (
            "user-db:user\nsystem-db:local\n"
        )
        keyfile = (image_root / desktop.DESKTOP_KEYFILE).read_text()
        assert "color-scheme='prefer-dark'" in keyfile
        assert "gtk-theme='Yaru-dark'" in keyfile
        assert "screen-reader-enabled=false" in keyfile
        assert "idle-delay=uint32 300" in keyfile

    def test_power_settings_without_chroot(self, image_root, build):
        desktop.apply_power_settings(image_root, build)

        keyfile = (image_root / desktop.POWER_KEYFILE).read_text()
        assert "sleep-inactive-battery-type='suspend'" in keyfile
        assert "sleep-inactive-ac-timeout=900" in keyfile

    def test_power_settings_compiles_in_chroot(self, build, fake_system, tmp_path):
        iso = tmp_path / "ubuntu.iso"
        iso.write_bytes(b"iso")
        build.image = mount.extract(iso, tmp_path / "work")
        with mount.chroot_session(build.image):
            desktop.apply_power_settings(build.root, build)

        assert any(c[-2:] == ["dconf", "update"] for c in fake_system.commands("chroot"))

    def test_suspend_disabled(self, build):
        power = build.station.power.model_copy(update={"automatic_suspend": False})
        build.station = build.station.model_copy(update={"power": power})

        keyfile = desktop.render_power_keyfile(build)

        assert "sleep-inactive-battery-type='nothing'" in keyfile


class TestExtrasUnits:
    """Tests for overlay, git, VARA, cache and summary units."""

    def test_addons_overlay(self, image_root, build, tmp_path):
        overlay = tmp_path / "overlay"
        (overlay / "opt" / "addons").mkdir(parents=True)
        (overlay / "opt" / "addons" / "tool").write_text("x")
        build.addons_overlay = overlay

        extras.apply_addons_overlay(image_root, build)

        assert (image_root / "opt" / "addons" / "tool").read_text() == "x"

    def test_addons_not_requested(self, image_root, build):
        with pytest.raises(UnitSkipped):
            extras.apply_addons_overlay(image_root, build)

    def test_git_config(self, image_root, build):
        extras.apply_git_config(image_root, build)

        gitconfig = (image_root / extras.GITCONFIG).read_text()
        assert "name = Test Operator" in gitconfig
        assert "email = op@example.org" in gitconfig

    def test_git_config_skips_template_identity(self, image_root, build):
        _with_user(build, email="your.email@example.com")
        with pytest.raises(UnitSkipped):
            extras.apply_git_config(image_root, build)

    def test_vara_skipped_without_keys(self, image_root, build):
        with pytest.raises(UnitSkipped):
            extras.apply_vara_license(image_root, build)

    def test_vara_license_files(self, image_root, build):
        vara = build.station.vara.model_copy(update={"hf_license_key": "ABC-123"})
        build.station = build.station.model_copy(update={"vara": vara})

        extras.apply_vara_license(image_root, build)

        reg = (image_root / extras.WINE_ADDONS_DIR / "vara-hf-license.reg").read_text()
        assert '"Callsign"="KX9TST"' in reg
        assert '"License"="ABC-123"' in reg
        assert not (image_root / extras.WINE_ADDONS_DIR / "vara-fm-license.reg").exists()
        script = image_root / extras.VARA_IMPORT_SCRIPT
        assert "vara-hf-license.reg" in script.read_text()
        assert script.stat().st_mode & 0o111

    def test_restore_golden_master(self, image_root, build, tmp_path):
        home = tmp_path / "home"
        (home / ".config" / "pat").mkdir(parents=True)
        (home / ".config" / "pat" / "config.json").write_text("{}")
        golden = create_golden_master(home, [".config/pat"], build.backups_dir)
        build.golden_sets = [golden]

        extras.apply_restore_golden_master(image_root, build)

        assert (image_root / "etc" / "skel" / ".config" / "pat" / "config.json").exists()
        assert build.manifest.restore_attempts[0].outcome == UnitOutcome.APPLIED

    def test_restore_without_sets_is_skipped(self, image_root, build):
        with pytest.raises(UnitSkipped, match="no backup sets"):
            extras.apply_restore_rolling(image_root, build)

    def test_embed_cache_skipped_for_minimal(self, image_root, build):
        build.minimal = True
        with pytest.raises(UnitSkipped):
            extras.apply_embed_cache(image_root, build)

    def test_embed_cache(self, image_root, build, tmp_path):
        cached = tmp_path / "cache" / "r5.tar.gz"
        cached.parent.mkdir(parents=True)
        cached.write_bytes(b"tarball")
        build.artifacts["installer"] = Artifact(
            name="installer",
            url="https://example.org/r5.tar.gz",
            cache_path=cached,
            sha256="0" * 64,
            state=FetchState.VERIFIED,
        )
        build.log_path.parent.mkdir(parents=True, exist_ok=True)
        build.log_path.write_text("log line\n")

        extras.apply_embed_cache(image_root, build)

        target = image_root / extras.EMBEDDED_CACHE_DIR
        assert (target / "r5.tar.gz").read_bytes() == b"tarball"
        assert (target / "logs" / "build.log").exists()
        assert (target / "logs" / "BUILD_MANIFEST.json").exists()
        assert "r5.tar.gz" in (target / "README.txt").read_text()

    def test_customization_manifest(self, image_root, build):
        build.release = ReleaseInfo(
            tag="emcomm-tools-os-community-20250401-r5-final-5.0.0",
            name="R5",
            tarball_url="https://example.org/r5.tar.gz",
            version="5.0.0",
        )
        build.manifest.record("unit", "hostname", UnitOutcome.APPLIED, started_at=datetime.now())

        extras.apply_customization_manifest(image_root, build)

        text = (image_root / extras.CUSTOMIZATIONS_MANIFEST).read_text()
        assert "Callsign: KX9TST" in text
        assert "Version: 5.0.0" in text
        assert "- hostname" in text
        assert "Wi-Fi networks: FIELD, HOME" in text

    def test_customization_manifest_is_stable(self, image_root, build):
        build.manifest.record("unit", "hostname", UnitOutcome.APPLIED)
        extras.apply_customization_manifest(image_root, build)
        first = (image_root / extras.CUSTOMIZATIONS_MANIFEST).read_text()
        build.manifest.record("unit", extras.CUSTOMIZATIONS_MANIFEST_UNIT, UnitOutcome.APPLIED)
        build.manifest.record("unit", "hostname", UnitOutcome.APPLIED)

        extras.apply_customization_manifest(image_root, build)

        assert (image_root / extras.CUSTOMIZATIONS_MANIFEST).read_text() == first
        assert f"- {extras.CUSTOMIZATIONS_MANIFEST_UNIT}" not in first


def _snapshot(root, exclude):
    tree = {}
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root).as_posix()
        if any(rel == e or rel.startswith(f"{e}/") for e in exclude):
            continue
        mode = stat.S_IMODE(path.lstat().st_mode)
        if path.is_symlink():
            tree[rel] = ("link", str(path.readlink()), mode)
        elif path.is_file():
            tree[rel] = ("file", path.read_bytes(), mode)
        else:
            tree[rel] = ("dir", None, mode)
    return tree


class TestIdempotence:
    """Applying every default unit twice leaves the same tree as once."""

    # Build log and manifest copies record the run itself
    RUN_RECORDS = (f"{extras.EMBEDDED_CACHE_DIR}/logs",)

    def test_default_units_twice(self, image_root, build, fake_system):
        (image_root / "etc" / "shadow").write_text(
            "root:*:19000:0:99999:7:::\nkx9tst:!:19000:0:99999:7:::\n"
        )
        registry = default_registry()

        first = registry.apply_all(build, root=image_root)
        once = _snapshot(image_root, self.RUN_RECORDS)
        second = registry.apply_all(build, root=image_root)
        twice = _snapshot(image_root, self.RUN_RECORDS)

        assert UnitOutcome.FAILED not in {r.outcome for r in first}
        assert [r.outcome for r in second] == [r.outcome for r in first]
        assert twice == once
        assert f"{network.CONNECTIONS_DIR}/HOME.nmconnection" in once
        assert fake_system.calls == []
