"""Shared fixtures.

FakeSystem replaces the command seam (emcomm_isogen.image.command.run_command)
so no child process is ever started. It keeps a mount table file in the
/proc/self/mounts format, creates the files the real tools would create and
can inject failures for any command prefix.
"""

import json
from collections.abc import Sequence
from pathlib import Path
from unittest.mock import patch

import pytest

from emcomm_isogen.builds.context import BuildContext
from emcomm_isogen.builds.manifest import BuildManifest
from emcomm_isogen.config import Settings
from emcomm_isogen.errors import BuildCancelled, CommandError
from emcomm_isogen.image.command import CommandResult
from emcomm_isogen.station.schema import StationSchema

FAKE_HASH = "$6$saltsalt$fakehashfakehashfakehash"

GRUB_CFG = """\
menuentry "Try or Install Ubuntu" {
	set gfxpayload=keep
	linux	/casper/vmlinuz  file=/cdrom/preseed/ubuntu.seed maybe-ubiquity quiet splash ---
	initrd	/casper/initrd
}
"""

DEFAULT_LAYOUT = {
    "blockdevices": [
        {
            "name": "sda",
            "path": "/dev/sda",
            "type": "disk",
            "size": 500 * 1024**3,
            "mountpoint": None,
            "children": [
                {
                    "name": "sda1",
                    "path": "/dev/sda1",
                    "type": "part",
                    "size": 400 * 1024**3,
                    "mountpoint": "/",
                },
                {
                    "name": "sda5",
                    "path": "/dev/sda5",
                    "type": "part",
                    "size": 90 * 1024**3,
                    "mountpoint": None,
                },
            ],
        }
    ]
}


class FakeSystem:
    """In-memory stand-in for the host tools used by the pipeline."""

    def __init__(self, mounts_file: Path) -> None:
        self.mounts_file = mounts_file
        self.mounts_file.write_text("", encoding="utf-8")
        self.calls: list[list[str]] = []
        self.envs: list[dict[str, str] | None] = []
        self.failures: list[tuple[tuple[str, ...], int, int | None]] = []
        self.cancels: list[tuple[str, ...]] = []
        self.installer_exit = 0
        self.installer_marker = "opt/emcomm-tools"
        self.layout = DEFAULT_LAYOUT

    # Failure injection

    def fail_on(self, *prefix: str, returncode: int = 1, times: int | None = None) -> None:
        """Make commands starting with prefix exit nonzero (times=None: always)."""
        self.failures.append((prefix, returncode, times))

    def cancel_on(self, *prefix: str) -> None:
        """Make commands starting with prefix behave as if SIGINT arrived."""
        self.cancels.append(prefix)

    def _injected(self, args: list[str]) -> int | None:
        for index, (prefix, returncode, times) in enumerate(self.failures):
            if tuple(args[: len(prefix)]) != prefix:
                continue
            if times is not None:
                if times <= 0:
                    continue
                self.failures[index] = (prefix, returncode, times - 1)
            return returncode
        return None

    # Mount table

    def mounted(self) -> list[str]:
        lines = self.mounts_file.read_text(encoding="utf-8").splitlines()
        return [line.split()[1] for line in lines if line.strip()]

    def add_mount(self, target: Path | str, source: str = "none") -> None:
        escaped = str(Path(target).resolve()).replace(" ", "\\040")
        with self.mounts_file.open("a", encoding="utf-8") as f:
            f.write(f"{source} {escaped} none rw,bind 0 0\n")

    def _remove_mount(self, target: str) -> None:
        resolved = str(Path(target).resolve()).replace(" ", "\\040")
        lines = self.mounts_file.read_text(encoding="utf-8").splitlines()
        kept = [line for line in lines if line.split()[1] != resolved]
        self.mounts_file.write_text("".join(f"{line}\n" for line in kept), encoding="utf-8")

    def commands(self, name: str) -> list[list[str]]:
        return [c for c in self.calls if c and c[0] == name]

    # Command seam

    def run(
        self,
        argv: Sequence[str | Path],
        *,
        log_path: Path | None = None,
        env: dict[str, str] | None = None,
        cwd: Path | None = None,
        check: bool = True,
        capture: bool = False,
        input_text: str | None = None,
    ) -> CommandResult:
        args = [str(a) for a in argv]
        self.calls.append(args)
        self.envs.append(dict(env) if env else None)

        if any(tuple(args[: len(p)]) == p for p in self.cancels):
            raise BuildCancelled(f"Interrupted by SIGINT while running {args[0]}")

        returncode = self._injected(args)
        output = ""
        if returncode is None:
            returncode, output = self._dispatch(args)

        if check and returncode != 0:
            raise CommandError(
                f"Command failed ({returncode}): {' '.join(args)}",
                returncode=returncode,
                argv=args,
            )
        lines = output.splitlines()
        return CommandResult(
            argv=args,
            returncode=returncode,
            output=output if capture else "",
            lines=lines if capture else [],
        )

    def _dispatch(self, args: list[str]) -> tuple[int, str]:
        tool = args[0]
        if tool == "xorriso" and "-osirrox" in args:
            self._extract_iso(Path(args[args.index("-extract") + 2]))
        elif tool == "xorriso":
            output = Path(args[args.index("-o") + 1])
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(b"ISO9660 image")
        elif tool == "unsquashfs":
            self._unpack_root(Path(args[args.index("-d") + 1]))
        elif tool == "mksquashfs":
            Path(args[2]).write_bytes(b"squashfs image")
        elif tool == "mount":
            self.add_mount(args[-1], source=args[-2])
        elif tool == "umount":
            self._remove_mount(args[-1])
        elif tool == "chroot":
            return self._chroot(Path(args[1]), args[2:])
        elif tool == "openssl":
            return 0, FAKE_HASH + "\n"
        elif tool == "lsblk":
            return 0, json.dumps(self.layout)
        return 0, ""

    def _extract_iso(self, iso_root: Path) -> None:
        (iso_root / "casper").mkdir(parents=True, exist_ok=True)
        (iso_root / "casper" / "filesystem.squashfs").write_bytes(b"original squashfs")
        grub = iso_root / "boot" / "grub"
        grub.mkdir(parents=True, exist_ok=True)
        (grub / "grub.cfg").write_text(GRUB_CFG, encoding="utf-8")
        (grub / "loopback.cfg").write_text(GRUB_CFG, encoding="utf-8")
        (grub / "efi.img").write_bytes(b"efi")

    def _unpack_root(self, root: Path) -> None:
        (root / "etc" / "apt").mkdir(parents=True, exist_ok=True)
        (root / "etc" / "hostname").write_text("ubuntu\n", encoding="utf-8")
        (root / "etc" / "shadow").write_text(
            "root:*:19000:0:99999:7:::\n", encoding="utf-8"
        )
        (root / "etc" / "shadow").chmod(0o640)
        (root / "etc" / "apt" / "sources.list").write_text(
            "deb http://archive.ubuntu.com/ubuntu kinetic main\n", encoding="utf-8"
        )
        zoneinfo = root / "usr" / "share" / "zoneinfo" / "America"
        zoneinfo.mkdir(parents=True, exist_ok=True)
        (zoneinfo / "Denver").write_bytes(b"TZif")
        (root / "etc" / "skel").mkdir(parents=True, exist_ok=True)

    def _chroot(self, root: Path, rest: list[str]) -> tuple[int, str]:
        command_line = " ".join(rest)
        if "install.sh" in command_line:
            if self.installer_exit == 0:
                (root / self.installer_marker).mkdir(parents=True, exist_ok=True)
            return self.installer_exit, ""
        return 0, ""


@pytest.fixture
def fake_system(tmp_path):
    """Patch the command seam with a FakeSystem."""
    system = FakeSystem(tmp_path / "mounts")
    with patch("emcomm_isogen.image.command.run_command", side_effect=system.run):
        yield system


@pytest.fixture
def settings(tmp_path):
    """Settings pointing every directory into tmp_path."""
    return Settings(
        cache_dir=tmp_path / "cache",
        output_dir=tmp_path / "output",
        work_dir=tmp_path / "work",
        logs_dir=tmp_path / "logs",
        db_url="sqlite:///:memory:",
        station_config=tmp_path / "station.yaml",
        fetch_backoff=0,
    )


@pytest.fixture
def station():
    """A typical station configuration."""
    return StationSchema.model_validate(
        {
            "callsign": "KX9TST",
            "user": {
                "fullname": "Test Operator",
                "username": "kx9tst",
                "password_hash": FAKE_HASH,
                "email": "op@example.org",
                "autologin": True,
            },
            "networks": {
                "HOME": {"ssid": "Home Net", "password": "correct horse"},
                "FIELD": {
                    "ssid": "Field Ops",
                    "password": "battery staple",
                    "autoconnect": False,
                },
            },
        }
    )


@pytest.fixture
def build(settings, station, tmp_path):
    """A build context whose image root is a plain directory."""
    context = BuildContext(
        settings=settings,
        station=station,
        manifest=BuildManifest.new(),
        log_path=tmp_path / "logs" / "build.log",
    )
    return context


@pytest.fixture
def image_root(tmp_path):
    root = tmp_path / "root"
    (root / "etc" / "skel").mkdir(parents=True)
    (root / "etc" / "shadow").write_text("root:*:19000:0:99999:7:::\n", encoding="utf-8")
    (root / "usr" / "share" / "zoneinfo" / "America").mkdir(parents=True)
    (root / "usr" / "share" / "zoneinfo" / "America" / "Denver").write_bytes(b"TZif")
    return root


@pytest.fixture
def fake_hash():
    """The SHA-512 crypt hash FakeSystem's openssl prints."""
    return FAKE_HASH
