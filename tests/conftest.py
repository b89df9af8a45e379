"""Shared fixtures: Mach-O images, .ipa archives and fake collaborators."""

import plistlib
import struct
import threading
import zipfile
from pathlib import Path

import pytest

from iparesign import ArchiveError, SigningError, VerificationError

MH_MAGIC_64 = 0xFEEDFACF
CPU_TYPE_ARM64 = 0x0100000C
MH_EXECUTE = 2
LC_ENCRYPTION_INFO_64 = 0x2C


def macho_bytes(cryptid: int | None = None) -> bytes:
    """A minimal little-endian 64-bit Mach-O image.

    With `cryptid`, the image carries one LC_ENCRYPTION_INFO_64 command.
    """
    commands = b""
    if cryptid is not None:
        commands = struct.pack(
            "<IIIIII", LC_ENCRYPTION_INFO_64, 24, 0x4000, 0x1000, cryptid, 0
        )
    ncmds = 1 if commands else 0
    header = struct.pack(
        "<IiiIIIII",
        MH_MAGIC_64,
        CPU_TYPE_ARM64,
        0,
        MH_EXECUTE,
        ncmds,
        len(commands),
        0,
        0,
    )
    return header + commands + b"\x00" * 64


def fat_bytes(*images: bytes) -> bytes:
    """A universal binary holding `images`, page aligned."""
    align = 12
    offset = 1 << align
    header = struct.pack(">II", 0xCAFEBABE, len(images))
    body = b""
    for image in images:
        header += struct.pack(
            ">iiIII", CPU_TYPE_ARM64, 0, offset + len(body), len(image), align
        )
        body += image + b"\x00" * (-len(image) % offset)
    return header + b"\x00" * (offset - len(header)) + body


def info_plist(**keys: object) -> bytes:
    return plistlib.dumps(keys)


def make_ipa(path: Path, files: dict[str, bytes]) -> Path:
    """Write a zip archive with `files` (archive name -> content)."""
    with zipfile.ZipFile(path, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return path


def basic_ipa_files(**info: object) -> dict[str, bytes]:
    """Payload/App.app/App plus Payload/App.app/Frameworks/Lib.framework/Lib"""
    keys = {"CFBundleExecutable": "App", "CFBundleIdentifier": "com.old.app"}
    keys.update(info)
    return {
        "Payload/App.app/Info.plist": info_plist(**keys),
        "Payload/App.app/App": macho_bytes(),
        "Payload/App.app/Frameworks/Lib.framework/Lib": macho_bytes(),
        "Payload/App.app/Frameworks/Lib.framework/Info.plist": info_plist(
            CFBundleIdentifier="com.vendor.Lib"
        ),
        "Payload/App.app/Assets.car": b"not a binary",
    }


class FakeArchive:
    """Archive adapter backed by zipfile, recording calls."""

    def __init__(self, fail_decompress=False, fail_compress=False):
        self.calls = []
        self.fail_decompress = fail_decompress
        self.fail_compress = fail_compress

    def decompress(self, archive, dest):
        self.calls.append(("decompress", Path(archive), Path(dest)))
        if self.fail_decompress:
            raise ArchiveError(f"Cannot unzip {archive}")
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(dest)

    def compress(self, source_dir, archive, root):
        self.calls.append(("compress", Path(source_dir), Path(archive), root))
        if self.fail_compress:
            raise ArchiveError(f"Cannot zip {archive}")
        source_dir = Path(source_dir)
        with zipfile.ZipFile(archive, "w") as zf:
            for path in sorted((source_dir / root).rglob("*")):
                zf.write(path, path.relative_to(source_dir).as_posix())


class FakeAuthority:
    """Signing authority recording every call in order.

    Files whose name is in `fail_sign` / `fail_verify` are rejected.
    """

    def __init__(self, fail_sign=(), fail_verify=(), on_sign=None):
        self.calls = []
        self.fail_sign = set(fail_sign)
        self.fail_verify = set(fail_verify)
        self.on_sign = on_sign
        self._lock = threading.Lock()

    def sign(self, identity, entitlements, target):
        target = Path(target)
        with self._lock:
            self.calls.append(("sign", target, identity, entitlements))
        if self.on_sign:
            self.on_sign(target)
        if target.name in self.fail_sign:
            raise SigningError(f"Cannot sign {target}: rejected")

    def verify(self, target):
        target = Path(target)
        with self._lock:
            self.calls.append(("verify", target))
        if target.name in self.fail_verify:
            raise VerificationError(f"Cannot verify {target}: invalid")

    def signed(self):
        return [call[1] for call in self.calls if call[0] == "sign"]

    def signed_names(self):
        return [path.name for path in self.signed()]


class FakeExtractor:
    def __init__(self, entitlements=None):
        self.entitlements = entitlements or {
            "application-identifier": "TEAM123456.com.new.app",
            "get-task-allow": True,
        }
        self.calls = []

    def extract_entitlements(self, profile):
        self.calls.append(Path(profile))
        return dict(self.entitlements)


class EventRecorder:
    """Collects session events by name."""

    def __init__(self, session=None):
        self.events = []
        if session is not None:
            self.attach(session)

    def attach(self, session):
        for name in ("message", "warning", "end"):
            session.on(name, self._recorder(name))

    def _recorder(self, name):
        return lambda payload: self.events.append((name, payload))

    def of(self, name):
        return [payload for event, payload in self.events if event == name]


@pytest.fixture
def app_dir(tmp_path):
    """An extracted bundle: App.app with App and Lib.framework/Lib."""
    payload = tmp_path / "Payload"
    for name, content in basic_ipa_files().items():
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return payload / "App.app"


@pytest.fixture
def ipa(tmp_path):
    return make_ipa(tmp_path / "app.ipa", basic_ipa_files())
