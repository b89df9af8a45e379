"""Tests for FileSigner and TreeSigner."""

import threading
import time

import pytest

from conftest import FakeAuthority, macho_bytes
from iparesign import (
    EncryptedBinaryError,
    FileSigner,
    SigningError,
    StructuralError,
    TreeSigner,
    VerificationError,
)


class Recorder:
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def __call__(self, event, payload):
        with self._lock:
            self.events.append((event, payload))

    def of(self, name):
        return [payload for event, payload in self.events if event == name]


def file_signer(authority, emit, **kwargs):
    return FileSigner(authority, "ABCDEF", None, emit, **kwargs)


def add_libraries(app_dir, count):
    """Add `count` embedded dylibs and return their names."""
    names = []
    libs = app_dir / "Frameworks"
    for index in range(count):
        name = f"lib{index}.dylib"
        (libs / name).write_bytes(macho_bytes())
        names.append(name)
    return names


class TestFileSigner:
    """Tests for the per-file signing primitive."""

    def test_sign_and_verify(self, app_dir):
        authority = FakeAuthority()
        emit = Recorder()
        exe = app_dir / "App"
        assert file_signer(authority, emit).sign(exe)
        assert authority.calls == [
            ("sign", exe, "ABCDEF", None),
            ("verify", exe),
        ]
        assert emit.of("message") == [f"Sign {exe}", f"Verify {exe}"]

    def test_passes_entitlements(self, app_dir, tmp_path):
        authority = FakeAuthority()
        entitlements = tmp_path / "ent.plist"
        signer = FileSigner(authority, None, entitlements, Recorder())
        signer.sign(app_dir / "App")
        assert authority.calls[0] == ("sign", app_dir / "App", None, entitlements)

    def test_no_verify(self, app_dir):
        authority = FakeAuthority()
        file_signer(authority, Recorder(), verify=False).sign(app_dir / "App")
        assert [call[0] for call in authority.calls] == ["sign"]

    def test_sign_failure_raises(self, app_dir):
        authority = FakeAuthority(fail_sign={"App"})
        with pytest.raises(SigningError, match="App"):
            file_signer(authority, Recorder()).sign(app_dir / "App")
        # no verification after a failed signature
        assert [call[0] for call in authority.calls] == ["sign"]

    def test_verify_failure_raises(self, app_dir):
        authority = FakeAuthority(fail_verify={"App"})
        with pytest.raises(VerificationError):
            file_signer(authority, Recorder()).sign(app_dir / "App")

    def test_tolerated_failures_warn(self, app_dir):
        """Test that tolerated failures become warnings."""
        emit = Recorder()
        authority = FakeAuthority(fail_sign={"App"}, fail_verify={"Lib"})
        signer = file_signer(authority, emit, tolerate=True)
        lib = app_dir / "Frameworks" / "Lib.framework" / "Lib"
        assert signer.sign(app_dir / "App") is False
        assert signer.sign(lib) is False
        assert len(emit.of("warning")) == 2


class TestTreeSignerPrimary:
    """Tests for main executable checks."""

    def test_encrypted_primary_is_fatal(self, app_dir):
        (app_dir / "App").write_bytes(macho_bytes(cryptid=1))
        authority = FakeAuthority()
        tree = TreeSigner(file_signer(authority, Recorder()), Recorder())
        with pytest.raises(EncryptedBinaryError):
            tree.sign_tree(app_dir, app_dir / "App")
        assert authority.calls == []

    def test_encrypted_primary_tolerated(self, app_dir):
        """Test that -u downgrades encryption to a warning."""
        (app_dir / "App").write_bytes(macho_bytes(cryptid=1))
        emit = Recorder()
        authority = FakeAuthority()
        tree = TreeSigner(
            file_signer(authority, emit), emit, fail_on_encrypted=False
        )
        tree.sign_tree(app_dir, app_dir / "App")
        assert authority.signed_names() == ["App", "Lib"]
        assert len(emit.of("warning")) == 1

    def test_primary_not_macho(self, app_dir):
        (app_dir / "App").write_text("#!/bin/sh\n")
        tree = TreeSigner(file_signer(FakeAuthority(), Recorder()), Recorder())
        with pytest.raises(StructuralError, match="Not a Mach-O"):
            tree.sign_primary(app_dir / "App")

    def test_primary_missing(self, app_dir):
        tree = TreeSigner(file_signer(FakeAuthority(), Recorder()), Recorder())
        with pytest.raises(StructuralError, match="Invalid path"):
            tree.sign_primary(app_dir / "Missing")


class TestTreeSignerCollect:
    """Tests for the bundle walk."""

    def test_collects_binaries_only(self, app_dir):
        tree = TreeSigner(file_signer(FakeAuthority(), Recorder()), Recorder())
        binaries = tree.collect(app_dir, app_dir / "App")
        assert binaries == [app_dir / "Frameworks" / "Lib.framework" / "Lib"]

    def test_excludes_primary(self, app_dir):
        """Test that the main executable is never part of the sweep."""
        tree = TreeSigner(file_signer(FakeAuthority(), Recorder()), Recorder())
        assert app_dir / "App" not in tree.collect(app_dir, app_dir / "App")

    def test_skips_symlinks(self, app_dir):
        lib = app_dir / "Frameworks" / "Lib.framework" / "Lib"
        (app_dir / "Frameworks" / "Link").symlink_to(lib)
        tree = TreeSigner(file_signer(FakeAuthority(), Recorder()), Recorder())
        assert tree.collect(app_dir, app_dir / "App") == [lib]

    def test_primary_not_walked(self, app_dir):
        """Test that never meeting the executable is fatal."""
        tree = TreeSigner(file_signer(FakeAuthority(), Recorder()), Recorder())
        with pytest.raises(StructuralError, match="Cannot find any Mach-O"):
            tree.collect(app_dir, app_dir / "Elsewhere")

    def test_unreadable_file_is_skipped(self, app_dir, monkeypatch):
        """Test that a file that cannot be read is warned about."""
        import iparesign

        real_read_magic = iparesign.read_magic
        lib = app_dir / "Frameworks" / "Lib.framework" / "Lib"

        def flaky_read_magic(path):
            if path == lib:
                raise PermissionError("denied")
            return real_read_magic(path)

        monkeypatch.setattr(iparesign, "read_magic", flaky_read_magic)
        emit = Recorder()
        tree = TreeSigner(file_signer(FakeAuthority(), emit), emit)
        assert tree.collect(app_dir, app_dir / "App") == []
        assert len(emit.of("warning")) == 1


class TestTreeSignerSweep:
    """Tests for sequential and parallel sweeps."""

    def test_primary_signed_first(self, app_dir):
        authority = FakeAuthority()
        emit = Recorder()
        tree = TreeSigner(file_signer(authority, emit), emit)
        result = tree.sign_tree(app_dir, app_dir / "App")
        assert authority.signed_names() == ["App", "Lib"]
        assert result.failed == ()
        assert emit.of("warning") == []
        assert "Everything seems signed now" in emit.of("message")

    def test_no_libraries(self, app_dir):
        (app_dir / "Frameworks" / "Lib.framework" / "Lib").unlink()
        emit = Recorder()
        tree = TreeSigner(file_signer(FakeAuthority(), emit), emit)
        result = tree.sign_tree(app_dir, app_dir / "App")
        assert result == ((), ())
        assert "No libraries found, moving along" in emit.of("message")

    @pytest.mark.parametrize("parallel", [False, True])
    @pytest.mark.parametrize("failures", [0, 1, 3, 5])
    def test_failure_tolerance(self, app_dir, parallel, failures):
        """Test that K failing members give K warnings and no abort."""
        names = add_libraries(app_dir, 5)
        emit = Recorder()
        authority = FakeAuthority(fail_sign=names[:failures])
        tree = TreeSigner(file_signer(authority, emit), emit, parallel=parallel)
        result = tree.sign_tree(app_dir, app_dir / "App")

        assert len(result.failed) == failures
        assert len(result.signed) == 6 - failures
        assert len(emit.of("warning")) == failures
        if failures:
            assert (
                f"Warning: Some ({failures}) errors happened."
                in emit.of("message")
            )

    def test_verification_failure_counted(self, app_dir):
        emit = Recorder()
        authority = FakeAuthority(fail_verify={"Lib"})
        tree = TreeSigner(file_signer(authority, emit), emit)
        result = tree.sign_tree(app_dir, app_dir / "App")
        assert [p.name for p in result.failed] == ["Lib"]
        assert len(emit.of("warning")) == 1

    def test_tolerated_failures_warn_once(self, app_dir):
        """Test that a tolerated member failure is not warned twice."""
        emit = Recorder()
        authority = FakeAuthority(fail_sign={"Lib"})
        signer = file_signer(authority, emit, tolerate=True)
        result = TreeSigner(signer, emit).sign_tree(app_dir, app_dir / "App")
        assert len(result.failed) == 1
        assert len(emit.of("warning")) == 1

    def test_parallel_runs_concurrently(self, app_dir):
        """Test that the parallel sweep overlaps signing operations."""
        add_libraries(app_dir, 3)
        barrier = threading.Barrier(4, timeout=5)

        def wait_for_all(target):
            if target.name != "App":
                barrier.wait()

        authority = FakeAuthority(on_sign=wait_for_all)
        emit = Recorder()
        tree = TreeSigner(file_signer(authority, emit), emit, parallel=True)
        result = tree.sign_tree(app_dir, app_dir / "App")
        assert len(result.signed) == 4
        assert tree.in_flight == 0

    def test_bounded_parallel(self, app_dir):
        """Test that max_workers bounds the concurrent signatures."""
        add_libraries(app_dir, 6)
        lock = threading.Lock()
        active = []
        peak = []

        def track(target):
            with lock:
                active.append(target)
                peak.append(len(active))
            time.sleep(0.01)
            with lock:
                active.remove(target)

        authority = FakeAuthority(on_sign=track)
        emit = Recorder()
        tree = TreeSigner(
            file_signer(authority, emit), emit, parallel=True, max_workers=2
        )
        result = tree.sign_tree(app_dir, app_dir / "App")
        assert len(result.signed) == 7
        assert max(peak) <= 2

    def test_unexpected_error_propagates(self, app_dir):
        """Test that non-signing errors in the sweep are not swallowed."""

        def explode(target):
            if target.name == "Lib":
                raise RuntimeError("boom")

        emit = Recorder()
        authority = FakeAuthority(on_sign=explode)
        tree = TreeSigner(file_signer(authority, emit), emit, parallel=True)
        with pytest.raises(RuntimeError, match="boom"):
            tree.sign_tree(app_dir, app_dir / "App")
