#!/usr/bin/env python3
"""iparesign - resign iOS application archives (.ipa).

This module provides tools for:
1. Unpacking an .ipa and locating its application bundle
2. Rewriting bundle identifiers, entitlements and provisioning metadata
3. Resigning the main executable and every embedded Mach-O binary
   (frameworks, dylibs, app extensions, watch apps)
4. Repackaging the resigned tree

Signing and verification are delegated to `codesign`, archive handling
to `unzip`/`zip` and provisioning decoding to `security cms`. This module
implements the policy: what to sign, in which order, with which metadata
and how to react to failures.

Usage (CLI):
    # List the codesigning identities available in the keychain
    iparesign -L

    # Resign an ipa with an identity and a provisioning profile
    iparesign -i 1C4D1A... -m embedded.mobileprovision MyApp.ipa

Usage (API):
    from iparesign import SessionConfig, SigningSession

    config = SessionConfig.create("MyApp.ipa", identity="1C4D1A...")
    session = SigningSession(config)
    session.on("warning", print)
    error = session.run()
"""

import argparse
import dataclasses
import datetime
import logging
import os
import plistlib
import re
import shutil
import subprocess
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, NamedTuple
from xml.parsers.expat import ExpatError

from machoprobe import classify, classify_file, read_magic

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str
Listener = Callable[[object], None]

# Archive layout
IPA_EXT = ".ipa"
APP_EXT = ".app"
APPEX_EXT = ".appex"
PAYLOAD_DIR = "Payload"
INFO_PLIST = "Info.plist"
WATCH_DIR = "Watch"
PLUGINS_DIR = "PlugIns"

# Scratch directory is "<input>.d", output defaults to "<stem>-resigned.ipa"
SCRATCH_SUFFIX = ".d"
RESIGNED_SUFFIX = "-resigned"

# Files written into the application bundle
EMBEDDED_PROVISION = "embedded.mobileprovision"
ENTITLEMENTS_FILE = "archived-expanded-entitlements.xcent"

# Info.plist keys
KEY_BUNDLE_ID = "CFBundleIdentifier"
KEY_EXECUTABLE = "CFBundleExecutable"
KEY_DEVICE_FAMILY = "UIDeviceFamily"
KEY_SUPPORTED_DEVICES = "UISupportedDevices"
KEY_COMPANION_ID = "WKCompanionAppBundleIdentifier"
KEY_EXTENSION = "NSExtension"
KEY_EXTENSION_ATTRIBUTES = "NSExtensionAttributes"
KEY_EXTENSION_POINT = "NSExtensionPointIdentifier"
KEY_WK_APP_ID = "WKAppBundleIdentifier"

WATCHKIT_EXTENSION_POINT = "com.apple.watchkit"
IPHONE_DEVICE_FAMILY = [1]

# Ad-hoc identity understood by codesign
ADHOC_IDENTITY = "-"

# Environment variable names
ENV_IDENTITY = "IPARESIGN_IDENTITY"
ENV_KEYCHAIN = "IPARESIGN_KEYCHAIN"

# Session event names
EVENT_MESSAGE = "message"
EVENT_WARNING = "warning"
EVENT_END = "end"
EVENTS = (EVENT_MESSAGE, EVENT_WARNING, EVENT_END)

# `security find-identity -v -p codesigning` line:
#   1) 1C4D1A5F... "Apple Development: John Doe (ABCD123456)"
IDENTITY_PATTERN = re.compile(r'^\s*\d+\)\s+([0-9A-Fa-f]{40})\s+"(.*)"')

# ----------------------------------------------------------------------------
# Optional dotenv support


def _load_dotenv() -> None:
    """Attempt to load .env file if python-dotenv is available."""
    try:
        from dotenv import load_dotenv

        load_dotenv()
    except ImportError:
        pass


_load_dotenv()

# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .iparesign.toml in current directory
    3. iparesign.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Example .iparesign.toml:
        [resign]
        identity = "1C4D1A5F..."
        keychain = "~/Library/Keychains/signing.keychain-db"
        mobileprovision = "profiles/adhoc.mobileprovision"
    """
    try:
        import tomllib
    except ImportError:
        import tomli as tomllib  # type: ignore[no-redef]

    if config_path and config_path.exists():
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".iparesign.toml",
            cwd / "iparesign.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
                return data
            except (OSError, tomllib.TOMLDecodeError):
                continue

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "resign")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


# Global config (loaded lazily)
_config: dict[str, object] | None = None


def get_config() -> dict[str, object]:
    """Get the global configuration, loading it if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


# ----------------------------------------------------------------------------
# Error handling


class ResignError(Exception):
    """Base exception class for iparesign errors."""


class CommandError(ResignError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class ConfigurationError(ResignError):
    """Exception raised when the session configuration is invalid."""


class StructuralError(ResignError):
    """Exception raised when the archive or bundle layout is invalid."""


class EncryptedBinaryError(ResignError):
    """Exception raised when the main executable is encrypted."""


class SigningError(ResignError):
    """Exception raised when the signing authority rejects a file."""


class VerificationError(ResignError):
    """Exception raised when a signature does not verify."""


class ArchiveError(ResignError):
    """Exception raised when unpacking, packing, copying or moving fails."""


class CleanupError(ResignError):
    """Exception raised when the scratch directory cannot be removed."""


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        if not self.use_color:
            log_fmt = self.fmt
        else:
            log_fmt = self.FORMATS[record.levelno]
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def setup_logging(debug: bool = True, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str],
    cwd: Pathlike | None = None,
    log: logging.Logger | None = None,
) -> str:
    """Run a command and return its output.

    This is the consolidated command execution utility used by every
    external collaborator. Uses shell=False for security.

    Args:
        command: The command as a list of arguments
        cwd: Optional working directory for the command
        log: Optional logger for debug output

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command fails or cannot be started
    """
    cmd_str = " ".join(command)
    if log:
        log.debug("%s", cmd_str)
    try:
        result = subprocess.run(
            command,
            shell=False,
            check=True,
            text=True,
            capture_output=True,
            cwd=cwd,
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e
    except FileNotFoundError as e:
        raise CommandError(cmd_str, 127, str(e)) from e


# ----------------------------------------------------------------------------
# Property lists


def read_plist(path: Pathlike) -> dict:
    """Read a property list (xml or binary) into a dictionary."""
    with open(path, "rb") as fopen:
        data = plistlib.load(fopen)
    if not isinstance(data, dict):
        raise ValueError(f"Property list is not a dictionary: {path}")
    return data


def write_plist(path: Pathlike, data: dict) -> None:
    """Write a dictionary as an xml property list."""
    with open(path, "wb") as fopen:
        plistlib.dump(data, fopen)


# ----------------------------------------------------------------------------
# External collaborators


class Identity(NamedTuple):
    hash: str
    name: str


class ArchiveAdapter:
    """Unpacks and packs .ipa archives with unzip/zip."""

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def decompress(self, archive: Pathlike, dest: Pathlike) -> None:
        """Extract `archive` into the directory `dest`.

        Raises:
            ArchiveError: If unzip fails
        """
        try:
            run_command(
                ["unzip", "-o", str(archive), "-d", str(dest)], log=self.log
            )
        except CommandError as e:
            raise ArchiveError(f"Cannot unzip {archive}: {e}") from e

    def compress(
        self, source_dir: Pathlike, archive: Pathlike, root: str
    ) -> None:
        """Zip the entry `root` of `source_dir` into `archive`.

        An existing `archive` is replaced, zip would update it otherwise.

        Raises:
            ArchiveError: If zip fails or the old archive cannot be removed
        """
        archive = Path(os.path.abspath(archive))
        try:
            if archive.exists():
                archive.unlink()
            run_command(
                ["zip", "-qry", str(archive), root],
                cwd=source_dir,
                log=self.log,
            )
        except (OSError, CommandError) as e:
            raise ArchiveError(f"Cannot zip {archive}: {e}") from e


class CodesignAuthority:
    """Signs and verifies files with codesign.

    Args:
        keychain: Optional keychain to look the identity up in
    """

    def __init__(self, keychain: str | None = None) -> None:
        self.keychain = keychain
        self.log = logging.getLogger(self.__class__.__name__)

    def sign(
        self,
        identity: str | None,
        entitlements: Pathlike | None,
        target: Pathlike,
    ) -> None:
        """Sign `target`, replacing any existing signature.

        Raises:
            SigningError: If codesign rejects the file
        """
        cmd = ["codesign", "--sign", identity or ADHOC_IDENTITY, "--force"]
        if self.keychain:
            cmd.extend(["--keychain", self.keychain])
        if entitlements:
            cmd.extend(["--entitlements", str(entitlements)])
        cmd.append(str(target))
        try:
            run_command(cmd, log=self.log)
        except CommandError as e:
            raise SigningError(f"Cannot sign {target}: {e.output or e}") from e

    def verify(self, target: Pathlike) -> None:
        """Verify the signature of `target`.

        Raises:
            VerificationError: If the signature does not verify
        """
        try:
            run_command(["codesign", "--verify", str(target)], log=self.log)
        except CommandError as e:
            raise VerificationError(
                f"Cannot verify {target}: {e.output or e}"
            ) from e

    def list_identities(self) -> list[Identity]:
        """Return the valid codesigning identities of the keychain."""
        cmd = ["security", "find-identity", "-v", "-p", "codesigning"]
        if self.keychain:
            cmd.append(self.keychain)
        output = run_command(cmd, log=self.log)
        identities = []
        for line in output.splitlines():
            match = IDENTITY_PATTERN.match(line)
            if match:
                identities.append(Identity(match.group(1), match.group(2)))
        return identities


class ProvisioningExtractor:
    """Extracts the entitlements of a provisioning profile."""

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def decode(self, profile: Pathlike) -> dict:
        """Decode the CMS envelope of `profile` into its property list."""
        try:
            output = run_command(
                ["security", "cms", "-D", "-i", str(profile)], log=self.log
            )
            data = plistlib.loads(output.encode("utf-8"))
        except (CommandError, ValueError, ExpatError) as e:
            raise ConfigurationError(
                f"Cannot decode provisioning profile {profile}: {e}"
            ) from e
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Provisioning profile is not a dictionary: {profile}"
            )
        return data

    def extract_entitlements(self, profile: Pathlike) -> dict:
        """Return the Entitlements dictionary of `profile`.

        Raises:
            ConfigurationError: If the profile cannot be decoded or has
                no entitlements
        """
        entitlements = self.decode(profile).get("Entitlements")
        if not isinstance(entitlements, dict):
            raise ConfigurationError(
                f"No entitlements in provisioning profile: {profile}"
            )
        return entitlements


# ----------------------------------------------------------------------------
# Session configuration and runtime state


def resigned_filename(path: Pathlike) -> str:
    """Return the default output name: 'App.ipa' -> 'App-resigned.ipa'"""
    name = Path(path).name
    if name.endswith(IPA_EXT):
        name = name[: -len(IPA_EXT)]
    return name + RESIGNED_SUFFIX + IPA_EXT


@dataclass(frozen=True)
class SessionConfig:
    """Immutable configuration of one resigning session.

    Use `SessionConfig.create()` to derive the output and scratch paths
    from the input path.

    Attributes:
        file: Input .ipa (or the single file to sign in single mode)
        outfile: Output .ipa (default: '<stem>-resigned.ipa' next to file)
        outdir: Scratch directory (always '<absolute file>.d')
        bundle_id: New CFBundleIdentifier (default: unchanged)
        identity: Signing identity hash or name (default: ad-hoc)
        keychain: Keychain holding the identity
        entitlements: Entitlements file, superseded by mobileprovision
        mobileprovision: Provisioning profile to embed
        replace_ipa: Move the resigned archive over the input
        without_watchapp: Remove the watch app before signing
        parallel: Sign embedded binaries concurrently
        max_workers: Bound for the parallel sweep (default: one per file)
        verify: Verify each file right after signing it
        verify_twice: Verify every signed file again after the sweep
        ignore_verification_errors: Downgrade main executable signing
            and verification failures to warnings
        fail_on_encrypted: Abort when the main executable is encrypted
        force_family: Force UIDeviceFamily to iPhone
        single: Sign `file` directly instead of treating it as an .ipa
        self_signed_provision: Accepted for compatibility, unsupported
    """

    file: Path
    outfile: Path
    outdir: Path
    bundle_id: str | None = None
    identity: str | None = None
    keychain: str | None = None
    entitlements: Path | None = None
    mobileprovision: Path | None = None
    replace_ipa: bool = False
    without_watchapp: bool = False
    parallel: bool = False
    max_workers: int | None = None
    verify: bool = True
    verify_twice: bool = False
    ignore_verification_errors: bool = False
    fail_on_encrypted: bool = True
    force_family: bool = False
    single: bool = False
    self_signed_provision: bool = False

    @classmethod
    def create(
        cls,
        file: Pathlike,
        outfile: Pathlike | None = None,
        **options: object,
    ) -> "SessionConfig":
        """Build a configuration, deriving outfile and outdir from file.

        `identity` and `keychain` fall back to the IPARESIGN_IDENTITY
        and IPARESIGN_KEYCHAIN environment variables.
        """
        file = Path(file)
        outdir = Path(os.path.abspath(str(file) + SCRATCH_SUFFIX))
        if outfile:
            out = Path(os.path.abspath(outfile))
        else:
            out = outdir.parent / resigned_filename(file)
        if options.get("identity") is None:
            options["identity"] = os.getenv(ENV_IDENTITY)
        if options.get("keychain") is None:
            options["keychain"] = os.getenv(ENV_KEYCHAIN)
        for key in ("entitlements", "mobileprovision"):
            if options.get(key):
                options[key] = Path(options[key])  # type: ignore[arg-type]
            else:
                options[key] = None
        return cls(file=file, outfile=out, outdir=outdir, **options)

    def with_file(self, file: Pathlike) -> "SessionConfig":
        """Return a copy targeting another archive, paths re-derived."""
        file = Path(file)
        outdir = Path(os.path.abspath(str(file) + SCRATCH_SUFFIX))
        return dataclasses.replace(
            self,
            file=file,
            outfile=outdir.parent / resigned_filename(file),
            outdir=outdir,
        )

    def validate(self) -> None:
        """Check the configured input files.

        Raises:
            ConfigurationError: If a configured file is missing or a
                value is out of range
        """
        if self.entitlements and not self.entitlements.is_file():
            raise ConfigurationError(
                f"Entitlements file not found: {self.entitlements}"
            )
        if self.mobileprovision and not self.mobileprovision.is_file():
            raise ConfigurationError(
                f"Provisioning profile not found: {self.mobileprovision}"
            )
        if self.max_workers is not None and self.max_workers < 1:
            raise ConfigurationError(
                f"max_workers must be at least 1: {self.max_workers}"
            )

    @property
    def target(self) -> Path:
        """The path holding the result once the session succeeds."""
        if self.single or self.replace_ipa:
            return self.file
        return self.outfile


@dataclass(frozen=True)
class RuntimeState:
    """Per-session state; every transition produces a new value."""

    app_dir: Path | None = None
    executable: Path | None = None
    entitlements: Path | None = None
    binaries: tuple[Path, ...] = ()
    signed: tuple[Path, ...] = ()
    failed: tuple[Path, ...] = ()


class SweepResult(NamedTuple):
    signed: tuple[Path, ...]
    failed: tuple[Path, ...]


# ----------------------------------------------------------------------------
# Bundle locator


class AppBundle(NamedTuple):
    path: Path
    executable_name: str

    @property
    def executable(self) -> Path:
        return self.path / self.executable_name


class BundleLocator:
    """Finds the single application bundle of an extracted archive.

    Args:
        suffix: Bundle name suffix (default: '.app')
    """

    def __init__(self, suffix: str = APP_EXT) -> None:
        self.suffix = suffix
        self.log = logging.getLogger(self.__class__.__name__)

    def executable_name(self, bundle: Path) -> str:
        """CFBundleExecutable of the bundle, or its name without suffix."""
        fallback = bundle.name.replace(self.suffix, "")
        try:
            name = read_plist(bundle / INFO_PLIST).get(KEY_EXECUTABLE)
        except (OSError, ValueError, ExpatError) as e:
            self.log.debug("cannot read %s: %s", bundle / INFO_PLIST, e)
            return fallback
        if isinstance(name, str) and name:
            return name
        return fallback

    def locate(self, payload: Pathlike) -> AppBundle:
        """Return the application bundle and executable name.

        Raises:
            StructuralError: If payload is not a directory, does not hold
                exactly one bundle, or the executable is not a file
        """
        payload = Path(payload)
        if not payload.is_dir():
            raise StructuralError(f"Cannot find {payload}")
        bundles = sorted(
            entry for entry in payload.iterdir() if self.suffix in entry.name
        )
        if len(bundles) != 1:
            raise StructuralError(
                f"Invalid IPA: expected one {self.suffix} in {payload}, "
                f"found {len(bundles)}"
            )
        bundle = AppBundle(bundles[0], self.executable_name(bundles[0]))
        executable = bundle.executable
        if executable.is_symlink() or not executable.is_file():
            raise StructuralError(f"Invalid path: {executable}")
        self.log.debug("found %s (executable %s)", bundle.path, executable)
        return bundle


# ----------------------------------------------------------------------------
# Metadata rewriter


class MetadataRewriter:
    """Mutates bundle metadata in place before anything is signed.

    Args:
        config: The session configuration
        extractor: Provisioning profile entitlements extractor
        emit: Event callback, `emit(event, payload)`
    """

    def __init__(
        self,
        config: SessionConfig,
        extractor: ProvisioningExtractor,
        emit: Callable[[str, object], None],
    ) -> None:
        self.config = config
        self.extractor = extractor
        self.emit = emit
        self.log = logging.getLogger(self.__class__.__name__)

    def rewrite(self, state: RuntimeState) -> RuntimeState:
        """Run every configured rewrite and return the new state."""
        app_dir = state.app_dir
        if app_dir is None:
            raise StructuralError("No application bundle to rewrite")
        if self.config.self_signed_provision:
            self.emit(
                EVENT_WARNING,
                "Self-signed provisioning is not supported, ignoring",
            )
        try:
            if self.config.without_watchapp:
                self.remove_watchapp(app_dir)
            self.rewrite_bundle_id(app_dir)
            if self.config.force_family:
                self.force_device_family(app_dir)
        except (ValueError, ExpatError) as e:
            raise StructuralError(f"Invalid property list: {e}") from e
        return self.install_provisioning(state)

    def remove_watchapp(self, app_dir: Path) -> None:
        """Remove the watch app and the WatchKit extensions."""
        watch = app_dir / WATCH_DIR
        if watch.is_dir():
            self.emit(EVENT_MESSAGE, f"Removing {watch}")
            shutil.rmtree(watch)
        plugins = app_dir / PLUGINS_DIR
        if not plugins.is_dir():
            return
        for appex in sorted(plugins.glob("*" + APPEX_EXT)):
            info = appex / INFO_PLIST
            if not info.is_file():
                continue
            extension = read_plist(info).get(KEY_EXTENSION, {})
            if (
                isinstance(extension, dict)
                and extension.get(KEY_EXTENSION_POINT)
                == WATCHKIT_EXTENSION_POINT
            ):
                self.emit(EVENT_MESSAGE, f"Removing {appex}")
                shutil.rmtree(appex)

    def rewrite_bundle_id(self, app_dir: Path) -> None:
        """Replace CFBundleIdentifier, carrying nested bundles along."""
        bundle_id = self.config.bundle_id
        if not bundle_id:
            return
        info = app_dir / INFO_PLIST
        data = read_plist(info)
        old_id = data.get(KEY_BUNDLE_ID)
        self.emit(
            EVENT_MESSAGE, f"Rebundle {info} {old_id} into {bundle_id}"
        )
        data[KEY_BUNDLE_ID] = bundle_id
        write_plist(info, data)
        if not isinstance(old_id, str) or not old_id or old_id == bundle_id:
            return
        for nested in sorted(app_dir.rglob(INFO_PLIST)):
            if nested != info:
                self._rewrite_nested(nested, old_id, bundle_id)

    def _rewrite_nested(self, info: Path, old_id: str, new_id: str) -> None:
        """Rewrite identifiers of a nested bundle prefixed by old_id."""

        def swap(value: object) -> object:
            if isinstance(value, str) and (
                value == old_id or value.startswith(old_id + ".")
            ):
                return new_id + value[len(old_id) :]
            return value

        data = read_plist(info)
        changed = False
        for key in (KEY_BUNDLE_ID, KEY_COMPANION_ID):
            if key in data and swap(data[key]) != data[key]:
                data[key] = swap(data[key])
                changed = True
        attributes = data.get(KEY_EXTENSION, {})
        if isinstance(attributes, dict):
            attributes = attributes.get(KEY_EXTENSION_ATTRIBUTES, {})
        if isinstance(attributes, dict) and KEY_WK_APP_ID in attributes:
            if swap(attributes[KEY_WK_APP_ID]) != attributes[KEY_WK_APP_ID]:
                attributes[KEY_WK_APP_ID] = swap(attributes[KEY_WK_APP_ID])
                changed = True
        if changed:
            self.emit(EVENT_MESSAGE, f"Rebundle {info}")
            write_plist(info, data)

    def force_device_family(self, app_dir: Path) -> None:
        """Force UIDeviceFamily to iPhone only."""
        info = app_dir / INFO_PLIST
        data = read_plist(info)
        self.emit(EVENT_MESSAGE, f"Forcing iPhone device family in {info}")
        data[KEY_DEVICE_FAMILY] = list(IPHONE_DEVICE_FAMILY)
        data.pop(KEY_SUPPORTED_DEVICES, None)
        write_plist(info, data)

    def install_provisioning(self, state: RuntimeState) -> RuntimeState:
        """Embed the provisioning profile and synthesize entitlements.

        Returns:
            The state with `entitlements` pointing at the synthesized
            file, or the unchanged state without a provisioning profile
        """
        profile = self.config.mobileprovision
        app_dir = state.app_dir
        if not profile or app_dir is None:
            return state
        embedded = app_dir / EMBEDDED_PROVISION
        try:
            shutil.copyfile(profile, embedded)
        except OSError as e:
            raise ArchiveError(f"Cannot copy {profile}: {e}") from e
        self.emit(EVENT_MESSAGE, "Grabbing entitlements from mobileprovision")
        entitlements = self.extractor.extract_entitlements(profile)
        self.log.debug("entitlements: %s", entitlements)
        target = app_dir / ENTITLEMENTS_FILE
        try:
            write_plist(target, entitlements)
        except OSError as e:
            raise ArchiveError(f"Cannot write {target}: {e}") from e
        return dataclasses.replace(state, entitlements=target)


# ----------------------------------------------------------------------------
# Signing


class FileSigner:
    """Per-file signing primitive shared by the main executable and the sweep.

    Args:
        authority: The signing authority
        identity: Signing identity (None for ad-hoc)
        entitlements: Entitlements file passed to every signature
        emit: Event callback, `emit(event, payload)`
        verify: Verify each file right after signing it
        tolerate: Downgrade failures to warnings instead of raising
    """

    def __init__(
        self,
        authority: CodesignAuthority,
        identity: str | None,
        entitlements: Path | None,
        emit: Callable[[str, object], None],
        verify: bool = True,
        tolerate: bool = False,
    ) -> None:
        self.authority = authority
        self.identity = identity
        self.entitlements = entitlements
        self.emit = emit
        self.verify_after = verify
        self.tolerate = tolerate

    def sign(self, path: Path) -> bool:
        """Sign (and verify) a file.

        Returns:
            True if signed, False if a tolerated failure was warned about

        Raises:
            SigningError, VerificationError: Unless failures are tolerated
        """
        self.emit(EVENT_MESSAGE, f"Sign {path}")
        try:
            self.authority.sign(self.identity, self.entitlements, path)
        except SigningError as e:
            if not self.tolerate:
                raise
            self.emit(EVENT_WARNING, str(e))
            return False
        if not self.verify_after:
            return True
        return self.verify(path)

    def verify(self, path: Path) -> bool:
        """Verify a file, applying the same failure policy as `sign`."""
        self.emit(EVENT_MESSAGE, f"Verify {path}")
        try:
            self.authority.verify(path)
        except VerificationError as e:
            if not self.tolerate:
                raise
            self.emit(EVENT_WARNING, str(e))
            return False
        return True


class TreeSigner:
    """Signs the main executable, then every other Mach-O of the bundle.

    The main executable is signed first and is never part of the sweep.
    Sweep failures are warned about and counted, never raised.

    Args:
        signer: Per-file signing primitive
        emit: Event callback, `emit(event, payload)`
        parallel: Sign sweep members concurrently
        max_workers: Worker bound for the parallel sweep (None: one per file)
        fail_on_encrypted: Abort on an encrypted main executable

    Example:
        tree = TreeSigner(signer, emit, parallel=True)
        result = tree.sign_tree(app.path, app.executable)
    """

    def __init__(
        self,
        signer: FileSigner,
        emit: Callable[[str, object], None],
        parallel: bool = False,
        max_workers: int | None = None,
        fail_on_encrypted: bool = True,
    ) -> None:
        self.signer = signer
        self.emit = emit
        self.parallel = parallel
        self.max_workers = max_workers
        self.fail_on_encrypted = fail_on_encrypted
        self.in_flight = 0
        self._lock = threading.Lock()
        self.log = logging.getLogger(self.__class__.__name__)

    def check_primary(self, executable: Path) -> None:
        """Require the main executable to be an unencrypted Mach-O.

        Raises:
            StructuralError: If it is not a regular Mach-O file
            EncryptedBinaryError: If it is encrypted and that is fatal
        """
        if executable.is_symlink() or not executable.is_file():
            raise StructuralError(f"Invalid path: {executable}")
        info = classify_file(executable)
        if not info.is_macho:
            raise StructuralError(f"Not a Mach-O binary: {executable}")
        if info.is_encrypted:
            if self.fail_on_encrypted:
                raise EncryptedBinaryError(f"ipa is encrypted: {executable}")
            self.emit(
                EVENT_WARNING, f"Main executable is encrypted: {executable}"
            )
        else:
            self.emit(EVENT_MESSAGE, "Main IPA executable is not encrypted")

    def sign_primary(self, executable: Path) -> bool:
        """Check and sign the main executable (the anchor signature)."""
        self.check_primary(executable)
        return self.signer.sign(executable)

    def collect(self, app_dir: Path, executable: Path) -> list[Path]:
        """Walk the bundle and return every Mach-O except the executable.

        Raises:
            StructuralError: If the walk never meets the executable
        """
        self.emit(EVENT_MESSAGE, "Signing libraries and frameworks")
        found = False
        binaries = []
        for root, folders, files in os.walk(app_dir):
            folders.sort()
            root_path = Path(root)
            for fname in sorted(files):
                fpath = root_path / fname
                if fpath == executable:
                    self.emit(EVENT_MESSAGE, f"Executable found at {fpath}")
                    found = True
                    continue
                if fpath.is_symlink() or not fpath.is_file():
                    continue
                try:
                    magic = read_magic(fpath)
                except OSError as e:
                    self.emit(EVENT_WARNING, f"Skipping {fpath}: {e}")
                    continue
                if classify(magic).is_macho:
                    self.log.debug("added binary: %s", fpath)
                    binaries.append(fpath)
        if not found:
            raise StructuralError("Cannot find any Mach-O binary to sign")
        return binaries

    def _sign_member(self, path: Path) -> tuple[Path, bool]:
        with self._lock:
            self.in_flight += 1
        try:
            try:
                ok = self.signer.sign(path)
            except (SigningError, VerificationError) as e:
                self.emit(EVENT_WARNING, str(e))
                ok = False
        finally:
            with self._lock:
                self.in_flight -= 1
        return path, ok

    def _sweep_parallel(self, binaries: list[Path]) -> list[tuple[Path, bool]]:
        workers = self.max_workers or len(binaries)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._sign_member, p) for p in binaries]
            wait(futures)
        return [future.result() for future in futures]

    def sweep(self, binaries: list[Path]) -> SweepResult:
        """Sign every collected binary and aggregate the outcomes."""
        if not binaries:
            self.emit(EVENT_MESSAGE, "No libraries found, moving along")
            return SweepResult((), ())
        self.emit(EVENT_MESSAGE, f"Found {len(binaries)} libraries")
        if self.parallel:
            outcomes = self._sweep_parallel(binaries)
        else:
            outcomes = [self._sign_member(path) for path in binaries]
        signed = tuple(path for path, ok in outcomes if ok)
        failed = tuple(path for path, ok in outcomes if not ok)
        if failed:
            self.emit(
                EVENT_MESSAGE,
                f"Warning: Some ({len(failed)}) errors happened.",
            )
        else:
            self.emit(EVENT_MESSAGE, "Everything seems signed now")
        return SweepResult(signed, failed)

    def sign_tree(self, app_dir: Path, executable: Path) -> SweepResult:
        """Sign the main executable, then sweep the rest of the bundle."""
        self.sign_primary(executable)
        return self.sweep(self.collect(app_dir, executable))


# ----------------------------------------------------------------------------
# Signing session


class SessionState(Enum):
    CREATED = "created"
    UNZIPPING = "unzipping"
    LOCATING = "locating"
    REWRITING_METADATA = "rewriting-metadata"
    SIGNING_PRIMARY = "signing-primary"
    SIGNING_TREE = "signing-tree"
    REPACKING = "repacking"
    SIGNING_FILE = "signing-file"
    CLEANING_UP = "cleaning-up"
    ENDED = "ended"


class SigningSession:
    """Drives one resign operation from the input .ipa to the output.

    States run strictly in order: unzip, locate, rewrite metadata, sign
    the main executable, sign the tree, repack. Any failure skips to
    cleanup, which always runs once and removes the scratch directory.
    Exactly one `end` event is emitted, carrying the first fatal error
    or None.

    Args:
        config: The session configuration
        archive: Archive adapter (default: unzip/zip)
        authority: Signing authority (default: codesign)
        extractor: Provisioning extractor (default: security cms)
        locator: Bundle locator

    Events:
        message(text), warning(text), end(error or None)

    Example:
        session = SigningSession(SessionConfig.create("MyApp.ipa"))
        session.on("message", print).on("warning", print)
        error = session.run()
    """

    def __init__(
        self,
        config: SessionConfig,
        archive: ArchiveAdapter | None = None,
        authority: CodesignAuthority | None = None,
        extractor: ProvisioningExtractor | None = None,
        locator: BundleLocator | None = None,
    ) -> None:
        config.validate()
        self.config = config
        self.archive = archive or ArchiveAdapter()
        self.authority = authority or CodesignAuthority(config.keychain)
        self.extractor = extractor or ProvisioningExtractor()
        self.locator = locator or BundleLocator()
        self.log = logging.getLogger(self.__class__.__name__)

        self.state = SessionState.CREATED
        self.runtime = RuntimeState(entitlements=config.entitlements)
        self.error: BaseException | None = None
        self.tree_signer: TreeSigner | None = None

        self._listeners: dict[str, list[Listener]] = {e: [] for e in EVENTS}
        self._lock = threading.RLock()

    # events

    def on(self, event: str, callback: Listener) -> "SigningSession":
        """Subscribe `callback` to `event`; returns self for chaining."""
        if event not in self._listeners:
            raise ValueError(f"Unknown event: {event}")
        self._listeners[event].append(callback)
        return self

    def emit(self, event: str, payload: object = None) -> None:
        """Log an event and deliver it to its listeners."""
        if event == EVENT_MESSAGE:
            self.log.debug("%s", payload)
        elif event == EVENT_WARNING:
            self.log.warning("%s", payload)
        elif payload is None:
            self.log.info("session ended: %s", self.config.target)
        else:
            self.log.error("session failed: %s", payload)
        with self._lock:
            for callback in self._listeners[event]:
                callback(payload)

    # state machine

    def _transition(self, state: SessionState) -> None:
        self.log.debug("%s -> %s", self.state.value, state.value)
        self.state = state

    def _steps(self) -> list[tuple[SessionState, Callable[[], None]]]:
        if self.config.single:
            return [(SessionState.SIGNING_FILE, self.sign_file)]
        return [
            (SessionState.UNZIPPING, self.unzip),
            (SessionState.LOCATING, self.locate),
            (SessionState.REWRITING_METADATA, self.rewrite_metadata),
            (SessionState.SIGNING_PRIMARY, self.sign_primary),
            (SessionState.SIGNING_TREE, self.sign_tree),
            (SessionState.REPACKING, self.repack),
        ]

    def run(self) -> ResignError | None:
        """Run the session to its terminal state.

        Returns:
            The first fatal error, or None on success
        """
        if self.state is not SessionState.CREATED:
            raise ResignError("Session already started")
        error: ResignError | None = None
        try:
            for state, step in self._steps():
                self._transition(state)
                step()
        except ResignError as e:
            error = e
        except OSError as e:
            error = ArchiveError(str(e))
            error.__cause__ = e
        except BaseException as e:
            self.cleanup(None)
            self._end(e)
            raise
        error = self.cleanup(error)
        self._end(error)
        return error

    def start(self) -> threading.Thread:
        """Run the session on a background thread; listen for `end`."""
        thread = threading.Thread(target=self.run, name="iparesign")
        thread.start()
        return thread

    def _end(self, error: BaseException | None) -> None:
        self._transition(SessionState.ENDED)
        self.error = error
        self.emit(EVENT_END, error)

    # steps

    def _remove_scratch(self) -> None:
        outdir = self.config.outdir
        if outdir.exists():
            shutil.rmtree(outdir)

    def unzip(self) -> None:
        """Extract the input archive into a fresh scratch directory."""
        file, outdir = self.config.file, self.config.outdir
        self.emit(EVENT_MESSAGE, f"rm -rf {outdir}")
        self._remove_scratch()
        self.emit(EVENT_MESSAGE, f"Unzipping {file}")
        self.archive.decompress(file, outdir)

    def locate(self) -> None:
        """Find the application bundle and its main executable."""
        payload = self.config.outdir / PAYLOAD_DIR
        bundle = self.locator.locate(payload)
        self.emit(EVENT_MESSAGE, "Payload found")
        self.runtime = dataclasses.replace(
            self.runtime, app_dir=bundle.path, executable=bundle.executable
        )

    def rewrite_metadata(self) -> None:
        """Apply every metadata change before the first signature."""
        rewriter = MetadataRewriter(self.config, self.extractor, self.emit)
        self.runtime = rewriter.rewrite(self.runtime)

    def _file_signer(self) -> FileSigner:
        return FileSigner(
            self.authority,
            self.config.identity,
            self.runtime.entitlements,
            self.emit,
            verify=self.config.verify,
            tolerate=self.config.ignore_verification_errors,
        )

    def sign_primary(self) -> None:
        """Sign the main executable."""
        self.tree_signer = TreeSigner(
            self._file_signer(),
            self.emit,
            parallel=self.config.parallel,
            max_workers=self.config.max_workers,
            fail_on_encrypted=self.config.fail_on_encrypted,
        )
        executable = self.runtime.executable
        if executable is None:
            raise StructuralError("No main executable located")
        self.tree_signer.sign_primary(executable)

    def sign_tree(self) -> None:
        """Sweep the embedded binaries, then optionally verify again."""
        tree = self.tree_signer
        app_dir, executable = self.runtime.app_dir, self.runtime.executable
        if tree is None or app_dir is None or executable is None:
            raise StructuralError("Main executable was not signed")
        binaries = tree.collect(app_dir, executable)
        self.runtime = dataclasses.replace(
            self.runtime, binaries=tuple(binaries)
        )
        result = tree.sweep(binaries)
        self.runtime = dataclasses.replace(
            self.runtime, signed=result.signed, failed=result.failed
        )
        if self.config.verify_twice:
            self.verify_again()

    def verify_again(self) -> None:
        """Second verification pass over every signed file."""
        tree, executable = self.tree_signer, self.runtime.executable
        if tree is None or executable is None:
            return
        self.emit(EVENT_MESSAGE, "Verifying signatures again")
        tree.signer.verify(executable)
        failed = []
        for path in self.runtime.signed:
            try:
                ok = tree.signer.verify(path)
            except VerificationError as e:
                self.emit(EVENT_WARNING, str(e))
                ok = False
            if not ok:
                failed.append(path)
        if not failed:
            return
        self.runtime = dataclasses.replace(
            self.runtime,
            signed=tuple(p for p in self.runtime.signed if p not in failed),
            failed=self.runtime.failed + tuple(failed),
        )
        self.emit(
            EVENT_MESSAGE,
            f"Warning: Some ({len(failed)}) errors happened.",
        )

    def repack(self) -> None:
        """Zip the signed tree, replacing the input if configured."""
        outfile = self.config.outfile
        self.emit(EVENT_MESSAGE, f"Zipifying into {outfile} ...")
        self.archive.compress(self.config.outdir, outfile, PAYLOAD_DIR)
        if self.config.replace_ipa:
            self.emit(EVENT_MESSAGE, f"mv into {self.config.file}")
            try:
                os.replace(outfile, self.config.file)
            except OSError as e:
                raise ArchiveError(
                    f"Cannot move {outfile} to {self.config.file}: {e}"
                ) from e

    def sign_file(self) -> None:
        """Single-file mode: sign the input file directly."""
        file = self.config.file
        if file.is_symlink() or not file.is_file():
            raise StructuralError(f"Invalid path: {file}")
        self._file_signer().sign(file)

    def cleanup(self, error: BaseException | None) -> ResignError | None:
        """Remove the scratch directory.

        A cleanup failure is reported as a message and only becomes the
        session error when nothing failed before it.
        """
        self._transition(SessionState.CLEANING_UP)
        if self.config.single:
            return error  # type: ignore[return-value]
        outdir = self.config.outdir
        self.emit(EVENT_MESSAGE, f"Cleaning up {outdir}")
        try:
            self._remove_scratch()
        except OSError as e:
            self.emit(EVENT_MESSAGE, f"Cannot clean up {outdir}: {e}")
            if error is None:
                cleanup_error = CleanupError(f"Cannot remove {outdir}: {e}")
                cleanup_error.__cause__ = e
                return cleanup_error
        return error  # type: ignore[return-value]


def resign(config: SessionConfig, **collaborators: object) -> SigningSession:
    """Create a session for `config`, run it and return it."""
    session = SigningSession(config, **collaborators)  # type: ignore[arg-type]
    session.run()
    return session


# ----------------------------------------------------------------------------
# Command-line interface


USAGE_EXAMPLES = (
    "Examples:\n"
    "  iparesign -L  # list identities, pick one and use it with -i\n"
    "  iparesign -i AD71EB42BC289A2B9FD3C2D5C9F02D923495A23C test-app.ipa\n"
    "  iparesign -m adhoc.mobileprovision -b com.example.app -p App.ipa\n"
)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="iparesign",
        description="Resign an iOS application archive.",
        epilog=USAGE_EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "file",
        nargs="?",
        help="path to the IPA file to resign",
    )
    parser.add_argument(
        "-b",
        "--bundleid",
        metavar="BUNDLEID",
        help="change the bundleid when repackaging",
    )
    parser.add_argument(
        "-e",
        "--entitlements",
        metavar="FILE",
        help="specify entitlements file",
    )
    parser.add_argument(
        "-f",
        "--force-family",
        action="store_true",
        help="force UIDeviceFamily in Info.plist to be iPhone",
    )
    parser.add_argument(
        "-i",
        "--identity",
        metavar="ID",
        help=f"hash-id of the identity to use (or set {ENV_IDENTITY})",
    )
    parser.add_argument(
        "-I",
        "--ignore-verification-errors",
        action="store_true",
        help="only warn when the main executable fails to sign or verify",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        metavar="N",
        help="bound the parallel signing to N workers",
    )
    parser.add_argument(
        "-k",
        "--keychain",
        metavar="KEYCHAIN",
        help=f"alternative keychain file (or set {ENV_KEYCHAIN})",
    )
    parser.add_argument(
        "-L",
        "--identities",
        action="store_true",
        help="list local codesign identities",
    )
    parser.add_argument(
        "-m",
        "--mobileprovision",
        metavar="FILE",
        help="mobileprovision file to embed",
    )
    parser.add_argument(
        "-o",
        "--output",
        metavar="FILE",
        help=(
            "path to the output IPA, relative to the working directory "
            "(default: <input>-resigned.ipa next to the input)"
        ),
    )
    parser.add_argument(
        "-p",
        "--parallel",
        action="store_true",
        help="sign embedded binaries in parallel",
    )
    parser.add_argument(
        "-r",
        "--replace",
        action="store_true",
        help="replace the input IPA file with the resigned one",
    )
    parser.add_argument(
        "-s",
        "--single",
        action="store_true",
        help="sign a single file instead of an IPA",
    )
    parser.add_argument(
        "-S",
        "--self-signed-provision",
        action="store_true",
        help="self-sign mobile provisioning (unsupported, ignored)",
    )
    parser.add_argument(
        "-u",
        "--unfair",
        action="store_true",
        help="resign encrypted applications",
    )
    parser.add_argument(
        "-v",
        "--verify-twice",
        action="store_true",
        help="verify after signing every file and at the end",
    )
    parser.add_argument(
        "-w",
        "--without-watchapp",
        action="store_true",
        help="remove the WatchApp from the IPA before resigning",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def _cmd_identities(args: argparse.Namespace) -> None:
    """Handle -L/--identities."""
    setup_logging(args.verbose, not args.no_color)
    keychain = args.keychain or get_config_value(
        get_config(), "resign", "keychain"
    )
    for identity in CodesignAuthority(keychain).list_identities():
        print(identity.hash, identity.name)


def _cmd_resign(args: argparse.Namespace) -> None:
    """Handle resigning an IPA (or a single file)."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("iparesign")

    # Command-line values win over the config file
    config = get_config()
    options = {
        key: getattr(args, key) or get_config_value(config, "resign", key)
        for key in ("identity", "keychain", "entitlements", "mobileprovision")
    }

    session_config = SessionConfig.create(
        args.file,
        outfile=args.output,
        bundle_id=args.bundleid,
        replace_ipa=args.replace,
        without_watchapp=args.without_watchapp,
        parallel=args.parallel or args.jobs is not None,
        max_workers=args.jobs,
        verify_twice=args.verify_twice,
        ignore_verification_errors=args.ignore_verification_errors,
        fail_on_encrypted=not args.unfair,
        force_family=args.force_family,
        single=args.single,
        self_signed_provision=args.self_signed_provision,
        **options,
    )

    session = SigningSession(session_config)
    session.on(EVENT_MESSAGE, lambda msg: log.info("%s", msg))
    session.on(EVENT_WARNING, lambda msg: log.warning("%s", msg))
    error = session.run()
    if error is not None:
        log.error("%s", error)
        sys.exit(1)
    log.info("Target is now signed: %s", session_config.target)


def main() -> None:
    """Command line interface for iparesign."""
    try:
        parser = build_parser()
        args = parser.parse_args()
        if args.identities:
            _cmd_identities(args)
        elif not args.file:
            parser.print_help(sys.stderr)
        else:
            _cmd_resign(args)

    except ResignError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.error("Unexpected error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
