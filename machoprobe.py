#!/usr/bin/env python3
"""machoprobe.py

Provides functional tools to classify files as Mach-O images

- is_macho() checks the 4-byte magic number
- is_encrypted() requires macholib (full parse of thin and fat images)
- classify() / classify_file() combine both

"""
import struct
from pathlib import Path
from typing import NamedTuple, Union

from macholib import MachO, mach_o


Pathlike = Union[Path, str]

# thin and universal magics as they appear on disk
MAGIC_NUMBERS = {
    b"\xfe\xed\xfa\xce": "MH_MAGIC",
    b"\xce\xfa\xed\xfe": "MH_CIGAM",
    b"\xcf\xfa\xed\xfe": "MH_CIGAM_64",
    b"\xca\xfe\xba\xbe": "FAT_MAGIC",
}

FAT_MAGIC = b"\xca\xfe\xba\xbe"

ENCRYPTION_COMMANDS = (mach_o.LC_ENCRYPTION_INFO, mach_o.LC_ENCRYPTION_INFO_64)


class BinaryInfo(NamedTuple):
    is_macho: bool
    is_fat: bool
    is_encrypted: bool


NOT_MACHO = BinaryInfo(False, False, False)


def is_macho(data: bytes) -> bool:
    """True if the first four bytes of `data` are a known Mach-O magic"""
    return bytes(data[:4]) in MAGIC_NUMBERS


def is_fat(data: bytes) -> bool:
    return bytes(data[:4]) == FAT_MAGIC


def read_magic(path: Pathlike) -> bytes:
    """Read the magic number of a file (raises OSError)"""
    with open(path, "rb") as fopen:
        return fopen.read(4)


def is_encrypted(path: Pathlike) -> bool:
    """Check every image of a thin or universal binary for a
    LC_ENCRYPTION_INFO(_64) load command with a non-zero cryptid.

    Anything macholib cannot parse is reported as not encrypted.
    """
    try:
        macho = MachO.MachO(str(path), allow_unknown_load_commands=True)
    except (OSError, ValueError, EOFError, struct.error):
        return False
    for header in macho.headers:
        for load_cmd, cmd, _ in header.commands:
            if load_cmd.cmd in ENCRYPTION_COMMANDS and cmd.cryptid:
                return True
    return False


def classify(data: bytes) -> BinaryInfo:
    """Classify a buffer by magic number only (no encryption probe)"""
    if not is_macho(data):
        return NOT_MACHO
    return BinaryInfo(True, is_fat(data), False)


def classify_file(path: Pathlike) -> BinaryInfo:
    """Classify a file, re-reading it in full for the encryption probe.

    Never raises: unreadable files are classified as not Mach-O.
    """
    try:
        magic = read_magic(path)
    except OSError:
        return NOT_MACHO
    info = classify(magic)
    if not info.is_macho:
        return info
    return info._replace(is_encrypted=is_encrypted(path))
