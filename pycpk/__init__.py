"""Reader for CPK game asset archives."""

from pycpk.crc import crc32_hash
from pycpk.fs import DirectoryEntry, DirectoryFile, DirectoryFolder
from pycpk.fs.cpkfile import (
    CpkFile,
    CpkFileStream,
    CpkFormatError,
    CpkNotLoadedError,
    crc32_hash_path,
    load,
    load_async,
)

__all__ = [
    "CpkFile",
    "CpkFileStream",
    "CpkFormatError",
    "CpkNotLoadedError",
    "DirectoryEntry",
    "DirectoryFile",
    "DirectoryFolder",
    "crc32_hash",
    "crc32_hash_path",
    "load",
    "load_async",
]
