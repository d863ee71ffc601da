from __future__ import annotations

import asyncio
import functools
import logging
import os
import struct
import threading
from io import BytesIO

import lzo

from pycpk.crc import crc32_hash
from pycpk.fs import DirectoryFile, DirectoryFolder

log = logging.getLogger(__name__)

CPK_LABEL = 0x1A545352
CPK_SUPPORTED_VERSION = 1
CPK_HEADER_SIZE = 0x80
CPK_TABLE_ENTRY_SIZE = 28
CPK_ROOT_CRC = 0
CPK_NAME_ENCODING = "gbk"  # Code page 936
CPK_NAME_TERMINATOR = b"\x00\x00"
CPK_SEPARATOR = "\\"  # Separator the archive packer hashes paths with
VIRTUAL_SEPARATOR = "/"

STATE_UNLOADED = "unloaded"
STATE_LOADING = "loading"
STATE_LOADED = "loaded"


class CpkFormatError(ValueError):
    """The data is not a CPK archive this reader understands."""


class CpkNotLoadedError(RuntimeError):
    """A query was made before the archive finished loading."""


def read_exactly(stream, size, what="data"):
    """Read ``size`` bytes from ``stream`` or raise :class:`IOError`."""

    if size <= 0:
        return b""

    data = stream.read(size)
    if len(data) != size:
        raise IOError(f"Unexpected end of file reading {what}: expected {size} bytes, got {len(data)}")
    return data


def trim_name(raw: bytes) -> bytes:
    """Cut a raw name block at its double NUL terminator.

    GBK never uses a zero trail byte, but a single zero still can't be trusted
    as the end of the name, so only the two byte sentinel counts.
    """

    end = raw.find(CPK_NAME_TERMINATOR)
    return raw if end == -1 else raw[:end]


def normalize_path(path: str) -> str:
    """Return the canonical virtual form of ``path``: lower case, ``/`` separated."""

    parts = [p for p in path.replace(CPK_SEPARATOR, VIRTUAL_SEPARATOR).split(VIRTUAL_SEPARATOR) if p]
    return VIRTUAL_SEPARATOR.join(parts).lower()


def crc32_hash_path(path: str, encoding: str = CPK_NAME_ENCODING) -> int:
    """Hash a virtual path the way the archive packer keyed it."""

    packed = normalize_path(path).replace(VIRTUAL_SEPARATOR, CPK_SEPARATOR)
    return crc32_hash(packed.encode(encoding))


def raise_parse_error(func):
    @functools.wraps(func)
    def internal(self, *args, **kwargs):
        if self.state != STATE_LOADED:
            raise CpkNotLoadedError("CPK archive needs to be loaded first.")

        return func(self, *args, **kwargs)
    return internal


class CpkFile:

    # Constructor
    def __init__(self):
        self.state = STATE_UNLOADED
        self.filename = None
        self.name_encoding = CPK_NAME_ENCODING
        self.header = None
        self.tables = None
        self.index = None
        self.names = None
        # Exactly one of these backs the archive once loaded.  Disk backed
        # archives hand every stream its own handle; memory backed archives
        # hand out slices of the shared immutable buffer.
        self._path = None
        self._data = None
        self._path_index = {}
        self._load_lock = threading.Lock()

    # Main methods.

    @classmethod
    def parse(cls, source):
        """Load ``source`` into a new :class:`CpkFile`.

        ``source`` may be a path-like object, a bytes-like object holding the
        whole archive, or a binary file handle.  Handles with a ``name`` on
        disk are reopened by name; anything else is read into memory.
        """

        self = cls()
        self.load(source)
        return self

    @classmethod
    async def parse_async(cls, source):
        """Run :meth:`parse` in a worker thread."""
        return await asyncio.to_thread(cls.parse, source)

    def load(self, source) -> None:
        with self._load_lock:
            if self.state != STATE_UNLOADED:
                raise RuntimeError(f"CPK archive is already {self.state}")

            self.state = STATE_LOADING
            try:
                stream = self._open_source(source)
                try:
                    self._read(stream)
                finally:
                    stream.close()
            except BaseException:
                self._reset()
                raise

            self.state = STATE_LOADED

        log.debug("Loaded %s: %d live entries in %d slots",
                  self.filename or "<memory>", len(self.index), len(self.tables))

    @property
    def is_parsed(self) -> bool:
        return self.state == STATE_LOADED

    # Private Methods

    def _reset(self):
        self.state = STATE_UNLOADED
        self.filename = None
        self.header = None
        self.tables = None
        self.index = None
        self.names = None
        self._path = None
        self._data = None
        self._path_index = {}

    def _open_source(self, source):
        if isinstance(source, (str, os.PathLike)):
            self._path = os.fspath(source)
        elif isinstance(source, (bytes, bytearray, memoryview)):
            self._data = bytes(source)
        else:
            name = getattr(source, "name", None)
            if isinstance(name, (str, os.PathLike)) and os.path.isfile(name):
                self._path = os.fspath(name)
            else:
                self._data = bytes(source.read())

        if self._path is not None:
            self.filename = os.path.basename(self._path)
            return open(self._path, "rb")
        return BytesIO(self._data)

    def _read(self, stream):
        # Header
        self.header = CpkFileHeader(self)
        self.header.parse(read_exactly(stream, CPK_HEADER_SIZE, "CPK header"))
        self.header.validate()

        # Table, one slot per possible file
        self.tables = CpkFileTable(self)
        self.tables.parse(stream, self.header.max_file_count)

        # Lookups
        self.index = CpkFileIndex(self)
        self.index.build(self.tables)
        if len(self.index) != self.header.file_count:
            log.warning("%s: header declares %d files but the table holds %d live entries",
                        self.filename or "<memory>", self.header.file_count, len(self.index))

        # Names, needed before any virtual path can be built
        self.names = CpkFileNameTable(self)
        self.names.parse(stream)

        self._path_index = {}
        reachable = 0
        for entry in self._walk(self._read_directory()):
            self._path_index.setdefault(entry.path(), entry.crc)
            reachable += 1

        unreachable = len(self.index) - reachable
        if unreachable > 0:
            log.warning("%s: %d live entries are not reachable from the root",
                        self.filename or "<memory>", unreachable)

    def _read_range(self, stream, offset, size, what="data"):
        if self._data is not None:
            end = offset + size
            if end > len(self._data):
                raise IOError(f"Unexpected end of file reading {what}: "
                              f"range ends at {end}, archive is {len(self._data)} bytes")
            return self._data[offset:end]
        stream.seek(offset, os.SEEK_SET)
        return read_exactly(stream, size, what)

    def _read_directory(self):
        children = self._read_directory_table(CPK_ROOT_CRC, "", frozenset((CPK_ROOT_CRC,)))
        return DirectoryFolder("", "", self, None, children)

    def _read_directory_table(self, parent_crc, parent_path, ancestors):
        entries = []
        for crc in self.index.children_of(parent_crc):
            if crc in ancestors:
                log.warning("Skipping entry %08X below %r: it is its own ancestor", crc, parent_path)
                continue

            table_entry = self.index.entry(crc)
            name = self.names[crc].lower()
            path = parent_path + VIRTUAL_SEPARATOR + name if parent_path else name

            if table_entry.is_directory():
                children = self._read_directory_table(crc, path, ancestors | {crc})
                entries.append(DirectoryFolder(name, path, self, table_entry, children))
            else:
                entries.append(DirectoryFile(name, path, self, table_entry))
        return entries

    def _walk(self, folder):
        for entry in folder:
            yield entry
            if entry.is_folder():
                yield from self._walk(entry)

    def _lookup(self, path_or_crc):
        if isinstance(path_or_crc, int):
            return self.index.slot(path_or_crc)

        try:
            crc = crc32_hash_path(path_or_crc, self.name_encoding)
        except UnicodeEncodeError:
            crc = None
        if crc is not None and crc in self.index:
            return self.index.slot(crc)

        # Archives whose ids are not path hashes still resolve by name.
        crc = self._path_index.get(normalize_path(path_or_crc))
        if crc is None:
            return None
        return self.index.slot(crc)

    # Internal methods.

    def _size(self, entry):
        return entry.original_size if entry.is_compressed() else entry.packed_size

    def _open_file(self, entry):
        if entry.is_compressed():
            return CpkFileStream(entry, buffer=self._decompress(entry))

        if self._data is not None:
            view = memoryview(self._data)
            end = entry.start_offset + entry.packed_size
            if end > len(view):
                raise IOError(f"Entry {entry.crc:08X} runs past the end of the archive")
            return CpkFileStream(entry, buffer=view[entry.start_offset:end])

        handle = open(self._path, "rb")
        try:
            if entry.start_offset + entry.packed_size > os.fstat(handle.fileno()).st_size:
                raise IOError(f"Entry {entry.crc:08X} runs past the end of {self.filename}")
        except BaseException:
            handle.close()
            raise
        return CpkFileStream(entry, handle=handle, offset=entry.start_offset, size=entry.packed_size)

    def _decompress(self, entry):
        if entry.original_size == 0:
            return b""

        if self._data is not None:
            packed = self._read_range(None, entry.start_offset, entry.packed_size, "packed data")
        else:
            with open(self._path, "rb") as handle:
                packed = self._read_range(handle, entry.start_offset, entry.packed_size, "packed data")

        try:
            data = lzo.decompress(packed, False, entry.original_size)
        except lzo.error as exc:
            raise IOError(f"Failed to decompress entry {entry.crc:08X}: {exc}") from exc

        if len(data) != entry.original_size:
            raise IOError(f"Failed to decompress entry {entry.crc:08X}: "
                          f"expected {entry.original_size} bytes, got {len(data)}")
        return data

    # Public Methods

    @raise_parse_error
    def list_root(self):
        """Build a fresh snapshot of the tree and return its top-level entries."""
        return list(self._read_directory())

    @raise_parse_error
    def walk(self):
        """Yield every entry of a fresh tree snapshot, depth first."""
        return self._walk(self._read_directory())

    @raise_parse_error
    def exists(self, path_or_crc) -> bool:
        return self._lookup(path_or_crc) is not None

    @raise_parse_error
    def resolve(self, path_or_crc):
        """Return the table entry of the file at ``path_or_crc``.

        Integers are taken as entry ids, strings as virtual paths.
        """

        slot = self._lookup(path_or_crc)
        if slot is None:
            raise FileNotFoundError(f"<{path_or_crc}> does not exist in the archive.")

        entry = self.tables[slot]
        if entry.is_directory():
            raise IsADirectoryError(f"Cannot open <{path_or_crc}> since it is a directory.")
        return entry

    @raise_parse_error
    def open(self, path_or_crc):
        """Open a file for reading.

        Returns ``(stream, size, is_compressed)`` where ``size`` is the number
        of bytes the stream yields.
        """

        entry = self.resolve(path_or_crc)
        return self._open_file(entry), self._size(entry), entry.is_compressed()

    @raise_parse_error
    def read(self, path_or_crc) -> bytes:
        stream, _size, _compressed = self.open(path_or_crc)
        with stream:
            return stream.readall()

    @raise_parse_error
    def __len__(self):
        return len(self.index)

    @raise_parse_error
    def __iter__(self):
        return iter(self.list_root())

    @raise_parse_error
    def __getitem__(self, name):
        return self._read_directory()[name]


async def load_async(source):
    return await CpkFile.parse_async(source)


def load(source):
    return CpkFile.parse(source)


class CpkFileHeader:

    def __init__(self, owner):
        self.owner = owner

    def parse(self, data):
        (self.label,
         self.version,
         self.table_start,
         self.data_start,
         self.max_file_count,
         self.file_count,
         self.is_formatted,
         self.header_size,
         self.valid_table_count,
         self.max_table_count,
         self.fragment_count,
         self.package_size) = struct.unpack_from("<12L", data)

    def validate(self):
        name = self.owner.filename or "<memory>"

        def err(reason):
            raise CpkFormatError(f"{name} is not a valid CPK archive [{reason}]")

        if self.label != CPK_LABEL:
            err(f"Label is 0x{self.label:08X}")
        if self.version != CPK_SUPPORTED_VERSION:
            err(f"Version is not {CPK_SUPPORTED_VERSION}")
        if self.table_start == 0:
            err("TableStart is 0")
        if self.file_count > self.max_file_count:
            err("FileNum exceeds MaxFileNum")
        if self.valid_table_count > self.max_table_count:
            err("ValidTableNum exceeds MaxTableNum")
        if self.file_count > self.valid_table_count:
            err("FileNum exceeds ValidTableNum")


class CpkFileTable:

    def __init__(self, owner):
        self.owner = owner
        self.entries = []

    def __getitem__(self, i):
        return self.entries[i]

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def parse(self, stream, count):
        size = count * CPK_TABLE_ENTRY_SIZE

        # Slot count is read from the header and may exceed the source.
        start = stream.tell()
        available = stream.seek(0, os.SEEK_END) - start
        stream.seek(start, os.SEEK_SET)
        if available < size:
            raise IOError(f"Unexpected end of file reading CPK table: expected {size} bytes, got {available}")

        data = read_exactly(stream, size, "CPK table")
        for i, fields in enumerate(struct.iter_unpack("<7L", data)):
            entry = CpkFileTableEntry(self)
            entry.index = i
            entry.parse(fields)
            self.entries.append(entry)


class CpkFileTableEntry:

    FLAG_NONE             = 0x00000000
    FLAG_IS_VALID         = 0x00000001
    FLAG_IS_DIR           = 0x00000002
    FLAG_IS_LARGE_FILE    = 0x00000004
    FLAG_IS_DELETED       = 0x00000010
    FLAG_IS_NOT_COMPRESSED = 0x00010000

    def __init__(self, owner):
        self.owner = owner
        self.index = None

    def parse(self, fields):
        (self.crc,
         self.flags,
         self.parent_crc,
         self.start_offset,
         self.packed_size,
         self.original_size,
         self.extra_info_size) = fields

    @property
    def name_offset(self) -> int:
        return self.start_offset + self.packed_size

    def is_empty(self) -> bool:
        return self.flags == self.FLAG_NONE

    def is_valid(self) -> bool:
        return self.flags & self.FLAG_IS_VALID != 0

    def is_deleted(self) -> bool:
        return self.flags & self.FLAG_IS_DELETED != 0

    def is_directory(self) -> bool:
        return self.flags & self.FLAG_IS_DIR != 0

    def is_large_file(self) -> bool:
        return self.flags & self.FLAG_IS_LARGE_FILE != 0

    def is_compressed(self) -> bool:
        return self.flags & self.FLAG_IS_NOT_COMPRESSED == 0

    def is_live(self) -> bool:
        return not self.is_empty() and self.is_valid() and not self.is_deleted()

    def __repr__(self):
        return (f"<CpkFileTableEntry slot={self.index} crc={self.crc:08X} "
                f"parent={self.parent_crc:08X} flags=0x{self.flags:X}>")


class CpkFileIndex:
    """Id and parent lookups over the live entries of a table.

    Slots are scanned in order, so when two live entries share an id the
    lower slot is kept and the other one is ignored everywhere.
    """

    def __init__(self, owner):
        self.owner = owner
        self.crc_to_slot = {}
        # parent crc -> child crcs, a dict used as an insertion ordered set
        self.parent_to_children = {}
        self.duplicates = []

    def __contains__(self, crc):
        return crc in self.crc_to_slot

    def __len__(self):
        return len(self.crc_to_slot)

    def build(self, tables):
        for entry in tables:
            if not entry.is_live():
                continue

            if entry.crc in self.crc_to_slot:
                log.warning("Duplicate entry id %08X in slot %d, keeping slot %d",
                            entry.crc, entry.index, self.crc_to_slot[entry.crc])
                self.duplicates.append(entry.index)
                continue

            self.crc_to_slot[entry.crc] = entry.index
            self.parent_to_children.setdefault(entry.parent_crc, {})[entry.crc] = None

    def slot(self, crc):
        return self.crc_to_slot.get(crc)

    def entry(self, crc):
        return self.owner.tables[self.crc_to_slot[crc]]

    def children_of(self, crc):
        return tuple(self.parent_to_children.get(crc, ()))


class CpkFileNameTable:

    def __init__(self, owner):
        self.owner = owner
        self.raw_names = {}
        self.names = {}

    def __getitem__(self, crc):
        return self.names[crc]

    def __len__(self):
        return len(self.names)

    def parse(self, stream):
        encoding = self.owner.name_encoding
        for crc, slot in self.owner.index.crc_to_slot.items():
            entry = self.owner.tables[slot]
            raw = self.owner._read_range(stream, entry.name_offset, entry.extra_info_size,
                                         f"name of entry {crc:08X}")
            raw = trim_name(raw)
            try:
                name = raw.decode(encoding)
            except UnicodeDecodeError as exc:
                raise CpkFormatError(f"Name of entry {crc:08X} is not valid {encoding}") from exc
            self.raw_names[crc] = raw
            self.names[crc] = name


class CpkFileStream:
    """Read-only file object over one entry's bytes.

    Each stream has its own position and, for disk backed archives, its own
    file handle, so any number of streams can be read side by side.
    """

    def __init__(self, entry, buffer=None, handle=None, offset=0, size=None):
        self.entry = entry
        self.position = 0
        self._buffer = memoryview(buffer) if buffer is not None else None
        self._handle = handle
        self._offset = offset
        self.size = len(self._buffer) if self._buffer is not None else size
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # Iterator protocol.
    def __iter__(self):
        return self

    def __next__(self):
        line = self.readline()
        if not line:
            raise StopIteration
        return line

    # File protocol.
    def readable(self):
        return True

    def seekable(self):
        return True

    def close(self):
        if self._handle is not None:
            self._handle.close()
            self._handle = None
        self._buffer = None
        self.closed = True

    def tell(self):
        return self.position

    def seek(self, offset, whence=os.SEEK_SET):
        if whence == os.SEEK_SET:
            new_pos = offset
        elif whence == os.SEEK_CUR:
            new_pos = self.position + offset
        elif whence == os.SEEK_END:
            new_pos = self.size + offset
        else:
            raise ValueError("Invalid whence")

        if new_pos < 0 or new_pos > self.size:
            raise ValueError("Attempting to seek outside file bounds")

        self.position = new_pos
        return self.position

    def readall(self):
        return self.read(-1)

    def read(self, size=-1):
        if self.closed:
            raise ValueError("I/O operation on closed file")

        if size is None or size < 0 or self.position + size > self.size:
            size = self.size - self.position
        if size <= 0:
            return b""

        if self._buffer is not None:
            data = bytes(self._buffer[self.position:self.position + size])
        else:
            self._handle.seek(self._offset + self.position, os.SEEK_SET)
            data = read_exactly(self._handle, size, f"entry {self.entry.crc:08X}")

        self.position += len(data)
        return data

    def readline(self, size=-1):
        chunks = []
        count = 0
        while size < 0 or count < size:
            char = self.read(1)
            if not char:
                break
            chunks.append(char)
            count += 1
            if char == b"\n":
                break
        return b"".join(chunks)
