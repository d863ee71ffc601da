"""Read-only directory tree model shared by the CPK archive reader.

Entries are produced by :class:`pycpk.fs.cpkfile.CpkFile` and are never
mutated after construction.  Each entry knows its own virtual path, so the
tree holds no back references from children to their folders.  A folder's
children keep the order the archive reader handed them over.
"""

from __future__ import annotations

from typing import Iterator


class DirectoryEntry:

    def __init__(self, name: str, virtual_path: str, package, table_entry=None):
        self.name = name
        self.virtual_path = virtual_path
        self.package = package
        self.table_entry = table_entry

    @property
    def crc(self) -> int:
        return self.table_entry.crc if self.table_entry is not None else 0

    def path(self) -> str:
        return self.virtual_path

    def is_file(self) -> bool:
        return False

    def is_folder(self) -> bool:
        return False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.virtual_path!r}>"


class DirectoryFolder(DirectoryEntry):

    def __init__(self, name: str, virtual_path: str, package, table_entry=None, children=()):
        super().__init__(name, virtual_path, package, table_entry)
        self._children = tuple(children)
        self.items = {}
        for child in self._children:
            self.items.setdefault(child.name, child)

    @property
    def children(self) -> tuple[DirectoryEntry, ...]:
        return self._children

    def is_folder(self) -> bool:
        return True

    def all_files(self) -> list[DirectoryFile]:
        """Return every file below this folder, depth first."""
        files = []
        for entry in self._children:
            if entry.is_file():
                files.append(entry)
            else:
                files.extend(entry.all_files())
        return files

    def __len__(self) -> int:
        return len(self._children)

    def __iter__(self) -> Iterator[DirectoryEntry]:
        return iter(self._children)

    def __contains__(self, name: str) -> bool:
        try:
            self[name]
        except (KeyError, NotADirectoryError):
            return False
        return True

    def __getitem__(self, name: str) -> DirectoryEntry:
        # Nested "a/b" lookups are resolved relative to this folder.
        head, _, rest = name.replace("\\", "/").strip("/").partition("/")
        entry = self.items[head.lower()]
        if rest:
            if not entry.is_folder():
                raise NotADirectoryError(entry.path())
            return entry[rest]
        return entry


class DirectoryFile(DirectoryEntry):

    def is_file(self) -> bool:
        return True

    def size(self) -> int:
        return self.package._size(self.table_entry)

    def open(self):
        stream, _size, _compressed = self.package.open(self.crc)
        return stream
