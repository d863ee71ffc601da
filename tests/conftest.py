import struct
from types import SimpleNamespace

import pytest

from pycpk.fs.cpkfile import (
    CPK_HEADER_SIZE,
    CPK_LABEL,
    CPK_NAME_ENCODING,
    CPK_TABLE_ENTRY_SIZE,
    CpkFileTableEntry,
)

VALID = CpkFileTableEntry.FLAG_IS_VALID
DIR = CpkFileTableEntry.FLAG_IS_DIR
DELETED = CpkFileTableEntry.FLAG_IS_DELETED
NOT_COMPRESSED = CpkFileTableEntry.FLAG_IS_NOT_COMPRESSED

FILE_FLAGS = VALID | NOT_COMPRESSED
DIR_FLAGS = VALID | DIR | NOT_COMPRESSED


def cpk_item(crc, parent_crc, name, data=b"", flags=FILE_FLAGS, original_size=None, name_block=None):
    if name_block is None:
        name_block = name.encode(CPK_NAME_ENCODING) + b"\x00\x00"
    return SimpleNamespace(
        crc=crc,
        parent_crc=parent_crc,
        data=data,
        flags=flags,
        original_size=len(data) if original_size is None else original_size,
        name_block=name_block,
    )


def build_cpk(items, max_file_count=None, **header):
    """Lay out a version 1 archive: header, table, then payload + name per item."""

    if max_file_count is None:
        max_file_count = len(items)
    live = sum(1 for i in items if i.flags & VALID and not i.flags & DELETED)
    data_start = CPK_HEADER_SIZE + max_file_count * CPK_TABLE_ENTRY_SIZE

    fields = dict(
        label=CPK_LABEL,
        version=1,
        table_start=CPK_HEADER_SIZE,
        data_start=data_start,
        max_file_count=max_file_count,
        file_count=live,
        is_formatted=1,
        header_size=CPK_HEADER_SIZE,
        valid_table_count=live,
        max_table_count=max_file_count,
        fragment_count=0,
        package_size=0,
    )
    fields.update(header)

    table = []
    body = bytearray()
    for item in items:
        start = data_start + len(body)
        body += item.data + item.name_block
        table.append(struct.pack(
            "<7L", item.crc, item.flags, item.parent_crc, start,
            len(item.data), item.original_size, len(item.name_block),
        ))
    table.extend(b"\x00" * CPK_TABLE_ENTRY_SIZE for _ in range(max_file_count - len(items)))

    head = struct.pack("<12L", *fields.values()) + b"\x00" * (CPK_HEADER_SIZE - 48)
    return head + b"".join(table) + bytes(body)


@pytest.fixture
def sample_items():
    # root -> data (5) -> a.txt (9)
    return [
        cpk_item(5, 0, "data", flags=DIR_FLAGS),
        cpk_item(9, 5, "a.txt", b"hello world"),
    ]


@pytest.fixture
def sample_cpk(sample_items):
    return build_cpk(sample_items)


@pytest.fixture
def sample_cpk_path(tmp_path, sample_cpk):
    path = tmp_path / "sample.cpk"
    path.write_bytes(sample_cpk)
    return path
