"""CRC hash used by CPK archives to key their table entries.

This is *not* the reflected CRC-32 found in :mod:`zlib`.  The table is built
MSB-first from ``0x04C11DB7`` and the first four bytes of the input prime the
accumulator directly instead of being shifted through the table.  Every table
entry in an archive stores the hash of its lower-cased, backslash separated
virtual path, so the quirks below have to be reproduced exactly.
"""

from __future__ import annotations

CRC_POLYNOMIAL = 0x04C11DB7
CRC_TABLE_SIZE = 256


def _build_table() -> tuple[int, ...]:
    table = []
    for i in range(CRC_TABLE_SIZE):
        accum = i << 24
        for _ in range(8):
            if accum & 0x80000000:
                accum = ((accum << 1) ^ CRC_POLYNOMIAL) & 0xFFFFFFFF
            else:
                accum = (accum << 1) & 0xFFFFFFFF
        table.append(accum)
    return tuple(table)


CRC_TABLE = _build_table()


def crc32_hash(data: bytes) -> int:
    """Return the 32-bit CPK hash of ``data``.

    Empty input, or input starting with a NUL byte, hashes to ``0`` which is
    the id of the archive root.
    """

    if not data or data[0] == 0:
        return 0

    data = bytes(data)
    if data[-1] != 0:
        data += b"\x00"

    # Prime with up to four bytes, big-endian, stopping early at NUL.
    index = 0
    result = data[index] << 24
    index += 1
    for shift in (16, 8, 0):
        if data[index] == 0:
            break
        result |= data[index] << shift
        index += 1
    result = ~result & 0xFFFFFFFF

    table = CRC_TABLE
    while data[index] != 0:
        result = (((result << 8) | data[index]) & 0xFFFFFFFF) ^ table[result >> 24]
        index += 1

    return ~result & 0xFFFFFFFF
