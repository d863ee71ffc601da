import pytest

from pycpk.crc import CRC_POLYNOMIAL, CRC_TABLE, crc32_hash
from pycpk.fs.cpkfile import crc32_hash_path


def _bitwise_hash(data: bytes) -> int:
    # Same priming, but the body is fed one bit at a time through the
    # shift register instead of through the lookup table.
    if not data or data[0] == 0:
        return 0
    data = data.split(b"\x00", 1)[0] + b"\x00"
    acc = 0
    i = 0
    for shift in (24, 16, 8, 0):
        if data[i] == 0:
            break
        acc |= data[i] << shift
        i += 1
    acc = ~acc & 0xFFFFFFFF
    for byte in data[i:-1]:
        for bit in range(7, -1, -1):
            top = acc & 0x80000000
            acc = ((acc << 1) | ((byte >> bit) & 1)) & 0xFFFFFFFF
            if top:
                acc ^= CRC_POLYNOMIAL
    return ~acc & 0xFFFFFFFF


def test_table_layout():
    assert isinstance(CRC_TABLE, tuple)
    assert len(CRC_TABLE) == 256
    assert CRC_TABLE[0] == 0
    assert CRC_TABLE[1] == CRC_POLYNOMIAL
    assert all(0 <= v <= 0xFFFFFFFF for v in CRC_TABLE)


def test_root_sentinels_hash_to_zero():
    assert crc32_hash(b"") == 0
    assert crc32_hash(b"\x00") == 0
    assert crc32_hash(b"\x00abc") == 0


def test_short_input_is_only_primed():
    # Up to four bytes never reach the table, so the double inversion cancels.
    assert crc32_hash(b"a") == 0x61000000
    assert crc32_hash(b"ab") == 0x61620000
    assert crc32_hash(b"abcd") == 0x61626364


def test_terminator_and_embedded_nul():
    assert crc32_hash(b"music\\pi10a.mp3\x00") == crc32_hash(b"music\\pi10a.mp3")
    assert crc32_hash(b"ab\x00cdef") == crc32_hash(b"ab")


def test_order_and_case_sensitive():
    assert crc32_hash(b"ab") != crc32_hash(b"ba")
    assert crc32_hash(b"A") != crc32_hash(b"a")
    assert crc32_hash(b"data\\a.txt") != crc32_hash(b"data\\A.txt")


@pytest.mark.parametrize("data", [
    b"abcde",
    b"data",
    b"data\\a.txt",
    b"music\\pi10a.mp3",
    "音乐\\文件.txt".encode("gbk"),
    bytes(range(1, 256)),
])
def test_table_matches_bitwise_division(data):
    assert crc32_hash(data) == _bitwise_hash(data)


def test_path_hash_normalizes_case_and_separators():
    expected = crc32_hash(b"data\\a.txt")
    assert crc32_hash_path("data/a.txt") == expected
    assert crc32_hash_path("DATA\\A.TXT") == expected
    assert crc32_hash_path("/data//a.txt/") == expected
    assert crc32_hash_path("") == 0
