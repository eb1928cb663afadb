import io
import struct

import pytest

from gpmf_reader.io.byte_cursor import ByteCursor, EndOfDataError


@pytest.fixture
def cursor() -> ByteCursor:
    data = struct.pack(">IiQH", 0xDEADBEEF, -2, 1 << 40, 7) + b"moov"
    return ByteCursor(io.BytesIO(data))


def test_reads_big_endian_integers(cursor):
    assert cursor.length == 22
    assert cursor.read_u32() == 0xDEADBEEF
    assert cursor.read_i32() == -2
    assert cursor.read_u64() == 1 << 40
    assert cursor.read_u16() == 7
    assert cursor.read_fourcc() == "moov"
    assert cursor.available() == 0


def test_little_endian_view_shares_position(cursor):
    little = cursor.with_byte_order(False)
    assert cursor.with_byte_order(True) is cursor
    assert little.read_u32() == 0xEFBEADDE
    assert cursor.position == 4


def test_peek_does_not_advance(cursor):
    assert cursor.peek(4) == b"\xde\xad\xbe\xef"
    assert cursor.position == 0


def test_read_past_end_fails(cursor):
    cursor.seek(20)
    with pytest.raises(EndOfDataError):
        cursor.read_u32()


def test_skip_past_end_fails_and_try_skip_reports_it(cursor):
    cursor.skip(10)
    with pytest.raises(EndOfDataError):
        cursor.skip(13)
    assert cursor.try_skip(13) is False
    assert cursor.position == 10
    assert cursor.try_skip(12) is True
    assert cursor.position == 22
    assert cursor.is_near_end(1)


def test_seek_outside_source_fails(cursor):
    with pytest.raises(EndOfDataError):
        cursor.seek(23)
