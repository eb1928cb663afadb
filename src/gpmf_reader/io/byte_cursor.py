"""Sequential, byte-order-aware reader over a seekable binary source."""

from __future__ import annotations

import os
import struct
from typing import BinaryIO


class EndOfDataError(EOFError):
    """A read or skip asked for more bytes than the source has left."""


class ByteCursor:
    """Reads fixed-width integers and raw bytes from a finite, seekable source.

    The source length is queried once up front and used to bound every read
    and skip.  Short reads are reported as :class:`EndOfDataError`.
    """

    def __init__(self, source: BinaryIO, big_endian: bool = True):
        self._source = source
        self._big_endian = big_endian
        self._prefix = ">" if big_endian else "<"

        self._source.seek(0, os.SEEK_END)
        self._length = self._source.tell()
        self._source.seek(0)

    @property
    def position(self) -> int:
        return self._source.tell()

    @property
    def length(self) -> int:
        return self._length

    @property
    def big_endian(self) -> bool:
        return self._big_endian

    def with_byte_order(self, big_endian: bool) -> ByteCursor:
        """Return a cursor over the same source using *big_endian* order."""
        if big_endian == self._big_endian:
            return self
        cursor = ByteCursor.__new__(ByteCursor)
        cursor._source = self._source
        cursor._big_endian = big_endian
        cursor._prefix = ">" if big_endian else "<"
        cursor._length = self._length
        return cursor

    def available(self) -> int:
        return self._length - self.position

    def is_near_end(self, count: int) -> bool:
        """True when fewer than *count* bytes remain."""
        return self.position + count > self._length

    # -- raw access ---------------------------------------------------------

    def seek(self, offset: int) -> None:
        if offset < 0 or offset > self._length:
            raise EndOfDataError(
                f"Unable to seek to {offset}; source is {self._length} bytes long"
            )
        self._source.seek(offset)

    def read_bytes(self, count: int) -> bytes:
        if count < 0:
            raise ValueError("count must be zero or greater")
        data = self._source.read(count)
        if len(data) != count:
            raise EndOfDataError(
                f"End of data reached: requested {count} bytes, got {len(data)}"
            )
        return data

    def peek(self, count: int) -> bytes:
        """Return up to *count* upcoming bytes without advancing."""
        start = self.position
        data = self._source.read(count)
        self._source.seek(start)
        return data

    def skip(self, count: int) -> None:
        if count < 0:
            raise ValueError("count must be zero or greater")
        remaining = self.available()
        if count > remaining:
            raise EndOfDataError(
                f"Unable to skip: requested {count} bytes but only {remaining} remained"
            )
        self._source.seek(count, os.SEEK_CUR)

    def try_skip(self, count: int) -> bool:
        """Skip *count* bytes, returning ``False`` instead of raising at the end."""
        try:
            self.skip(count)
        except EndOfDataError:
            return False
        return True

    # -- fixed-width integers -----------------------------------------------

    def _unpack(self, fmt: str) -> int:
        size = struct.calcsize(fmt)
        return struct.unpack(self._prefix + fmt, self.read_bytes(size))[0]

    def read_u8(self) -> int:
        return self._unpack("B")

    def read_u16(self) -> int:
        return self._unpack("H")

    def read_u32(self) -> int:
        return self._unpack("I")

    def read_i32(self) -> int:
        return self._unpack("i")

    def read_u64(self) -> int:
        return self._unpack("Q")

    def read_fourcc(self) -> str:
        return self.read_bytes(4).decode("latin1")
