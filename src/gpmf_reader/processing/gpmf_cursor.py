"""Single-step cursor over the nested KLV structure of one GPMF payload.

Each entry is a 4-byte FourCC key, a 1-byte type code, a 1-byte struct size,
a 2-byte big-endian repeat count and ``struct_size * repeat`` bytes of data
padded to a 4-byte boundary.  Type code ``0`` marks a nested container whose
data is itself a sequence of entries.

The cursor keeps one "remaining 32-bit words" counter per nesting level.  A
level whose contents turn out to be corrupt is abandoned as a whole and the
walk resumes at the next sibling of the enclosing container.
"""

from __future__ import annotations

import logging
import struct
from typing import Iterator

import numpy as np

from gpmf_reader.config import config

logger = logging.getLogger(__name__)

DEVICE_DATA = "DEVC"
DEVICE_ID = "DVID"
DEVICE_NAME = "DVNM"

NEST = "\x00"

# GPMF type code → numpy big-endian dtype
_TYPE_DTYPE: dict[str, str] = {
    "b": ">i1",
    "B": ">u1",
    "s": ">i2",
    "S": ">u2",
    "l": ">i4",
    "L": ">u4",
    "f": ">f4",
    "d": ">f8",
    "j": ">i8",
    "J": ">u8",
}

_HEADER = struct.Struct(">4sBBH")
_EMPTY_KEY = b"\x00\x00\x00\x00"


class GPMFNestingError(ValueError):
    """A payload nests containers deeper than the configured limit."""


def is_valid_fourcc(key: bytes) -> bool:
    """True when *key* is four ASCII letters, digits or spaces."""
    return len(key) == 4 and all(
        0x41 <= c <= 0x5A or 0x61 <= c <= 0x7A or 0x30 <= c <= 0x39 or c == 0x20
        for c in key
    )


def packed_size(struct_size: int, repeat: int) -> int:
    """Data size of an entry rounded up to whole 32-bit words, in bytes."""
    return (struct_size * repeat + 3) & ~3


def unpack_values(
    type_code: str, struct_size: int, repeat: int, data: bytes
) -> np.ndarray | None:
    """Unpack a leaf entry into an array of shape ``(repeat, elems_per_sample)``.

    Returns ``None`` for type codes without a fixed numeric layout, or when
    the data is shorter than the header promises.
    """
    dtype_str = _TYPE_DTYPE.get(type_code)
    if dtype_str is None:
        return None
    dtype = np.dtype(dtype_str)
    if struct_size < dtype.itemsize or repeat == 0:
        return None
    elems_per_sample = struct_size // dtype.itemsize
    total_elems = elems_per_sample * repeat
    nbytes = total_elems * dtype.itemsize
    if nbytes > len(data):
        return None
    flat = np.frombuffer(data, dtype=dtype, count=total_elems)
    return flat.astype(np.float64).reshape(repeat, elems_per_sample)


class GPMFCursor:
    """Walks the entries of one payload; see :meth:`advance`.

    The current entry is the one starting at :attr:`position`.  Device id and
    name are picked up as the cursor lands on ``DVID`` / ``DVNM`` entries.
    """

    def __init__(self, data: bytes, nest_limit: int | None = None):
        self.data = data
        self.position = 0
        self.nest_limit = config.NEST_LIMIT if nest_limit is None else nest_limit
        self.nest_level = 0
        self.nest_remaining = [0] * self.nest_limit
        self.nest_remaining[0] = len(data) // 4

        self.device_id: int | None = None
        self.device_name: str | None = None

    def __repr__(self) -> str:
        return (
            f"GPMFCursor(position={self.position}, four_cc={self.four_cc!r}, "
            f"nest_level={self.nest_level})"
        )

    # ------------------------------------------------------------------
    # Current entry
    # ------------------------------------------------------------------

    def _header(self) -> tuple[bytes, int, int, int]:
        if self.position + 8 > len(self.data):
            return _EMPTY_KEY, 0, 0, 0
        return _HEADER.unpack_from(self.data, self.position)

    @property
    def four_cc(self) -> str:
        """Key of the current entry, ``""`` for padding or past the end."""
        key = self.data[self.position : self.position + 4]
        if len(key) < 4 or key == _EMPTY_KEY:
            return ""
        return key.decode("latin1")

    @property
    def type_code(self) -> str:
        return chr(self._header()[1])

    @property
    def struct_size(self) -> int:
        return self._header()[2]

    @property
    def repeat(self) -> int:
        return self._header()[3]

    @property
    def value(self) -> bytes:
        """Raw (unpadded) data bytes of the current entry."""
        _, _, struct_size, repeat = self._header()
        start = self.position + 8
        return self.data[start : start + struct_size * repeat]

    def values(self) -> np.ndarray | None:
        """Numeric data of the current entry, see :func:`unpack_values`."""
        _, type_code, struct_size, repeat = self._header()
        return unpack_values(chr(type_code), struct_size, repeat, self.value)

    def string(self) -> str:
        """Current entry's data decoded as text, NUL padding removed."""
        return self.value.decode("utf-8", errors="replace").replace("\x00", "")

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    def advance(self) -> bool:
        """Step to the next entry; ``False`` when there is none.

        Entering a ``DEVC`` at the top level resets the level-0 word count to the
        device block's size.  Any other container opens a new nesting level;
        a leaf is stepped over.

        Raises :class:`GPMFNestingError` when the nesting limit is exceeded.
        """
        if self.position + 8 > len(self.data):
            return False

        key, type_code, struct_size, repeat = self._header()
        words = packed_size(struct_size, repeat) >> 2
        level = self.nest_level

        if chr(type_code) == NEST and level == 0 and key == DEVICE_DATA.encode():
            self.position += 8
            self.nest_remaining[0] = words
        else:
            if words + 2 > self.nest_remaining[level]:
                logger.debug(
                    "Entry %r at offset %d overruns nest level %d",
                    key,
                    self.position,
                    level,
                )
                return self._skip_level()

            self.nest_remaining[level] -= words + 2
            if chr(type_code) == NEST:
                if level + 1 >= self.nest_limit:
                    raise GPMFNestingError(
                        f"GPMF nesting deeper than {self.nest_limit} levels "
                        f"at offset {self.position}"
                    )
                self.position += 8
                self.nest_level = level + 1
                self.nest_remaining[self.nest_level] = words
            else:
                self.position += 8 + words * 4

        return self._settle()

    def entries(self) -> Iterator[GPMFCursor]:
        """Yield the cursor after every successful :meth:`advance`."""
        while self.advance():
            yield self

    def find_next(self, four_cc: str) -> bool:
        """Advance until the current entry's key is *four_cc*."""
        for _ in self.entries():
            if self.four_cc == four_cc:
                return True
        return False

    def _skip_padding(self) -> None:
        level = self.nest_level
        while (
            self.position + 4 <= len(self.data)
            and self.nest_remaining[level] > 0
            and self.data[self.position : self.position + 4] == _EMPTY_KEY
        ):
            self.position += 4
            self.nest_remaining[level] -= 1

    def _pop_exhausted(self) -> None:
        while self.nest_level > 0 and self.nest_remaining[self.nest_level] == 0:
            self.nest_level -= 1

    def _settle(self) -> bool:
        """Normalise the position onto the next real entry and validate it."""
        self._skip_padding()
        self._pop_exhausted()
        self._skip_padding()

        if self.position + 8 > len(self.data):
            return False

        key, _, struct_size, _ = self._header()
        if not is_valid_fourcc(key) or struct_size == 0:
            return self._skip_level()

        if key == DEVICE_ID.encode():
            values = self.values()
            if values is not None:
                self.device_id = int(values.flat[0])
        elif key == DEVICE_NAME.encode():
            self.device_name = self.string()
        return True

    def _skip_level(self) -> bool:
        """Abandon the rest of the current nesting level."""
        level = self.nest_level
        remaining = self.nest_remaining[level]
        if remaining <= 0:
            return False

        logger.debug(
            "Skipping %d corrupt words of nest level %d at offset %d",
            remaining,
            level,
            self.position,
        )
        self.position += remaining * 4
        self.nest_remaining[level] = 0
        return self._settle()
