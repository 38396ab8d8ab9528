"""
dBase (.DBF) table layout model.

Parses the 32-byte preamble and the field descriptor array of a DBF
image held in memory, and builds new field descriptors. Works on byte
buffers only; reading and writing files is left to the caller.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)


# Constants
DBF_PREAMBLE_SIZE = 32
DBF_DESCRIPTOR_SIZE = 32
DBF_MAX_FIELD_NAME = 11
DBF_HEADER_TERMINATOR = 0x0D
DBF_EOF_MARKER = 0x1A
DBF_PAD_BYTE = 0x20
DBF_TYPE_CHARACTER = 'C'
DBF_MAX_WORD = 0xFFFF  # header and record lengths are uint16

# Offsets inside the preamble
DBF_OFS_RECORD_COUNT = 4
DBF_OFS_HEADER_LENGTH = 8
DBF_OFS_RECORD_LENGTH = 10

# Offsets inside a field descriptor
_OFS_FIELD_TYPE = 11
_OFS_FIELD_LENGTH = 16


class MalformedTableError(ValueError):
    """Raised when a buffer does not hold a consistent DBF layout."""


# Data structures
@dataclass
class DBFColumn:
    """Represents a column/field in a DBF file."""
    name: str  # Upper-cased, trimmed field name
    field_type: str  # 'C', 'N', 'L', etc.
    length: int  # Field length in bytes
    offset: int = 0  # offset within record; first field starts at 1


@dataclass
class DBFHeader:
    """Header integers and field list of a DBF image."""
    record_count: int = 0
    header_size: int = 0  # Offset where record data begins
    record_size: int = 0  # Includes the deletion flag byte
    fields: List[DBFColumn] = field(default_factory=list)

    def find_field(self, name: str) -> int:
        """Index of the field called `name`, or -1 if absent."""
        wanted = name.strip().upper()
        for i, column in enumerate(self.fields):
            if column.name == wanted:
                return i
        return -1

    def get_field(self, name: str) -> Optional[DBFColumn]:
        index = self.find_field(name)
        if index == -1:
            return None
        return self.fields[index]

    @property
    def next_offset(self) -> int:
        """Record offset just past the last field."""
        if not self.fields:
            return 1
        last = self.fields[-1]
        return last.offset + last.length

    @property
    def total_size(self) -> int:
        """Expected image size including the trailing EOF marker."""
        return self.header_size + self.record_count * self.record_size + 1

    def record_start(self, index: int) -> int:
        """Byte position of record `index` (zero-based)."""
        return self.header_size + index * self.record_size


# Helper functions
def get_dword_le(buf, pos: int) -> int:
    return struct.unpack_from("<L", buf, pos)[0]


def get_word_le(buf, pos: int) -> int:
    return struct.unpack_from("<H", buf, pos)[0]


def put_word_le(buf: bytearray, pos: int, value: int) -> None:
    struct.pack_into("<H", buf, pos, value)


def decode_field_name(descriptor) -> str:
    """Extract field name (up to 11 bytes, null-terminated)."""
    name = ""
    for j in range(DBF_MAX_FIELD_NAME):
        if descriptor[j] == 0:
            break
        name += chr(descriptor[j])
    return name.strip().upper()


def build_field_descriptor(name: str, field_type: str, length: int) -> bytes:
    """
    Build a fresh 32-byte field descriptor.

    Only the name, type and length bytes are set; the reserved bytes
    stay zero.
    """
    name_bytes = name.encode('ascii')
    if len(name_bytes) > DBF_MAX_FIELD_NAME:
        raise ValueError(f"Field name '{name}' longer than {DBF_MAX_FIELD_NAME} bytes")
    if not 0 < length <= 255:
        raise ValueError(f"Field length {length} out of range")

    buf = bytearray(DBF_DESCRIPTOR_SIZE)
    buf[:len(name_bytes)] = name_bytes
    buf[_OFS_FIELD_TYPE] = ord(field_type)
    buf[_OFS_FIELD_LENGTH] = length
    return bytes(buf)


def read_dbf_header(buf) -> DBFHeader:
    """
    Parse the header of a DBF image.

    Args:
        buf: Bytes-like object holding the whole table

    Returns:
        A DBFHeader with the field list and running record offsets

    Raises:
        MalformedTableError: If the header integers, the descriptor
            array and the buffer size do not agree
    """
    if len(buf) < DBF_PREAMBLE_SIZE:
        raise MalformedTableError(
            f"Buffer of {len(buf)} bytes is shorter than the {DBF_PREAMBLE_SIZE}-byte preamble")

    header = DBFHeader()
    header.record_count = get_dword_le(buf, DBF_OFS_RECORD_COUNT)
    header.header_size = get_word_le(buf, DBF_OFS_HEADER_LENGTH)
    header.record_size = get_word_le(buf, DBF_OFS_RECORD_LENGTH)

    if header.header_size < DBF_PREAMBLE_SIZE + 1 or header.header_size > len(buf):
        raise MalformedTableError(
            f"Header length {header.header_size} out of range for a {len(buf)}-byte buffer")
    if (header.header_size - DBF_PREAMBLE_SIZE - 1) % DBF_DESCRIPTOR_SIZE != 0:
        raise MalformedTableError(
            f"Header length {header.header_size} does not fit whole field descriptors")
    if buf[header.header_size - 1] != DBF_HEADER_TERMINATOR:
        raise MalformedTableError(
            f"Missing descriptor terminator at offset {header.header_size - 1}")

    # Walk the descriptor slots; the last header byte is the terminator
    offset = 1  # First byte is delete flag
    pos = DBF_PREAMBLE_SIZE
    while pos < header.header_size - 1:
        descriptor = buf[pos:pos + DBF_DESCRIPTOR_SIZE]
        column = DBFColumn(
            name=decode_field_name(descriptor),
            field_type=chr(descriptor[_OFS_FIELD_TYPE]),
            length=descriptor[_OFS_FIELD_LENGTH],
            offset=offset
        )
        header.fields.append(column)
        offset += column.length
        pos += DBF_DESCRIPTOR_SIZE

    if offset != header.record_size:
        raise MalformedTableError(
            f"Record length {header.record_size} does not match field widths ({offset})")
    if header.header_size + header.record_count * header.record_size > len(buf):
        raise MalformedTableError(
            f"{header.record_count} records of {header.record_size} bytes run past "
            f"the end of a {len(buf)}-byte buffer")

    logger.debug("Parsed DBF header: %d records, header %d bytes, record %d bytes, fields %s",
                 header.record_count, header.header_size, header.record_size,
                 [column.name for column in header.fields])
    return header


__all__ = [
    'DBFColumn', 'DBFHeader', 'MalformedTableError',
    'DBF_PREAMBLE_SIZE', 'DBF_DESCRIPTOR_SIZE', 'DBF_MAX_FIELD_NAME',
    'DBF_HEADER_TERMINATOR', 'DBF_EOF_MARKER', 'DBF_PAD_BYTE', 'DBF_TYPE_CHARACTER',
    'DBF_MAX_WORD', 'DBF_OFS_RECORD_COUNT', 'DBF_OFS_HEADER_LENGTH', 'DBF_OFS_RECORD_LENGTH',
    'read_dbf_header', 'build_field_descriptor', 'decode_field_name',
    'get_dword_le', 'get_word_le', 'put_word_le',
]
