"""
Inject one-byte label columns (ROAD, BUILDING) into a DBF image.

The table is patched in memory:

1. read_dbf_header() parses the header and locates the label fields.
2. extend_layout() grows the header and every record when one or more
   label fields are missing, copying everything else byte for byte.
3. write_flag_values() writes each record's label bytes from the
   per-feature state maps.

Records and features are matched by position: feature i labels
record i.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from dbf_layout import (
    DBFColumn, DBFHeader, MalformedTableError,
    DBF_PREAMBLE_SIZE, DBF_DESCRIPTOR_SIZE,
    DBF_HEADER_TERMINATOR, DBF_EOF_MARKER, DBF_PAD_BYTE,
    DBF_MAX_WORD, DBF_OFS_HEADER_LENGTH, DBF_OFS_RECORD_LENGTH,
    build_field_descriptor, put_word_le, read_dbf_header,
)
from label_state import (
    AnnotationState, FlagField, DEFAULT_FLAG_FIELDS,
    ROAD_FIELD, BUILDING_FIELD, state_from_memory,
)

logger = logging.getLogger(__name__)


def feature_id(feature: Any) -> str:
    """Identifier of a feature given as a mapping or an object with `id`."""
    if isinstance(feature, Mapping):
        value = feature.get("id")
    else:
        value = getattr(feature, "id", None)
    return "" if value is None else str(value)


def missing_flag_fields(header: DBFHeader,
                        flag_fields: Sequence[FlagField] = DEFAULT_FLAG_FIELDS) -> List[FlagField]:
    """Flag fields not yet present in the header, in configured order."""
    return [flag for flag in flag_fields if header.find_field(flag.name) == -1]


def extend_layout(buf, header: DBFHeader,
                  to_add: Sequence[FlagField]) -> Tuple[bytearray, DBFHeader]:
    """
    Build a new image with extra columns appended to every record.

    Args:
        buf: Original DBF image
        header: Header parsed from `buf`
        to_add: Flag fields to append, in order

    Returns:
        Tuple of (new image, header describing the new image). The
        new header shares nothing with `header`.

    Raises:
        MalformedTableError: If the grown header or record length no
            longer fits the 16-bit length words
    """
    added_width = sum(flag.width for flag in to_add)
    old_header_size = header.header_size
    old_record_size = header.record_size

    new_header = DBFHeader(
        record_count=header.record_count,
        header_size=old_header_size + DBF_DESCRIPTOR_SIZE * len(to_add),
        record_size=old_record_size + added_width,
        fields=[DBFColumn(c.name, c.field_type, c.length, c.offset) for c in header.fields],
    )
    if new_header.header_size > DBF_MAX_WORD or new_header.record_size > DBF_MAX_WORD:
        raise MalformedTableError(
            f"Adding {len(to_add)} fields would grow the header to {new_header.header_size} "
            f"and records to {new_header.record_size} bytes, past the {DBF_MAX_WORD}-byte limit")
    new_buf = bytearray(new_header.total_size)

    # Preamble, with the two length words updated
    new_buf[0:DBF_PREAMBLE_SIZE] = buf[0:DBF_PREAMBLE_SIZE]
    put_word_le(new_buf, DBF_OFS_HEADER_LENGTH, new_header.header_size)
    put_word_le(new_buf, DBF_OFS_RECORD_LENGTH, new_header.record_size)

    # Existing descriptors verbatim, without the old terminator
    new_buf[DBF_PREAMBLE_SIZE:old_header_size - 1] = buf[DBF_PREAMBLE_SIZE:old_header_size - 1]

    pos = old_header_size - 1
    offset = header.next_offset
    for flag in to_add:
        new_buf[pos:pos + DBF_DESCRIPTOR_SIZE] = build_field_descriptor(
            flag.name, flag.field_type, flag.width)
        new_header.fields.append(DBFColumn(flag.name.upper(), flag.field_type, flag.width, offset))
        offset += flag.width
        pos += DBF_DESCRIPTOR_SIZE
    new_buf[new_header.header_size - 1] = DBF_HEADER_TERMINATOR

    # Copy each record forward and blank the new columns
    padding = bytes([DBF_PAD_BYTE]) * added_width
    for r in range(header.record_count):
        old_start = header.record_start(r)
        new_start = new_header.record_start(r)
        new_buf[new_start:new_start + old_record_size] = buf[old_start:old_start + old_record_size]
        new_buf[new_start + old_record_size:new_start + new_header.record_size] = padding

    new_buf[new_header.total_size - 1] = DBF_EOF_MARKER

    logger.debug("Extended DBF layout with %s: header %d -> %d, record %d -> %d, %d records migrated",
                 [flag.name for flag in to_add], old_header_size, new_header.header_size,
                 old_record_size, new_header.record_size, header.record_count)
    return new_buf, new_header


def write_flag_values(buf: bytearray, header: DBFHeader, features: Sequence[Any],
                      states_by_field: Mapping[str, Mapping[str, Any]],
                      flag_fields: Sequence[FlagField] = DEFAULT_FLAG_FIELDS) -> None:
    """
    Write each record's flag bytes in place.

    Only the first min(record_count, len(features)) records are
    touched. A feature id missing from a state map counts as UNSET.
    """
    columns = []
    for flag in flag_fields:
        column = header.get_field(flag.name)
        if column is None:
            raise KeyError(f"Field {flag.name} not present in table")
        columns.append((flag, column, states_by_field.get(flag.name, {})))

    count = min(header.record_count, len(features))
    for i in range(count):
        fid = feature_id(features[i])
        start = header.record_start(i)
        for flag, column, states in columns:
            state = state_from_memory(states.get(fid, AnnotationState.UNSET))
            buf[start + column.offset:start + column.offset + flag.width] = flag.encode(state)


def patch_dbf_fields(dbf_bytes, features: Sequence[Any],
                     states_by_field: Mapping[str, Mapping[str, Any]],
                     flag_fields: Sequence[FlagField] = DEFAULT_FLAG_FIELDS) -> bytearray:
    """
    Ensure every flag field exists and write its values.

    A bytearray without missing fields is patched in place and
    returned; any other input yields a new buffer.

    Raises:
        MalformedTableError: If `dbf_bytes` is not a consistent DBF image
    """
    header = read_dbf_header(dbf_bytes)

    to_add = missing_flag_fields(header, flag_fields)
    if to_add:
        buf, header = extend_layout(dbf_bytes, header, to_add)
    elif isinstance(dbf_bytes, bytearray):
        buf = dbf_bytes
    else:
        buf = bytearray(dbf_bytes)

    if header.record_count != len(features):
        logger.warning("DBF has %d records but %d features were supplied; labelling %d",
                       header.record_count, len(features),
                       min(header.record_count, len(features)))

    write_flag_values(buf, header, features, states_by_field, flag_fields)
    return buf


def patch_dbf(dbf_bytes, features: Sequence[Any],
              road_states: Optional[Mapping[str, Any]] = None,
              building_states: Optional[Mapping[str, Any]] = None) -> bytearray:
    """
    Add ROAD and BUILDING columns to a DBF image and fill them in.

    Args:
        dbf_bytes: DBF image (bytes or bytearray)
        features: Ordered features, one per record, each with an `id`
        road_states: Feature id -> AnnotationState (or 0/1/2)
        building_states: Feature id -> AnnotationState (or 0/1/2)

    Returns:
        The patched image
    """
    states_by_field: Dict[str, Mapping[str, Any]] = {
        ROAD_FIELD.name: road_states or {},
        BUILDING_FIELD.name: building_states or {},
    }
    return patch_dbf_fields(dbf_bytes, features, states_by_field, DEFAULT_FLAG_FIELDS)


__all__ = [
    'patch_dbf', 'patch_dbf_fields',
    'extend_layout', 'write_flag_values', 'missing_flag_fields', 'feature_id',
]
