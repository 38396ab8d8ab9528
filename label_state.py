"""
Annotation state of a labelled feature and its external encodings.

The same three-valued label is stored three ways:

    state       in memory   DBF flag byte   v_labels.json
    UNSET       0           b' '            -1
    POSITIVE    1           b'1'             1
    NEGATIVE    2           b'0'             0

Every conversion goes through AnnotationState so the encodings cannot
drift apart.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable

from dbf_layout import DBF_MAX_FIELD_NAME


class AnnotationState(Enum):
    """Reviewer label for one attribute of a feature."""
    UNSET = 0
    POSITIVE = 1
    NEGATIVE = 2


_DBF_CHARS = {
    AnnotationState.UNSET: b' ',
    AnnotationState.POSITIVE: b'1',
    AnnotationState.NEGATIVE: b'0',
}

_JSON_VALUES = {
    AnnotationState.UNSET: -1,
    AnnotationState.POSITIVE: 1,
    AnnotationState.NEGATIVE: 0,
}


def state_from_memory(value) -> AnnotationState:
    """Accept an AnnotationState or its in-memory integer (0/1/2)."""
    if isinstance(value, AnnotationState):
        return value
    return AnnotationState(value)


def state_to_dbf_char(state: AnnotationState) -> bytes:
    return _DBF_CHARS[state_from_memory(state)]


def state_from_dbf_char(char) -> AnnotationState:
    """Decode a flag byte (int or 1-byte bytes); unknown bytes read as UNSET."""
    if isinstance(char, int):
        char = bytes([char])
    for state, encoded in _DBF_CHARS.items():
        if encoded == char:
            return state
    return AnnotationState.UNSET


def state_to_json(state: AnnotationState) -> int:
    return _JSON_VALUES[state_from_memory(state)]


def state_from_json(value: int) -> AnnotationState:
    for state, encoded in _JSON_VALUES.items():
        if encoded == value:
            return state
    raise ValueError(f"Unknown label value {value!r}")


def state_from_property(value) -> AnnotationState:
    """
    Read a label carried on an imported feature's properties.

    Both the DBF column ("1"/"0") and the exported JSON value (1/0/-1)
    end up here, so strings and integers are accepted alike.
    """
    if value == "1" or value == 1:
        return AnnotationState.POSITIVE
    if value == "0" or value == 0:
        return AnnotationState.NEGATIVE
    return AnnotationState.UNSET


@dataclass(frozen=True)
class FlagField:
    """A one-byte character column injected into a table."""
    name: str
    width: int = 1
    field_type: str = 'C'
    encode: Callable[[AnnotationState], bytes] = state_to_dbf_char

    def __post_init__(self):
        if not self.name or len(self.name.encode('ascii')) > DBF_MAX_FIELD_NAME:
            raise ValueError(f"Invalid flag field name {self.name!r}")
        if self.width != 1:
            raise ValueError(f"Flag field {self.name} must be 1 byte wide")


ROAD_FIELD = FlagField("ROAD")
BUILDING_FIELD = FlagField("BUILDING")

# Order matters: missing fields are appended in this order
DEFAULT_FLAG_FIELDS = (ROAD_FIELD, BUILDING_FIELD)


__all__ = [
    'AnnotationState', 'FlagField',
    'ROAD_FIELD', 'BUILDING_FIELD', 'DEFAULT_FLAG_FIELDS',
    'state_from_memory', 'state_to_dbf_char', 'state_from_dbf_char',
    'state_to_json', 'state_from_json', 'state_from_property',
]
