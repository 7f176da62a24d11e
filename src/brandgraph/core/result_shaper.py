"""
Result Shaper - flatten internal representations into plain records

Callers of the identity core only ever see dicts, lists and scalars:
- entities (anything with to_dict) become their public field set
- driver wrappers (neo4j Node / Record, anything exposing items()) lose
  their store metadata and keep only properties
- neo4j temporal values and datetimes become ISO-8601 strings
Input is never mutated; plain input comes back equal.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any


def to_plain(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value

    if isinstance(value, Enum):
        return value.value

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    to_dict = getattr(value, 'to_dict', None)
    if callable(to_dict):
        return to_plain(to_dict())

    # neo4j.time.DateTime / Date / Time
    iso_format = getattr(value, 'iso_format', None)
    if callable(iso_format):
        return iso_format()

    if isinstance(value, dict):
        return {str(k): to_plain(v) for k, v in value.items()}

    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_plain(v) for v in value]

    # neo4j Node, Relationship and Record are mapping-like without being Mappings
    items = getattr(value, 'items', None)
    if callable(items):
        return {str(k): to_plain(v) for k, v in items()}

    raise TypeError(f"Cannot convert {type(value).__name__} to a plain record")
