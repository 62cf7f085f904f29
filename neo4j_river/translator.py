"""
Change Translator

Maps change records to index operations. Pure and deterministic: the same
record always yields the same document, and the document id is the source
node id, unchanged.
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Dict, Union

from .errors import UnsupportedValue
from .watchers.base import ChangeRecord

# Field holding the configured document type (indexes have no mapping types)
TYPE_FIELD = "river_type"

SCALAR_TYPES = (str, bool, int, float)


@dataclass(frozen=True)
class IndexDocument:
    """Document to upsert into the index"""
    doc_id: str
    doc_type: str
    fields: Dict[str, Any] = field(default_factory=dict)

    def source(self) -> Dict[str, Any]:
        """Document body as stored in the index"""
        return {**self.fields, TYPE_FIELD: self.doc_type}


@dataclass(frozen=True)
class DeletionMarker:
    """Document to remove from the index"""
    doc_id: str


IndexOperation = Union[IndexDocument, DeletionMarker]


def to_doc_id(node_id: str) -> str:
    """Document id for a source node id"""
    return node_id


def translate(record: ChangeRecord, doc_type: str = "node") -> IndexOperation:
    """
    Translate a change record into an index operation.

    Raises:
        UnsupportedValue: if a property cannot be stored in the index
    """
    doc_id = to_doc_id(record.node_id)

    if record.is_deletion:
        return DeletionMarker(doc_id=doc_id)

    fields = {}
    for key, value in (record.properties or {}).items():
        if not isinstance(key, str) or not key or key == TYPE_FIELD:
            raise UnsupportedValue(record.node_id, key, value)
        fields[key] = _convert_value(record.node_id, key, value)

    return IndexDocument(doc_id=doc_id, doc_type=doc_type, fields=fields)


def _convert_value(node_id: str, key: str, value: Any) -> Any:
    if isinstance(value, list):
        return [_convert_scalar(node_id, key, item) for item in value]
    return _convert_scalar(node_id, key, value)


def _convert_scalar(node_id: str, key: str, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and not math.isfinite(value):
        raise UnsupportedValue(node_id, key, value)
    if isinstance(value, SCALAR_TYPES):
        return value
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    # neo4j.time temporal types (DateTime, Date, Time, Duration)
    iso_format = getattr(value, "iso_format", None)
    if callable(iso_format):
        return iso_format()
    raise UnsupportedValue(node_id, key, value)
