"""
Decoding of the Sankhya positional entity format.

loadRecords answers with an ordered list of field names and, per row, slots
named by position (`f0`, `f1`, ...), each holding `{"$": value}`:

    {"responseBody": {"entities": {
        "metadata": {"fields": {"field": [{"name": "CODPROD"}, {"name": "DESCRPROD"}]}},
        "entity": [{"f0": {"$": "10"}, "f1": {"$": "Widget"}}],
        "total": "1"
    }}}

Rows are decoded to positional values first and then zipped against the
column schema, so absent slots simply drop out of the record.
"""

from dataclasses import dataclass, field
from typing import Any

ColumnSchema = list[str]
Row = list[Any | None]
Record = dict[str, Any]


@dataclass
class EntityPage:
    """Normalized result of one loadRecords call."""

    records: list[Record] = field(default_factory=list)
    total: int = 0
    has_more: bool = False


def column_schema(entities: dict[str, Any]) -> ColumnSchema:
    """Ordered field names declared in the response metadata."""
    fields = (((entities.get("metadata") or {}).get("fields") or {}).get("field")) or []
    if isinstance(fields, dict):
        fields = [fields]
    return [f.get("name", "") for f in fields]


def raw_rows(entities: dict[str, Any]) -> list[dict[str, Any]]:
    """`entity` is a single object for one row and a list otherwise."""
    entity = entities.get("entity")
    if not entity:
        return []
    return entity if isinstance(entity, list) else [entity]


def decode_row(raw: dict[str, Any], width: int) -> Row:
    """Positional values of a raw row, None where a slot is absent or empty."""
    values: Row = []
    for i in range(width):
        slot = raw.get(f"f{i}")
        values.append(slot.get("$") if isinstance(slot, dict) else None)
    return values


def zip_record(schema: ColumnSchema, values: Row) -> Record:
    """Re-associate names with positional values, omitting absent ones."""
    return {name: value for name, value in zip(schema, values) if value is not None}


def normalize_entities(entities: dict[str, Any] | None) -> list[Record]:
    """All rows of an `entities` block as named records."""
    if not entities:
        return []
    schema = column_schema(entities)
    return [zip_record(schema, decode_row(raw, len(schema))) for raw in raw_rows(entities)]


def extract_entities(response: Any) -> dict[str, Any] | None:
    """The `responseBody.entities` block, None when the response lacks it."""
    if not isinstance(response, dict):
        return None
    body = response.get("responseBody")
    if not isinstance(body, dict):
        return None
    entities = body.get("entities")
    return entities if isinstance(entities, dict) else None


def normalize_response(response: Any) -> EntityPage:
    """
    Decode a full loadRecords response.

    A missing `entities` block or `entity` list means zero results.
    """
    entities = extract_entities(response)
    if entities is None:
        return EntityPage()

    records = normalize_entities(entities)
    total = entities.get("total")
    try:
        total_count = int(total) if total not in (None, "") else len(records)
    except (TypeError, ValueError):
        total_count = len(records)

    return EntityPage(
        records=records,
        total=total_count if records else 0,
        has_more=str(entities.get("hasMoreResult", "")).lower() == "true",
    )
