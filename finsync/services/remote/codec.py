"""
Wire Codec for the Remote Mirror

The mirror speaks JSON with camelCase keys. Two fields need more than an
alias to cross the wire:

- tags travel as a JSON-encoded string ('["rent","home"]'), not an array
- dates travel as ISO strings; the mirror may hand back a full datetime
  ("2024-01-15T00:00:00.000Z") for a day-granularity field

Everything else is left to the pydantic models.
"""

import json
from datetime import date, datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from finsync.models.records import RecordModel
from finsync.models.sync import ChangeSet, SkippedRow, SyncTable


DATE_FIELDS: dict[SyncTable, tuple[str, ...]] = {
    SyncTable.TRANSACTIONS: ("date",),
    SyncTable.RECURRING_TRANSACTIONS: ("startDate", "endDate", "lastProcessed"),
    SyncTable.NET_WORTH_SNAPSHOTS: ("date",),
}

TAGGED_TABLES = frozenset({SyncTable.TRANSACTIONS, SyncTable.RECURRING_TRANSACTIONS})


class CodecError(ValueError):
    """A payload from the mirror could not be decoded."""
    pass


def parse_wire_date(value: Any) -> Optional[date]:
    """
    Day-granularity value from the wire.

    Accepts a date, "YYYY-MM-DD", or a datetime string whose first ten
    characters are the day.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError as e:
            raise CodecError(f"Invalid date: {value!r}") from e
    raise CodecError(f"Invalid date: {value!r}")


def parse_wire_timestamp(value: Any) -> datetime:
    """ISO timestamp from the wire, as an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise CodecError(f"Invalid timestamp: {value!r}") from e
    else:
        raise CodecError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def encode_tags(tags: Optional[list[str]]) -> str:
    return json.dumps(list(tags or []))


def decode_tags(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError as e:
            raise CodecError(f"Invalid tags: {value!r}") from e
        if not isinstance(decoded, list):
            raise CodecError(f"Tags must be a list, got {value!r}")
        return decoded
    raise CodecError(f"Invalid tags: {value!r}")


def encode_record(table: SyncTable, record: RecordModel) -> dict[str, Any]:
    """Record to a wire row."""
    row = record.to_wire()
    if table in TAGGED_TABLES:
        row["tags"] = encode_tags(row.get("tags"))
    return row


def decode_row(table: SyncTable, row: dict[str, Any]) -> RecordModel:
    """
    Wire row to a record model.

    Raises:
        CodecError: If a tag or date field is malformed
        pydantic.ValidationError: If the row violates the model's schema
    """
    data = dict(row)
    if table in TAGGED_TABLES and "tags" in data:
        data["tags"] = decode_tags(data["tags"])
    for field in DATE_FIELDS.get(table, ()):
        if field in data:
            data[field] = parse_wire_date(data[field])
    return table.model.model_validate(data)


def encode_changes(changes: ChangeSet) -> dict[str, list[dict[str, Any]]]:
    """ChangeSet to the push request body (minus the envelope)."""
    return {
        table.value: [encode_record(table, record) for record in changes.records(table)]
        for table in SyncTable
    }


def decode_changes(payload: Any) -> ChangeSet:
    """
    Pull response body to a ChangeSet. Missing tables decode as empty.

    Rows are decoded one at a time. A row the models reject lands in
    ChangeSet.skipped and its siblings are still decoded.

    Raises:
        CodecError: If the body is not an object or a table is not a list
    """
    if not isinstance(payload, dict):
        raise CodecError(f"Expected an object, got {type(payload).__name__}")

    decoded: dict[str, list[RecordModel]] = {}
    skipped: list[SkippedRow] = []
    for table in SyncTable:
        rows = payload.get(table.value) or []
        if not isinstance(rows, list):
            raise CodecError(f"Expected a list for {table.value}, got {type(rows).__name__}")
        records = []
        for row in rows:
            if not isinstance(row, dict):
                skipped.append(SkippedRow(table=table.value, item=row, error="Row is not an object"))
                continue
            try:
                records.append(decode_row(table, row))
            except (CodecError, ValidationError) as e:
                skipped.append(SkippedRow(table=table.value, item=row, error=str(e)))
        decoded[table.store_attr] = records
    return ChangeSet(**decoded, skipped=skipped)
