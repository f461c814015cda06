"""Remote mirror client package."""

from finsync.services.remote.client import RemoteError, RemoteMirrorClient
from finsync.services.remote.codec import (
    CodecError,
    decode_changes,
    decode_row,
    encode_changes,
    encode_record,
    parse_wire_date,
    parse_wire_timestamp,
)

__all__ = [
    "CodecError",
    "RemoteError",
    "RemoteMirrorClient",
    "decode_changes",
    "decode_row",
    "encode_changes",
    "encode_record",
    "parse_wire_date",
    "parse_wire_timestamp",
]
