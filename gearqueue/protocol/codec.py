"""
Binary frame encoding and decoding.

A frame is a 12 byte header (magic, opcode, payload length, the last two
big-endian unsigned ints) followed by the NUL separated payload fields in
the order the command defines them.
"""

import struct
from dataclasses import dataclass, field

from gearqueue.constants import (
    FIELD_SEPARATOR,
    HEADER_SIZE,
    MAGIC_REQUEST,
    MAGIC_RESPONSE,
    UNKNOWN_ERROR_TEXT,
)
from gearqueue.exceptions import ProtocolError, ServerError

_HEADER = struct.Struct(">4sII")

# command name -> (opcode, ordered payload fields)
COMMANDS: dict[str, tuple[int, tuple[str, ...]]] = {
    "can_do": (1, ("func",)),
    "cant_do": (2, ("func",)),
    "reset_abilities": (3, ()),
    "pre_sleep": (4, ()),
    "noop": (6, ()),
    "submit_job": (7, ("func", "uniq", "arg")),
    "job_created": (8, ("handle",)),
    "grab_job": (9, ()),
    "no_job": (10, ()),
    "job_assign": (11, ("handle", "func", "arg")),
    "work_status": (12, ("handle", "numerator", "denominator")),
    "work_complete": (13, ("handle", "result")),
    "work_fail": (14, ("handle",)),
    "get_status": (15, ("handle",)),
    "echo_req": (16, ("text",)),
    "echo_res": (17, ("text",)),
    "submit_job_bg": (18, ("func", "uniq", "arg")),
    "error": (19, ("err_code", "err_text")),
    "status_res": (20, ("handle", "known", "running", "numerator", "denominator")),
    "submit_job_high": (21, ("func", "uniq", "arg")),
    "set_client_id": (22, ("client_id",)),
    "can_do_timeout": (23, ("func", "timeout")),
    "all_yours": (24, ()),
    "submit_job_high_bg": (32, ("func", "uniq", "arg")),
    "submit_job_low": (33, ("func", "uniq", "arg")),
    "submit_job_low_bg": (34, ("func", "uniq", "arg")),
}

# opcode -> (command name, ordered payload fields)
OPCODES: dict[int, tuple[str, tuple[str, ...]]] = {
    opcode: (name, fields) for name, (opcode, fields) in COMMANDS.items()
}

# Opaque payload fields, carried as bytes rather than text
BINARY_FIELDS = frozenset({"arg", "result", "text"})

FieldValue = str | bytes | int


@dataclass
class Frame:
    """One decoded wire message."""

    command: str
    fields: dict[str, str | bytes] = field(default_factory=dict)
    magic: bytes = MAGIC_RESPONSE

    @property
    def opcode(self) -> int:
        return COMMANDS[self.command][0]

    def get(self, name: str, default: str | bytes | None = None) -> str | bytes | None:
        return self.fields.get(name, default)

    def __getitem__(self, name: str) -> str | bytes:
        return self.fields[name]


def _to_bytes(value: FieldValue) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


def is_known_command(command: str) -> bool:
    return command in COMMANDS


def encode(
    command: str,
    fields: dict[str, FieldValue] | None = None,
    magic: bytes = MAGIC_REQUEST,
) -> bytes:
    """
    Encode a command into a wire frame.

    Fields missing from ``fields`` (or set to None) are left out of the
    payload entirely; present fields are joined in definition order.

    Args:
        command: Command name, e.g. ``"submit_job"``.
        fields: Field values keyed by field name.
        magic: Request or response marker.

    Returns:
        The encoded frame.

    Raises:
        ProtocolError: If the command is unknown.
    """
    if command not in COMMANDS:
        raise ProtocolError(f"Invalid command: {command}")

    opcode, names = COMMANDS[command]
    fields = fields or {}

    data = FIELD_SEPARATOR.join(
        _to_bytes(fields[name]) for name in names if fields.get(name) is not None
    )

    return _HEADER.pack(magic, opcode, len(data)) + data


def decode_header(header: bytes) -> tuple[bytes, int, int]:
    """
    Split a 12 byte header into (magic, opcode, payload length).

    Raises:
        ProtocolError: On a short header or an unknown marker.
    """
    if len(header) != HEADER_SIZE:
        raise ProtocolError("Received an invalid response")

    magic, opcode, length = _HEADER.unpack(header)
    if magic not in (MAGIC_REQUEST, MAGIC_RESPONSE):
        raise ProtocolError(f"Invalid response magic returned: {magic!r}")

    return magic, opcode, length


def decode(header: bytes, payload: bytes = b"") -> Frame:
    """
    Decode a header and its payload into a Frame.

    Raises:
        ProtocolError: If the opcode is unknown.
        ServerError: If the frame is the server's error command.
    """
    magic, opcode, length = decode_header(header)

    if opcode not in OPCODES:
        raise ProtocolError(f"Unknown opcode: {opcode}")
    if len(payload) != length:
        raise ProtocolError(f"Expected {length} payload bytes, got {len(payload)}")

    command, names = OPCODES[opcode]

    values: dict[str, str | bytes] = {}
    if payload and names:
        parts = payload.split(FIELD_SEPARATOR, len(names) - 1)
        for name, raw in zip(names, parts):
            values[name] = raw if name in BINARY_FIELDS else raw.decode("utf-8", "replace")

    if command == "error":
        text = values.get("err_text") or UNKNOWN_ERROR_TEXT
        raise ServerError(str(values.get("err_code", "")), str(text))

    return Frame(command=command, fields=values, magic=magic)
