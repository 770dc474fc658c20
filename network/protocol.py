"""Wire format of the engine console.

Format on the wire (outbound), one JSON object per message, no length
prefix and no delimiter:
  {"type":"script","script":"<raw text>"}
  {"type":"command","command":"<verb>","resource_type":"<type>","resource_name":"<name>"}

Inbound data is an unstructured ASCII byte stream: each read is decoded and
shown as-is.

Field values are written between the quotes without any escaping. Input
must be sanitized beforehand (see parser.InputParser), otherwise a quote in
the text yields invalid JSON on the engine side.

Functions:
- encode(msg) -> bytes
- decode(data) -> str
"""
from dataclasses import dataclass
from typing import Union

ENCODING = "ascii"


@dataclass(frozen=True)
class Script:
    text: str


@dataclass(frozen=True)
class Command:
    verb: str
    resource_type: str
    resource_name: str


OutboundMessage = Union[Script, Command]


def _field(name: str, value: str) -> str:
    return f'"{name}":"{value}"'


def encode(msg: OutboundMessage) -> bytes:
    if isinstance(msg, Script):
        fields = [_field("type", "script"), _field("script", msg.text)]
    elif isinstance(msg, Command):
        fields = [
            _field("type", "command"),
            _field("command", msg.verb),
            _field("resource_type", msg.resource_type),
            _field("resource_name", msg.resource_name),
        ]
    else:
        raise TypeError(f"unsupported message type: {type(msg).__name__}")
    text = "{" + ",".join(fields) + "}"
    return text.encode(ENCODING, errors="replace")


def decode(data: bytes) -> str:
    # undecodable bytes become "?", same as on the encode side
    return bytes(data).decode(ENCODING, errors="replace").replace("\ufffd", "?")
