from enum import Enum

from network.errors import MalformedCommandInput
from network.protocol import Command, OutboundMessage, Script


class InputMode(Enum):
    SCRIPT = "script"
    COMMAND = "command"

    @classmethod
    def parse(cls, label):
        try:
            return cls(str(label).strip().lower())
        except ValueError:
            raise ValueError(f"mode inconnu: {label!r}") from None


class InputParser:
    @staticmethod
    def sanitize(raw):
        # the codec writes text between quotes as-is
        return raw.replace('"', '\\"').strip()

    @staticmethod
    def parse(raw, mode) -> OutboundMessage:
        text = InputParser.sanitize(raw or "")

        if mode is InputMode.SCRIPT:
            return Script(text)

        parts = text.split()
        if len(parts) != 3:
            raise MalformedCommandInput(text, len(parts))

        verb, resource_type, resource_name = parts
        return Command(verb, resource_type, resource_name)
