"""Frame building for the thermostat gateway protocol. Pure functions, no I/O."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from thermoctl.core.catalog import ProtocolTables
from thermoctl.core.model import CommandFrame, FrameLayout, OffsetValue

_SIGN_BIT = 0x80
_MAGNITUDE_MASK = 0x7F


def hex_byte(value: int) -> str:
    """Render one byte as exactly two upper-case hex digits."""
    return f"{value & 0xFF:02X}"


def checksum(data: bytes | bytearray, checksum_offset: int) -> int:
    """Additive checksum: every byte except the checksum byte itself, mod 256."""
    return sum(byte for index, byte in enumerate(data) if index != checksum_offset) % 256


def to_byte(value: Any) -> int:
    """Coerce an attribute value into one wire byte.

    Booleans become 0/1, decimals are truncated, and values wrap modulo 256.
    """
    if isinstance(value, bool):
        return int(value)
    return int(value) % 256


def encode_offset(value: OffsetValue | Mapping[str, Any]) -> int:
    """Sub-encode the compound offset register: bit 7 is the sign, bits 0-6 the magnitude."""
    if isinstance(value, Mapping):
        value = OffsetValue(sign=bool(value["sign"]), magnitude=int(value["magnitude"]))
    encoded = int(value.magnitude) & _MAGNITUDE_MASK
    if value.sign:
        encoded |= _SIGN_BIT
    return encoded


def decode_offset(byte: int) -> OffsetValue:
    return OffsetValue(sign=bool(byte & _SIGN_BIT), magnitude=byte & _MAGNITUDE_MASK)


def verify(frame: CommandFrame, layout: FrameLayout) -> bool:
    """Return True if `frame` has the layout's length, constants, and a valid checksum."""
    data = frame.data
    if len(data) != layout.length:
        return False
    if data[: len(layout.header)] != layout.header:
        return False
    if data[layout.length - len(layout.footer):] != layout.footer:
        return False
    return data[layout.checksum_offset] == checksum(data, layout.checksum_offset)


class CommandEncoder:
    """Builds individual-register, settings-block, and status-request frames."""

    def __init__(self, tables: ProtocolTables) -> None:
        self.tables = tables
        self.generation = tables.generation

    def encode_individual(self, register: int, value: Any) -> CommandFrame:
        layout = self.generation.individual
        name = self.tables.individual_registers.reverse_resolve(register)

        frame = _blank(layout)
        frame[layout.register_offset] = register
        if name == self.generation.offset_register:
            frame[layout.value_offset] = encode_offset(value)
        else:
            frame[layout.value_offset] = to_byte(value)
        return _seal(frame, layout)

    def encode_named(self, name: str, value: Any) -> CommandFrame:
        return self.encode_individual(self.tables.individual_registers.resolve(name), value)

    def encode_settings_block(self, values: Mapping[str, Any]) -> CommandFrame:
        layout = self.generation.settings
        offsets = self.tables.settings_offsets

        frame = _blank(layout)
        for name in sorted(values):
            frame[offsets.resolve(name)] = to_byte(values[name])
        return _seal(frame, layout)

    def encode_status_request(self) -> CommandFrame:
        layout = self.generation.status_request
        return _seal(_blank(layout), layout)


def _blank(layout: FrameLayout) -> bytearray:
    frame = bytearray(layout.length)
    frame[: len(layout.header)] = layout.header
    frame[layout.length - len(layout.footer):] = layout.footer
    return frame


def _seal(frame: bytearray, layout: FrameLayout) -> CommandFrame:
    if len(frame) != layout.length:
        raise ValueError(f"Frame has {len(frame)} bytes, layout requires {layout.length}")
    for offset in layout.zero_offsets:
        frame[offset] = 0
    frame[layout.checksum_offset] = checksum(frame, layout.checksum_offset)
    return CommandFrame(bytes(frame))
