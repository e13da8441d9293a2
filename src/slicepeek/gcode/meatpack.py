"""Decode MeatPack packed G-code text.

MeatPack stores the most frequent G-code characters as 4-bit codes, two per
byte (low nibble first). A nibble of ``0xF`` means the character is sent in
full in a following byte. ``0xFF 0xFF <cmd>`` sequences toggle packing and the
"no spaces" mode, in which the space code stands for ``E`` and spaces before
parameter letters are omitted by the writer.
"""

from __future__ import annotations

__all__ = ["unpack"]

_SIGNAL_BYTE = 0xFF
_NOT_PACKED = 0xF

_CMD_ENABLE_PACKING = 251
_CMD_DISABLE_PACKING = 250
_CMD_RESET_ALL = 249
_CMD_QUERY_CONFIG = 248
_CMD_ENABLE_NO_SPACES = 247
_CMD_DISABLE_NO_SPACES = 246

_PACKED_CHARS = b"0123456789. \nGX"

# Letters the writer strips the separating space from in no-spaces mode.
_G_LINE_PARAMETERS = frozenset(b"XYZEFIJRPWHCA")


class _Unpacker:
    def __init__(self) -> None:
        self.packing = False
        self.no_spaces = False
        self.out = bytearray()
        self._signal_count = 0
        self._command_pending = False
        self._full_chars_expected = 0
        self._deferred: int | None = None
        self._in_g_line = False

    def feed(self, byte: int) -> None:
        if byte == _SIGNAL_BYTE:
            if self._signal_count:
                self._command_pending = True
                self._signal_count = 0
            else:
                self._signal_count = 1
            return

        if self._command_pending:
            self._command_pending = False
            self._handle_command(byte)
            return

        if self._signal_count:
            # A lone 0xFF is a packed byte holding two full-width markers.
            self._signal_count = 0
            self._receive(_SIGNAL_BYTE)
        self._receive(byte)

    def _handle_command(self, command: int) -> None:
        if command == _CMD_ENABLE_PACKING:
            self.packing = True
        elif command in (_CMD_DISABLE_PACKING, _CMD_RESET_ALL):
            self.packing = False
        elif command == _CMD_ENABLE_NO_SPACES:
            self.no_spaces = True
        elif command == _CMD_DISABLE_NO_SPACES:
            self.no_spaces = False
        # _CMD_QUERY_CONFIG and unknown commands carry no state.

    def _receive(self, byte: int) -> None:
        if not self.packing:
            self._emit(byte)
            return

        if self._full_chars_expected:
            self._emit(byte)
            if self._deferred is not None:
                self._emit(self._deferred)
                self._deferred = None
            self._full_chars_expected -= 1
            return

        low = byte & 0xF
        high = (byte >> 4) & 0xF
        if low == _NOT_PACKED:
            self._full_chars_expected += 1
            if high == _NOT_PACKED:
                self._full_chars_expected += 1
            else:
                self._deferred = self._char(high)
            return

        first = self._char(low)
        self._emit(first)
        if first == ord("\n"):
            return
        if high == _NOT_PACKED:
            self._full_chars_expected += 1
        else:
            self._emit(self._char(high))

    def _char(self, nibble: int) -> int:
        if nibble == 0xB and self.no_spaces:
            return ord("E")
        return _PACKED_CHARS[nibble]

    def _emit(self, byte: int) -> None:
        out = self.out
        if byte == ord("\n"):
            self._in_g_line = False
            # Collapse blank lines produced by padding nibbles.
            if out and out[-1] == ord("\n"):
                return
            out.append(byte)
            return

        if byte == ord("G") and (not out or out[-1] == ord("\n")):
            self._in_g_line = True
        elif byte == ord(";"):
            self._in_g_line = False
        elif self._in_g_line and byte in _G_LINE_PARAMETERS and out and out[-1] != ord(" "):
            out.append(ord(" "))
        out.append(byte)


def unpack(data: bytes) -> str:
    """Return the G-code text encoded as MeatPack in *data*.

    Streams start with packing disabled; the writer enables it with an
    in-band command, so unpacked segments pass through unchanged.
    """

    unpacker = _Unpacker()
    for byte in data:
        unpacker.feed(byte)
    return unpacker.out.decode("utf-8", errors="replace")
