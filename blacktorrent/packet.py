"""uTP packet header and packet encoding (BEP-29 wire format)."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional, Tuple, Union

UTP_VERSION = 1
EXTENSION_NONE = 0
EXTENSION_SACK = 1

_HEADER_STRUCT = struct.Struct(">BBHIIIHH")
BASE_HEADER_SIZE = _HEADER_STRUCT.size  # 20 bytes

Address = Tuple[str, int]


class PacketType(IntEnum):
    """uTP packet types as carried in the high nibble of the first byte."""

    DATA = 0
    FIN = 1
    STATE = 2
    RESET = 3
    SYN = 4


class PacketError(ValueError):
    """Raised when a packet cannot be encoded or decoded."""


def _as_packet_type(value: int) -> Union[PacketType, int]:
    try:
        return PacketType(value)
    except ValueError:
        return value


@dataclass
class UtpHeader:
    """The fixed 20-byte uTP header."""

    packet_type: Union[PacketType, int]
    connection_id: int
    timestamp_micros: int
    timestamp_diff_micros: int
    wnd_size: int
    seq_nr: int
    ack_nr: int
    extension: int = EXTENSION_NONE
    version: int = UTP_VERSION

    @property
    def type_version(self) -> int:
        """The first header byte: type in the high nibble, version in the low."""
        return ((int(self.packet_type) << 4) | (self.version & 0x0F)) & 0xFF

    def to_bytes(self) -> bytes:
        """Encode the header in network byte order."""
        try:
            return _HEADER_STRUCT.pack(
                self.type_version,
                self.extension,
                self.connection_id,
                self.timestamp_micros,
                self.timestamp_diff_micros,
                self.wnd_size,
                self.seq_nr,
                self.ack_nr,
            )
        except struct.error as exc:
            raise PacketError(f"Header field out of range: {exc}") from exc

    @classmethod
    def from_bytes(cls, data: bytes) -> "UtpHeader":
        """Decode a header from the first 20 bytes of ``data``."""
        if len(data) < BASE_HEADER_SIZE:
            raise PacketError("Buffer too short for uTP header")
        (
            type_version,
            extension,
            connection_id,
            timestamp_micros,
            timestamp_diff_micros,
            wnd_size,
            seq_nr,
            ack_nr,
        ) = _HEADER_STRUCT.unpack_from(data)
        return cls(
            packet_type=_as_packet_type(type_version >> 4),
            connection_id=connection_id,
            timestamp_micros=timestamp_micros,
            timestamp_diff_micros=timestamp_diff_micros,
            wnd_size=wnd_size,
            seq_nr=seq_nr,
            ack_nr=ack_nr,
            extension=extension,
            version=type_version & 0x0F,
        )


@dataclass
class UtpPacket:
    """A complete uTP packet: header, optional selective-ACK data and payload."""

    header: UtpHeader
    payload: bytes = b""
    sack_data: Optional[bytes] = None
    remote_addr: Address = field(default=("0.0.0.0", 0))

    @classmethod
    def from_bytes(cls, data: bytes, remote_addr: Address) -> "UtpPacket":
        """Parse a datagram received from ``remote_addr``."""
        if len(data) < BASE_HEADER_SIZE:
            raise PacketError("Packet too short for header")
        header = UtpHeader.from_bytes(data)
        if header.version != UTP_VERSION:
            raise PacketError("Unsupported uTP version")

        offset = BASE_HEADER_SIZE
        sack_data = None
        if header.extension == EXTENSION_SACK:
            if len(data) < offset + 2:
                raise PacketError("Packet too short for SACK extension header")
            sack_len = data[offset + 1]
            offset += 2
            if len(data) < offset + sack_len:
                raise PacketError("Packet too short for SACK data")
            sack_data = bytes(data[offset:offset + sack_len])
            offset += sack_len

        return cls(
            header=header,
            payload=bytes(data[offset:]),
            sack_data=sack_data,
            remote_addr=remote_addr,
        )

    def to_bytes(self) -> bytes:
        """Encode the packet for sending."""
        parts = [self.header.to_bytes()]
        if self.sack_data is not None:
            if len(self.sack_data) > 0xFF:
                raise PacketError("SACK data longer than 255 bytes")
            parts.append(bytes((0, len(self.sack_data))))
            parts.append(bytes(self.sack_data))
        parts.append(bytes(self.payload))
        return b"".join(parts)

    @property
    def payload_size(self) -> int:
        return len(self.payload)

    @property
    def total_size(self) -> int:
        """Size on the wire: header, extension and payload."""
        extension_size = 0 if self.sack_data is None else 2 + len(self.sack_data)
        return BASE_HEADER_SIZE + extension_size + len(self.payload)

    @classmethod
    def build(
        cls,
        packet_type,
        connection_id,
        seq_nr,
        ack_nr,
        timestamp_micros,
        timestamp_diff_micros,
        wnd_size,
        payload,
        sack_data,
        remote_addr,
    ) -> "UtpPacket":
        """Create a packet; the SACK extension flag follows ``sack_data``."""
        header = UtpHeader(
            packet_type=_as_packet_type(packet_type),
            connection_id=connection_id,
            timestamp_micros=timestamp_micros,
            timestamp_diff_micros=timestamp_diff_micros,
            wnd_size=wnd_size,
            seq_nr=seq_nr,
            ack_nr=ack_nr,
            extension=EXTENSION_SACK if sack_data is not None else EXTENSION_NONE,
        )
        return cls(
            header=header,
            payload=bytes(payload),
            sack_data=None if sack_data is None else bytes(sack_data),
            remote_addr=remote_addr,
        )

    @classmethod
    def syn(cls, connection_id, seq_nr, timestamp_micros, wnd_size, remote_addr) -> "UtpPacket":
        """A SYN packet: ack number and timestamp difference are zero."""
        return cls.build(
            PacketType.SYN, connection_id, seq_nr, 0, timestamp_micros, 0,
            wnd_size, b"", None, remote_addr,
        )

    @classmethod
    def data(
        cls,
        connection_id,
        seq_nr,
        ack_nr,
        timestamp_micros,
        timestamp_diff_micros,
        wnd_size,
        payload,
        sack_data,
        remote_addr,
    ) -> "UtpPacket":
        return cls.build(
            PacketType.DATA, connection_id, seq_nr, ack_nr, timestamp_micros,
            timestamp_diff_micros, wnd_size, payload, sack_data, remote_addr,
        )

    @classmethod
    def ack(
        cls,
        connection_id,
        seq_nr,
        ack_nr,
        timestamp_micros,
        timestamp_diff_micros,
        wnd_size,
        sack_data,
        remote_addr,
    ) -> "UtpPacket":
        """A STATE packet with no payload."""
        return cls.build(
            PacketType.STATE, connection_id, seq_nr, ack_nr, timestamp_micros,
            timestamp_diff_micros, wnd_size, b"", sack_data, remote_addr,
        )

    @classmethod
    def fin(
        cls,
        connection_id,
        seq_nr,
        ack_nr,
        timestamp_micros,
        timestamp_diff_micros,
        wnd_size,
        remote_addr,
    ) -> "UtpPacket":
        return cls.build(
            PacketType.FIN, connection_id, seq_nr, ack_nr, timestamp_micros,
            timestamp_diff_micros, wnd_size, b"", None, remote_addr,
        )

    @classmethod
    def reset(
        cls,
        connection_id,
        seq_nr,
        ack_nr,
        timestamp_micros,
        timestamp_diff_micros,
        wnd_size,
        remote_addr,
    ) -> "UtpPacket":
        return cls.build(
            PacketType.RESET, connection_id, seq_nr, ack_nr, timestamp_micros,
            timestamp_diff_micros, wnd_size, b"", None, remote_addr,
        )