"""Reliable delivery for uTP: RTT estimation, ACK/SACK handling and retransmission."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, MutableMapping, Optional, Set

from blacktorrent.packet import PacketType, UtpPacket

logger = logging.getLogger(__name__)

INITIAL_RTO_MICROS = 1_000_000
MAX_RTO_MICROS = 60_000_000

DUPLICATE_ACKS_BEFORE_RESEND = 3
MAX_RETRANSMISSIONS = 5
MAX_OOO_PACKETS = 32
MIN_ALLOWED_RTO_MICROS = 300_000
MAX_RTT_SAMPLE_MICROS = 30_000_000

_SEQ_MASK = 0xFFFF
_U32_MASK = 0xFFFFFFFF


def seq_eq_or_greater_than(a: int, b: int) -> bool:
    """True if sequence number ``a`` equals or follows ``b`` in 16-bit wrapping order."""
    return ((a - b) & _SEQ_MASK) < 0x8000


def _fnv1a(data: bytes) -> int:
    digest = 0x811C9DC5
    for byte in data:
        digest ^= byte
        digest = (digest * 0x01000193) & _U32_MASK
    return digest


@dataclass
class SentPacketInfo:
    """Bookkeeping for a packet that has been sent but not yet acknowledged."""

    seq_nr: int
    sent_at_micros: int
    size_bytes: int
    transmissions: int
    packet_data: bytes
    is_syn: bool = False
    need_resend: bool = False
    _checksum: int = field(init=False, repr=False, default=0)

    def __post_init__(self) -> None:
        self.reseal()

    def reseal(self) -> None:
        """Record the checksum of the current packet data."""
        self._checksum = _fnv1a(self.packet_data)

    def verify_integrity(self) -> bool:
        """True if the packet data still matches its recorded checksum."""
        return _fnv1a(self.packet_data) == self._checksum


class _TripleRedundant:
    """A value stored three times and read by majority vote."""

    def __init__(self, value: int = 0) -> None:
        self._copies: List[int] = [value, value, value]

    @property
    def value(self) -> int:
        first, second, third = self._copies
        if first == second or first == third:
            return first
        if second == third:
            return second
        return third

    @value.setter
    def value(self, new_value: int) -> None:
        self._copies = [new_value, new_value, new_value]

    def is_consistent(self) -> bool:
        first, second, third = self._copies
        return first == second or second == third or first == third

    def repair(self) -> None:
        self.value = self.value


class RttEstimator:
    """Smoothed round-trip time and variance, as in RFC 6298."""

    ALPHA = 1.0 / 8.0
    BETA = 1.0 / 4.0

    def __init__(self) -> None:
        self.srtt_micros = 0
        self.rttvar_micros = 0
        self.min_rtt_micros = _U32_MASK
        self.first_sample = True

    def update(self, rtt_sample_micros: int) -> None:
        """Fold one RTT sample into the estimate."""
        if self.first_sample:
            self.srtt_micros = rtt_sample_micros
            self.rttvar_micros = rtt_sample_micros // 2
            self.first_sample = False
        else:
            delta = abs(self.srtt_micros - rtt_sample_micros)
            self.rttvar_micros = int(
                (1.0 - self.BETA) * self.rttvar_micros + self.BETA * delta
            )
            self.srtt_micros = int(
                (1.0 - self.ALPHA) * self.srtt_micros + self.ALPHA * rtt_sample_micros
            )
        self.min_rtt_micros = min(self.min_rtt_micros, rtt_sample_micros)

    def rto_micros(self) -> int:
        """Retransmission timeout before clamping."""
        if self.first_sample:
            return INITIAL_RTO_MICROS
        return self.srtt_micros + 4 * self.rttvar_micros


class ReliabilityManager:
    """Tracks acknowledgements, out-of-order arrivals and retransmission needs."""

    def __init__(self) -> None:
        self._rtt = RttEstimator()
        self.current_rto = INITIAL_RTO_MICROS
        self._received_ooo_seqs: Set[int] = set()
        self._cumulative_ack = _TripleRedundant(0)
        self._duplicate_ack_count = 0
        self._last_acked_for_dup = _TripleRedundant(0)
        self.needs_ack = False
        self._pending_retransmit: Optional[int] = None
        self._last_timeout_check_micros = 0

    @property
    def latest_rtt_micros(self) -> int:
        return self._rtt.srtt_micros

    @property
    def min_rtt_micros(self) -> int:
        return self._rtt.min_rtt_micros

    @property
    def cumulative_ack_nr(self) -> int:
        return self._cumulative_ack.value

    @property
    def received_ooo_seqs(self) -> frozenset:
        return frozenset(self._received_ooo_seqs)

    def _calculate_rto(self) -> int:
        return min(max(self._rtt.rto_micros(), MIN_ALLOWED_RTO_MICROS), MAX_RTO_MICROS)

    def on_packet_sent(
        self,
        packet: UtpPacket,
        sent_at_micros: int,
        unacked_packets: MutableMapping[int, SentPacketInfo],
    ) -> None:
        """Record a (re)transmission of ``packet`` in ``unacked_packets``."""
        seq_nr = packet.header.seq_nr
        raw = packet.to_bytes()
        existing = unacked_packets.get(seq_nr)
        if existing is not None:
            existing.sent_at_micros = sent_at_micros
            existing.transmissions += 1
            existing.need_resend = False
            existing.packet_data = raw
            existing.reseal()
            return
        unacked_packets[seq_nr] = SentPacketInfo(
            seq_nr=seq_nr,
            sent_at_micros=sent_at_micros,
            size_bytes=len(raw),
            transmissions=1,
            packet_data=raw,
            is_syn=packet.header.packet_type == PacketType.SYN,
            need_resend=False,
        )

    def process_ack(
        self,
        ack_nr: int,
        sack_data: Optional[bytes],
        unacked_packets: Dict[int, SentPacketInfo],
        current_ts_micros: int,
    ) -> int:
        """Apply a cumulative ACK and optional SACK; return the bytes newly acknowledged."""
        newly_acked = 0
        acked = [
            seq
            for seq, info in unacked_packets.items()
            if seq_eq_or_greater_than(ack_nr, seq) and info.verify_integrity()
        ]
        for seq in acked:
            info = unacked_packets.pop(seq)
            newly_acked += info.size_bytes
            if info.transmissions == 1:
                sample = max(current_ts_micros - info.sent_at_micros, 0) & _U32_MASK
                self._rtt.update(min(sample, MAX_RTT_SAMPLE_MICROS))
                self.current_rto = self._calculate_rto()

        if sack_data:
            sack_base = (ack_nr + 2) & _SEQ_MASK
            bitmask = 0
            for shift, byte in enumerate(sack_data[:4]):
                bitmask |= byte << (shift * 8)
            for bit in range(32):
                if bitmask & (1 << bit):
                    info = unacked_packets.pop((sack_base + bit) & _SEQ_MASK, None)
                    if info is not None and info.verify_integrity():
                        newly_acked += info.size_bytes

        if ack_nr == self._last_acked_for_dup.value and unacked_packets:
            self._duplicate_ack_count += 1
            if self._duplicate_ack_count >= DUPLICATE_ACKS_BEFORE_RESEND:
                next_seq = (ack_nr + 1) & _SEQ_MASK
                info = unacked_packets.get(next_seq)
                if (
                    info is not None
                    and info.transmissions < MAX_RETRANSMISSIONS
                    and not info.need_resend
                ):
                    info.need_resend = True
                    self._duplicate_ack_count = 0
                    self._pending_retransmit = next_seq
        else:
            self._duplicate_ack_count = 0
            self._last_acked_for_dup.value = ack_nr
        return newly_acked

    def check_timeouts(self, current_ts_micros: int) -> Optional[int]:
        """Return and clear the sequence number flagged for retransmission, if any."""
        self._last_timeout_check_micros = current_ts_micros
        seq, self._pending_retransmit = self._pending_retransmit, None
        if seq is not None:
            logger.debug("check_timeouts: retransmit seq %d", seq)
        return seq

    def set_needs_retransmit(self, seq_nr: int) -> None:
        """Flag ``seq_nr`` so the next timeout check reports it."""
        logger.debug("set_needs_retransmit: seq %d", seq_nr)
        self._pending_retransmit = seq_nr

    def buffer_ooo_packet(self, packet: UtpPacket) -> None:
        """Remember an out-of-order arrival, dropping the lowest if the buffer is full."""
        if len(self._received_ooo_seqs) >= MAX_OOO_PACKETS:
            self._received_ooo_seqs.discard(min(self._received_ooo_seqs))
        self._received_ooo_seqs.add(packet.header.seq_nr)

    def sack_data(self, current_ack_nr: int) -> Optional[bytes]:
        """Build a 4-byte SACK bitmap relative to ``current_ack_nr + 2``, or None."""
        if not self._received_ooo_seqs:
            return None
        sack_base = (current_ack_nr + 2) & _SEQ_MASK
        bits = 0
        for seq in self._received_ooo_seqs:
            if seq_eq_or_greater_than(seq, sack_base):
                diff = (seq - sack_base) & _SEQ_MASK
                if diff < 32:
                    bits |= 1 << diff
        return bits.to_bytes(4, "big") if bits else None

    def update_cumulative_ack(self, current_ack_nr: int) -> int:
        """Advance the cumulative ACK over consecutive buffered packets."""
        while (current_ack_nr + 1) & _SEQ_MASK in self._received_ooo_seqs:
            current_ack_nr = (current_ack_nr + 1) & _SEQ_MASK
            self._received_ooo_seqs.remove(current_ack_nr)
        self._cumulative_ack.value = current_ack_nr
        return current_ack_nr

    def set_needs_ack(self) -> None:
        self.needs_ack = True

    def ack_sent(self) -> None:
        self.needs_ack = False