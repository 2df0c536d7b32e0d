import pytest

from blacktorrent.packet import PacketType, UtpPacket
from blacktorrent.reliability import (
    DUPLICATE_ACKS_BEFORE_RESEND,
    INITIAL_RTO_MICROS,
    MAX_OOO_PACKETS,
    ReliabilityManager,
    RttEstimator,
    SentPacketInfo,
    _TripleRedundant,
    seq_eq_or_greater_than,
)

ADDR = ("0.0.0.0", 0)


def make_packet(seq_nr, ack_nr=0, packet_type=PacketType.DATA, payload=b""):
    return UtpPacket.build(
        packet_type, 12345, seq_nr, ack_nr, 0, 0, 1000, payload, None, ADDR
    )


@pytest.mark.parametrize(
    "a,b,expected",
    [(3, 1, True), (3, 3, True), (3, 4, False), (1, 0xFFFF, True), (0xFFFF, 1, False)],
)
def test_seq_eq_or_greater_than(a, b, expected):
    assert seq_eq_or_greater_than(a, b) is expected


def test_rtt_estimation_first_sample():
    rm = ReliabilityManager()
    unacked = {}
    rm.on_packet_sent(make_packet(1), 1_000_000, unacked)
    rm.process_ack(1, None, unacked, 1_010_000)
    assert rm.latest_rtt_micros == 10_000
    assert rm.min_rtt_micros == 10_000
    assert rm.current_rto == 300_000


def test_rtt_estimation_multiple_samples():
    rm = ReliabilityManager()
    unacked = {}
    rm.on_packet_sent(make_packet(1), 1_000_000, unacked)
    rm.process_ack(1, None, unacked, 1_010_000)
    rm.on_packet_sent(make_packet(2), 2_000_000, unacked)
    rm.process_ack(2, None, unacked, 2_020_000)
    assert rm.current_rto == 300_000
    assert rm.min_rtt_micros == 10_000


def test_cumulative_ack_processing():
    rm = ReliabilityManager()
    unacked = {}
    now = 1_000_000
    for seq in range(1, 6):
        rm.on_packet_sent(make_packet(seq), now, unacked)
    assert len(unacked) == 5
    acked = rm.process_ack(3, None, unacked, now + 10_000)
    assert len(unacked) == 2
    assert 3 not in unacked
    assert 4 in unacked
    assert acked > 0


def test_selective_ack_processing():
    rm = ReliabilityManager()
    unacked = {}
    now = 1_000_000
    for seq in range(1, 11):
        rm.on_packet_sent(make_packet(seq, payload=bytes(100)), now, unacked)
    sack = bytes([(1 << 0) | (1 << 2) | (1 << 4), 0, 0, 0])
    acked_bytes = rm.process_ack(3, sack, unacked, now + 10_000)
    assert acked_bytes == 720
    assert len(unacked) == 4


def test_fast_retransmit():
    rm = ReliabilityManager()
    unacked = {}
    now = 1_000_000
    for seq in range(1, 6):
        rm.on_packet_sent(make_packet(seq), now, unacked)
    rm.process_ack(1, None, unacked, now + 10_000)
    for _ in range(DUPLICATE_ACKS_BEFORE_RESEND):
        rm.process_ack(1, None, unacked, now + 20_000)
    assert unacked[2].need_resend
    assert rm.check_timeouts(now + 30_000) == 2
    assert rm.check_timeouts(now + 40_000) is None


def test_set_needs_retransmit_reported_once():
    rm = ReliabilityManager()
    rm.set_needs_retransmit(42)
    assert rm.check_timeouts(0) == 42
    assert rm.check_timeouts(1) is None


def test_ooo_packet_buffering():
    rm = ReliabilityManager()
    for seq in (5, 7, 10):
        rm.buffer_ooo_packet(make_packet(seq))
    sack = rm.sack_data(3)
    assert sack is not None
    bits = int.from_bytes(sack, "big")
    assert bits & (1 << 0) == 1 << 0
    assert bits & (1 << 2) == 1 << 2
    assert bits & (1 << 5) == 1 << 5


def test_sack_data_empty_buffer():
    assert ReliabilityManager().sack_data(3) is None


def test_cumulative_ack_advancement():
    rm = ReliabilityManager()
    rm.update_cumulative_ack(5)
    for seq in (7, 8, 10):
        rm.buffer_ooo_packet(make_packet(seq))
    assert rm.update_cumulative_ack(6) == 8
    assert rm.cumulative_ack_nr == 8
    assert rm.received_ooo_seqs == frozenset({10})


def test_retransmission_tracking():
    rm = ReliabilityManager()
    unacked = {}
    now = 1_000_000
    packet = make_packet(1)
    rm.on_packet_sent(packet, now, unacked)
    rm.on_packet_sent(packet, now + 500_000, unacked)
    assert unacked[1].transmissions == 2
    initial_rto = rm.current_rto
    rm.process_ack(1, None, unacked, now + 600_000)
    assert rm.current_rto == initial_rto
    assert rm.current_rto == INITIAL_RTO_MICROS


def test_ooo_buffer_limit():
    rm = ReliabilityManager()
    for seq in range(1, MAX_OOO_PACKETS + 11):
        rm.buffer_ooo_packet(make_packet(seq))
    seqs = rm.received_ooo_seqs
    assert len(seqs) == MAX_OOO_PACKETS
    assert all(seq not in seqs for seq in range(1, 11))
    assert all(seq in seqs for seq in range(MAX_OOO_PACKETS + 1, MAX_OOO_PACKETS + 11))


def test_triple_redundancy():
    value = _TripleRedundant(0)
    value.value = 42
    assert value.value == 42
    value._copies[0] = 99
    assert value.value == 42
    assert value.is_consistent()
    value._copies[1] = 77
    assert value.value == 42
    value.repair()
    assert value._copies == [42, 42, 42]


def test_packet_integrity_checking():
    rm = ReliabilityManager()
    unacked = {}
    rm.on_packet_sent(make_packet(1), 1_000_000, unacked)
    info = unacked[1]
    assert info.verify_integrity()
    corrupted = bytearray(info.packet_data)
    corrupted[5] ^= 0xFF
    info.packet_data = bytes(corrupted)
    assert not info.verify_integrity()
    info.reseal()
    assert info.verify_integrity()


def test_corrupted_packet_not_acked():
    rm = ReliabilityManager()
    unacked = {}
    rm.on_packet_sent(make_packet(1), 1_000_000, unacked)
    unacked[1].packet_data = b"garbage"
    assert rm.process_ack(1, None, unacked, 1_010_000) == 0
    assert 1 in unacked


def test_syn_flag_recorded():
    rm = ReliabilityManager()
    unacked = {}
    rm.on_packet_sent(make_packet(7, packet_type=PacketType.SYN), 0, unacked)
    assert unacked[7].is_syn is True
    assert unacked[7].size_bytes == 20


def test_sent_packet_info_checksum_of_empty_data():
    info = SentPacketInfo(1, 0, 0, 1, b"")
    assert info._checksum == 0x811C9DC5


def test_rtt_estimator_first_sample_and_default_rto():
    est = RttEstimator()
    assert est.rto_micros() == INITIAL_RTO_MICROS
    est.update(10_000)
    assert est.srtt_micros == 10_000
    assert est.rttvar_micros == 5_000
    assert est.rto_micros() == 30_000
    assert est.min_rtt_micros == 10_000


def test_needs_ack_flag():
    rm = ReliabilityManager()
    assert rm.needs_ack is False
    rm.set_needs_ack()
    assert rm.needs_ack is True
    rm.ack_sent()
    assert rm.needs_ack is False