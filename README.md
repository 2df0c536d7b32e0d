# blacktorrent

This package holds the building blocks of a uTP (Micro Transport Protocol,
BEP-29) connection. It is written in Python and needs no third-party
libraries.

- `blacktorrent.packet` builds and parses uTP packets. It covers the 20-byte
  big-endian header, the selective-ACK (SACK) extension and the payload.
- `blacktorrent.reliability` does the bookkeeping for packets that have been
  sent:
  - it processes cumulative and selective ACKs;
  - it estimates the round-trip time and the retransmission timeout;
  - it spots duplicate ACKs for fast retransmit;
  - it buffers the sequence numbers of packets that arrive out of order.

## Installation

```
pip install .
```

To install the test dependencies as well and run the tests:

```
pip install .[test]
pytest
```

## Packets

```python
from blacktorrent.packet import PacketType, UtpPacket

addr = ("127.0.0.1", 8080)

pkt = UtpPacket.data(
    connection_id=12345, seq_nr=1, ack_nr=2,
    timestamp_micros=1_000_000, timestamp_diff_micros=50_000,
    wnd_size=65535, payload=b"\x01\x02\x03", sack_data=None,
    remote_addr=addr,
)
wire = pkt.to_bytes()

parsed = UtpPacket.from_bytes(wire, addr)
assert parsed.header.packet_type is PacketType.DATA
assert parsed.payload == b"\x01\x02\x03"
```

Packets are built with one of these constructors:

- `UtpPacket.syn`
- `UtpPacket.data`
- `UtpPacket.ack`, which makes a STATE packet
- `UtpPacket.fin`
- `UtpPacket.reset`
- `UtpPacket.build`, which takes the packet type as an argument

If `sack_data` is given, the header's extension field is set to the SACK
extension.

`UtpPacket.total_size` is the size on the wire, and `UtpPacket.payload_size`
is the length of the payload. `UtpHeader.to_bytes` and
`UtpHeader.from_bytes` encode and decode the header on its own.

`PacketError` is a subclass of `ValueError`. It is raised in these cases:

- the data is too short for a header;
- the header has a version other than 1;
- the SACK extension header or its data is cut short;
- a header field is out of range when the packet is encoded;
- the SACK data is longer than 255 bytes when the packet is encoded.

## Reliability

```python
from blacktorrent.reliability import ReliabilityManager

rm = ReliabilityManager()
unacked = {}

rm.on_packet_sent(pkt, 1_000_000, unacked)
acked_bytes = rm.process_ack(1, None, unacked, 1_010_000)
```

`unacked` maps sequence numbers to `SentPacketInfo` records. Each record
carries an FNV-1a checksum of the packet bytes, which `verify_integrity`
checks. A packet whose checksum no longer matches is not counted as
acknowledged by a cumulative ACK.

`ReliabilityManager` works as follows:

- The RTT comes from packets that were sent only once, and is smoothed by
  `RttEstimator`. After each sample the RTO is recomputed and kept between
  300 ms and 60 s. It starts at 1 s.
- After three duplicate ACKs, the packet that follows the ACK number is
  flagged for fast retransmit. `check_timeouts` returns the flagged sequence
  number and clears it. `set_needs_retransmit` flags a sequence number by
  hand.
- `buffer_ooo_packet` records packets that arrived out of order and keeps at
  most 32 of them, dropping the lowest.
- `sack_data` builds a 4-byte SACK bitmap from the buffered packets.
- `update_cumulative_ack` advances the ACK number past buffered packets that
  follow it without a gap.
- `set_needs_ack` and `ack_sent` set and clear the `needs_ack` flag.

`seq_eq_or_greater_than` compares 16-bit sequence numbers that wrap around.

## What this package does not do

This package only encodes packets and keeps track of them. It does not
include:

- a socket;
- a connection state machine;
- congestion control;
- a listener;
- a stream interface.

It opens no network connections. To build a working uTP transport, combine
these pieces with your own UDP I/O and timers.