#!/usr/bin/env python3
"""
Counter payload codec
Each datagram carries one signed 32-bit integer in host byte order
"""

import struct

# Native byte order, standard 4-byte size
COUNTER_FORMAT = '=i'
COUNTER_SIZE = struct.calcsize(COUNTER_FORMAT)


def encode_counter(value: int) -> bytes:
    """Pack value into a datagram payload, wrapping like a 32-bit int"""
    wrapped = (value + 0x80000000) % 0x100000000 - 0x80000000
    return struct.pack(COUNTER_FORMAT, wrapped)


def decode_counter(data: bytes) -> int:
    """Unpack a payload; short payloads are zero-filled, extra bytes ignored"""
    chunk = bytes(data[:COUNTER_SIZE]).ljust(COUNTER_SIZE, b'\x00')
    return struct.unpack(COUNTER_FORMAT, chunk)[0]
