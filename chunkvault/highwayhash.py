"""HighwayHash-256, the keyed hash used to check erasure-coded shards."""

from __future__ import annotations

import struct

_MASK = (1 << 64) - 1

_INIT0 = (
    0xDBE6D5D5FE4CCE2F,
    0xA4093822299F31D0,
    0x13198A2E03707344,
    0x243F6A8885A308D3,
)
_INIT1 = (
    0x3BD39E10CB0EF593,
    0xC0ACF169B5F18A8C,
    0xBE5466CF34E90C6C,
    0x452821E638D01377,
)

KEY_SIZE = 32
PACKET_SIZE = 32


def _swap_halves(value: int) -> int:
    return ((value >> 32) | (value << 32)) & _MASK


def _zipper(v1: int, v0: int) -> tuple[int, int]:
    """Return the increments for (add1, add0) produced by the zipper merge."""
    add0 = (
        (((v0 & 0xFF000000) | (v1 & 0xFF00000000)) >> 24)
        | (((v0 & 0xFF0000000000) | (v1 & 0xFF000000000000)) >> 16)
        | (v0 & 0xFF0000)
        | ((v0 & 0xFF00) << 32)
        | ((v1 & 0xFF00000000000000) >> 8)
        | (v0 << 56)
    ) & _MASK
    add1 = (
        (((v1 & 0xFF000000) | (v0 & 0xFF00000000)) >> 24)
        | (v1 & 0xFF0000)
        | ((v1 & 0xFF0000000000) >> 16)
        | ((v1 & 0xFF00) << 24)
        | ((v0 & 0xFF000000000000) >> 8)
        | ((v1 & 0xFF) << 48)
        | (v0 & 0xFF00000000000000)
    ) & _MASK
    return add1, add0


def _rotate32(value: int, count: int) -> int:
    if count == 0:
        return value
    low = value & 0xFFFFFFFF
    high = value >> 32
    low = ((low << count) & 0xFFFFFFFF) | (low >> (32 - count))
    high = ((high << count) & 0xFFFFFFFF) | (high >> (32 - count))
    return (high << 32) | low


class _State:
    __slots__ = ("v0", "v1", "mul0", "mul1")

    def __init__(self, v0, v1, mul0, mul1):
        self.v0 = list(v0)
        self.v1 = list(v1)
        self.mul0 = list(mul0)
        self.mul1 = list(mul1)

    def clone(self) -> "_State":
        return _State(self.v0, self.v1, self.mul0, self.mul1)

    def update(self, lanes) -> None:
        v0, v1, mul0, mul1 = self.v0, self.v1, self.mul0, self.mul1
        for i, lane in enumerate(lanes):
            v1[i] = (v1[i] + mul0[i] + lane) & _MASK
            mul0[i] ^= (v1[i] & 0xFFFFFFFF) * (v0[i] >> 32)
            v0[i] = (v0[i] + mul1[i]) & _MASK
            mul1[i] ^= (v0[i] & 0xFFFFFFFF) * (v1[i] >> 32)
        for target, source in ((v0, v1), (v1, v0)):
            for hi, lo in ((1, 0), (3, 2)):
                add1, add0 = _zipper(source[hi], source[lo])
                target[hi] = (target[hi] + add1) & _MASK
                target[lo] = (target[lo] + add0) & _MASK

    def update_packet(self, packet, offset: int = 0) -> None:
        self.update(struct.unpack_from("<4Q", packet, offset))

    def update_remainder(self, data: bytes) -> None:
        size_mod32 = len(data)
        size_mod4 = size_mod32 & 3
        rem_off = size_mod32 & ~3
        for i in range(4):
            self.v0[i] = (self.v0[i] + (size_mod32 << 32) + size_mod32) & _MASK
            self.v1[i] = _rotate32(self.v1[i], size_mod32)
        packet = bytearray(PACKET_SIZE)
        packet[:rem_off] = data[:rem_off]
        if size_mod32 & 16:
            for i in range(4):
                packet[28 + i] = data[rem_off + i + size_mod4 - 4]
        elif size_mod4:
            packet[16] = data[rem_off]
            packet[17] = data[rem_off + (size_mod4 >> 1)]
            packet[18] = data[rem_off + size_mod4 - 1]
        self.update_packet(packet)

    def permute_and_update(self) -> None:
        v0 = self.v0
        self.update(
            (
                _swap_halves(v0[2]),
                _swap_halves(v0[3]),
                _swap_halves(v0[0]),
                _swap_halves(v0[1]),
            )
        )

    def finalize256(self) -> bytes:
        for _ in range(10):
            self.permute_and_update()
        v0, v1, mul0, mul1 = self.v0, self.v1, self.mul0, self.mul1
        words = []
        for hi, lo in ((1, 0), (3, 2)):
            a3 = (v1[hi] + mul1[hi]) & 0x3FFFFFFFFFFFFFFF
            a2 = (v1[lo] + mul1[lo]) & _MASK
            a1 = (v0[hi] + mul0[hi]) & _MASK
            a0 = (v0[lo] + mul0[lo]) & _MASK
            m1 = a1 ^ (((a3 << 1) | (a2 >> 63)) & _MASK) ^ (((a3 << 2) | (a2 >> 62)) & _MASK)
            m0 = a0 ^ ((a2 << 1) & _MASK) ^ ((a2 << 2) & _MASK)
            words.extend((m0, m1))
        return struct.pack("<4Q", *words)


class HighwayHash:
    """Incremental HighwayHash with a 256-bit digest, in the style of hashlib."""

    digest_size = 32
    block_size = PACKET_SIZE

    def __init__(self, key):
        key = bytes(key)
        if len(key) != KEY_SIZE:
            raise ValueError(f"HighwayHash key must be {KEY_SIZE} bytes, not {len(key)}")
        words = struct.unpack("<4Q", key)
        self._state = _State(
            (init ^ word for init, word in zip(_INIT0, words)),
            (init ^ _swap_halves(word) for init, word in zip(_INIT1, words)),
            _INIT0,
            _INIT1,
        )
        self._pending = bytearray()

    def update(self, data) -> None:
        """Feed more data into the hash."""
        self._pending += data
        full = len(self._pending) - len(self._pending) % PACKET_SIZE
        if full:
            for offset in range(0, full, PACKET_SIZE):
                self._state.update_packet(self._pending, offset)
            del self._pending[:full]

    def digest(self) -> bytes:
        """Return the 32-byte digest of everything fed so far."""
        state = self._state.clone()
        if self._pending:
            state.update_remainder(bytes(self._pending))
        return state.finalize256()

    def hexdigest(self) -> str:
        return self.digest().hex()

    def copy(self) -> "HighwayHash":
        other = HighwayHash.__new__(HighwayHash)
        other._state = self._state.clone()
        other._pending = bytearray(self._pending)
        return other


def highway_hash_256(key, data) -> bytes:
    """Return the HighwayHash-256 digest of ``data`` under ``key``."""
    hasher = HighwayHash(key)
    hasher.update(data)
    return hasher.digest()