"""Reed-Solomon erasure coding over GF(2^8) with a systematic Vandermonde matrix."""

from __future__ import annotations

from typing import Optional, Sequence

_POLYNOMIAL = 0x11D


def _build_tables() -> tuple[list[int], list[int]]:
    exp = [0] * 510
    log = [0] * 256
    value = 1
    for power in range(255):
        exp[power] = value
        log[value] = power
        value <<= 1
        if value & 0x100:
            value ^= _POLYNOMIAL
    for power in range(255, 510):
        exp[power] = exp[power - 255]
    return exp, log


_EXP, _LOG = _build_tables()


def _mul(a: int, b: int) -> int:
    if a == 0 or b == 0:
        return 0
    return _EXP[_LOG[a] + _LOG[b]]


def _inverse(a: int) -> int:
    if a == 0:
        raise ZeroDivisionError("zero has no inverse in GF(2^8)")
    return _EXP[255 - _LOG[a]]


def _power(a: int, n: int) -> int:
    if n == 0:
        return 1
    if a == 0:
        return 0
    return _EXP[(_LOG[a] * n) % 255]


_MUL_TABLES = [bytes(_mul(c, x) for x in range(256)) for c in range(256)]


class ReedSolomonError(ValueError):
    """Raised for invalid shard layouts or unrecoverable data."""


def _invert(matrix: list[list[int]]) -> list[list[int]]:
    size = len(matrix)
    work = [list(row) + [int(i == j) for j in range(size)] for i, row in enumerate(matrix)]
    for col in range(size):
        pivot = next((r for r in range(col, size) if work[r][col]), None)
        if pivot is None:
            raise ReedSolomonError("matrix is singular")
        work[col], work[pivot] = work[pivot], work[col]
        scale = _inverse(work[col][col])
        work[col] = [_mul(scale, v) for v in work[col]]
        for r in range(size):
            factor = work[r][col]
            if r != col and factor:
                work[r] = [v ^ _mul(factor, p) for v, p in zip(work[r], work[col])]
    return [row[size:] for row in work]


def _multiply(left: list[list[int]], right: list[list[int]]) -> list[list[int]]:
    columns = list(zip(*right))
    result = []
    for row in left:
        out = []
        for column in columns:
            acc = 0
            for a, b in zip(row, column):
                acc ^= _mul(a, b)
            out.append(acc)
        result.append(out)
    return result


def _combine(row: Sequence[int], shards: Sequence[bytes], size: int) -> bytes:
    acc = 0
    for coefficient, shard in zip(row, shards):
        if coefficient:
            acc ^= int.from_bytes(shard.translate(_MUL_TABLES[coefficient]), "little")
    return acc.to_bytes(size, "little")


class ReedSolomon:
    """Encoder producing parity shards and rebuilding lost shards."""

    def __init__(self, data_shards: int, parity_shards: int):
        if data_shards <= 0 or parity_shards < 0:
            raise ReedSolomonError(
                f"invalid shard numbers: {data_shards} data, {parity_shards} parity"
            )
        if data_shards + parity_shards > 256:
            raise ReedSolomonError("at most 256 shards are supported")
        self.data_shards = data_shards
        self.parity_shards = parity_shards
        self.total_shards = data_shards + parity_shards
        vandermonde = [
            [_power(r, c) for c in range(data_shards)] for r in range(self.total_shards)
        ]
        top = _invert(vandermonde[:data_shards])
        self._matrix = _multiply(vandermonde, top)

    def _check_sizes(self, shards: Sequence[bytes]) -> int:
        sizes = {len(shard) for shard in shards}
        if len(sizes) != 1:
            raise ReedSolomonError("shards have different sizes")
        size = sizes.pop()
        if size == 0:
            raise ReedSolomonError("shards contain no data")
        return size

    def encode(self, shards: Sequence[bytes]) -> list[bytes]:
        """Return data shards followed by freshly computed parity shards.

        ``shards`` holds either just the data shards or all shards, in which case
        the parity entries are ignored.
        """
        shards = list(shards)
        if len(shards) not in (self.data_shards, self.total_shards):
            raise ReedSolomonError(
                f"expected {self.data_shards} or {self.total_shards} shards, got {len(shards)}"
            )
        data = [bytes(shard) for shard in shards[: self.data_shards]]
        size = self._check_sizes(data)
        parity = [_combine(row, data, size) for row in self._matrix[self.data_shards:]]
        return data + parity

    def reconstruct(self, shards: Sequence[Optional[bytes]]) -> list[bytes]:
        """Return all shards, rebuilding those given as None or empty."""
        shards = list(shards)
        if len(shards) != self.total_shards:
            raise ReedSolomonError(f"expected {self.total_shards} shards, got {len(shards)}")
        present = [i for i, shard in enumerate(shards) if shard]
        if len(present) < self.data_shards:
            raise ReedSolomonError(
                f"too few shards: {len(present)} present, {self.data_shards} needed"
            )
        size = self._check_sizes([shards[i] for i in present])
        if len(present) == self.total_shards:
            return [bytes(shard) for shard in shards]

        chosen = present[: self.data_shards]
        sub_shards = [bytes(shards[i]) for i in chosen]
        decode = _invert([self._matrix[i] for i in chosen])
        data = [
            bytes(shards[i]) if shards[i] else _combine(decode[i], sub_shards, size)
            for i in range(self.data_shards)
        ]
        parity = [
            bytes(shards[r]) if shards[r] else _combine(self._matrix[r], data, size)
            for r in range(self.data_shards, self.total_shards)
        ]
        return data + parity