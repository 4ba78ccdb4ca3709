"""XOR (Gorilla) chunk encoding as used by Prometheus and Thanos.

Layout: a 2-byte big-endian sample count followed by a bit stream. The
first sample stores a signed varint timestamp and the raw float bits, the
second an unsigned varint timestamp delta, and every later sample a
delta-of-delta. Values after the first are XORed with their predecessor
and stored as the meaningful bits only.
"""
from typing import Iterable, Iterator, Optional
import struct

from obslytics.errors import DecodeError
from obslytics.series import EncodedChunk, Sample, TimeRange

ENCODING_XOR = 0

MAX_SAMPLES_PER_CHUNK = 0xFFFF

# (prefix, prefix width, payload width) for delta-of-delta timestamps
_DOD_BUCKETS = [
    (0b10, 2, 14),
    (0b110, 3, 17),
    (0b1110, 4, 20),
]

_MASK64 = (1 << 64) - 1


def _float_bits(v: float) -> int:
    return int.from_bytes(struct.pack(">d", v), "big")


def _bits_float(bits: int) -> float:
    return struct.unpack(">d", bits.to_bytes(8, "big"))[0]


def _bit_range(x: int, nbits: int) -> bool:
    return -((1 << (nbits - 1)) - 1) <= x <= 1 << (nbits - 1)


class BitWriter:
    """Append-only bit stream."""

    def __init__(self, prefix: bytes = b""):
        self.buf = bytearray(prefix)
        self._free = 0  # unused bits in the last byte

    def write_bit(self, bit: int):
        if self._free == 0:
            self.buf.append(0)
            self._free = 8
        if bit:
            self.buf[-1] |= 1 << (self._free - 1)
        self._free -= 1

    def write_bits(self, value: int, nbits: int):
        for i in range(nbits - 1, -1, -1):
            self.write_bit((value >> i) & 1)

    def write_uvarint(self, x: int):
        while x >= 0x80:
            self.write_bits((x & 0x7F) | 0x80, 8)
            x >>= 7
        self.write_bits(x, 8)

    def write_varint(self, x: int):
        ux = (x << 1) if x >= 0 else ((~x) << 1) | 1
        self.write_uvarint(ux)


class BitReader:
    """Reads big-endian bit fields from a byte string."""

    def __init__(self, data: bytes):
        self._value = int.from_bytes(data, "big")
        self._size = len(data) * 8
        self._pos = 0

    def read_bits(self, nbits: int) -> int:
        if self._pos + nbits > self._size:
            raise DecodeError(
                f"Unexpected end of chunk data: need {nbits} bits at offset {self._pos} of {self._size}"
            )
        self._pos += nbits
        return (self._value >> (self._size - self._pos)) & ((1 << nbits) - 1)

    @property
    def remaining(self) -> int:
        return self._size - self._pos

    def read_bit(self) -> int:
        return self.read_bits(1)

    def read_uvarint(self) -> int:
        x = 0
        shift = 0
        for i in range(10):
            b = self.read_bits(8)
            if b < 0x80:
                if i == 9 and b > 1:
                    break
                return x | (b << shift)
            x |= (b & 0x7F) << shift
            shift += 7
        raise DecodeError("Varint overflows 64 bits")

    def read_varint(self) -> int:
        ux = self.read_uvarint()
        x = ux >> 1
        if ux & 1:
            x = ~x
        return x


class XORChunk:
    """Encoder for a single XOR chunk."""

    def __init__(self):
        self._w = BitWriter(b"\x00\x00")
        self._num = 0
        self._first_t = 0
        self._t = 0
        self._t_delta = 0
        self._v_bits = 0
        self._leading = 0xFF
        self._trailing = 0

    @property
    def num_samples(self) -> int:
        return self._num

    def append(self, t: int, v: float):
        """Append a sample; timestamps must be strictly increasing."""
        if self._num >= MAX_SAMPLES_PER_CHUNK:
            raise ValueError(f"Chunk is full ({MAX_SAMPLES_PER_CHUNK} samples)")
        if self._num > 0 and t <= self._t:
            raise ValueError(f"Out of order sample: {t} after {self._t}")

        v_bits = _float_bits(v)
        if self._num == 0:
            self._first_t = t
            self._w.write_varint(t)
            self._w.write_bits(v_bits, 64)
        elif self._num == 1:
            self._t_delta = t - self._t
            self._w.write_uvarint(self._t_delta)
            self._write_value(v_bits)
        else:
            t_delta = t - self._t
            self._write_dod(t_delta - self._t_delta)
            self._t_delta = t_delta
            self._write_value(v_bits)

        self._t = t
        self._v_bits = v_bits
        self._num += 1

    def _write_dod(self, dod: int):
        if dod == 0:
            self._w.write_bit(0)
            return
        for prefix, width, size in _DOD_BUCKETS:
            if _bit_range(dod, size):
                self._w.write_bits(prefix, width)
                self._w.write_bits(dod & ((1 << size) - 1), size)
                return
        self._w.write_bits(0b1111, 4)
        self._w.write_bits(dod & _MASK64, 64)

    def _write_value(self, v_bits: int):
        delta = v_bits ^ self._v_bits
        if delta == 0:
            self._w.write_bit(0)
            return
        self._w.write_bit(1)

        leading = 64 - delta.bit_length()
        trailing = (delta & -delta).bit_length() - 1
        # Leading zero count is stored in 5 bits.
        if leading >= 32:
            leading = 31

        if self._leading != 0xFF and leading >= self._leading and trailing >= self._trailing:
            self._w.write_bit(0)
            self._w.write_bits(delta >> self._trailing, 64 - self._leading - self._trailing)
            return

        self._leading, self._trailing = leading, trailing
        self._w.write_bit(1)
        self._w.write_bits(leading, 5)
        sigbits = 64 - leading - trailing
        # 64 significant bits wraps to 0 in the 6-bit field
        self._w.write_bits(sigbits & 0x3F, 6)
        self._w.write_bits(delta >> trailing, sigbits)

    def bytes(self) -> bytes:
        out = bytearray(self._w.buf)
        out[0:2] = self._num.to_bytes(2, "big")
        return bytes(out)

    def to_encoded(self) -> EncodedChunk:
        """Wrap the current contents together with their time bounds."""
        return EncodedChunk(
            min_t=self._first_t, max_t=self._t, encoding=ENCODING_XOR, data=self.bytes()
        )


def iter_xor_samples(data: bytes) -> Iterator[Sample]:
    """Lazily decode every sample of an XOR chunk, in stored order."""
    if len(data) < 2:
        raise DecodeError(f"Chunk too short: {len(data)} bytes")
    num = int.from_bytes(data[:2], "big")
    r = BitReader(data[2:])

    t = 0
    t_delta = 0
    v_bits = 0
    leading = 0
    trailing = 0

    for i in range(num):
        if i == 0:
            t = r.read_varint()
            v_bits = r.read_bits(64)
            yield Sample(t, _bits_float(v_bits))
            continue

        if i == 1:
            t_delta = r.read_uvarint()
        else:
            t_delta += _read_dod(r)
        t += t_delta

        if r.read_bit():
            if r.read_bit():
                leading = r.read_bits(5)
                mbits = r.read_bits(6)
                if mbits == 0:
                    mbits = 64
                trailing = 64 - leading - mbits
            else:
                mbits = 64 - leading - trailing
            v_bits ^= r.read_bits(mbits) << trailing

        yield Sample(t, _bits_float(v_bits))

    # Only the zero padding of the last byte may follow the final sample.
    left = r.remaining
    if left > 7 or (left and r.read_bits(left)):
        raise DecodeError(f"Chunk holds more data than its {num} samples: {left} bits left over")


def _read_dod(r: BitReader) -> int:
    prefix = 0
    for _ in range(4):
        prefix <<= 1
        if r.read_bit() == 0:
            break
        prefix |= 1

    if prefix == 0:
        return 0
    for bucket_prefix, _, size in _DOD_BUCKETS:
        if prefix == bucket_prefix:
            bits = r.read_bits(size)
            if bits > 1 << (size - 1):
                bits -= 1 << size
            return bits
    bits = r.read_bits(64)
    if bits >= 1 << 63:
        bits -= 1 << 64
    return bits


def decode_chunk(chunk: EncodedChunk, time_range: TimeRange) -> Iterator[Sample]:
    """Decode one chunk, dropping samples outside the inclusive range.

    Restartable: each call decodes from the start of the chunk.
    """
    return decode_series([chunk], time_range)


def decode_series(
    chunks: Iterable[EncodedChunk],
    time_range: TimeRange,
    series_key: Optional[str] = None,
) -> Iterator[Sample]:
    """Decode the chunks of one series into one ordered sample sequence.

    Timestamps must strictly increase inside a chunk and never decrease
    across chunks; either violation is a DecodeError.
    """
    where = f" in series {series_key}" if series_key else ""
    last_t: Optional[int] = None

    for idx, chunk in enumerate(chunks):
        if chunk.encoding != ENCODING_XOR:
            raise DecodeError(f"Unsupported chunk encoding {chunk.encoding}{where}")
        if chunk.max_t < time_range.min_t:
            # Chunk bounds from the store are trusted; a skipped chunk still
            # counts towards the overlap check of the next one.
            last_t = chunk.max_t if last_t is None else max(last_t, chunk.max_t)
            continue

        chunk_last: Optional[int] = None
        for sample in iter_xor_samples(chunk.data):
            if chunk_last is not None and sample.t <= chunk_last:
                raise DecodeError(
                    f"Non-increasing timestamp {sample.t} after {chunk_last} in chunk {idx}{where}"
                )
            if chunk_last is None and last_t is not None and sample.t < last_t:
                raise DecodeError(
                    f"Chunk {idx} overlaps previous chunk: {sample.t} < {last_t}{where}"
                )
            chunk_last = sample.t

            if sample.t < time_range.min_t:
                continue
            if sample.t > time_range.max_t:
                # everything after this is later still
                return
            yield sample

        if chunk_last is not None:
            last_t = chunk_last
