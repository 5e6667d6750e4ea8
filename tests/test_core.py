"""
Core unit tests for container/chunk/token decoding and compression.
"""

import random
import struct
import unittest

import vba_decompress
from vba_decompress import CompressedContainer, CorruptedError


def _chunk(body: bytes, compressed: bool = True, signature_bits: int = 0b011) -> bytes:
    # chunk header: low12 = len(body) - 1; bits 12..14 = signature_bits; bit15 = compressed
    header = ((len(body) - 1) & 0x0FFF) | ((signature_bits & 0x7) << 12)
    if compressed:
        header |= 0x8000
    return struct.pack("<H", header) + body


def _container(*chunks: bytes) -> bytes:
    return b"\x01" + b"".join(chunks)


def _sample_text(lines: int) -> bytes:
    return b"".join(
        f"Sub Test{i % 7}() ' line {i}\r\n    Debug.Print {i * 31 % 97}\r\nEnd Sub\r\n".encode("ascii")
        for i in range(lines)
    )


class TestDecompression(unittest.TestCase):
    def test_single_literal(self):
        self.assertEqual(vba_decompress.decompress(_container(_chunk(b"\x00A"))), b"A")

    def test_uncompressed_chunk_passes_through(self):
        payload = bytes(range(256)) * 16
        data = _container(_chunk(payload, compressed=False))
        self.assertEqual(struct.unpack_from("<H", data, 1)[0], 0x3FFF)
        self.assertEqual(vba_decompress.decompress(data), payload)

    def test_overlapping_copy_repeats_previous_byte(self):
        # literal 'x' then CopyToken offset=1 length=5
        body = b"\x02x" + struct.pack("<H", 0x0002)
        self.assertEqual(vba_decompress.decompress(_container(_chunk(body))), b"x" * 6)

    def test_cyclic_copy_with_longer_period(self):
        # 'a', 'b', then CopyToken offset=2 length=7
        body = b"\x04ab" + struct.pack("<H", 0x1004)
        self.assertEqual(vba_decompress.decompress(_container(_chunk(body))), b"ababababa")

    def test_short_final_token_sequence(self):
        data = _container(_chunk(b"\x00ABCDEFGH" + b"\x00IJ"))
        self.assertEqual(vba_decompress.decompress(data), b"ABCDEFGHIJ")
        chunk = CompressedContainer.from_bytes(data).chunks[0]
        sequences = chunk.token_sequences()
        self.assertEqual([len(s.tokens) for s in sequences], [8, 2])
        self.assertEqual([s.is_complete for s in sequences], [True, False])

    def test_chunk_header_fields(self):
        container = CompressedContainer.from_bytes(_container(_chunk(b"\x00A")))
        chunk = container.chunks[0]
        self.assertEqual(chunk.header, 0xB001)
        self.assertEqual(chunk.size_field, 1)
        self.assertEqual(chunk.signature, 0b011)
        self.assertTrue(chunk.is_compressed)
        self.assertEqual(chunk.byte_length, 4)

    def test_full_chunk_ignores_trailing_bytes(self):
        body = b"\x02a" + struct.pack("<H", 0x0FFC) + b"\x00Z"
        self.assertEqual(vba_decompress.decompress(_container(_chunk(body))), b"a" * 4096)

    def test_signature_only_container_is_empty(self):
        self.assertEqual(vba_decompress.decompress(b"\x01"), b"")


class TestCorruptionDetection(unittest.TestCase):
    def test_empty_input(self):
        with self.assertRaises(CorruptedError):
            vba_decompress.decompress(b"")

    def test_bad_container_signature(self):
        with self.assertRaises(CorruptedError) as ctx:
            vba_decompress.decompress(b"\x00" + _chunk(b"\x00A"))
        self.assertEqual(ctx.exception.offset, 0)

    def test_bad_chunk_signature(self):
        with self.assertRaises(CorruptedError) as ctx:
            vba_decompress.decompress(_container(_chunk(b"\x00A", signature_bits=0b010)))
        self.assertEqual(ctx.exception.offset, 1)

    def test_copy_before_chunk_start(self):
        # 'x' then CopyToken offset=2 with only one byte decoded
        body = b"\x02x" + struct.pack("<H", 0x1000)
        with self.assertRaises(CorruptedError) as ctx:
            vba_decompress.decompress(_container(_chunk(body)))
        self.assertEqual(ctx.exception.offset, 5)

    def test_copy_does_not_reach_into_previous_chunk(self):
        first = _chunk(b"Q" * 4096, compressed=False)
        second = _chunk(b"\x01" + struct.pack("<H", 0x0000))
        with self.assertRaises(CorruptedError):
            vba_decompress.decompress(_container(first, second))

    def test_copy_past_chunk_capacity(self):
        # 'a' then offset=1 length=4096 would produce 4097 bytes
        body = b"\x02a" + struct.pack("<H", 0x0FFD)
        with self.assertRaises(CorruptedError):
            vba_decompress.decompress(_container(_chunk(body)))
        body = b"\x02a" + struct.pack("<H", 0x0FFC)
        self.assertEqual(len(vba_decompress.decompress(_container(_chunk(body)))), 4096)

    def test_truncated_chunk_body(self):
        with self.assertRaises(CorruptedError):
            vba_decompress.decompress(b"\x01" + struct.pack("<H", 0xB009) + b"\x00AB")

    def test_truncated_header(self):
        with self.assertRaises(CorruptedError):
            vba_decompress.decompress(b"\x01\x00")

    def test_truncated_copy_token(self):
        with self.assertRaises(CorruptedError):
            vba_decompress.decompress(_container(_chunk(b"\x01\x05")))

    def test_short_non_final_chunk(self):
        data = _container(_chunk(b"\x00A"), _chunk(b"\x00B"))
        with self.assertRaises(CorruptedError):
            vba_decompress.decompress(data)
        self.assertEqual(vba_decompress.decompress(data, lenient=True), b"AB")


class TestTolerantDecompression(unittest.TestCase):
    def test_short_final_uncompressed_chunk(self):
        data = b"HELLO-WORLD"
        cont = _container(_chunk(data, compressed=False))
        with self.assertRaises(CorruptedError):
            vba_decompress.decompress(cont)
        self.assertEqual(vba_decompress.decompress(cont, lenient=True), data)

    def test_short_uncompressed_chunk_must_be_last(self):
        cont = _container(_chunk(b"HELLO", compressed=False), _chunk(b"\x00A"))
        with self.assertRaises(CorruptedError):
            vba_decompress.decompress(cont, lenient=True)

    def test_lenient_still_checks_signatures(self):
        cont = _container(_chunk(b"HELLO", compressed=False, signature_bits=0))
        with self.assertRaises(CorruptedError):
            vba_decompress.decompress(cont, lenient=True)


class TestContainerFraming(unittest.TestCase):
    def test_spans_cover_the_input(self):
        compressed = vba_decompress.compress(_sample_text(400))
        container = CompressedContainer.from_bytes(compressed)
        self.assertGreater(len(container.chunks), 1)
        position = 1
        for start, length in container.spans:
            self.assertEqual(start, position)
            position += length
        self.assertEqual(position, len(compressed))

    def test_only_last_chunk_is_short(self):
        data = _sample_text(400)
        buffer = vba_decompress.decompress_buffer(vba_decompress.compress(data))
        sizes = [len(chunk) for chunk in buffer.chunks]
        self.assertTrue(all(size == 4096 for size in sizes[:-1]))
        self.assertEqual(sum(sizes), len(data))


class TestDecompressedBuffer(unittest.TestCase):
    def setUp(self):
        self.data = b"Hello, world"
        self.buffer = vba_decompress.decompress_buffer(vba_decompress.compress(self.data))

    def test_views(self):
        self.assertEqual(len(self.buffer), len(self.data))
        self.assertEqual(bytes(self.buffer), self.data)
        self.assertEqual(self.buffer.data, self.data)
        self.assertEqual(self.buffer[0:5], b"Hello")
        self.assertEqual(self.buffer[7], ord("w"))

    def test_read_at_is_bounds_checked(self):
        self.assertEqual(self.buffer.read_at(7, 5), b"world")
        with self.assertRaises(CorruptedError):
            self.buffer.read_at(10, 5)
        with self.assertRaises(CorruptedError):
            self.buffer.read_at(-1, 1)

    def test_stream_is_seekable(self):
        stream = self.buffer.stream()
        stream.seek(7)
        self.assertEqual(stream.read(), b"world")


class TestConcurrentDecoding(unittest.TestCase):
    def test_worker_pool_matches_sequential(self):
        data = _sample_text(600)
        compressed = vba_decompress.compress(data)
        self.assertEqual(vba_decompress.decompress(compressed, workers=4), data)
        self.assertEqual(vba_decompress.decompress(compressed, workers=1), data)

    def test_worker_pool_surfaces_corruption(self):
        compressed = bytearray(vba_decompress.compress(_sample_text(600)))
        container = CompressedContainer.from_bytes(bytes(compressed))
        start = container.spans[2][0]
        self.assertTrue(container.chunks[2].is_compressed)
        # first token of the chunk becomes a CopyToken with nothing decoded yet
        compressed[start + 2] = 0xFF
        with self.assertRaises(CorruptedError):
            vba_decompress.decompress(bytes(compressed), workers=4)

    def test_decompress_many_preserves_order(self):
        streams = [vba_decompress.compress(b"a" * 10), vba_decompress.compress(b"bcd"), b"\x01"]
        self.assertEqual(vba_decompress.decompress_many(streams, workers=2), [b"a" * 10, b"bcd", b""])
        self.assertEqual(vba_decompress.decompress_many(streams), [b"a" * 10, b"bcd", b""])
        with self.assertRaises(CorruptedError):
            vba_decompress.decompress_many(streams + [b"\x02"], workers=2)


class TestCompression(unittest.TestCase):
    def test_round_trip_text(self):
        data = _sample_text(50)
        compressed = vba_decompress.compress(data)
        self.assertLess(len(compressed), len(data) // 2)
        self.assertEqual(vba_decompress.decompress(compressed), data)

    def test_round_trip_runs(self):
        for data in (b"", b"a", b"abc", b"a" * 4096, b"ab" * 5000, b"\x00" * 9000):
            self.assertEqual(vba_decompress.decompress(vba_decompress.compress(data)), data)

    def test_round_trip_small_random(self):
        rng = random.Random(7)
        data = bytes(rng.getrandbits(8) for _ in range(3000))
        compressed = vba_decompress.compress(data)
        self.assertTrue(struct.unpack_from("<H", compressed, 1)[0] & 0x8000)
        self.assertEqual(vba_decompress.decompress(compressed), data)

    def test_incompressible_chunk_is_raw(self):
        rng = random.Random(11)
        data = bytes(rng.getrandbits(8) for _ in range(4096))
        compressed = vba_decompress.compress(data)
        self.assertEqual(len(compressed), 1 + 2 + 4096)
        self.assertFalse(struct.unpack_from("<H", compressed, 1)[0] & 0x8000)
        self.assertEqual(vba_decompress.decompress(compressed), data)

    def test_short_incompressible_final_chunk_is_zero_padded(self):
        rng = random.Random(13)
        data = bytes(rng.getrandbits(8) for _ in range(3800))
        out = vba_decompress.decompress(vba_decompress.compress(data))
        self.assertEqual(out[: len(data)], data)
        self.assertEqual(out[len(data) :], b"\x00" * (4096 - len(data)))


if __name__ == "__main__":
    unittest.main()
