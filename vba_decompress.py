#!/usr/bin/env python3
"""MS-OVBA decompression and VBA project source reader.

This module decodes the CompressedContainer format used by every compressed
stream inside a VBA project (the ``dir`` stream and each module stream), and
builds a small read-only VBA project reader on top of it.

    # Show usage:
    python vba_decompress.py --help

    # Print the source of every module in a workbook:
    python vba_decompress.py Book1.xlsm

    # Write each module to its own file:
    python vba_decompress.py --output modules/ Book1.xlsm

    # Decompress a bare compressed container (for example an extracted dir stream):
    python vba_decompress.py --raw dir.bin --output dir.decompressed

Licensed under GNU GPL v3.
"""
from __future__ import annotations

import argparse
import io
import logging
import os
import struct
import sys
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

try:
    import olefile
except ImportError as exc:  # pragma: no cover - dependency guard
    raise SystemExit(
        "The 'olefile' package is required. Install it via 'pip install olefile'."
    ) from exc

logger = logging.getLogger(__name__)

CONTAINER_SIGNATURE = 0x01
CHUNK_SIGNATURE = 0b011
CHUNK_SIZE = 4096
TOKENS_PER_SEQUENCE = 8


class CorruptedError(ValueError):
    """Raised when a compressed container or VBA project cannot be decoded."""

    def __init__(self, message: str, offset: Optional[int] = None):
        if offset is not None:
            message = f"{message} (at offset 0x{offset:X})"
        super().__init__(message)
        self.offset = offset


# ---------------------------------------------------------------------------
# Bounds-checked byte cursor
# ---------------------------------------------------------------------------

class ByteCursor:
    """Sequential little-endian reader over an immutable byte buffer.

    ``origin`` is added to positions reported in errors, so a cursor over a
    chunk body still points at the right place in the enclosing stream.
    """

    def __init__(self, data: bytes, start: int = 0, end: Optional[int] = None, origin: int = 0):
        self.data = data if isinstance(data, bytes) else bytes(data)
        self.end = len(self.data) if end is None else end
        if not 0 <= start <= self.end <= len(self.data):
            raise CorruptedError(f"Cursor range {start}..{self.end} outside buffer of {len(self.data)} bytes")
        self.position = start
        self.origin = origin

    @property
    def remaining(self) -> int:
        return self.end - self.position

    def _take(self, size: int) -> int:
        if size < 0 or size > self.remaining:
            raise CorruptedError(
                f"Unexpected end of data: need {size} bytes, {self.remaining} left",
                self.origin + self.position,
            )
        start = self.position
        self.position += size
        return start

    def read_u8(self) -> int:
        return self.data[self._take(1)]

    def read_u16(self) -> int:
        return struct.unpack_from("<H", self.data, self._take(2))[0]

    def read_u32(self) -> int:
        return struct.unpack_from("<L", self.data, self._take(4))[0]

    def read_bytes(self, size: int) -> bytes:
        start = self._take(size)
        return self.data[start : start + size]

    def peek_u16(self) -> Optional[int]:
        if self.remaining < 2:
            return None
        return struct.unpack_from("<H", self.data, self.position)[0]

    def seek(self, position: int) -> None:
        if not 0 <= position <= self.end:
            raise CorruptedError(f"Seek to {position} outside 0..{self.end}", self.origin)
        self.position = position

    def sub_cursor(self, size: int) -> "ByteCursor":
        """Consume ``size`` bytes and return a cursor bounded to exactly them."""
        start = self._take(size)
        return ByteCursor(self.data, start, start + size, self.origin)


# ---------------------------------------------------------------------------
# CopyToken bit packing (MS-OVBA 2.4.1.3.19)
# ---------------------------------------------------------------------------

def copytoken_help(difference: int) -> Tuple[int, int, int, int]:
    """Compute CopyToken helper masks as defined in MS-OVBA 2.4.1.3.19.1.

    ``difference`` is the number of bytes already decompressed in the current
    chunk. Returns ``(length_mask, offset_mask, bit_count, maximum_length)``.
    """
    # smallest bit_count with 2**bit_count >= difference, floored at 4
    bit_count = max((difference - 1).bit_length() if difference > 0 else 0, 4)
    length_mask = 0xFFFF >> bit_count
    offset_mask = ~length_mask & 0xFFFF
    maximum_length = (0xFFFF >> bit_count) + 3
    return length_mask, offset_mask, bit_count, maximum_length


def unpack_copytoken(token: int, difference: int) -> Tuple[int, int]:
    """Split a 16-bit CopyToken into ``(offset, length)`` for the given window."""
    length_mask, offset_mask, bit_count, maximum_length = copytoken_help(difference)
    length = (token & length_mask) + 3
    if length > maximum_length:
        raise CorruptedError(f"CopyToken length {length} exceeds maximum {maximum_length}")
    offset = ((token & offset_mask) >> (16 - bit_count)) + 1
    return offset, length


def pack_copytoken(offset: int, length: int, difference: int) -> int:
    """Inverse of :func:`unpack_copytoken`."""
    _, _, bit_count, maximum_length = copytoken_help(difference)
    if not 3 <= length <= maximum_length:
        raise ValueError(f"CopyToken length {length} outside 3..{maximum_length}")
    if not 1 <= offset <= (1 << bit_count):
        raise ValueError(f"CopyToken offset {offset} outside 1..{1 << bit_count}")
    return ((offset - 1) << (16 - bit_count)) | (length - 3)


# ---------------------------------------------------------------------------
# Tokens and token sequences
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LiteralToken:
    value: int

    @property
    def count(self) -> int:
        return 1

    def decompress_to(self, output: bytearray) -> None:
        output.append(self.value)


@dataclass(frozen=True)
class CopyToken:
    """Back-reference to ``length`` bytes starting ``offset`` bytes behind the write position."""

    offset: int
    length: int

    @property
    def count(self) -> int:
        return self.length

    @classmethod
    def read(cls, cursor: ByteCursor, difference: int) -> "CopyToken":
        offset, length = unpack_copytoken(cursor.read_u16(), difference)
        return cls(offset, length)

    def decompress_to(self, output: bytearray) -> None:
        position = len(output) - self.offset
        if self.offset < 1 or position < 0:
            raise CorruptedError(
                f"CopyToken offset {self.offset} reaches before chunk start "
                f"({len(output)} bytes decoded)"
            )
        if self.length <= self.offset:
            output += output[position : position + self.length]
            return
        # Overlapping copy: the run repeats with period ``offset``.
        run = output[position:]
        repeats, extra = divmod(self.length, self.offset)
        output += run * repeats + run[:extra]


Token = Union[LiteralToken, CopyToken]


@dataclass
class DecodeContext:
    """Mutable state threaded through the decoding of one chunk."""

    cursor: ByteCursor
    output: bytearray = field(default_factory=bytearray)

    @property
    def difference(self) -> int:
        return len(self.output)


@dataclass(frozen=True)
class TokenSequence:
    """A FlagByte followed by up to eight tokens (MS-OVBA 2.4.1.1.7)."""

    flag_byte: int
    tokens: Tuple[Token, ...]

    @property
    def is_complete(self) -> bool:
        return len(self.tokens) == TOKENS_PER_SEQUENCE

    @classmethod
    def read(cls, context: DecodeContext) -> "TokenSequence":
        cursor = context.cursor
        flag_byte = cursor.read_u8()
        tokens: List[Token] = []
        for bit_index in range(TOKENS_PER_SEQUENCE):
            if cursor.remaining == 0 or context.difference >= CHUNK_SIZE:
                break
            token_start = cursor.origin + cursor.position
            token: Token
            if (flag_byte >> bit_index) & 1:
                token = CopyToken.read(cursor, context.difference)
            else:
                token = LiteralToken(cursor.read_u8())
            if context.difference + token.count > CHUNK_SIZE:
                raise CorruptedError(
                    f"Token would grow chunk past {CHUNK_SIZE} bytes", token_start
                )
            try:
                token.decompress_to(context.output)
            except CorruptedError as exc:
                raise CorruptedError(str(exc), token_start) from exc
            tokens.append(token)
        if len(tokens) < TOKENS_PER_SEQUENCE:
            logger.debug("Short final TokenSequence with %d token(s)", len(tokens))
        return cls(flag_byte, tuple(tokens))


# ---------------------------------------------------------------------------
# Chunks, container and the decompressed buffer (MS-OVBA 2.4.1.1)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CompressedChunk:
    """One CompressedChunk: the 2-byte header plus the body it announces."""

    header: int
    start: int
    data: bytes

    @property
    def size_field(self) -> int:
        return self.header & 0x0FFF

    @property
    def signature(self) -> int:
        return (self.header >> 12) & 0x07

    @property
    def is_compressed(self) -> bool:
        return bool((self.header >> 15) & 0x01)

    @property
    def byte_length(self) -> int:
        """Compressed size of the chunk, header included."""
        return self.size_field + 3

    @classmethod
    def read(cls, cursor: ByteCursor) -> "CompressedChunk":
        start = cursor.origin + cursor.position
        header = cursor.read_u16()
        signature = (header >> 12) & 0x07
        if signature != CHUNK_SIGNATURE:
            raise CorruptedError(f"Invalid CompressedChunkSignature 0b{signature:03b}", start)
        body = cursor.read_bytes((header & 0x0FFF) + 1)
        logger.debug(
            "Chunk at 0x%X: header 0x%04X, %d body bytes, compressed=%s",
            start, header, len(body), bool(header >> 15),
        )
        return cls(header, start, body)

    def token_sequences(self) -> List[TokenSequence]:
        """Decode the body into TokenSequences (compressed chunks only)."""
        if not self.is_compressed:
            raise ValueError("Uncompressed chunks carry no token sequences")
        return self._decode()[0]

    def decompress(self, final: bool = True, lenient: bool = False) -> bytes:
        """Return the decompressed bytes of this chunk.

        Only the final chunk of a container may produce fewer than 4096 bytes.
        With ``lenient`` a short final uncompressed chunk is passed through, and
        short non-final chunks are tolerated.
        """
        if not self.is_compressed:
            if len(self.data) != CHUNK_SIZE and not (lenient and final):
                raise CorruptedError(
                    f"Uncompressed chunk holds {len(self.data)} bytes, expected {CHUNK_SIZE}",
                    self.start,
                )
            return self.data
        output = self._decode()[1]
        if len(output) < CHUNK_SIZE and not final and not lenient:
            raise CorruptedError(
                f"Non-final chunk decompressed to {len(output)} bytes", self.start
            )
        return bytes(output)

    def _decode(self) -> Tuple[List[TokenSequence], bytearray]:
        context = DecodeContext(ByteCursor(self.data, origin=self.start + 2))
        sequences: List[TokenSequence] = []
        while context.cursor.remaining and context.difference < CHUNK_SIZE:
            sequences.append(TokenSequence.read(context))
        if context.cursor.remaining:
            logger.debug(
                "Chunk at 0x%X: ignoring %d byte(s) after %d decompressed bytes",
                self.start, context.cursor.remaining, CHUNK_SIZE,
            )
        return sequences, context.output


@dataclass(frozen=True)
class CompressedContainer:
    """Signature byte followed by CompressedChunks spanning the whole input."""

    chunks: Tuple[CompressedChunk, ...]
    signature: int = CONTAINER_SIGNATURE

    @classmethod
    def read(cls, cursor: ByteCursor) -> "CompressedContainer":
        start = cursor.origin + cursor.position
        signature = cursor.read_u8()
        if signature != CONTAINER_SIGNATURE:
            raise CorruptedError(f"Invalid compressed container signature 0x{signature:02X}", start)
        chunks: List[CompressedChunk] = []
        while cursor.remaining:
            chunks.append(CompressedChunk.read(cursor))
        return cls(tuple(chunks), signature)

    @classmethod
    def from_bytes(cls, data: bytes) -> "CompressedContainer":
        return cls.read(ByteCursor(data))

    @property
    def spans(self) -> List[Tuple[int, int]]:
        """``(start, byte_length)`` of every chunk, in input order."""
        return [(chunk.start, chunk.byte_length) for chunk in self.chunks]

    def decompress_chunks(self, lenient: bool = False, workers: Optional[int] = None) -> List[bytes]:
        """Decompress every chunk, optionally fanning out over a thread pool.

        Offsets never cross chunk boundaries, so chunks decode independently
        once the header walk has located them.
        """
        last = len(self.chunks) - 1

        def decode(item: Tuple[int, CompressedChunk]) -> bytes:
            index, chunk = item
            return chunk.decompress(final=index == last, lenient=lenient)

        if workers and workers > 1 and len(self.chunks) > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                return list(pool.map(decode, enumerate(self.chunks)))
        return [decode(item) for item in enumerate(self.chunks)]


class DecompressedBuffer:
    """Read-only concatenation of every chunk's decompressed bytes."""

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = tuple(bytes(chunk) for chunk in chunks)
        self._data = b"".join(self._chunks)

    @classmethod
    def from_container(
        cls, container: CompressedContainer, lenient: bool = False, workers: Optional[int] = None
    ) -> "DecompressedBuffer":
        return cls(container.decompress_chunks(lenient=lenient, workers=workers))

    @property
    def data(self) -> bytes:
        return self._data

    @property
    def chunks(self) -> Tuple[bytes, ...]:
        return self._chunks

    def __len__(self) -> int:
        return len(self._data)

    def __getitem__(self, key):
        return self._data[key]

    def __bytes__(self) -> bytes:
        return self._data

    def read_at(self, offset: int, size: int) -> bytes:
        if offset < 0 or size < 0 or offset + size > len(self._data):
            raise CorruptedError(
                f"Read of {size} bytes at {offset} outside buffer of {len(self._data)} bytes"
            )
        return self._data[offset : offset + size]

    def stream(self) -> io.BytesIO:
        """Return a fresh seekable stream over the buffer."""
        return io.BytesIO(self._data)


def decompress_buffer(data: bytes, *, lenient: bool = False, workers: Optional[int] = None) -> DecompressedBuffer:
    container = CompressedContainer.from_bytes(data)
    return DecompressedBuffer.from_container(container, lenient=lenient, workers=workers)


def decompress(data: bytes, *, lenient: bool = False, workers: Optional[int] = None) -> bytes:
    """Decompress a VBA CompressedContainer according to MS-OVBA section 2.4.1.

    Raises :class:`CorruptedError` on any malformed input; no partial output
    is ever returned.
    """
    return decompress_buffer(data, lenient=lenient, workers=workers).data


def decompress_many(
    streams: Iterable[bytes], *, lenient: bool = False, workers: Optional[int] = None
) -> List[bytes]:
    """Decompress independent containers, preserving input order."""
    streams = list(streams)
    if workers and workers > 1 and len(streams) > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(lambda data: decompress(data, lenient=lenient), streams))
    return [decompress(data, lenient=lenient) for data in streams]


# ---------------------------------------------------------------------------
# Compression (MS-OVBA 2.4.1.3.6 - 2.4.1.3.10)
# ---------------------------------------------------------------------------

def _longest_match(chunk: bytes, position: int, candidates: List[int]) -> Tuple[int, int]:
    """Return ``(offset, length)`` of the longest earlier match; nearest wins ties."""
    _, _, _, maximum_length = copytoken_help(position)
    limit = min(maximum_length, len(chunk) - position)
    best_offset, best_length = 0, 0
    for candidate in reversed(candidates):
        length = 0
        while length < limit and chunk[candidate + length] == chunk[position + length]:
            length += 1
        if length > best_length:
            best_offset, best_length = position - candidate, length
            if length == limit:
                break
    return best_offset, best_length


def _compress_chunk(chunk: bytes) -> bytes:
    body = bytearray()
    prefixes: Dict[bytes, List[int]] = {}
    position = 0
    while position < len(chunk):
        flag_index = len(body)
        body.append(0)
        flag_byte = 0
        for bit_index in range(TOKENS_PER_SEQUENCE):
            if position >= len(chunk):
                break
            offset, length = _longest_match(chunk, position, prefixes.get(chunk[position : position + 3], []))
            if length >= 3:
                body += struct.pack("<H", pack_copytoken(offset, length, position))
                flag_byte |= 1 << bit_index
            else:
                body.append(chunk[position])
                length = 1
            for index in range(position, min(position + length, len(chunk) - 2)):
                prefixes.setdefault(chunk[index : index + 3], []).append(index)
            position += length
        body[flag_index] = flag_byte

    if len(body) > CHUNK_SIZE:
        # RawChunk: always 4096 bytes, zero-padded when it is the short final chunk
        header = (CHUNK_SIGNATURE << 12) | (CHUNK_SIZE - 1)
        return struct.pack("<H", header) + chunk.ljust(CHUNK_SIZE, b"\x00")
    header = 0x8000 | (CHUNK_SIGNATURE << 12) | (len(body) - 1)
    return struct.pack("<H", header) + bytes(body)


def compress(data: bytes) -> bytes:
    """Encode ``data`` as an MS-OVBA CompressedContainer."""
    data = bytes(data)
    out = bytearray([CONTAINER_SIGNATURE])
    for start in range(0, len(data), CHUNK_SIZE):
        out += _compress_chunk(data[start : start + CHUNK_SIZE])
    return bytes(out)


# ---------------------------------------------------------------------------
# dir stream parsing (MS-OVBA 2.3.4.2)
# ---------------------------------------------------------------------------

@dataclass
class ModuleInfo:
    """Metadata of one module as recorded in the dir stream."""

    name: str
    stream_name: str
    code_page: str
    text_offset: int
    doc_string: str = ""
    module_type: str = "procedural"
    read_only: bool = False
    private: bool = False

    @property
    def file_extension(self) -> str:
        return ".cls" if self.module_type == "class" else ".bas"


class DirStreamParser:
    """Parse the decompressed dir stream into project and module records."""

    PROJECTVERSION = 0x0009
    PROJECTMODULES = 0x000F
    PROJECTTERMINATOR = 0x0010
    MODULE_TERMINATOR = 0x002B

    def __init__(self, dir_bytes: bytes):
        self.cursor = ByteCursor(dir_bytes)
        self.codepage = "cp1252"
        self.project_name = ""
        self.doc_string = ""
        self.sys_kind: Optional[int] = None
        self.lcid: Optional[int] = None
        self.version: Optional[Tuple[int, int]] = None
        self.references: List[str] = []
        self.modules: List[ModuleInfo] = []
        self.expected_modules = 0
        self._parse_project_records()
        self._parse_modules()

    def _decode_bytes(self, data: bytes) -> str:
        return data.decode(self.codepage, errors="replace")

    def _read_record(self) -> Tuple[int, bytes]:
        record_id = self.cursor.read_u16()
        size = self.cursor.read_u32()
        if record_id == self.PROJECTVERSION:
            # Size holds a reserved 4; the record carries six more bytes.
            return record_id, self.cursor.read_bytes(6)
        return record_id, self.cursor.read_bytes(size)

    def _parse_project_records(self) -> None:
        """Read PROJECTINFORMATION and PROJECTREFERENCES up to PROJECTMODULES."""
        while True:
            record_id, payload = self._read_record()
            if record_id == self.PROJECTMODULES:
                if len(payload) != 2:
                    raise CorruptedError("PROJECTMODULES record must hold 2 bytes")
                self.expected_modules = struct.unpack("<H", payload)[0]
                return
            if record_id == 0x0001 and len(payload) == 4:  # PROJECTSYSKIND
                self.sys_kind = struct.unpack("<L", payload)[0]
            elif record_id == 0x0002 and len(payload) == 4:  # PROJECTLCID
                self.lcid = struct.unpack("<L", payload)[0]
            elif record_id == 0x0003 and len(payload) == 2:  # PROJECTCODEPAGE
                self.codepage = resolve_codepage(struct.unpack("<H", payload)[0])
            elif record_id == 0x0004:  # PROJECTNAME
                self.project_name = self._decode_bytes(payload)
            elif record_id == 0x0005:  # PROJECTDOCSTRING
                self.doc_string = self._decode_bytes(payload)
            elif record_id == self.PROJECTVERSION:
                self.version = struct.unpack("<LH", payload)
            elif record_id == 0x0016:  # REFERENCENAME
                self.references.append(self._decode_bytes(payload))

    def _parse_modules(self) -> None:
        self._read_record()  # PROJECTCOOKIE
        for _ in range(self.expected_modules):
            self.modules.append(self._parse_module())
        if self.cursor.peek_u16() == self.PROJECTTERMINATOR:
            self._read_record()

    def _parse_module(self) -> ModuleInfo:
        start = self.cursor.position
        fields: Dict[str, object] = {}
        while True:
            record_id, payload = self._read_record()
            if record_id == self.MODULE_TERMINATOR:
                break
            if record_id == 0x0019:  # MODULENAME
                fields.setdefault("name", self._decode_bytes(payload))
            elif record_id == 0x0047:  # MODULENAMEUNICODE
                fields["name"] = payload.decode("utf-16-le", errors="replace")
            elif record_id == 0x001A:  # MODULESTREAMNAME
                fields.setdefault("stream_name", self._decode_bytes(payload))
            elif record_id == 0x0032:  # MODULESTREAMNAMEUNICODE
                fields["stream_name"] = payload.decode("utf-16-le", errors="replace")
            elif record_id == 0x001C:  # MODULEDOCSTRING
                fields.setdefault("doc_string", self._decode_bytes(payload))
            elif record_id == 0x0048:  # MODULEDOCSTRINGUNICODE
                fields["doc_string"] = payload.decode("utf-16-le", errors="replace")
            elif record_id == 0x0031:  # MODULEOFFSET
                if len(payload) != 4:
                    raise CorruptedError("MODULEOFFSET record must hold 4 bytes", start)
                fields["text_offset"] = struct.unpack("<L", payload)[0]
            elif record_id == 0x0021:
                fields["module_type"] = "procedural"
            elif record_id == 0x0022:
                fields["module_type"] = "class"
            elif record_id == 0x0025:
                fields["read_only"] = True
            elif record_id == 0x0028:
                fields["private"] = True
        if "name" not in fields or "text_offset" not in fields:
            raise CorruptedError("MODULE record lacks MODULENAME or MODULEOFFSET", start)
        fields.setdefault("stream_name", fields["name"])
        return ModuleInfo(code_page=self.codepage, **fields)  # type: ignore[arg-type]


def resolve_codepage(cp_value: int) -> str:
    """Translate a Windows code page number into a Python codec name."""
    if cp_value == 0:
        return "cp1252"
    if cp_value == 10000:
        return "mac_roman"
    for candidate in (f"cp{cp_value}", f"windows-{cp_value}"):
        try:
            "".encode(candidate)
        except LookupError:
            continue
        else:
            return candidate
    return "cp1252"


# ---------------------------------------------------------------------------
# PROJECT stream (MS-OVBA 2.3.1)
# ---------------------------------------------------------------------------

class ProjectStream:
    """Key/value view of the textual PROJECT stream."""

    MODULE_KEYS = ("Module", "Class", "BaseClass", "Document")

    def __init__(self, data: bytes, codepage: str = "cp1252"):
        self.properties: List[Tuple[str, str]] = []
        self.sections: Dict[str, List[Tuple[str, str]]] = {}
        current = self.properties
        for line in data.decode(codepage, errors="replace").splitlines():
            line = line.strip()
            if not line:
                continue
            if line.startswith("[") and line.endswith("]"):
                current = self.sections.setdefault(line[1:-1], [])
                continue
            key, sep, value = line.partition("=")
            if sep:
                current.append((key.strip(), value.strip()))

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for name, value in self.properties:
            if name.lower() == key.lower():
                return value
        return default

    @property
    def name(self) -> Optional[str]:
        value = self.get("Name")
        return value.strip('"') if value is not None else None

    @property
    def modules(self) -> List[Tuple[str, str]]:
        """``(kind, identifier)`` for every module entry."""
        found = []
        for key, value in self.properties:
            if key in self.MODULE_KEYS:
                found.append((key, value.split("/", 1)[0]))
        return found

    @property
    def is_protected(self) -> bool:
        # a DPB/DPX password hash line marks a locked project
        return any(key in ("DPB", "DPX") for key, _ in self.properties)


# ---------------------------------------------------------------------------
# VBA project reader
# ---------------------------------------------------------------------------

def find_vba_storage(ole) -> Optional[List[str]]:
    """Return the path of the storage holding ``VBA/dir``, shortest first."""
    found = []
    for entry in ole.listdir(streams=True, storages=False):
        if len(entry) >= 2 and entry[-1].lower() == "dir" and entry[-2].lower() == "vba":
            found.append(list(entry[:-1]))
    if not found:
        return None
    return min(found, key=len)


class VBAProject:
    """Read-only view over the VBA storage of an OLE compound file."""

    def __init__(self, ole, vba_path: Sequence[str], lenient: bool = False):
        self.ole = ole
        self.vba_path = list(vba_path)
        self.lenient = lenient
        dir_path = self.vba_path + ["dir"]
        if not ole.exists(dir_path):
            raise CorruptedError(f"Missing dir stream at {'/'.join(dir_path)}")
        dir_data = decompress(ole.openstream(dir_path).read(), lenient=lenient)
        self.dir = DirStreamParser(dir_data)
        if len(self.dir.modules) != self.dir.expected_modules:
            logger.debug(
                "dir stream announced %d modules, parsed %d",
                self.dir.expected_modules, len(self.dir.modules),
            )

    def __enter__(self) -> "VBAProject":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.ole.close()

    @property
    def root_path(self) -> List[str]:
        return self.vba_path[:-1]

    @property
    def name(self) -> str:
        return self.dir.project_name

    @property
    def codepage(self) -> str:
        return self.dir.codepage

    @property
    def modules(self) -> List[ModuleInfo]:
        return self.dir.modules

    def module(self, name: str) -> ModuleInfo:
        for module in self.modules:
            if name.lower() in (module.name.lower(), module.stream_name.lower()):
                return module
        raise KeyError(name)

    def project_stream(self) -> Optional[ProjectStream]:
        path = self.root_path + ["PROJECT"]
        if not self.ole.exists(path):
            return None
        return ProjectStream(self.ole.openstream(path).read(), self.codepage)

    def _module_container(self, module: ModuleInfo) -> bytes:
        path = self.vba_path + [module.stream_name]
        if not self.ole.exists(path):
            raise CorruptedError(f"Module stream {module.stream_name!r} is missing")
        data = self.ole.openstream(path).read()
        if module.text_offset >= len(data):
            raise CorruptedError(
                f"Module {module.name!r} text offset {module.text_offset} beyond stream of {len(data)} bytes"
            )
        return data[module.text_offset :]

    def module_source(self, name: str) -> str:
        module = self.module(name)
        text = decompress(self._module_container(module), lenient=self.lenient)
        return text.decode(module.code_page, errors="replace")

    def iter_modules(self) -> Iterator[Tuple[ModuleInfo, str]]:
        for module in self.modules:
            yield module, self.module_source(module.name)

    def sources(self, names: Optional[Iterable[str]] = None, workers: Optional[int] = None) -> Dict[str, str]:
        """Decompress module sources, decoding independent streams concurrently."""
        if names is None:
            modules = list(self.modules)
        else:
            modules = [self.module(name) for name in names]
        containers = [self._module_container(module) for module in modules]
        texts = decompress_many(containers, lenient=self.lenient, workers=workers)
        return {
            module.name: text.decode(module.code_page, errors="replace")
            for module, text in zip(modules, texts)
        }

    @property
    def srp_streams(self) -> List[str]:
        """Names of ``__SRP_<n>`` performance-cache streams; never decoded."""
        prefix = [part.lower() for part in self.vba_path]
        names = []
        for entry in self.ole.listdir(streams=True, storages=False):
            if [part.lower() for part in entry[:-1]] == prefix and entry[-1].startswith("__SRP_"):
                names.append(entry[-1])
        return sorted(names)

    @property
    def designer_modules(self) -> List[str]:
        """Modules backed by a designer storage holding a VBFrame stream."""
        return [
            module.name
            for module in self.modules
            if self.ole.exists(self.root_path + [module.stream_name, "\x03VBFrame"])
        ]


def _extract_vba_project_bin(archive: bytes) -> bytes:
    with zipfile.ZipFile(io.BytesIO(archive), "r") as z:
        for item in z.infolist():
            if item.filename.lower().endswith("vbaproject.bin"):
                return z.read(item.filename)
    raise CorruptedError("Archive contains no vbaProject.bin")


def open_vba_project(source: Union[str, bytes], lenient: bool = False) -> VBAProject:
    """Open a VBA project from a path or raw bytes.

    Accepts an OLE file (``vbaProject.bin``, ``.doc``, ``.xls``) or an OOXML
    archive (``.xlsm``, ``.xlsb``, ``.docm``, ``.pptm``) carrying one.
    """
    if isinstance(source, (bytes, bytearray)):
        data = bytes(source)
    else:
        with open(source, "rb") as fh:
            data = fh.read()
    if zipfile.is_zipfile(io.BytesIO(data)):
        data = _extract_vba_project_bin(data)

    ole = olefile.OleFileIO(io.BytesIO(data))
    try:
        vba_path = find_vba_storage(ole)
        if vba_path is None:
            raise CorruptedError("No VBA storage with a dir stream found")
        return VBAProject(ole, vba_path, lenient=lenient)
    except Exception:
        ole.close()
        raise


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Decompress MS-OVBA streams and extract VBA source")
    parser.add_argument("file", help="OLE file, OOXML archive, or (with --raw) a compressed container")
    parser.add_argument(
        "--output",
        "-o",
        dest="output",
        help="Directory for module files, or the output file with --raw",
    )
    parser.add_argument(
        "--module",
        "-m",
        dest="module",
        help="Only extract the named module",
    )
    parser.add_argument(
        "--raw",
        action="store_true",
        dest="raw",
        help="Treat the input as a bare CompressedContainer and decompress it",
    )
    parser.add_argument(
        "--lenient",
        action="store_true",
        dest="lenient",
        help="Accept a short final uncompressed chunk and short non-final chunks",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        dest="workers",
        help="Decode independent chunks/modules on this many threads",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        dest="verbose",
        help="Log chunk-level decoding details",
    )
    return parser


def _run_raw(source: str, args: argparse.Namespace) -> int:
    with open(source, "rb") as fh:
        data = fh.read()
    try:
        result = decompress(data, lenient=args.lenient, workers=args.workers)
    except CorruptedError as exc:
        print(f"Corrupted compressed container: {exc}", file=sys.stderr)
        return 1
    if args.output:
        output = os.path.abspath(args.output)
        with open(output, "wb") as fh:
            fh.write(result)
        print(f"Decompressed {len(result)} bytes written to: {output}")
    else:
        sys.stdout.flush()
        sys.stdout.buffer.write(result)
    return 0


def _run_project(source: str, args: argparse.Namespace) -> int:
    try:
        project = open_vba_project(source, lenient=args.lenient)
    except (CorruptedError, OSError) as exc:
        print(f"Unable to read VBA project from {source}: {exc}", file=sys.stderr)
        return 1

    with project:
        if args.module:
            try:
                selected = [project.module(args.module)]
            except KeyError:
                print(f"Module not found: {args.module}", file=sys.stderr)
                return 1
        else:
            selected = list(project.modules)

        if not selected:
            print("No VBA modules found; project contains no macros.")
            return 0

        try:
            texts = project.sources([m.name for m in selected], workers=args.workers)
        except CorruptedError as exc:
            print(f"Corrupted module stream: {exc}", file=sys.stderr)
            return 1

        print(f"VBA project: {project.name} ({project.codepage})")
        if args.output:
            out_dir = os.path.abspath(args.output)
            os.makedirs(out_dir, exist_ok=True)
            print("Modules written:")
            for module in selected:
                path = os.path.join(out_dir, module.name + module.file_extension)
                with open(path, "w", encoding="utf-8", newline="") as fh:
                    fh.write(texts[module.name])
                print(f"  - {module.name} -> {path}")
        else:
            for module in selected:
                print(f"' ---- {module.name} ({module.module_type}, offset {module.text_offset}) ----")
                print(texts[module.name])
    return 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    """
    vba_decompress.py - Decompress MS-OVBA streams and print VBA module source.

    Exit status:
        0 on success, 1 when the input is corrupted or a module is missing,
        2 on usage errors (e.g., file not found, invalid arguments).
    """
    parser = build_arg_parser()
    if argv is None:
        args = parser.parse_args()
    else:
        args = parser.parse_args(list(argv))

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    source = os.path.abspath(args.file)
    if not os.path.exists(source):
        parser.error(f"File not found: {source}")
    if args.workers is not None and args.workers < 1:
        parser.error("--workers must be at least 1")

    if args.raw:
        return _run_raw(source, args)
    return _run_project(source, args)


if __name__ == "__main__":
    sys.exit(main())
