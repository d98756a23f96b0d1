"""Chunk model and codecs for archived stream payloads.

Envelope layout written by :func:`serialize` (all integers little-endian)::

    [Header]  magic(4) = b"SACK", version(1) = 1, codec_id(1), meta_len(4)
    [Meta]    canonical JSON: subject, first/last sequence, record count,
              payload size and sha256 of the uncompressed payload
    [Body]    payload encoded with the chunk codec

The content key is derived from the codec label and the raw payload only, so
two chunks carrying the same bytes under the same codec always share one
stored object regardless of the stream positions they came from.
"""

from __future__ import annotations

import gzip
import hashlib
import json
import re
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Sequence, Tuple

HEADER_MAGIC = b"SACK"
FORMAT_VERSION = 1
HEADER_STRUCT = struct.Struct("<4sBBI")
HEADER_SIZE = HEADER_STRUCT.size
RECORD_LENGTH = struct.Struct("<I")

ZSTD_LEVEL = 3

_KEY_PATTERN = re.compile(r"^(?P<codec>[a-z0-9]+)-(?P<digest>[0-9a-f]{64})$")


class EncodingError(Exception):
    """Raised when a chunk cannot be rendered in the requested codec."""


class DecodingError(Exception):
    """Raised when stored bytes cannot be turned back into a chunk."""


class Codec(str, Enum):
    """Supported chunk encodings; values are stable labels used in object keys."""

    RAW = "raw"
    GZIP = "gzip"
    ZSTD = "zstd"
    LZ4 = "lz4"

    @classmethod
    def parse(cls, value: "str | Codec") -> "Codec":
        if isinstance(value, Codec):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            labels = ", ".join(c.value for c in cls)
            raise ValueError(f"Unsupported codec {value!r}; expected one of: {labels}") from exc


_CODEC_IDS = {
    Codec.RAW: 0,
    Codec.GZIP: 1,
    Codec.ZSTD: 2,
    Codec.LZ4: 3,
}
_CODECS_BY_ID = {codec_id: codec for codec, codec_id in _CODEC_IDS.items()}


@dataclass(frozen=True)
class Chunk:
    """Immutable unit of archived payload.

    ``first_sequence``/``last_sequence`` are the inclusive stream positions of
    the messages framed into ``payload``; ``record_count`` is how many there are.
    """

    payload: bytes
    subject: str = ""
    first_sequence: int = 0
    last_sequence: int = 0
    record_count: int = 1

    @classmethod
    def from_messages(cls, subject: str, messages: Sequence[Tuple[int, bytes]]) -> "Chunk":
        """Frame ``(sequence, data)`` pairs into one chunk of length-prefixed records."""

        if not messages:
            raise ValueError("Cannot build a chunk from zero messages")
        frames = [RECORD_LENGTH.pack(len(data)) + bytes(data) for _, data in messages]
        sequences = [seq for seq, _ in messages]
        return cls(
            payload=b"".join(frames),
            subject=subject,
            first_sequence=min(sequences),
            last_sequence=max(sequences),
            record_count=len(messages),
        )

    def records(self) -> List[bytes]:
        """Split a chunk built by :meth:`from_messages` back into message bodies."""

        records: List[bytes] = []
        offset = 0
        while offset < len(self.payload):
            if offset + RECORD_LENGTH.size > len(self.payload):
                raise DecodingError("Truncated record length prefix")
            (length,) = RECORD_LENGTH.unpack_from(self.payload, offset)
            offset += RECORD_LENGTH.size
            end = offset + length
            if end > len(self.payload):
                raise DecodingError("Record extends past end of chunk payload")
            records.append(self.payload[offset:end])
            offset = end
        if len(records) != self.record_count:
            raise DecodingError(f"Chunk declares {self.record_count} record(s) but payload holds {len(records)}")
        return records


def key(chunk: Chunk, codec: "Codec | str") -> str:
    """Return the content key ``<codec-label>-<sha256>`` for ``chunk`` under ``codec``."""

    try:
        resolved = Codec.parse(codec)
    except ValueError as exc:
        raise EncodingError(str(exc)) from exc
    payload = _payload_bytes(chunk)
    digest = hashlib.sha256()
    digest.update(resolved.value.encode("ascii"))
    digest.update(b"\x00")
    digest.update(payload)
    return f"{resolved.value}-{digest.hexdigest()}"


def is_content_key(name: str) -> bool:
    """Return True if the last path segment of ``name`` looks like a chunk key."""

    match = _KEY_PATTERN.match(name.rsplit("/", 1)[-1])
    if match is None:
        return False
    return match.group("codec") in {c.value for c in Codec}


def codec_from_key(name: str) -> Codec:
    match = _KEY_PATTERN.match(name.rsplit("/", 1)[-1])
    if match is None:
        raise ValueError(f"Not a chunk key: {name!r}")
    return Codec.parse(match.group("codec"))


def content_keys(names: Iterable[str]) -> set[str]:
    """Reduce listed object paths to the set of chunk keys they contain."""

    return {name.rsplit("/", 1)[-1] for name in names if is_content_key(name)}


def serialize(chunk: Chunk, codec: "Codec | str") -> bytes:
    """Encode ``chunk`` into the envelope format; deterministic for equal inputs."""

    try:
        resolved = Codec.parse(codec)
    except ValueError as exc:
        raise EncodingError(str(exc)) from exc
    payload = _payload_bytes(chunk)
    _validate_metadata(chunk)

    meta = {
        "subject": chunk.subject,
        "first_sequence": chunk.first_sequence,
        "last_sequence": chunk.last_sequence,
        "record_count": chunk.record_count,
        "payload_size": len(payload),
        "sha256": hashlib.sha256(payload).hexdigest(),
    }
    try:
        meta_bytes = json.dumps(meta, sort_keys=True, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise EncodingError(f"Chunk metadata is not serializable: {exc}") from exc

    try:
        body = _compress(resolved, payload)
    except Exception as exc:
        raise EncodingError(f"Failed to encode payload with codec {resolved.value}: {exc}") from exc

    header = HEADER_STRUCT.pack(HEADER_MAGIC, FORMAT_VERSION, _CODEC_IDS[resolved], len(meta_bytes))
    return header + meta_bytes + body


def deserialize(data: bytes, codec: "Codec | str") -> Chunk:
    """Decode envelope bytes produced by :func:`serialize` under ``codec``."""

    try:
        expected = Codec.parse(codec)
    except ValueError as exc:
        raise DecodingError(str(exc)) from exc
    if len(data) < HEADER_SIZE:
        raise DecodingError("Data too small to contain chunk header.")

    magic, version, codec_id, meta_len = HEADER_STRUCT.unpack_from(data, 0)
    if magic != HEADER_MAGIC:
        raise DecodingError("Invalid chunk magic.")
    if version != FORMAT_VERSION:
        raise DecodingError(f"Unsupported chunk format version {version}")
    stored = _CODECS_BY_ID.get(codec_id)
    if stored is None:
        raise DecodingError(f"Unknown codec id {codec_id}")
    if stored is not expected:
        raise DecodingError(f"Codec mismatch: stored {stored.value}, requested {expected.value}")

    meta_end = HEADER_SIZE + meta_len
    if meta_end > len(data):
        raise DecodingError("Truncated chunk metadata.")
    meta = _parse_meta(data[HEADER_SIZE:meta_end])

    try:
        payload = _decompress(stored, data[meta_end:], meta["payload_size"])
    except DecodingError:
        raise
    except Exception as exc:
        raise DecodingError(f"Failed to decode payload with codec {stored.value}: {exc}") from exc

    if len(payload) != meta["payload_size"]:
        raise DecodingError("Decoded payload size mismatch")
    if hashlib.sha256(payload).hexdigest() != meta["sha256"]:
        raise DecodingError("Decoded payload checksum mismatch")

    return Chunk(
        payload=payload,
        subject=meta["subject"],
        first_sequence=meta["first_sequence"],
        last_sequence=meta["last_sequence"],
        record_count=meta["record_count"],
    )


def _payload_bytes(chunk: Chunk) -> bytes:
    if not isinstance(chunk.payload, (bytes, bytearray, memoryview)):
        raise EncodingError(f"Chunk payload must be bytes, got {type(chunk.payload).__name__}")
    return bytes(chunk.payload)


def _validate_metadata(chunk: Chunk) -> None:
    if not isinstance(chunk.subject, str):
        raise EncodingError("Chunk subject must be a string")
    for name in ("first_sequence", "last_sequence", "record_count"):
        value = getattr(chunk, name)
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise EncodingError(f"Chunk {name} must be a non-negative integer")
    if chunk.first_sequence > chunk.last_sequence:
        raise EncodingError("Chunk first_sequence is greater than last_sequence")


def _parse_meta(raw: bytes) -> dict[str, Any]:
    try:
        meta = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise DecodingError(f"Malformed chunk metadata: {exc}") from exc
    if not isinstance(meta, dict):
        raise DecodingError("Chunk metadata must be an object")

    int_fields = ("first_sequence", "last_sequence", "record_count", "payload_size")
    for name in int_fields:
        if not isinstance(meta.get(name), int):
            raise DecodingError(f"Chunk metadata field {name!r} missing or not an integer")
    if not isinstance(meta.get("subject"), str) or not isinstance(meta.get("sha256"), str):
        raise DecodingError("Chunk metadata missing subject or checksum")
    return meta


def _compress(codec: Codec, payload: bytes) -> bytes:
    if codec is Codec.RAW:
        return payload
    if codec is Codec.GZIP:
        return gzip.compress(payload, mtime=0)
    if codec is Codec.ZSTD:
        import zstandard as zstd

        return zstd.ZstdCompressor(level=ZSTD_LEVEL).compress(payload)
    if codec is Codec.LZ4:
        import lz4.frame as lz4f

        return lz4f.compress(payload)
    raise EncodingError(f"Unsupported codec {codec}")


def _decompress(codec: Codec, body: bytes, expected_size: int) -> bytes:
    if codec is Codec.RAW:
        return body
    if codec is Codec.GZIP:
        return gzip.decompress(body)
    if codec is Codec.ZSTD:
        import zstandard as zstd

        return zstd.ZstdDecompressor().decompress(body, max_output_size=expected_size or 1)
    if codec is Codec.LZ4:
        import lz4.frame as lz4f

        return lz4f.decompress(body)
    raise DecodingError(f"Unsupported codec {codec}")
