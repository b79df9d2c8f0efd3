"""
Wire protocol for btrfs-backup.

Service: btrfsbackup.BackupService over gRPC, without generated protobuf
code. Every message is raw bytes; request/reply payloads are JSON encoded
pydantic models so malformed input fails validation instead of being
guessed at.

RPCs:
    SnapshotsNeeded (unary)          SnapshotsNeededRequest -> SnapshotsNeededReply
    SendSnapshot    (client stream)  frames                 -> TransferReply
    Health          (unary)          HealthRequest          -> HealthReply

Transfer frames (one tag byte, then the payload):
    H  TransferHeader JSON   first frame, exactly once
    D  raw stream bytes      zero or more
    E  TransferTrailer JSON  stream complete; size and sha256 of all D bytes
    A  TransferAbort JSON    sender failed; receiver discards everything

Invariants:
    - A stream is applied only if it ends with E and the trailer matches
    - Error codes in replies are BackupError codes

How to change safely:
    - Add optional fields with defaults; never rename existing ones
    - New frame tags must be rejected as corrupt by old receivers
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol, Union, runtime_checkable

from pydantic import BaseModel, Field, ValidationError

from ..errors import CorruptStream, ProtocolError

SERVICE_NAME = "btrfsbackup.BackupService"
SNAPSHOTS_NEEDED_METHOD = f"/{SERVICE_NAME}/SnapshotsNeeded"
SEND_SNAPSHOT_METHOD = f"/{SERVICE_NAME}/SendSnapshot"
HEALTH_METHOD = f"/{SERVICE_NAME}/Health"

FRAME_HEADER = b"H"
FRAME_DATA = b"D"
FRAME_END = b"E"
FRAME_ABORT = b"A"

INVALID_ARGUMENT = "INVALID_ARGUMENT"
INTERNAL = "INTERNAL"


class SnapshotsNeededRequest(BaseModel):
    """Client's full local chain for one subvolume."""

    subvolume: str = Field(..., min_length=1)
    snapshot_ids: list[str] = Field(default_factory=list)


class SnapshotsNeededReply(BaseModel):
    """Which of the claimed ids the server already holds.

    `head` is the newest snapshot id the server holds for the subvolume
    (whether or not the client claimed it), so the client can detect a
    server that moved ahead of it.
    """

    present: list[str] = Field(default_factory=list)
    head: Optional[str] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


class TransferHeader(BaseModel):
    subvolume: str = Field(..., min_length=1)
    snapshot_id: str = Field(..., min_length=1)
    parent_id: Optional[str] = None


class TransferTrailer(BaseModel):
    size: int = Field(..., ge=0)
    sha256: str


class TransferAbort(BaseModel):
    reason: str = ""


class TransferReply(BaseModel):
    ok: bool
    snapshot_id: Optional[str] = None
    parent_id: Optional[str] = None
    already_present: bool = False
    error_code: Optional[str] = None
    error: Optional[str] = None


class HealthRequest(BaseModel):
    pass


class HealthReply(BaseModel):
    healthy: bool
    version: str
    # Subvolumes with a negotiation or receive in progress
    subvolumes: int = 0


Frame = Union[TransferHeader, bytes, TransferTrailer, TransferAbort]


def encode_message(message: BaseModel) -> bytes:
    return message.model_dump_json().encode("utf-8")


def decode_message(model: type[BaseModel], raw: bytes) -> BaseModel:
    """Parse a request or reply payload.

    Raises:
        ProtocolError: If the payload is not a valid `model`
    """
    try:
        return model.model_validate_json(raw)
    except ValidationError as e:
        raise ProtocolError(f"Malformed {model.__name__}: {e.error_count()} error(s)") from e


def encode_header(header: TransferHeader) -> bytes:
    return FRAME_HEADER + encode_message(header)


def encode_data(chunk: bytes) -> bytes:
    return FRAME_DATA + chunk


def encode_trailer(trailer: TransferTrailer) -> bytes:
    return FRAME_END + encode_message(trailer)


def encode_abort(reason: str) -> bytes:
    return FRAME_ABORT + encode_message(TransferAbort(reason=reason))


def decode_frame(raw: bytes) -> Frame:
    """Decode one transfer frame.

    Returns:
        TransferHeader, TransferTrailer, TransferAbort, or the raw bytes of a
        data frame

    Raises:
        CorruptStream: For an empty frame, unknown tag or invalid payload
    """
    if not raw:
        raise CorruptStream("Empty transfer frame")

    tag, payload = raw[:1], raw[1:]
    if tag == FRAME_DATA:
        return payload

    models = {
        FRAME_HEADER: TransferHeader,
        FRAME_END: TransferTrailer,
        FRAME_ABORT: TransferAbort,
    }
    model = models.get(tag)
    if model is None:
        raise CorruptStream(f"Unknown frame tag {tag!r}")
    try:
        return model.model_validate_json(payload)
    except ValidationError as e:
        raise CorruptStream(f"Malformed {model.__name__} frame: {e.error_count()} error(s)") from e


class StreamDigest:
    """Running size and sha256 of a transfer's data bytes."""

    def __init__(self) -> None:
        self.size = 0
        self._sha256 = hashlib.sha256()

    def update(self, chunk: bytes) -> None:
        self.size += len(chunk)
        self._sha256.update(chunk)

    @property
    def hexdigest(self) -> str:
        return f"sha256:{self._sha256.hexdigest()}"

    def trailer(self) -> TransferTrailer:
        return TransferTrailer(size=self.size, sha256=self.hexdigest)

    def matches(self, trailer: TransferTrailer) -> bool:
        return trailer.size == self.size and trailer.sha256 == self.hexdigest


@dataclass
class Presence:
    """Negotiation result as seen by the client."""

    present: frozenset[str]
    head: Optional[str]


@runtime_checkable
class BackupPeer(Protocol):
    """The server as the client sees it.

    Implemented by GrpcClient; tests may substitute an in-process peer.
    """

    async def health(self) -> HealthReply:
        """Check that the server is reachable.

        Raises:
            NetworkFailure: Connection problems
        """
        ...

    async def snapshots_needed(self, subvolume: str, snapshot_ids: list[str]) -> Presence:
        """Ask which of `snapshot_ids` the server holds.

        Raises:
            NetworkFailure: Connection problems or a malformed reply
            RemoteError: Server rejected the request
        """
        ...

    async def send_snapshot(
        self,
        header: TransferHeader,
        chunks: AsyncIterator[bytes],
    ) -> TransferReply:
        """Stream one snapshot to the server.

        Errors raised by `chunks` are re-raised after the server has been told
        to discard the partial stream.

        Raises:
            NetworkFailure: Connection problems or a malformed reply
        """
        ...
