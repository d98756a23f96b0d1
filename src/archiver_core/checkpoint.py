"""Per-job checkpoints recording the highest stream sequence already archived."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Dict, Protocol

from .metrics import ARCHIVER_CHECKPOINT_SEQUENCE
from .object_store import ObjectStoreClient, join_path

logger = logging.getLogger(__name__)

CHECKPOINT_PREFIX = "_checkpoints"


@dataclass(frozen=True)
class Checkpoint:
    job: str
    sequence: int = 0

    def covers(self, sequence: int) -> bool:
        return sequence <= self.sequence


class CheckpointStore(Protocol):
    def load(self, job: str) -> Checkpoint: ...

    def save(self, checkpoint: Checkpoint) -> None: ...


class MemoryCheckpointStore:
    """Process-local checkpoints, lost on exit."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sequences: Dict[str, int] = {}

    def load(self, job: str) -> Checkpoint:
        with self._lock:
            return Checkpoint(job=job, sequence=self._sequences.get(job, 0))

    def save(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            current = self._sequences.get(checkpoint.job, 0)
            if checkpoint.sequence < current:
                return
            self._sequences[checkpoint.job] = checkpoint.sequence
        ARCHIVER_CHECKPOINT_SEQUENCE.labels(job=checkpoint.job).set(checkpoint.sequence)


class ObjectStoreCheckpointStore:
    """Checkpoints kept as JSON documents at ``_checkpoints/<job>.json`` in a bucket.

    Writes go through the object store client so they obey the same status
    policy as chunk uploads. Saves never move a checkpoint backwards.
    """

    def __init__(self, client: ObjectStoreClient, bucket: str, prefix: str = CHECKPOINT_PREFIX) -> None:
        self._client = client
        self._bucket = bucket
        self._prefix = prefix

    def _path(self, job: str) -> str:
        return join_path(self._prefix, f"{job}.json")

    def load(self, job: str) -> Checkpoint:
        raw = self._client.get_bytes(self._bucket, self._path(job))
        if raw is None:
            return Checkpoint(job=job)
        try:
            doc = json.loads(raw.decode("utf-8"))
            sequence = int(doc["sequence"])
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
            raise ValueError(f"Corrupt checkpoint for job {job!r} at {self._path(job)}: {exc}") from exc
        return Checkpoint(job=job, sequence=sequence)

    def save(self, checkpoint: Checkpoint) -> None:
        current = self.load(checkpoint.job)
        if checkpoint.sequence < current.sequence:
            logger.debug(
                "Ignoring checkpoint regression job=%s current=%d requested=%d",
                checkpoint.job,
                current.sequence,
                checkpoint.sequence,
            )
            return
        body = json.dumps(asdict(checkpoint), sort_keys=True).encode("utf-8")
        self._client.put_bytes(self._bucket, self._path(checkpoint.job), body)
        ARCHIVER_CHECKPOINT_SEQUENCE.labels(job=checkpoint.job).set(checkpoint.sequence)
