"""Core of the stream archiver: chunk codecs, object store client and store jobs."""

from .checkpoint import Checkpoint, CheckpointStore, MemoryCheckpointStore, ObjectStoreCheckpointStore
from .chunk import (
    Chunk,
    Codec,
    DecodingError,
    EncodingError,
    codec_from_key,
    content_keys,
    deserialize,
    is_content_key,
    key,
    serialize,
)
from .config import (
    ArchiverConfig,
    BusSettings,
    ConfigError,
    EnvProvider,
    FileProvider,
    ServerSettings,
    load_config,
    log_level,
    merge_layers,
)
from .jobs import (
    JobFatalError,
    JobState,
    JobSupervisor,
    RetrySettings,
    StoreJob,
    StoreJobRunner,
)
from .object_store import (
    Boto3Backend,
    ObjectStoreBackend,
    ObjectStoreClient,
    S3Settings,
    StatusMismatch,
    StatusPolicy,
    StorageError,
    build_client,
    join_path,
    normalize_prefix,
)
from .source import InMemorySource, Message, MessageSource, SourceUnavailable

__all__ = [
    "Chunk",
    "Codec",
    "EncodingError",
    "DecodingError",
    "serialize",
    "deserialize",
    "key",
    "is_content_key",
    "codec_from_key",
    "content_keys",
    "S3Settings",
    "StatusPolicy",
    "StorageError",
    "StatusMismatch",
    "ObjectStoreBackend",
    "Boto3Backend",
    "ObjectStoreClient",
    "build_client",
    "join_path",
    "normalize_prefix",
    "Message",
    "MessageSource",
    "InMemorySource",
    "SourceUnavailable",
    "Checkpoint",
    "CheckpointStore",
    "MemoryCheckpointStore",
    "ObjectStoreCheckpointStore",
    "StoreJob",
    "RetrySettings",
    "JobState",
    "JobFatalError",
    "StoreJobRunner",
    "JobSupervisor",
    "ArchiverConfig",
    "BusSettings",
    "ServerSettings",
    "ConfigError",
    "FileProvider",
    "EnvProvider",
    "merge_layers",
    "load_config",
    "log_level",
]
