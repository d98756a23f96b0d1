"""Prometheus metrics for the object store client and store jobs."""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, start_http_server

ARCHIVER_UPLOADS_TOTAL = Counter(
    "archiver_uploads_total",
    "Number of chunk uploads",
    ["codec", "status"],
)

ARCHIVER_UPLOAD_SECONDS = Histogram(
    "archiver_upload_seconds",
    "Time spent uploading a chunk",
    ["codec"],
)

ARCHIVER_UPLOAD_BYTES_TOTAL = Counter(
    "archiver_upload_bytes_total",
    "Encoded bytes written to the object store",
    ["codec"],
)

ARCHIVER_DOWNLOADS_TOTAL = Counter(
    "archiver_downloads_total",
    "Number of chunk downloads",
    ["codec", "status"],
)

ARCHIVER_DELETES_TOTAL = Counter(
    "archiver_deletes_total",
    "Number of chunk deletions",
    ["status"],
)

ARCHIVER_LISTINGS_TOTAL = Counter(
    "archiver_listings_total",
    "Number of prefix listings",
    ["status"],
)

ARCHIVER_LISTED_PAGES_TOTAL = Counter(
    "archiver_listed_pages_total",
    "Number of listing pages fetched",
)

ARCHIVER_BUCKETS_CREATED_TOTAL = Counter(
    "archiver_buckets_created_total",
    "Number of buckets created on first write",
)

ARCHIVER_STATUS_MISMATCHES_TOTAL = Counter(
    "archiver_status_mismatches_total",
    "Remote operations that returned a non-success status",
    ["operation", "policy"],
)

ARCHIVER_CHUNKS_SKIPPED_TOTAL = Counter(
    "archiver_chunks_skipped_total",
    "Chunks skipped because their content key was already stored",
    ["job"],
)

ARCHIVER_JOB_RETRIES_TOTAL = Counter(
    "archiver_job_retries_total",
    "Retries performed by store jobs after transient failures",
    ["job"],
)

ARCHIVER_JOB_FAILURES_TOTAL = Counter(
    "archiver_job_failures_total",
    "Store jobs stopped by a fatal error",
    ["job", "reason"],
)

ARCHIVER_JOB_STATE = Gauge(
    "archiver_job_state",
    "Current state of a store job (1 for the active state)",
    ["job", "state"],
)

ARCHIVER_CHECKPOINT_SEQUENCE = Gauge(
    "archiver_checkpoint_sequence",
    "Highest stream sequence durably archived by a job",
    ["job"],
)

__all__ = [
    "ARCHIVER_UPLOADS_TOTAL",
    "ARCHIVER_UPLOAD_SECONDS",
    "ARCHIVER_UPLOAD_BYTES_TOTAL",
    "ARCHIVER_DOWNLOADS_TOTAL",
    "ARCHIVER_DELETES_TOTAL",
    "ARCHIVER_LISTINGS_TOTAL",
    "ARCHIVER_LISTED_PAGES_TOTAL",
    "ARCHIVER_BUCKETS_CREATED_TOTAL",
    "ARCHIVER_STATUS_MISMATCHES_TOTAL",
    "ARCHIVER_CHUNKS_SKIPPED_TOTAL",
    "ARCHIVER_JOB_RETRIES_TOTAL",
    "ARCHIVER_JOB_FAILURES_TOTAL",
    "ARCHIVER_JOB_STATE",
    "ARCHIVER_CHECKPOINT_SEQUENCE",
    "start_http_server",
    "CONTENT_TYPE_LATEST",
]
