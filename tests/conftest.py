from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterator, List, Tuple

import pytest

from archiver_core.object_store import StorageError


class FakeBackend:
    """In-memory object store honouring the ObjectStoreBackend protocol."""

    def __init__(self, page_size: int = 1000, overlap_pages: bool = False) -> None:
        self.buckets: Dict[str, Dict[str, bytes]] = {}
        self.page_size = page_size
        self.overlap_pages = overlap_pages
        self.status = {"create": 200, "put": 200, "get": 200, "delete": 204, "list": 200}
        self.errors: Dict[str, List[Exception]] = defaultdict(list)
        self.denied_buckets: set[str] = set()
        self.create_calls: List[str] = []
        self.put_calls: List[Tuple[str, str]] = []

    def _check(self, op: str, bucket: str) -> None:
        if bucket in self.denied_buckets:
            raise StorageError(f"{op} denied for {bucket}", transient=False, code="AccessDenied", status=403)
        if self.errors[op]:
            raise self.errors[op].pop(0)

    def bucket_exists(self, bucket: str) -> bool:
        self._check("head", bucket)
        return bucket in self.buckets

    def create_bucket(self, bucket: str) -> int:
        self._check("create", bucket)
        self.create_calls.append(bucket)
        self.buckets.setdefault(bucket, {})
        return self.status["create"]

    def put(self, bucket: str, key: str, body: bytes) -> int:
        self._check("put", bucket)
        if bucket not in self.buckets:
            raise StorageError(f"no bucket {bucket}", code="NoSuchBucket", status=404)
        self.put_calls.append((bucket, key))
        self.buckets[bucket][key] = bytes(body)
        return self.status["put"]

    def get(self, bucket: str, key: str) -> Tuple[int, bytes]:
        self._check("get", bucket)
        if bucket not in self.buckets:
            raise StorageError(f"no bucket {bucket}", code="NoSuchBucket", status=404)
        if key not in self.buckets[bucket]:
            raise StorageError(f"no key {key}", code="NoSuchKey", status=404)
        return self.status["get"], self.buckets[bucket][key]

    def delete(self, bucket: str, key: str) -> int:
        self._check("delete", bucket)
        self.buckets.get(bucket, {}).pop(key, None)
        return self.status["delete"]

    def list_pages(self, bucket: str, prefix: str) -> Iterator[Tuple[int, List[str]]]:
        self._check("list", bucket)
        if bucket not in self.buckets:
            raise StorageError(f"no bucket {bucket}", code="NoSuchBucket", status=404)
        keys = sorted(k for k in self.buckets[bucket] if k.startswith(prefix))
        if not keys:
            yield self.status["list"], []
            return
        for start in range(0, len(keys), self.page_size):
            page = keys[start : start + self.page_size]
            if self.overlap_pages and start > 0:
                page = [keys[start - 1]] + page
            yield self.status["list"], page


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def make_backend():
    def _make(**kwargs) -> FakeBackend:
        return FakeBackend(**kwargs)

    return _make


@pytest.fixture
def aws_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
