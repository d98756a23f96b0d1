from __future__ import annotations

import boto3
import pytest
from botocore.exceptions import EndpointConnectionError
from botocore.stub import ANY, Stubber
from moto import mock_aws

from archiver_core.chunk import Chunk, Codec
from archiver_core.object_store import (
    Boto3Backend,
    ObjectStoreClient,
    S3Settings,
    StatusMismatch,
    StatusPolicy,
    StorageError,
    build_client,
)

SETTINGS = S3Settings(region="us-east-1", access_key="testing", secret_key="testing")


@mock_aws
def test_boto3_upload_download_roundtrip(aws_credentials) -> None:
    client = ObjectStoreClient(SETTINGS)
    chunk = Chunk(payload=b"hello", subject="orders", first_sequence=1, last_sequence=1)

    path = client.upload_chunk(chunk, "archive", "job1", Codec.RAW)

    assert client.download_chunk("archive", path, Codec.RAW) == chunk
    assert client.list_paths("archive", "job1") == [path]


@mock_aws
def test_boto3_ensure_bucket_creates_missing_bucket(aws_credentials) -> None:
    client = ObjectStoreClient(SETTINGS)
    client.ensure_bucket("new-bucket", True)
    client.ensure_bucket("new-bucket", True)

    names = [b["Name"] for b in boto3.client("s3", region_name="us-east-1").list_buckets()["Buckets"]]
    assert names == ["new-bucket"]
    assert client.list_paths("new-bucket", "") == []


@mock_aws
def test_boto3_create_bucket_outside_default_region(aws_credentials) -> None:
    settings = S3Settings(region="eu-west-1", access_key="testing", secret_key="testing")
    client = ObjectStoreClient(settings)
    client.ensure_bucket("eu-bucket", True)

    s3 = boto3.client("s3", region_name="eu-west-1")
    assert s3.get_bucket_location(Bucket="eu-bucket")["LocationConstraint"] == "eu-west-1"


@mock_aws
def test_boto3_list_paths_spans_pages(aws_credentials) -> None:
    backend = Boto3Backend(SETTINGS, page_size=2)
    client = ObjectStoreClient(backend)
    stored = {client.upload_chunk(Chunk(payload=bytes([i])), "archive", "job1", Codec.ZSTD) for i in range(7)}

    pages = list(backend.list_pages("archive", "job1/"))
    listed = client.list_paths("archive", "job1/")

    assert len(pages) == 4
    assert sorted(listed) == sorted(stored)


@mock_aws
def test_boto3_idempotent_upload(aws_credentials) -> None:
    client = ObjectStoreClient(SETTINGS)
    chunk = Chunk(payload=b"twice")
    client.upload_chunk(chunk, "archive", "job1", Codec.GZIP)
    client.upload_chunk(chunk, "archive", "job1", Codec.GZIP)
    assert len(client.list_paths("archive", "job1")) == 1


@mock_aws
def test_boto3_delete_missing_object_is_not_an_error(aws_credentials) -> None:
    client = ObjectStoreClient(SETTINGS)
    client.ensure_bucket("archive", True)
    client.delete_chunk("archive", "job1/raw-" + "0" * 64)


@mock_aws
def test_boto3_download_from_missing_bucket_is_persistent(aws_credentials) -> None:
    client = ObjectStoreClient(SETTINGS)
    with pytest.raises(StorageError) as excinfo:
        client.download_chunk("nope", "job1/raw-" + "0" * 64, Codec.RAW)
    assert excinfo.value.code == "NoSuchBucket"
    assert excinfo.value.transient is False


def _stubbed_client() -> tuple[object, Stubber]:
    s3 = boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )
    return s3, Stubber(s3)


def test_put_status_mismatch_strict_and_lenient() -> None:
    for policy in (StatusPolicy.STRICT, StatusPolicy.LENIENT):
        s3, stubber = _stubbed_client()
        stubber.add_response("head_bucket", {}, {"Bucket": "archive"})
        stubber.add_response(
            "put_object",
            {"ResponseMetadata": {"HTTPStatusCode": 202}, "ETag": '"etag"'},
            {"Bucket": "archive", "Key": ANY, "Body": ANY},
        )
        client = ObjectStoreClient(Boto3Backend(SETTINGS, client=s3), policy=policy)
        with stubber:
            if policy is StatusPolicy.STRICT:
                with pytest.raises(StatusMismatch):
                    client.upload_chunk(Chunk(payload=b"hello"), "archive", "job1", Codec.RAW)
            else:
                path = client.upload_chunk(Chunk(payload=b"hello"), "archive", "job1", Codec.RAW)
                assert path.startswith("job1/raw-")
            stubber.assert_no_pending_responses()


def test_access_denied_is_persistent() -> None:
    s3, stubber = _stubbed_client()
    stubber.add_client_error(
        "head_bucket",
        service_error_code="403",
        service_message="Forbidden",
        http_status_code=403,
        expected_params={"Bucket": "archive"},
    )
    backend = Boto3Backend(SETTINGS, client=s3)
    with stubber:
        with pytest.raises(StorageError) as excinfo:
            backend.bucket_exists("archive")
    assert excinfo.value.transient is False


def test_slow_down_is_transient() -> None:
    s3, stubber = _stubbed_client()
    stubber.add_client_error(
        "put_object",
        service_error_code="SlowDown",
        service_message="Reduce your request rate",
        http_status_code=503,
        expected_params={"Bucket": "archive", "Key": "k", "Body": b"x"},
    )
    backend = Boto3Backend(SETTINGS, client=s3)
    with stubber:
        with pytest.raises(StorageError) as excinfo:
            backend.put("archive", "k", b"x")
    assert excinfo.value.transient is True
    assert excinfo.value.code == "SlowDown"


def test_connection_errors_are_transient() -> None:
    class BrokenClient:
        def put_object(self, Bucket: str, Key: str, Body: bytes) -> None:
            raise EndpointConnectionError(endpoint_url="http://localhost:9000")

    backend = Boto3Backend(SETTINGS, client=BrokenClient())
    with pytest.raises(StorageError) as excinfo:
        backend.put("archive", "k", b"x")
    assert excinfo.value.transient is True


def test_bucket_already_owned_counts_as_created() -> None:
    s3, stubber = _stubbed_client()
    stubber.add_client_error(
        "create_bucket",
        service_error_code="BucketAlreadyOwnedByYou",
        http_status_code=409,
        expected_params={"Bucket": "archive"},
    )
    backend = Boto3Backend(SETTINGS, client=s3)
    with stubber:
        assert backend.create_bucket("archive") == 200


def test_build_client_uses_settings_policy() -> None:
    lenient = S3Settings(access_key="testing", secret_key="testing", strict=False)
    assert build_client(lenient, client=object()).policy is StatusPolicy.LENIENT
    assert ObjectStoreClient(SETTINGS).policy is StatusPolicy.STRICT


def test_settings_repr_hides_credentials() -> None:
    settings = S3Settings(endpoint="http://minio:9000", access_key="AKIAEXAMPLE", secret_key="s3cr3t")
    text = repr(settings)
    assert "AKIAEXAMPLE" not in text
    assert "s3cr3t" not in text
    assert "minio" in text
