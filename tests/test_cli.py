from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner
from moto import mock_aws

from archiver_core import cli
from archiver_core.chunk import Chunk, Codec
from archiver_core.config import BusSettings, ConfigError
from archiver_core.jobs import StoreJob
from archiver_core.object_store import ObjectStoreClient
from archiver_core.source import InMemorySource

BASE_CONFIG = """
log = "info"

[bus]
url = "memory://"

[s3]
region = "us-east-1"
access = "testing"
secret = "testing"
"""

JOB_CONFIG = """
[[store]]
name = "orders"
subject = "orders.created"
bucket = "forbidden"
prefix = "orders"
codec = "zstd"

[retry]
attempts = 2
initial = 0
maximum = 0
"""


def write_config(tmp_path: Path, text: str = BASE_CONFIG) -> str:
    path = tmp_path / "config.toml"
    path.write_text(text)
    return str(path)


@pytest.fixture
def fake_client(monkeypatch: pytest.MonkeyPatch, fake_backend) -> ObjectStoreClient:
    client = ObjectStoreClient(fake_backend)
    monkeypatch.setattr(cli, "ObjectStoreClient", lambda settings: client)
    return client


def test_check_config_prints_jobs(tmp_path: Path) -> None:
    path = write_config(tmp_path, BASE_CONFIG + JOB_CONFIG)

    result = CliRunner().invoke(cli.main, ["check-config", "--config", path])

    assert result.exit_code == 0, result.output
    assert "bus=memory://" in result.output
    assert "policy=strict" in result.output
    assert "job=orders subject=orders.created bucket=forbidden prefix=orders codec=zstd batch=1" in result.output
    assert "testing" not in result.output


def test_check_config_reads_path_from_environment(tmp_path: Path) -> None:
    path = write_config(tmp_path)
    result = CliRunner().invoke(cli.main, ["check-config"], env={"ARCHIVER_CONFIG": path})
    assert result.exit_code == 0, result.output


def test_invalid_config_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text('[s3]\nregion = "us-east-1"\n')

    result = CliRunner().invoke(cli.main, ["check-config", "--config", str(path)])

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_ls_get_rm_against_store(tmp_path: Path, fake_client: ObjectStoreClient) -> None:
    path = write_config(tmp_path)
    chunk = Chunk.from_messages("orders.created", [(1, b"first"), (2, b"second")])
    stored = fake_client.upload_chunk(chunk, "archive", "orders", Codec.GZIP)
    runner = CliRunner()

    listed = runner.invoke(cli.main, ["ls", "--config", path, "--bucket", "archive", "--prefix", "orders"])
    assert listed.exit_code == 0, listed.output
    assert listed.output.strip() == stored

    output = tmp_path / "records.bin"
    fetched = runner.invoke(
        cli.main,
        [
            "get",
            "--config",
            path,
            "--bucket",
            "archive",
            "--path",
            stored,
            "--codec",
            "gzip",
            "--records",
            "--output",
            str(output),
        ],
    )
    assert fetched.exit_code == 0, fetched.output
    assert output.read_bytes() == b"first\nsecond\n"

    removed = runner.invoke(cli.main, ["rm", "--config", path, "--bucket", "archive", "--path", stored])
    assert removed.exit_code == 0, removed.output
    assert fake_client.list_paths("archive", "orders") == []


def test_get_with_wrong_codec_fails(tmp_path: Path, fake_client: ObjectStoreClient) -> None:
    path = write_config(tmp_path)
    stored = fake_client.upload_chunk(Chunk(payload=b"x"), "archive", "", Codec.RAW)

    result = CliRunner().invoke(
        cli.main,
        ["get", "--config", path, "--bucket", "archive", "--path", stored, "--codec", "lz4"],
    )

    assert result.exit_code == 1
    assert "Codec mismatch" in result.output


def test_ls_missing_bucket_fails(tmp_path: Path, fake_client: ObjectStoreClient) -> None:
    path = write_config(tmp_path)
    result = CliRunner().invoke(cli.main, ["ls", "--config", path, "--bucket", "nope"])
    assert result.exit_code == 1
    assert "NoSuchBucket" in result.output or "no bucket" in result.output


@mock_aws
def test_ls_against_s3(tmp_path: Path, aws_credentials) -> None:
    path = write_config(tmp_path)
    client = ObjectStoreClient(cli.load_config(Path(path)).s3)
    stored = client.upload_chunk(Chunk(payload=b"hello"), "archive", "orders", Codec.RAW)

    result = CliRunner().invoke(cli.main, ["ls", "--config", path, "--bucket", "archive"])

    assert result.exit_code == 0, result.output
    assert result.output.strip() == stored


def test_run_without_jobs_fails(tmp_path: Path) -> None:
    path = write_config(tmp_path)
    result = CliRunner().invoke(cli.main, ["run", "--config", path, "--no-metrics"])
    assert result.exit_code == 1
    assert "No store jobs configured" in result.output


def test_run_rejects_bad_metrics_address(tmp_path: Path, fake_client) -> None:
    path = write_config(tmp_path, BASE_CONFIG.replace('log = "info"', 'log = "info"\n\n[server]\naddr = "no-port"') + JOB_CONFIG)

    result = CliRunner().invoke(cli.main, ["run", "--config", path])

    assert result.exit_code == 1
    assert "server.addr must be host:port" in result.output
    assert result.exception is None or isinstance(result.exception, SystemExit)


def test_run_exits_nonzero_when_a_job_fails(tmp_path: Path, fake_backend, fake_client) -> None:
    fake_backend.denied_buckets.add("forbidden")
    path = write_config(tmp_path, BASE_CONFIG + JOB_CONFIG)

    result = CliRunner().invoke(cli.main, ["run", "--config", path, "--no-metrics"])

    assert result.exit_code == 2


def test_build_source_factory_memory_bus_is_shared() -> None:
    factory = cli.build_source_factory(BusSettings(url="memory://"))
    job = StoreJob(name="a", subject="a", bucket="b")
    first = factory(job)
    assert isinstance(first, InMemorySource)
    assert factory(job) is first


def test_build_source_factory_uses_configured_callable() -> None:
    bus = BusSettings(url="nats://bus:4222", factory=f"{__name__}:make_source")
    job = StoreJob(name="a", subject="a", bucket="b")
    source = cli.build_source_factory(bus)(job)
    assert isinstance(source, InMemorySource)
    assert source.url == "nats://bus:4222"  # type: ignore[attr-defined]


def test_build_source_factory_rejects_unknown_bus() -> None:
    with pytest.raises(ConfigError):
        cli.build_source_factory(BusSettings(url="nats://bus:4222"))
    with pytest.raises(ConfigError):
        cli.build_source_factory(BusSettings(url="nats://bus:4222", factory="no_such_module:make"))
    with pytest.raises(ConfigError):
        cli.build_source_factory(BusSettings(url="nats://bus:4222", factory="missing-colon"))


def make_source(bus: BusSettings, job: StoreJob) -> InMemorySource:
    source = InMemorySource()
    source.url = bus.url  # type: ignore[attr-defined]
    return source
