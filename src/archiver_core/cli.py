"""Command line entry point for the stream archiver."""

from __future__ import annotations

import importlib
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Dict

import click

from .checkpoint import CheckpointStore, ObjectStoreCheckpointStore
from .chunk import Codec, DecodingError
from .config import DEFAULT_CONFIG_PATH, ArchiverConfig, BusSettings, ConfigError, load_config, log_level
from .jobs import JobState, JobSupervisor, StoreJob
from .metrics import start_http_server
from .object_store import ObjectStoreClient, StorageError
from .source import InMemorySource, MessageSource

logger = logging.getLogger("archiver")

MEMORY_BUS_SCHEME = "memory://"


def _setup_logging(level: int) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # botocore debug output would include signed request headers.
    logging.getLogger("botocore").setLevel(max(level, logging.INFO))


def _load(config_path: str | None) -> ArchiverConfig:
    try:
        return load_config(Path(config_path) if config_path else DEFAULT_CONFIG_PATH)
    except ConfigError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc


def build_source_factory(bus: BusSettings) -> Callable[[StoreJob], MessageSource]:
    """Resolve the message source used by store jobs.

    ``bus.factory`` names a ``module:callable`` that receives ``(bus, job)``.
    Without it only the in-process ``memory://`` bus is available.
    """

    if bus.factory:
        module_name, sep, attr = bus.factory.partition(":")
        if not sep or not attr:
            raise ConfigError(f"bus.factory must look like 'module:callable', got {bus.factory!r}")
        try:
            target = getattr(importlib.import_module(module_name), attr)
        except (ImportError, AttributeError) as exc:
            raise ConfigError(f"Cannot load bus.factory {bus.factory!r}: {exc}") from exc
        return lambda job: target(bus, job)

    if bus.url.startswith(MEMORY_BUS_SCHEME):
        shared = InMemorySource()
        return lambda job: shared

    raise ConfigError(f"No message source for bus url {bus.url!r}; set bus.factory")


def build_checkpoint_factory(client: ObjectStoreClient) -> Callable[[StoreJob], CheckpointStore]:
    return lambda job: ObjectStoreCheckpointStore(client, job.bucket)


@click.group()
def main() -> None:
    """Archive message stream subjects into S3-compatible object storage."""


_config_option = click.option(
    "--config",
    "config_path",
    envvar="ARCHIVER_CONFIG",
    default=None,
    help=f"Path to config file (.toml, .yaml or .yml). Defaults to {DEFAULT_CONFIG_PATH}.",
)


@main.command()
@_config_option
@click.option("--metrics/--no-metrics", default=True, help="Serve Prometheus metrics on server.addr.")
def run(config_path: str | None, metrics: bool) -> None:
    """Run every configured store job until interrupted."""

    config = _load(config_path)
    _setup_logging(log_level(config))
    if not config.store:
        raise click.ClickException("No store jobs configured")

    client = ObjectStoreClient(config.s3)
    try:
        source_factory = build_source_factory(config.bus)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    if metrics:
        try:
            host, port = config.server.host_port
        except ConfigError as exc:
            raise click.ClickException(f"Invalid configuration: {exc}") from exc
        start_http_server(port, addr=host)
        logger.info("Serving metrics addr=%s", config.server.addr)

    supervisor = JobSupervisor(
        config.store,
        client,
        source_factory,
        build_checkpoint_factory(client),
        retry=config.retry,
    )

    stop = threading.Event()

    def _handle_signal(signum: int, frame: Any) -> None:  # pragma: no cover - signal path
        logger.info("Received signal %s, stopping store jobs", signum)
        stop.set()

    previous: Dict[int, Any] = {}
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            previous[sig] = signal.signal(sig, _handle_signal)
        except ValueError:
            # Not on the main thread.
            pass

    supervisor.start()
    try:
        while not stop.is_set():
            states = {runner.job.name: runner.state for runner in supervisor.runners}
            if all(state.is_terminal for state in states.values()):
                break
            stop.wait(1.0)
    finally:
        for sig, handler in previous.items():
            if handler is not None:
                signal.signal(sig, handler)

    final = supervisor.stop()
    for name, state in final.items():
        logger.info("job=%s state=%s", name, state.value)
    for failure in supervisor.failures():
        logger.error("job=%s error=%s", failure.job, failure.cause)
    if any(state is JobState.STOPPED_FATAL for state in final.values()):
        sys.exit(2)


@main.command("check-config")
@_config_option
def check_config(config_path: str | None) -> None:
    """Validate the configuration and print the resolved store jobs."""

    config = _load(config_path)
    click.echo(f"log={config.log or 'info'} server={config.server.addr} bus={config.bus.url}")
    click.echo(f"s3 endpoint={config.s3.endpoint} region={config.s3.region} policy={config.s3.policy.value}")
    for job in config.store:
        click.echo(
            f"job={job.name} subject={job.subject} bucket={job.bucket} prefix={job.prefix} "
            f"codec={job.codec.value} batch={job.batch}"
        )


@main.command("ls")
@_config_option
@click.option("--bucket", required=True)
@click.option("--prefix", default="")
def list_command(config_path: str | None, bucket: str, prefix: str) -> None:
    """List stored object paths under a prefix."""

    config = _load(config_path)
    client = ObjectStoreClient(config.s3)
    try:
        paths = client.list_paths(bucket, prefix)
    except StorageError as exc:
        raise click.ClickException(str(exc)) from exc
    for path in sorted(paths):
        click.echo(path)


@main.command("get")
@_config_option
@click.option("--bucket", required=True)
@click.option("--path", "object_path", required=True)
@click.option("--codec", type=click.Choice([c.value for c in Codec]), required=True)
@click.option("--output", type=click.Path(dir_okay=False, writable=True), default=None)
@click.option("--records/--payload", default=False, help="Write framed records one per line.")
def get_command(
    config_path: str | None,
    bucket: str,
    object_path: str,
    codec: str,
    output: str | None,
    records: bool,
) -> None:
    """Download a chunk and write its payload."""

    config = _load(config_path)
    client = ObjectStoreClient(config.s3)
    try:
        chunk = client.download_chunk(bucket, object_path, codec)
        data = b"\n".join(chunk.records()) + b"\n" if records else chunk.payload
    except (StorageError, DecodingError) as exc:
        raise click.ClickException(str(exc)) from exc

    info: Dict[str, Any] = {
        "subject": chunk.subject,
        "first_sequence": chunk.first_sequence,
        "last_sequence": chunk.last_sequence,
        "records": chunk.record_count,
    }
    click.echo(" ".join(f"{k}={v}" for k, v in info.items()), err=True)
    if output:
        Path(output).write_bytes(data)
    else:
        click.get_binary_stream("stdout").write(data)


@main.command("rm")
@_config_option
@click.option("--bucket", required=True)
@click.option("--path", "object_path", required=True)
def remove_command(config_path: str | None, bucket: str, object_path: str) -> None:
    """Delete a stored chunk; deleting a missing object succeeds."""

    config = _load(config_path)
    client = ObjectStoreClient(config.s3)
    try:
        client.delete_chunk(bucket, object_path)
    except StorageError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"deleted {bucket}/{object_path}")


if __name__ == "__main__":  # pragma: no cover
    main()
