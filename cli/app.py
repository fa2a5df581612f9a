from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

import typer

from app.main import StatusServer, create_app
from broker.mqtt import MqttConnector
from cli.client import StatusClient
from cli.config import load_settings, status_url
from cli.render import render_counters, render_stats
from logging_config import configure_logging
from models.records import Counters
from services.consumer import TelemetryConsumer
from services.errors import StoreError
from services.registrar import HttpRegistrar
from services.scheduler import Scheduler
from services.simulator import ProducerRunner
from services.sink import SinkWriter
from services.stats import StatsReporter
from settings import Settings
from storage.influxdb import InfluxDBWriter
from storage.metrics import InfluxDBMetrics

logger = logging.getLogger(__name__)


@dataclass
class CLIState:
    log_level: Optional[str]
    status_port: Optional[int]


app = typer.Typer(
    help="Load-generate HTTP telemetry and consume it into InfluxDB for soak testing.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1)
    return state


@app.callback()
def main(
    ctx: typer.Context,
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Log level (defaults to LOG_LEVEL env or INFO)."
    ),
    status_port: Optional[int] = typer.Option(
        None, "--status-port", help="Serve /health and /stats on this port."
    ),
) -> None:
    """Entry point for the CLI."""
    ctx.obj = CLIState(log_level=log_level.upper() if log_level else None, status_port=status_port)


def _build_writer(settings: Settings, scheduler: Optional[Scheduler] = None) -> InfluxDBWriter:
    logger.info("InfluxDB - URL: %s", settings.influxdb_url)
    writer = InfluxDBWriter(
        settings.influxdb_url,
        settings.influxdb_name,
        username=settings.influxdb_user,
        password=settings.influxdb_password,
        timeout=settings.http_timeout,
        scheduler=scheduler,
    )
    writer.create_database()
    return writer


def _build_metrics(settings: Settings) -> Optional[InfluxDBMetrics]:
    if not settings.metrics_enabled:
        return None
    logger.info("Recording metrics")
    return InfluxDBMetrics(_build_writer(settings))


def _start_status_server(state: CLIState, counters: Dict[str, Counters]) -> Optional[StatusServer]:
    if state.status_port is None:
        return None
    server = StatusServer(create_app(counters), port=state.status_port)
    server.start()
    return server


@app.command("producer")
def producer_command(
    ctx: typer.Context,
    url: Optional[str] = typer.Option(None, "--url", help="Override the telemetry endpoint base URL."),
    devices: Optional[int] = typer.Option(None, "--devices", "-n", min=1, help="Number of simulated devices."),
    http_async: Optional[bool] = typer.Option(None, "--async/--sync", help="Producer execution mode."),
    register: bool = typer.Option(
        False, "--register/--no-register", help="Register all devices before sending."
    ),
    duration: Optional[float] = typer.Option(
        None, "--duration", min=0, help="Stop after this many seconds (default: run until interrupted)."
    ),
) -> None:
    """Tick every simulated device on a fixed interval."""
    state = _get_state(ctx)
    settings = load_settings(telemetry_url=url, device_count=devices, http_async=http_async)
    configure_logging(state.log_level or settings.log_level)

    if settings.telemetry_url is None:
        logger.warning("No telemetry endpoint configured; devices will not send")

    counters = Counters()
    scheduler = Scheduler("producer")
    registrar = (
        HttpRegistrar(settings.registry_url, settings.tenant, timeout=settings.http_timeout)
        if settings.registry_url
        else None
    )
    try:
        metrics = _build_metrics(settings)
    except StoreError as exc:
        typer.secho(f"Failed to initialize metrics: {exc}", fg=typer.colors.RED, err=True)
        if registrar is not None:
            registrar.close()
        raise typer.Exit(code=1)

    runner = ProducerRunner(settings, counters, scheduler, registrar=registrar)
    reporter = StatsReporter(counters, "producer", ("sent", "success", "failure"), metrics=metrics)
    server = _start_status_server(state, {"producer": counters})
    typer.echo(f"Running Async: {settings.http_async}")

    stopped = threading.Event()
    try:
        if register:
            failed = runner.register_all()
            typer.echo(f"Registered {len(runner.devices) - failed} of {len(runner.devices)} devices.")
        reporter.start(scheduler)
        runner.start()
        stopped.wait(duration)
    except KeyboardInterrupt:
        typer.echo("Interrupted.")
    finally:
        runner.shutdown()
        scheduler.shutdown()
        if registrar is not None:
            registrar.close()
        if metrics is not None:
            metrics.close()
        if server is not None:
            server.stop()

    render_counters("producer", asdict(counters.snapshot()))


@app.command("consumer")
def consumer_command(
    ctx: typer.Context,
    tenant: Optional[str] = typer.Option(None, "--tenant", help="Tenant whose telemetry is consumed."),
    persistence: Optional[bool] = typer.Option(
        None, "--persistence/--no-persistence", help="Write telemetry to InfluxDB."
    ),
    metrics_enabled: Optional[bool] = typer.Option(
        None, "--metrics/--no-metrics", help="Record per-second stats in InfluxDB."
    ),
) -> None:
    """Consume a tenant's telemetry until the subscription ends, then exit non-zero."""
    state = _get_state(ctx)
    settings = load_settings(
        tenant=tenant, persistence_enabled=persistence, metrics_enabled=metrics_enabled
    )
    configure_logging(state.log_level or settings.log_level)
    typer.echo(f"Consumer - Server: {settings.broker_host}:{settings.broker_port}")

    counters = Counters()
    scheduler = Scheduler("consumer")
    writer: Optional[InfluxDBWriter] = None
    sink: Optional[SinkWriter] = None
    metrics: Optional[InfluxDBMetrics] = None
    reporters: List[StatsReporter] = []

    try:
        if settings.persistence_enabled:
            logger.info("Recording payload")
            writer = _build_writer(settings, scheduler)
            writer.start()
            sink = SinkWriter(writer)
        metrics = _build_metrics(settings)
    except StoreError as exc:
        typer.secho(f"Failed to initialize store: {exc}", fg=typer.colors.RED, err=True)
        if writer is not None:
            writer.close()
        scheduler.shutdown()
        raise typer.Exit(code=1)

    connector = MqttConnector(
        settings.broker_host,
        settings.broker_port,
        username=settings.broker_user,
        password=settings.broker_password,
        tls_enabled=settings.tls_enabled,
        trusted_certs=settings.trusted_certs,
        receive_maximum=settings.initial_credits,
        connect_timeout=settings.connect_timeout,
    )
    consumer = TelemetryConsumer(
        connector,
        settings.tenant,
        counters,
        scheduler,
        sink=sink,
        reconnect_delay=settings.reconnect_delay,
    )

    reporters.append(StatsReporter(counters, "consumer", ("processed",), metrics=metrics))
    if sink is not None:
        reporters.append(StatsReporter(sink.counters, "sink", ("processed",)))
    for reporter in reporters:
        reporter.start(scheduler)

    labelled: Dict[str, Counters] = {"consumer": counters}
    if sink is not None:
        labelled["sink"] = sink.counters
    server = _start_status_server(state, labelled)

    try:
        consumer.run()
        typer.echo("Exiting application ...")
    except KeyboardInterrupt:
        typer.echo("Interrupted.")
    finally:
        consumer.close()
        for reporter in reporters:
            reporter.stop()
        scheduler.shutdown()
        if writer is not None:
            writer.close()
        if metrics is not None:
            metrics.close()
        if server is not None:
            server.stop()

    typer.echo("Bye, bye!")
    raise typer.Exit(code=1)


@app.command("status")
def status_command(
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Status API base URL (defaults to STATUS_API_URL env or http://localhost:8080).",
    ),
) -> None:
    """Show the counters of a running producer or consumer."""
    client = StatusClient(status_url(base_url))
    try:
        payload = client.get_stats()
    finally:
        client.close()
    render_stats(payload)
