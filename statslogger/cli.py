"""
Command line entrypoint: ``statslogger --addr :8080 --data events.jsonl``.

Every option also takes the single-dash spelling (``-addr :8080 -data events.jsonl``),
and ``-stream.addr`` is accepted for ``--saver``.
"""

from __future__ import annotations

from typing import Any, Optional

import typer
import uvicorn

from statslogger.api.main import create_app
from statslogger.core.config import Settings
from statslogger.core.exceptions import SinkError
from statslogger.core.logger import configure_logging, get_logger
from statslogger.services.sinks import make_sink

app = typer.Typer(help="Beacon/CSP telemetry receiver", add_completion=False)
log = get_logger("cli")


def build_settings(**overrides: Any) -> Settings:
    """Environment/.env settings with command line values on top."""
    values = {k: v for k, v in overrides.items() if v is not None}
    return Settings(**values)


@app.command()
def serve(
    addr: Optional[str] = typer.Option(None, "--addr", "-addr", help="listen address, host:port"),
    data: Optional[str] = typer.Option(None, "--data", "-data", help="append records to this file"),
    bucket: Optional[str] = typer.Option(None, "--bucket", "-bucket", help="write records to this cloud storage bucket"),
    credentials: Optional[str] = typer.Option(None, "--credentials", "-credentials", help="service account json for --bucket"),
    saver: Optional[str] = typer.Option(
        None, "--saver", "-saver", "-stream.addr", help="forward records to this saver url"
    ),
    tls_cert: Optional[str] = typer.Option(None, "--tls-cert", "-tls-cert", help="tls cert file"),
    tls_key: Optional[str] = typer.Option(None, "--tls-key", "-tls-key", help="tls key file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
) -> None:
    """Serve until SIGINT/SIGTERM, then drain pending records and close the sink."""
    try:
        settings = build_settings(
            addr=addr,
            data=data,
            bucket=bucket,
            credentials=credentials,
            saver_url=saver,
            tls_cert=tls_cert,
            tls_key=tls_key,
            log_level=log_level,
        )
        host, port = settings.listen()
    except ValueError as e:
        typer.echo(f"config: {e}", err=True)
        raise typer.Exit(code=2)
    configure_logging(settings.log_level)

    try:
        sink = make_sink(settings)
    except SinkError as e:
        log.error("open sink: %s", e)
        raise typer.Exit(code=1)

    failures: list[BaseException] = []
    server: uvicorn.Server | None = None

    def on_fatal(exc: BaseException) -> None:
        failures.append(exc)
        if server is not None:
            server.should_exit = True

    tls = settings.tls_cert and settings.tls_key
    config = uvicorn.Config(
        create_app(settings, sink=sink, on_fatal=on_fatal),
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
        timeout_keep_alive=settings.idle_timeout,
        timeout_graceful_shutdown=int(settings.shutdown_grace),
        h11_max_incomplete_event_size=settings.max_header_bytes,
        ssl_certfile=settings.tls_cert if tls else None,
        ssl_keyfile=settings.tls_key if tls else None,
    )
    server = uvicorn.Server(config)
    log.info("listening on %s:%d", host, port)
    server.run()

    if failures:
        log.error("stopped after sink failure: %s", failures[0])
        raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
