"""
Sinks: the single output each process appends serialized records to.

Only the writer task calls ``append``/``close``; none of these classes lock.
"""
from __future__ import annotations
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Protocol

import requests

from ..core.config import Settings
from ..core.exceptions import DownstreamError, SinkError
from ..core.logger import get_logger

log = get_logger("sinks")


class Sink(Protocol):
    # True when a successful append means the record is stored downstream and
    # callers should wait for it before answering.
    acknowledged: bool

    def append(self, data: bytes) -> None: ...

    def close(self) -> None: ...


class FileSink:
    """Append-only newline-delimited JSON file; restarts never truncate it."""

    acknowledged = False

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = self.path.open("ab")
        except OSError as e:
            raise SinkError(f"open {self.path}: {e}") from e

    def append(self, data: bytes) -> None:
        self._fh.write(data)
        self._fh.flush()

    def close(self) -> None:
        self._fh.close()


class StreamSink:
    """Lines to an already open text stream (stdout by default)."""

    acknowledged = False

    def __init__(self, stream: IO[str] | None = None) -> None:
        self._stream = stream or sys.stdout

    def append(self, data: bytes) -> None:
        self._stream.write(data.decode("utf-8"))
        self._stream.flush()

    def close(self) -> None:
        self._stream.flush()


class ForwardSink:
    """
    Hands each record to a downstream saver service over HTTP.

    A failed call only loses that record: it raises DownstreamError, which the
    writer reports back to the waiting request. Nothing is retried.
    """

    acknowledged = True

    def __init__(self, url: str, timeout: float = 5.0, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def append(self, data: bytes) -> None:
        try:
            r = self._session.post(
                self.url,
                data=data.rstrip(b"\n"),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise DownstreamError(f"forward to {self.url}: {e}") from e
        if not 200 <= r.status_code < 300:
            raise DownstreamError(f"forward to {self.url}: status {r.status_code}")

    def close(self) -> None:
        self._session.close()


class ObjectSink:
    """
    Streams lines into one new cloud storage object per process.

    Objects cannot be appended to, so every start writes
    ``<prefix>/<utc start time>.jsonl``; the upload is finalized on close.
    """

    acknowledged = False

    def __init__(self, bucket: str, prefix: str = "events", credentials: str | None = None, client: Any = None) -> None:
        started = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        self.object_name = f"{prefix.rstrip('/')}/{started}.jsonl"
        try:
            if client is None:
                from google.cloud import storage

                client = (
                    storage.Client.from_service_account_json(credentials)
                    if credentials
                    else storage.Client()
                )
            blob = client.bucket(bucket).blob(self.object_name)
            self._writer = blob.open("wb", ignore_flush=True, content_type="application/x-ndjson")
        except Exception as e:
            raise SinkError(f"open gs://{bucket}/{self.object_name}: {e}") from e

    def append(self, data: bytes) -> None:
        self._writer.write(data)

    def close(self) -> None:
        self._writer.close()


def make_sink(settings: Settings) -> Sink:
    """Pick the configured sink; raises SinkError when it cannot be opened."""
    if settings.saver_url:
        log.info("forwarding records to %s", settings.saver_url)
        return ForwardSink(settings.saver_url, timeout=settings.saver_timeout)
    if settings.bucket:
        sink = ObjectSink(settings.bucket, prefix=settings.object_prefix, credentials=settings.credentials)
        log.info("writing records to gs://%s/%s", settings.bucket, sink.object_name)
        return sink
    if settings.data:
        log.info("appending records to %s", settings.data)
        return FileSink(settings.data)
    log.info("writing records to stdout")
    return StreamSink()
