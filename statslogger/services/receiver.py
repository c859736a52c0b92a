"""
Turns inbound requests into records. Nothing here touches the sink.
"""
from __future__ import annotations
import json
import math
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping

from starlette.requests import Request

from ..core.exceptions import InvalidPayload
from ..core.logger import get_logger
from .events import CspViolation, Event, PageView, Submission

log = get_logger("receiver")


def resolve_remote(request: Request) -> str:
    """Best-effort client identity: x-forwarded-for verbatim, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded
    if request.client is None:
        return ""
    return f"{request.client.host}:{request.client.port}"


async def read_fields(request: Request) -> Dict[str, str]:
    """
    Query string merged with the form body, form values winning.

    A body that does not parse gives an empty field set; the caller still
    answers success.
    """
    fields: Dict[str, str] = dict(request.query_params)
    try:
        form = await request.form()
        for key, value in form.items():
            if isinstance(value, str):
                fields[key] = value
    except Exception as e:
        log.warning("parse form on %s: %s", request.url.path, e)
        return {}
    return fields


def _reject_constant(name: str) -> Any:
    raise InvalidPayload(f"invalid json: {name} is not a number")


def _finite_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        raise InvalidPayload(f"invalid json: {text} is out of range")
    return value


def _exact_int(text: str) -> int:
    # int(str) refuses more than sys.get_int_max_str_digits() digits
    return int(Decimal(text))


def parse_json(body: bytes) -> Any:
    """Decode a request body as strict JSON: no NaN or Infinity, any size of integer."""
    try:
        return json.loads(
            body,
            parse_constant=_reject_constant,
            parse_float=_finite_float,
            parse_int=_exact_int,
        )
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidPayload(f"invalid json: {e}") from e


def parse_duration_ms(value: str | None) -> int:
    """``"1500ms"`` -> 1500. Plain numbers are taken as milliseconds too."""
    if not value:
        raise InvalidPayload("missing duration")
    raw = value[:-2] if value.endswith("ms") else value
    try:
        return int(float(raw))
    except (ValueError, OverflowError) as e:
        raise InvalidPayload(f"invalid duration {value!r}") from e


def build_event(fields: Mapping[str, str], *, received: datetime, remote: str) -> Event:
    return Event(
        trigger=fields.get("trigger", ""),
        src=fields.get("src", ""),
        dst=fields.get("dst", ""),
        duration=fields.get("dur", ""),
        time=received,
        remote=remote,
    )


def build_pageview(fields: Mapping[str, str], *, received: datetime, remote: str) -> PageView:
    return PageView(
        duration_ms=parse_duration_ms(fields.get("dur")),
        src_page=fields.get("src", ""),
        dst_page=fields.get("dst", ""),
        referrer=fields.get("referrer", ""),
        time=received,
        remote=remote,
    )


def build_csp_violation(payload: Any, *, received: datetime, remote: str) -> CspViolation:
    report = payload.get("csp-report") if isinstance(payload, dict) else None
    if not isinstance(report, dict):
        raise InvalidPayload("missing csp-report object")
    return CspViolation(
        document_uri=str(report.get("document-uri", "")),
        blocked_uri=str(report.get("blocked-uri", "")),
        violated_directive=str(report.get("violated-directive", "")),
        report=report,
        time=received,
        remote=remote,
    )


def build_submission(payload: Any, *, received: datetime, remote: str) -> Submission:
    return Submission(data=payload, time=received, remote=remote)
