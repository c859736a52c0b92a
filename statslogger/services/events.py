"""
Record types persisted by the writer, one JSON object per line.

Keys are PascalCase on the wire (``DurationMs``, ``SrcPage``...) so files written
by older deployments keep parsing. Every record is frozen once built.
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_pascal
from pydantic_core import PydanticSerializationError

from ..core.exceptions import InvalidPayload


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _csp_summary(report: Dict[str, Any]) -> str:
    return "csp policy {} blocked {} on {}".format(
        report.get("violated-directive"),
        report.get("blocked-uri"),
        report.get("document-uri"),
    )


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_pascal, populate_by_name=True)

    def to_line(self) -> bytes:
        try:
            text = self.model_dump_json(by_alias=True)
        except (PydanticSerializationError, UnicodeEncodeError) as e:
            raise InvalidPayload(f"unencodable record: {e}") from e
        return (text + "\n").encode("utf-8")

    def summary(self) -> str:
        return "received"


class Event(_Record):
    """Form submission to /form or /api."""
    trigger: str = ""
    src: str = ""
    dst: str = ""
    duration: str = ""
    time: datetime = Field(default_factory=utcnow)
    remote: str = ""
    kind: Literal["event"] = "event"

    def summary(self) -> str:
        return f"viewed {self.src} for {self.duration}"


class PageView(_Record):
    """Navigation beacon; duration already converted to milliseconds."""
    duration_ms: int = 0
    src_page: str = ""
    dst_page: str = ""
    referrer: str = ""
    time: datetime = Field(default_factory=utcnow)
    remote: str = ""
    kind: Literal["pageview"] = "pageview"

    def summary(self) -> str:
        return f"viewed {self.src_page} for {self.duration_ms}ms"


class CspViolation(_Record):
    document_uri: str = ""
    blocked_uri: str = ""
    violated_directive: str = ""
    report: Dict[str, Any] = Field(default_factory=dict)
    time: datetime = Field(default_factory=utcnow)
    remote: str = ""
    kind: Literal["csp"] = "csp"

    def summary(self) -> str:
        return _csp_summary(self.report)


class Submission(_Record):
    """Raw JSON body posted to /json, kept as-is."""
    data: Any = None
    time: datetime = Field(default_factory=utcnow)
    remote: str = ""
    kind: Literal["json"] = "json"

    def summary(self) -> str:
        if isinstance(self.data, dict):
            report = self.data.get("csp-report")
            if isinstance(report, dict):
                return _csp_summary(report)
        return "received"


Record = Annotated[Union[Event, PageView, CspViolation, Submission], Field(discriminator="kind")]

_record_adapter: TypeAdapter[Record] = TypeAdapter(Record)


def parse_record(line: Union[str, bytes]) -> Union[Event, PageView, CspViolation, Submission]:
    """Inverse of ``to_line``."""
    return _record_adapter.validate_json(line)
