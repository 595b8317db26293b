"""Data models shared by the extraction pipeline."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, Tuple, Union
from urllib.parse import urlsplit

from pydantic import BaseModel, field_validator


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    BROWSER_LAUNCH_ERROR = "browser_launch_error"
    PAGE_CREATION_ERROR = "page_creation_error"
    REQUEST_INTERCEPTION_ERROR = "request_interception_error"
    NAVIGATION_ERROR = "navigation_error"
    NO_MATCH_FOUND = "no_match_found"
    URL_PROCESSING_ERROR = "url_processing_error"

    @property
    def http_status(self) -> int:
        if self is ErrorKind.INVALID_INPUT:
            return 400
        if self is ErrorKind.NO_MATCH_FOUND:
            return 404
        return 500


class ExtractionRequest(BaseModel):
    url: str

    model_config = {
        "extra": "ignore"
    }

    @field_validator("url", mode="before")
    @classmethod
    def require_absolute_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("url must be a string")
        candidate = value.strip()
        if not candidate or any(ch.isspace() for ch in candidate):
            raise ValueError("url must be a non-empty string without whitespace")
        try:
            parts = urlsplit(candidate)
            # .port raises on out-of-range values
            parts.port
        except ValueError as exc:
            raise ValueError(f"url could not be parsed: {exc}") from exc
        if parts.scheme.lower() not in {"http", "https"}:
            raise ValueError("url must use http or https")
        if not parts.hostname:
            raise ValueError("url must include a host")
        return candidate


@dataclass(frozen=True)
class MetaRule:
    """Reads one attribute of a <meta>/<link> tag, e.g. og:image content."""

    rule_id: str
    selector: str
    attribute: str = "content"


@dataclass(frozen=True)
class ElementRule:
    """Probes an element's attributes, then its inner markup, for an image URL."""

    rule_id: str
    selector: str
    attributes: Tuple[str, ...] = ("src", "data-src", "data-lazy-src", "data-original", "srcset", "data-srcset")
    scan_markup: bool = True


@dataclass(frozen=True)
class JsonLdRule:
    """Reads the image of the first Product object found in JSON-LD scripts."""

    rule_id: str = "json-ld"
    selector: str = "script[type='application/ld+json']"


SelectorRule = Union[MetaRule, ElementRule, JsonLdRule]


@dataclass(frozen=True)
class Found:
    image_ref: str
    rule_id: str


@dataclass(frozen=True)
class NotFound:
    rule_id: str
    reason: str

    def as_dict(self) -> Dict[str, str]:
        return {"rule": self.rule_id, "reason": self.reason}


SelectorOutcome = Union[Found, NotFound]


@dataclass(frozen=True)
class ElementSnapshot:
    """Attributes and inner markup of the first element matching a selector."""

    attributes: Dict[str, str]
    inner_html: str = ""


@dataclass(frozen=True)
class ResourcePolicy:
    block: bool = True
    allowed_types: FrozenSet[str] = frozenset({"document", "script", "xhr", "fetch"})

    def allows(self, resource_type: str) -> bool:
        return not self.block or resource_type in self.allowed_types


DirectEvaluation = Callable[[Any], Awaitable[Optional[str]]]


@dataclass(frozen=True)
class SiteProfile:
    name: str
    priority: Tuple[SelectorRule, ...]
    fallback: Tuple[SelectorRule, ...] = ()
    resources: ResourcePolicy = field(default_factory=ResourcePolicy)
    direct: Optional[DirectEvaluation] = None
    host_pattern: Optional[re.Pattern] = None
    path_pattern: Optional[re.Pattern] = None

    @property
    def direct_rule_id(self) -> str:
        return f"{self.name}:direct"


@dataclass(frozen=True)
class CascadeReport:
    match: Optional[Found]
    tried: Tuple[NotFound, ...]


@dataclass(frozen=True)
class Success:
    image_url: str
    matched_rule: str
    tried: Tuple[NotFound, ...] = ()

    ok = True

    def as_dict(self) -> Dict[str, Any]:
        return {"image": self.image_url, "matchedRule": self.matched_rule}

    def to_response(self) -> Tuple[int, Dict[str, Any]]:
        return 200, self.as_dict()


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    message: str
    tried: Tuple[NotFound, ...] = ()

    ok = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "errorKind": self.kind.value,
            "triedRules": [outcome.as_dict() for outcome in self.tried],
        }

    def to_response(self) -> Tuple[int, Dict[str, Any]]:
        return self.kind.http_status, self.as_dict()


ExtractionResult = Union[Success, Failure]


def debug_view(result: ExtractionResult) -> Dict[str, Any]:
    payload = asdict(result)
    if isinstance(result, Failure):
        payload["kind"] = result.kind.value
    return payload
