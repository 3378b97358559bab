"""Classification of failed submissions and retry delay computation."""

from __future__ import annotations

import datetime as _dt
import json
import re
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Literal, Optional, Tuple, Union

from .config import RetryConfig
from .constants import (
    NONCE_CONFLICT_PHRASES,
    RETRY_AFTER_HEADER,
    RETRYABLE_ERROR_CODES,
    RETRYABLE_STATUSES,
    TRANSIENT_PHRASES,
)
from .errors import NonceConflictError, PaymentRejectedError, TransientError, X402ClientError
from .executor import HttpResponse

TextMatcher = Callable[[str], bool]

_TRY_AGAIN_PATTERN = re.compile(r"try again in (\d+) seconds?", re.IGNORECASE)


class ErrorClassification(str, Enum):
    RETRYABLE = "retryable"
    NONCE_CONFLICT = "nonce_conflict"
    FATAL = "fatal"


@dataclass(frozen=True)
class StructuredErrorBody:
    """A JSON error body, e.g. ``{"error": ..., "code": ..., "retryAfter": ...}``."""

    code: Optional[str]
    message: Optional[str]
    retry_after: Optional[float] = None
    details: Tuple[str, ...] = ()
    raw: Dict[str, Any] = field(default_factory=dict)
    kind: Literal["structured"] = "structured"

    def error_text(self) -> str:
        parts = [self.message] if self.message else []
        parts.extend(self.details)
        if not parts and self.raw:
            # Unrecognised shape: match against the whole body.
            return json.dumps(self.raw)
        return " ".join(parts)


@dataclass(frozen=True)
class RawErrorBody:
    text: str
    kind: Literal["raw"] = "raw"

    @property
    def code(self) -> Optional[str]:
        return None

    @property
    def message(self) -> Optional[str]:
        return self.text or None

    @property
    def retry_after(self) -> Optional[float]:
        return None

    def error_text(self) -> str:
        return self.text


ErrorBody = Union[StructuredErrorBody, RawErrorBody]


def _as_seconds(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value >= 0 else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if parsed >= 0 else None
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value)


def parse_error_body(body: Any) -> ErrorBody:
    """Tag a response body as structured JSON or raw text."""
    if isinstance(body, dict):
        error = body.get("error")
        code = body.get("code")
        message: Optional[str]
        if isinstance(error, dict):
            code = code or error.get("code")
            message = _as_text(error.get("message"))
        else:
            if error is None:
                # FastAPI reports errors under "detail".
                error = body.get("message", body.get("detail"))
            message = _as_text(error)

        details: list[str] = []
        raw_details = body.get("details")
        if isinstance(raw_details, dict):
            details.extend(str(v) for v in raw_details.values() if v)
        elif raw_details:
            details.append(str(raw_details))

        return StructuredErrorBody(
            code=str(code) if code else None,
            message=message,
            retry_after=_as_seconds(body.get("retryAfter")),
            details=tuple(details),
            raw=body,
        )
    if body is None:
        return RawErrorBody("")
    return RawErrorBody(body if isinstance(body, str) else json.dumps(body))


class PhraseMatcher:
    """Case-insensitive substring matcher over a fixed vocabulary."""

    def __init__(self, phrases: Iterable[str]) -> None:
        self._phrases = tuple(p.lower() for p in phrases if p)

    @property
    def phrases(self) -> Tuple[str, ...]:
        return self._phrases

    def __call__(self, text: str) -> bool:
        lowered = text.lower()
        return any(phrase in lowered for phrase in self._phrases)


@dataclass(frozen=True)
class ClassifiedError:
    classification: ErrorClassification
    status: Optional[int]
    body: ErrorBody
    retry_after: Optional[float] = None

    @property
    def code(self) -> Optional[str]:
        return self.body.code

    @property
    def message(self) -> str:
        return self.body.error_text()


class ErrorClassifier:
    """Decides whether a failure is retryable, a nonce conflict or fatal.

    Rules apply in order: nonce-conflict text, retryable status, retryable
    server code, transient text, otherwise fatal.
    """

    def __init__(
        self,
        nonce_conflict_matcher: Optional[TextMatcher] = None,
        transient_matcher: Optional[TextMatcher] = None,
    ) -> None:
        self._is_nonce_conflict = nonce_conflict_matcher or PhraseMatcher(NONCE_CONFLICT_PHRASES)
        self._is_transient = transient_matcher or PhraseMatcher(TRANSIENT_PHRASES)

    @classmethod
    def from_config(cls, config: RetryConfig) -> "ErrorClassifier":
        return cls(nonce_conflict_matcher=PhraseMatcher(config.nonce_conflict_phrases))

    def classify(
        self,
        status: Optional[int],
        code: Optional[str] = None,
        message: Optional[str] = None,
    ) -> ErrorClassification:
        text = message or ""
        if text and self._is_nonce_conflict(text):
            return ErrorClassification.NONCE_CONFLICT
        if status in RETRYABLE_STATUSES:
            return ErrorClassification.RETRYABLE
        if code and code.upper() in RETRYABLE_ERROR_CODES:
            return ErrorClassification.RETRYABLE
        if text and self._is_transient(text):
            return ErrorClassification.RETRYABLE
        return ErrorClassification.FATAL

    def classify_response(self, response: HttpResponse) -> ClassifiedError:
        body = parse_error_body(response.body)
        classification = self.classify(response.status, body.code, body.error_text())
        return ClassifiedError(
            classification=classification,
            status=response.status,
            body=body,
            retry_after=retry_after_seconds(response, body),
        )


def _parse_retry_after_header(value: str, now: _dt.datetime) -> Optional[float]:
    seconds = _as_seconds(value)
    if seconds is not None:
        return seconds
    try:
        moment = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=_dt.timezone.utc)
    # A date in the past means retry now.
    return max((moment - now).total_seconds(), 0.0)


def retry_after_seconds(
    response: HttpResponse,
    body: Optional[ErrorBody] = None,
    *,
    now: Optional[_dt.datetime] = None,
) -> Optional[float]:
    """Server-specified wait: header first, then body ``retryAfter``, then prose."""
    header = response.header(RETRY_AFTER_HEADER)
    if header:
        parsed = _parse_retry_after_header(
            header.strip(), now or _dt.datetime.now(tz=_dt.timezone.utc)
        )
        if parsed is not None:
            return parsed

    body = body or parse_error_body(response.body)
    if body.retry_after is not None:
        return body.retry_after

    match = _TRY_AGAIN_PATTERN.search(body.error_text())
    if match:
        return _as_seconds(match.group(1))
    return None


def compute_delay_ms(
    attempt: int,
    classification: ErrorClassification,
    config: RetryConfig,
    retry_after: Optional[float] = None,
) -> int:
    """Delay before the next attempt; ``attempt`` is 0-indexed."""
    if retry_after is not None and retry_after >= 0:
        return int(round(retry_after * 1000))
    if classification is ErrorClassification.NONCE_CONFLICT:
        return config.nonce_conflict_delay_ms
    return min(config.base_delay_ms * (2 ** attempt), config.max_delay_ms)


def error_for(classified: ClassifiedError) -> X402ClientError:
    text = classified.message or "no error details"
    message = f"Payment failed ({classified.status}): {text}"
    kwargs = {
        "status": classified.status,
        "payload": getattr(classified.body, "raw", None) or classified.body.error_text(),
        "code": classified.code,
    }
    if classified.classification is ErrorClassification.NONCE_CONFLICT:
        return NonceConflictError(message, **kwargs)
    if classified.classification is ErrorClassification.RETRYABLE:
        return TransientError(message, **kwargs)
    return PaymentRejectedError(message, **kwargs)
