from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import re
from typing import Mapping

# Only these content types are decoded into form fields.
FORM_CONTENT_TYPES = (
    'application/x-www-form-urlencoded',
    'multipart/form-data',
)

_SIZE_RE = re.compile(r'^\s*(\d+)\s*([kKmMgG]?)\s*$')
_SIZE_MULTIPLIERS = {'': 1, 'k': 1024, 'm': 1024 ** 2, 'g': 1024 ** 3}
_LEADING_INT_RE = re.compile(r'^\s*([+-]?\d+)')


def parse_byte_size(value: str | int | None) -> int:
    """Parse a size like ``8M`` or ``512K`` into bytes. ``0`` means unlimited."""
    if value is None:
        return 0
    if isinstance(value, int):
        return max(0, value)
    match = _SIZE_RE.match(str(value))
    if match is None:
        raise ValueError(f'invalid size: {value!r} (expected <int>[K|M|G])')
    return int(match.group(1)) * _SIZE_MULTIPLIERS[match.group(2).lower()]


def is_form_content_type(content_type: str | None) -> bool:
    # Prefix match: the header may carry parameters such as "; boundary=...".
    text = content_type or ''
    return any(text.startswith(t) for t in FORM_CONTENT_TYPES)


def parse_content_length(value: str | None) -> int:
    # Leading digits only: "500abc" reads as 500, garbage as 0.
    match = _LEADING_INT_RE.match(str(value or ''))
    if match is None:
        return 0
    return int(match.group(1))


@dataclass(frozen=True)
class RequestContext:
    method: str
    headers: Mapping[str, str] = field(default_factory=dict)
    form_fields_present: bool = False

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers.items():
            if str(key).lower() == wanted:
                return value
        return None


class RequestIntegrityError(RuntimeError):
    def __init__(self, *, content_length: int, configured_limit: str):
        self.content_length = content_length
        self.configured_limit = configured_limit
        super().__init__(
            'As received by the server, this request had a nonzero content length but no POST data.\n\n'
            "Normally, this indicates that it exceeds the 'post_max_size' setting on the server. "
            "Increase the 'post_max_size' setting or reduce the size of the request.\n\n"
            f"Request size according to 'Content-Length' was '{content_length}', "
            f"'post_max_size' is set to '{configured_limit}'."
        )


def check_request_integrity(context: RequestContext, *, post_max_size: str) -> None:
    """Raise ``RequestIntegrityError`` if a form POST arrived with its fields stripped.

    A form POST with a positive ``Content-Length`` must have produced decoded
    fields. When it did not, the body was dropped for exceeding the configured
    size limit, which is a server misconfiguration rather than a client error.
    """
    if context.method.upper() != 'POST':
        return
    if context.form_fields_present:
        return
    if not is_form_content_type(context.header('content-type')):
        return
    length = parse_content_length(context.header('content-length'))
    if length <= 0:
        return
    raise RequestIntegrityError(content_length=length, configured_limit=post_max_size)


class OverseerState(str, Enum):
    UNCHECKED = 'unchecked'
    CHECKED = 'checked'


class RequestOverseer:
    def __init__(self, context: RequestContext, *, post_max_size: str):
        self.context = context
        self.post_max_size = post_max_size
        self.state = OverseerState.UNCHECKED

    def did_startup(self) -> None:
        if self.state == OverseerState.CHECKED:
            return
        self.state = OverseerState.CHECKED
        check_request_integrity(self.context, post_max_size=self.post_max_size)

    @staticmethod
    def fatal_message(exc: RequestIntegrityError) -> str:
        return f'FATAL ERROR: {exc}'
