"""SIP message parsing and construction."""

from __future__ import annotations

import dataclasses
import random
import string

# RFC 3261 §7.3.3: short header names map onto their long forms
_COMPACT_HEADERS = {
    "v": "Via",
    "f": "From",
    "t": "To",
    "i": "Call-ID",
    "m": "Contact",
    "l": "Content-Length",
    "c": "Content-Type",
}

_TAG_CHARS = string.ascii_lowercase + string.digits


@dataclasses.dataclass
class SipMessage:
    """A parsed SIP request or response.

    For responses the start line is stored in the same slots as a request
    line: ``method`` holds the SIP version, ``uri`` the status code and
    ``version`` the reason phrase.
    """

    method: str
    uri: str
    version: str
    headers: list[tuple[str, str]]
    body: str

    @property
    def is_response(self) -> bool:
        return self.method.startswith("SIP/")

    @property
    def status_code(self) -> int | None:
        if not self.is_response:
            return None
        try:
            return int(self.uri)
        except ValueError:
            return None

    @property
    def call_id(self) -> str:
        return self.header("Call-ID") or ""

    def header(self, name: str) -> str | None:
        """Return the first value of *name* (RFC 3261 §7.3.1: case-insensitive)."""
        lower = name.lower()
        for key, value in self.headers:
            if key.lower() == lower:
                return value
        return None

    def headers_named(self, name: str) -> list[str]:
        lower = name.lower()
        return [value for key, value in self.headers if key.lower() == lower]


def parse_message(data: bytes) -> SipMessage:
    """Parse raw datagram bytes into a SipMessage."""
    text = data.decode("utf-8", errors="replace")
    # RFC 3261 §7: a blank line separates the header section from the body
    head, _, body = text.partition("\r\n\r\n")
    lines = head.split("\r\n")

    start = lines[0].split(" ", 2)
    if len(start) < 2 or not start[0]:
        raise ValueError(f"Malformed SIP start line: {lines[0]!r}")
    method = start[0]
    uri = start[1]
    version = start[2] if len(start) > 2 else "SIP/2.0"

    headers: list[tuple[str, str]] = []
    for line in lines[1:]:
        if ":" not in line:
            continue
        key, _, value = line.partition(":")
        key = key.strip()
        headers.append((_COMPACT_HEADERS.get(key, key), value.strip()))

    # RFC 3261 §18.3: Content-Length bounds the body on datagram transports
    length = _content_length(headers)
    if length is not None:
        body = body.encode("utf-8")[:length].decode("utf-8", errors="replace")

    return SipMessage(method=method, uri=uri, version=version, headers=headers, body=body)


def _content_length(headers: list[tuple[str, str]]) -> int | None:
    for key, value in headers:
        if key.lower() == "content-length":
            try:
                return max(int(value), 0)
            except ValueError:
                return None
    return None


def _encode(lines: list[str], body: str, content_type: str) -> bytes:
    payload = body.encode("utf-8") if body else b""
    if payload:
        lines.append(f"Content-Type: {content_type}")
    lines.append(f"Content-Length: {len(payload)}")
    lines.append("")
    return ("\r\n".join(lines) + "\r\n").encode("utf-8") + payload


def build_response(
    request: SipMessage,
    status_code: int,
    reason: str,
    body: str = "",
    *,
    to_tag: str | None = None,
    extra_headers: list[tuple[str, str]] | None = None,
    content_type: str = "application/sdp",
) -> bytes:
    """Build a response to *request*.

    RFC 3261 §8.2.6.2: Via (all values, in order), From, Call-ID and CSeq
    are copied from the request. A To tag is appended when *to_tag* is
    given and the request's To does not already carry one.
    """
    lines = [f"SIP/2.0 {status_code} {reason}"]
    lines.extend(f"Via: {via}" for via in request.headers_named("Via"))
    for name in ("From", "Call-ID", "CSeq"):
        value = request.header(name)
        if value is not None:
            lines.append(f"{name}: {value}")

    to_value = request.header("To")
    if to_value is not None:
        if to_tag is not None and header_tag(to_value) is None:
            to_value = f"{to_value};tag={to_tag}"
        lines.append(f"To: {to_value}")

    for name, value in extra_headers or ():
        lines.append(f"{name}: {value}")
    return _encode(lines, body, content_type)


def build_request(
    method: str,
    uri: str,
    *,
    headers: list[tuple[str, str]],
    body: str = "",
    content_type: str = "application/sdp",
) -> bytes:
    """Build a request with the given start line and headers."""
    lines = [f"{method} {uri} SIP/2.0"]
    lines.extend(f"{name}: {value}" for name, value in headers)
    return _encode(lines, body, content_type)


def generate_tag() -> str:
    """Random From/To tag (RFC 3261 §19.3: at least 32 bits of randomness)."""
    return "".join(random.choices(_TAG_CHARS, k=10))


def generate_branch() -> str:
    """Random Via branch carrying the RFC 3261 magic cookie (§8.1.1.7)."""
    return "z9hG4bK" + "".join(random.choices(_TAG_CHARS, k=10))


def parse_via_params(via: str) -> dict[str, str]:
    """Parameters after the sent-by part of a Via value.

    Flag parameters such as a bare ``rport`` map to an empty string.
    """
    params: dict[str, str] = {}
    for part in via.split(";")[1:]:
        key, _, value = part.strip().partition("=")
        if key:
            params[key.strip()] = value.strip()
    return params


def extract_branch(msg: SipMessage) -> str | None:
    """Branch of the topmost Via, used to match server transactions."""
    via = msg.header("Via")
    if via is None:
        return None
    return parse_via_params(via).get("branch")


def header_tag(value: str) -> str | None:
    """The ``tag`` parameter of a From/To value, if present."""
    # Parameters after the closing '>' belong to the header, not the URI
    params = value.rsplit(">", 1)[-1] if ">" in value else value
    for part in params.split(";")[1:]:
        key, _, tag = part.strip().partition("=")
        if key.lower() == "tag" and tag:
            return tag
    return None


def header_uri(value: str) -> str:
    """The URI inside a name-addr (``"Bob" <sip:bob@host>;tag=x``)."""
    if "<" in value and ">" in value:
        return value[value.index("<") + 1 : value.index(">")]
    return value.split(";", 1)[0].strip()


def strip_tag(value: str) -> str:
    """A From/To value without its tag parameter."""
    tag = header_tag(value)
    if tag is None:
        return value
    return value.replace(f";tag={tag}", "").strip()
