import pytest

from holdline.sip.message import (
    build_request,
    build_response,
    extract_branch,
    generate_branch,
    generate_tag,
    header_tag,
    header_uri,
    parse_message,
    parse_via_params,
    strip_tag,
)


def _make_options() -> bytes:
    return (
        b"OPTIONS sip:holdline@example.com SIP/2.0\r\n"
        b"Via: SIP/2.0/UDP 10.0.0.1:5060;branch=z9hG4bK776;rport\r\n"
        b"From: <sip:alice@example.com>;tag=abc123\r\n"
        b"To: <sip:holdline@example.com>\r\n"
        b"Call-ID: opt-001@10.0.0.1\r\n"
        b"CSeq: 1 OPTIONS\r\n"
        b"Content-Length: 0\r\n"
        b"\r\n"
    )


def _make_invite_with_sdp() -> bytes:
    sdp = "v=0\r\no=- 0 0 IN IP4 10.0.0.1\r\n"
    body = sdp.encode()
    return (
        b"INVITE sip:holdline@example.com SIP/2.0\r\n"
        b"Via: SIP/2.0/UDP 10.0.0.1:5060;branch=z9hG4bK999\r\n"
        b"From: <sip:alice@example.com>;tag=xyz789\r\n"
        b"To: <sip:holdline@example.com>\r\n"
        b"Call-ID: invite-001@10.0.0.1\r\n"
        b"CSeq: 1 INVITE\r\n"
        b"Content-Type: application/sdp\r\n"
        b"Content-Length: " + str(len(body)).encode() + b"\r\n"
        b"\r\n" + body
    )


def test_parse_options():
    msg = parse_message(_make_options())
    assert msg.method == "OPTIONS"
    assert msg.uri == "sip:holdline@example.com"
    assert msg.version == "SIP/2.0"
    assert msg.call_id == "opt-001@10.0.0.1"
    assert msg.header("CSeq") == "1 OPTIONS"
    assert not msg.is_response
    assert msg.status_code is None


def test_parse_invite_with_sdp():
    msg = parse_message(_make_invite_with_sdp())
    assert msg.method == "INVITE"
    assert msg.body.startswith("v=0")


def test_body_truncated_to_content_length():
    raw = _make_invite_with_sdp() + b"trailing garbage"
    msg = parse_message(raw)
    assert "garbage" not in msg.body


def test_parse_response():
    msg = parse_message(b"SIP/2.0 180 Ringing\r\nCall-ID: x\r\n\r\n")
    assert msg.is_response
    assert msg.status_code == 180
    assert msg.version == "Ringing"


def test_malformed_start_line():
    with pytest.raises(ValueError):
        parse_message(b"garbage\r\n\r\n")


def test_headers_case_insensitive():
    msg = parse_message(_make_options())
    assert msg.header("via") is not None
    assert msg.header("VIA") is not None
    assert msg.header("missing") is None


def test_compact_header_forms():
    """Compact header abbreviations (RFC 3261 §7.3.3) are normalized."""
    raw = (
        b"INVITE sip:holdline@example.com SIP/2.0\r\n"
        b"v: SIP/2.0/UDP 10.0.0.1:5060;branch=z9hG4bK123\r\n"
        b"f: <sip:alice@example.com>;tag=abc\r\n"
        b"t: <sip:holdline@example.com>\r\n"
        b"i: compact-test@10.0.0.1\r\n"
        b"m: <sip:alice@10.0.0.1>\r\n"
        b"CSeq: 1 INVITE\r\n"
        b"l: 0\r\n"
        b"\r\n"
    )
    msg = parse_message(raw)
    assert msg.call_id == "compact-test@10.0.0.1"
    assert msg.header("From") == "<sip:alice@example.com>;tag=abc"
    assert msg.header("Contact") == "<sip:alice@10.0.0.1>"
    assert extract_branch(msg) == "z9hG4bK123"


def test_build_200_ok():
    msg = parse_message(_make_options())
    text = build_response(msg, 200, "OK", to_tag="testtag").decode()
    assert text.startswith("SIP/2.0 200 OK\r\n")
    assert "Call-ID: opt-001@10.0.0.1\r\n" in text
    assert "CSeq: 1 OPTIONS\r\n" in text
    assert "To: <sip:holdline@example.com>;tag=testtag\r\n" in text
    assert text.endswith("Content-Length: 0\r\n\r\n")


def test_build_response_with_body():
    msg = parse_message(_make_invite_with_sdp())
    body = "v=0\r\no=test\r\n"
    text = build_response(msg, 200, "OK", body=body, to_tag="t1").decode()
    assert "Content-Type: application/sdp" in text
    assert f"Content-Length: {len(body.encode())}" in text
    assert text.endswith(body)


def test_no_tag_when_to_tag_none():
    msg = parse_message(_make_options())
    text = build_response(msg, 100, "Trying").decode()
    to_line = [line for line in text.split("\r\n") if line.startswith("To:")][0]
    assert ";tag=" not in to_line


def test_existing_to_tag_not_doubled():
    raw = _make_options().replace(
        b"To: <sip:holdline@example.com>", b"To: <sip:holdline@example.com>;tag=old"
    )
    text = build_response(parse_message(raw), 200, "OK", to_tag="new").decode()
    assert "tag=old" in text
    assert "tag=new" not in text


def test_multi_via_preserved():
    raw = (
        b"BYE sip:holdline@example.com SIP/2.0\r\n"
        b"Via: SIP/2.0/UDP proxy.example.com;branch=z9hG4bKaaa\r\n"
        b"Via: SIP/2.0/UDP 10.0.0.1:5060;branch=z9hG4bKbbb\r\n"
        b"From: <sip:alice@example.com>;tag=abc\r\n"
        b"To: <sip:holdline@example.com>;tag=def\r\n"
        b"Call-ID: multi-via@test\r\n"
        b"CSeq: 2 BYE\r\n"
        b"Content-Length: 0\r\n"
        b"\r\n"
    )
    msg = parse_message(raw)
    assert msg.headers_named("Via") == [
        "SIP/2.0/UDP proxy.example.com;branch=z9hG4bKaaa",
        "SIP/2.0/UDP 10.0.0.1:5060;branch=z9hG4bKbbb",
    ]
    text = build_response(msg, 200, "OK").decode()
    via_lines = [line for line in text.split("\r\n") if line.startswith("Via:")]
    assert via_lines == [
        "Via: SIP/2.0/UDP proxy.example.com;branch=z9hG4bKaaa",
        "Via: SIP/2.0/UDP 10.0.0.1:5060;branch=z9hG4bKbbb",
    ]


def test_extra_headers():
    msg = parse_message(_make_options())
    text = build_response(
        msg,
        200,
        "OK",
        to_tag="t1",
        extra_headers=[("Contact", "<sip:holdline@10.0.0.2>"), ("Allow", "INVITE, BYE")],
    ).decode()
    assert "Contact: <sip:holdline@10.0.0.2>" in text
    assert "Allow: INVITE, BYE" in text


def test_build_request():
    raw = build_request(
        "BYE",
        "sip:alice@10.0.0.1",
        headers=[("Call-ID", "abc"), ("CSeq", "1 BYE")],
    )
    msg = parse_message(raw)
    assert msg.method == "BYE"
    assert msg.uri == "sip:alice@10.0.0.1"
    assert msg.header("CSeq") == "1 BYE"
    assert msg.header("Content-Length") == "0"


def test_via_params():
    params = parse_via_params("SIP/2.0/UDP 10.0.0.1;branch=z9hG4bKx;rport;received=1.2.3.4")
    assert params == {"branch": "z9hG4bKx", "rport": "", "received": "1.2.3.4"}


def test_header_helpers():
    value = '"Alice" <sip:alice@example.com;transport=udp>;tag=abc'
    assert header_tag(value) == "abc"
    assert header_uri(value) == "sip:alice@example.com;transport=udp"
    assert strip_tag(value) == '"Alice" <sip:alice@example.com;transport=udp>'
    assert header_tag("<sip:bob@example.com>") is None
    assert header_uri("sip:bob@example.com;tag=1") == "sip:bob@example.com"


def test_generated_identifiers():
    assert len(generate_tag()) == 10
    assert generate_tag() != generate_tag()
    assert generate_branch().startswith("z9hG4bK")
