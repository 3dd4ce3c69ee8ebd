"""
Testes para app/activitypub/signatures.py

Cobre:
- sign_request(): headers Host, Date, Digest, Content-Type e Signature
- sign_request(): lista de headers assinados com e sem corpo
- verify_signature(): round-trip com a chave pública correspondente
- verify_signature(): lookup case-insensitive dos headers
- verify_signature(): só rsa-sha256; Date além de signature_max_age → False
- verify_signature(): False para chave errada, path/método alterados,
  header ausente e entradas malformadas (nunca levanta exceção)
- compute_digest() / verify_digest(): detecção de adulteração do corpo
"""

import json

import pytest

from app.activitypub.signatures import (
    compute_digest,
    parse_signature_header,
    sign_request,
    verify_digest,
    verify_signature,
)

KEY_ID = "https://cal.test/users/cal#main-key"
INBOX = "https://remote.test/users/alice/inbox"
BODY = json.dumps({"type": "Follow", "actor": "https://cal.test/users/cal"}).encode()


@pytest.fixture
def signed(local_keys):
    return sign_request("POST", INBOX, BODY, local_keys[0], KEY_ID)


# ---------------------------------------------------------------------------
# sign_request
# ---------------------------------------------------------------------------


def test_sign_request_sets_host_and_date(signed):
    assert signed["Host"] == "remote.test"
    assert signed["Date"].endswith("GMT")


def test_sign_request_sets_digest_and_content_type_with_body(signed):
    assert signed["Digest"] == compute_digest(BODY)
    assert signed["Content-Type"] == "application/activity+json"


def test_sign_request_signature_header_format(signed):
    params = parse_signature_header(signed["Signature"])

    assert params["keyId"] == KEY_ID
    assert params["algorithm"] == "rsa-sha256"
    assert params["headers"] == "(request-target) host date digest"
    assert params["signature"]


def test_sign_request_without_body_skips_digest(local_keys):
    headers = sign_request("GET", INBOX, None, local_keys[0], KEY_ID)

    assert "Digest" not in headers
    assert parse_signature_header(headers["Signature"])["headers"] == "(request-target) host date"


# ---------------------------------------------------------------------------
# verify_signature
# ---------------------------------------------------------------------------


def test_verify_signature_round_trip(signed, local_keys):
    assert verify_signature("POST", "/users/alice/inbox", signed, local_keys[1]) is True


def test_verify_signature_round_trip_without_body(local_keys):
    url = "https://remote.test/users/alice/outbox?page=2"
    headers = sign_request("GET", url, None, local_keys[0], KEY_ID)

    assert verify_signature("GET", "/users/alice/outbox?page=2", headers, local_keys[1]) is True


def test_verify_signature_header_lookup_is_case_insensitive(signed, local_keys):
    lowered = {k.lower(): v for k, v in signed.items()}

    assert verify_signature("POST", "/users/alice/inbox", lowered, local_keys[1]) is True


def test_verify_signature_rejects_wrong_key(signed, remote_keys):
    assert verify_signature("POST", "/users/alice/inbox", signed, remote_keys[1]) is False


def test_verify_signature_rejects_other_path(signed, local_keys):
    assert verify_signature("POST", "/inbox", signed, local_keys[1]) is False


def test_verify_signature_rejects_other_method(signed, local_keys):
    assert verify_signature("PUT", "/users/alice/inbox", signed, local_keys[1]) is False


def test_verify_signature_rejects_missing_signed_header(signed, local_keys):
    headers = {k: v for k, v in signed.items() if k != "Date"}

    assert verify_signature("POST", "/users/alice/inbox", headers, local_keys[1]) is False


def test_verify_signature_rejects_tampered_date(signed, local_keys):
    headers = {**signed, "Date": "Mon, 01 Jan 2024 00:00:00 GMT"}

    assert verify_signature("POST", "/users/alice/inbox", headers, local_keys[1]) is False


@pytest.mark.parametrize(
    "signature",
    [
        "",
        "garbage",
        'keyId="x",headers="(request-target)"',
        'keyId="x",headers="(request-target) host",signature="!!!não-é-base64"',
    ],
)
def test_verify_signature_malformed_header_returns_false(signed, local_keys, signature):
    headers = {**signed, "Signature": signature}

    assert verify_signature("POST", "/users/alice/inbox", headers, local_keys[1]) is False


def test_verify_signature_invalid_public_key_returns_false(signed):
    assert verify_signature("POST", "/users/alice/inbox", signed, "not a pem") is False


def test_verify_signature_rejects_other_algorithm(signed, local_keys):
    headers = {**signed, "Signature": signed["Signature"].replace("rsa-sha256", "hs2019")}

    assert verify_signature("POST", "/users/alice/inbox", headers, local_keys[1]) is False


def test_verify_signature_rejects_date_outside_window(signed, local_keys, monkeypatch):
    from app import config

    monkeypatch.setattr(config.settings, "signature_max_age", -1)

    assert verify_signature("POST", "/users/alice/inbox", signed, local_keys[1]) is False


# ---------------------------------------------------------------------------
# Digest
# ---------------------------------------------------------------------------


def test_verify_digest_accepts_original_body(signed):
    assert verify_digest(BODY, signed["Digest"]) is True


def test_verify_digest_detects_single_byte_change(signed):
    tampered = bytearray(BODY)
    tampered[0] ^= 0x01

    assert verify_digest(bytes(tampered), signed["Digest"]) is False


def test_verify_digest_accepts_lowercase_algorithm():
    header = compute_digest(BODY).replace("SHA-256", "sha-256")

    assert verify_digest(BODY, header) is True


def test_verify_digest_missing_header_returns_false():
    assert verify_digest(BODY, None) is False
    assert verify_digest(BODY, "") is False


def test_verify_digest_unsupported_algorithm_returns_false():
    assert verify_digest(BODY, "MD5=abc") is False
