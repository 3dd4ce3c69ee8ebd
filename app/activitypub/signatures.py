"""
app/activitypub/signatures.py

HTTP Signatures (draft-cavage) e Digest de corpo para ActivityPub, sobre o
Signer/Verifier do apsig (a mesma biblioteca que o apkit usa para assinar).

Assinatura e digest são verificações independentes: o digest prova que o
corpo não foi alterado depois de assinado, a assinatura prova quem enviou.
O inbox precisa checar as duas antes de confiar em `actor`/`object`.

O `(request-target)` do apsig usa só o caminho da URL, sem query string,
tanto ao assinar quanto ao verificar.
"""

import hmac
import logging
import re
from typing import Mapping

from apsig.draft import Signer, Verifier
from apsig.draft.tools import calculate_digest
from apsig.exceptions import SignatureError
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.serialization import load_pem_private_key

from app.config import settings

log = logging.getLogger(__name__)

AP_CONTENT_TYPE = "application/activity+json"

_SIGNATURE_PARAM = re.compile(r'(\w+)="([^"]*)"')

# Nome canônico de cada header devolvido por sign_request
_HEADER_NAMES = {
    "host": "Host",
    "date": "Date",
    "digest": "Digest",
    "content-type": "Content-Type",
}


def compute_digest(body: bytes | str) -> str:
    return calculate_digest(body)


def verify_digest(body: bytes | str, digest_header: str | None) -> bool:
    """Compara o valor SHA-256 do header `Digest` com o hash do corpo recebido."""
    if not digest_header:
        return False
    expected = compute_digest(body).split("=", 1)[1]
    for part in digest_header.split(","):
        algorithm, _, value = part.strip().partition("=")
        if algorithm.lower() == "sha-256" and value:
            return hmac.compare_digest(value, expected)
    return False


def parse_signature_header(header: str) -> dict[str, str]:
    return dict(_SIGNATURE_PARAM.findall(header))


def sign_request(
    method: str,
    url: str,
    body: bytes | str | None,
    private_key_pem: str,
    key_id: str,
) -> dict[str, str]:
    """
    Retorna os headers assinados para a requisição: Host, Date, Digest
    (quando há corpo), Content-Type e Signature.
    """
    signed = ["(request-target)", "host", "date"]
    headers = {}
    if body is not None:
        headers["Content-Type"] = AP_CONTENT_TYPE
        signed.append("digest")
    if isinstance(body, str):
        body = body.encode()

    signer = Signer(
        headers=headers,
        private_key=load_pem_private_key(private_key_pem.encode(), password=None),
        method=method,
        url=url,
        key_id=key_id,
        body=body or b"",
        signed_headers=signed,
    )
    raw = signer.sign()

    result = {
        canonical: raw[name]
        for name, canonical in _HEADER_NAMES.items()
        if name in raw and (name != "digest" or body is not None)
    }
    result["Signature"] = raw["Signature"]
    return result


def verify_signature(
    method: str,
    path: str,
    headers: Mapping[str, str],
    public_key_pem: str,
) -> bool:
    """
    Verifica a assinatura RSA-SHA256 com os headers recebidos (lookup
    case-insensitive) e o Date dentro de `signature_max_age`.
    Nunca levanta exceção: qualquer entrada malformada retorna False.
    """
    try:
        verifier = Verifier(
            public_pem=public_key_pem,
            method=method,
            url=path,
            headers=dict(headers.items()),
            clock_skew=int(settings.signature_max_age),
        )
        return verifier.verify() is not None
    except SignatureError:
        return False
    except (KeyError, ValueError, TypeError, UnsupportedAlgorithm) as e:
        log.debug(f"Assinatura malformada: {e}")
        return False
