"""
app/activitypub/security.py

Proteção contra SSRF para toda requisição de federação de saída.

Toda URL influenciada por terceiros (IRI de actor, inbox, WebFinger, NodeInfo,
diretório) passa por `validate_federation_url()` antes de qualquer conexão:

1. esquema http/https (apenas https em produção), sem userinfo
2. hostname não pode ser privado/interno (`is_private_ip`)
3. o hostname é resolvido via DNS e cada IP resolvido é checado de novo
   (`assert_public_resolved_ip`), o que derruba ataques de DNS rebinding
"""

import asyncio
import ipaddress
import logging
import socket
from urllib.parse import urlparse

from app.config import is_production

log = logging.getLogger(__name__)

_BLOCKED_HOSTNAMES = frozenset({"localhost", "0.0.0.0", "::", "::1"})
_BLOCKED_SUFFIXES = (".local", ".internal", ".localhost")

_BLOCKED_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",     # CGNAT
        "127.0.0.0/8",
        "169.254.0.0/16",    # link-local / metadata de cloud
        "172.16.0.0/12",
        "192.0.0.0/24",
        "192.168.0.0/16",
        "198.18.0.0/15",
        "224.0.0.0/4",       # multicast
        "240.0.0.0/4",
        "::/128",
        "::1/128",
        "fc00::/7",          # unique-local
        "fe80::/10",         # link-local
        "ff00::/8",
    )
)


class UnsafeURLError(Exception):
    """URL recusada pela proteção contra SSRF."""


def _parse_ip(hostname: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address(hostname.strip("[]"))
    except ValueError:
        return None


def _is_blocked_address(addr: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    if any(addr in network for network in _BLOCKED_NETWORKS):
        return True
    return addr.is_loopback or addr.is_link_local or addr.is_multicast or addr.is_reserved


def is_private_ip(hostname: str) -> bool:
    """True para hostnames internos e IPs literais em faixas privadas/reservadas."""
    lower = hostname.lower().strip().rstrip(".")
    if lower in _BLOCKED_HOSTNAMES or lower.strip("[]") in _BLOCKED_HOSTNAMES:
        return True
    if lower.endswith(_BLOCKED_SUFFIXES):
        return True

    addr = _parse_ip(lower)
    if addr is None:
        return False
    return _is_blocked_address(addr)


async def resolve_host(hostname: str) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    return sorted({info[4][0] for info in infos})


async def assert_public_resolved_ip(hostname: str) -> None:
    """
    Resolve o hostname e levanta `UnsafeURLError` se algum IP for privado.

    IPs literais já são cobertos por `is_private_ip()`. Falhas de DNS são
    ignoradas: a requisição seguinte falha naturalmente.
    """
    if _parse_ip(hostname) is not None:
        return

    try:
        addresses = await resolve_host(hostname)
    except OSError as e:
        log.debug(f"Falha ao resolver {hostname}: {e}")
        return

    for address in addresses:
        addr = _parse_ip(address.split("%", 1)[0])
        if addr is not None and _is_blocked_address(addr):
            raise UnsafeURLError(f"Hostname {hostname} resolve para IP privado {address}")


async def validate_federation_url(url: str) -> None:
    try:
        parsed = urlparse(url)
    except ValueError as e:
        raise UnsafeURLError(f"URL inválida: {url}") from e

    scheme = (parsed.scheme or "").lower()
    if scheme not in ("http", "https"):
        raise UnsafeURLError(f"Esquema não permitido: {url}")
    if is_production() and scheme != "https":
        raise UnsafeURLError(f"Apenas URLs HTTPS são permitidas: {url}")
    if parsed.username or parsed.password:
        raise UnsafeURLError(f"Credenciais na URL não são permitidas: {url}")

    hostname = parsed.hostname
    if not hostname:
        raise UnsafeURLError(f"URL sem host: {url}")
    if is_private_ip(hostname):
        raise UnsafeURLError(f"Endereço privado/interno não permitido: {hostname}")

    await assert_public_resolved_ip(hostname)
