import asyncio
import logging
from dataclasses import dataclass

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.account import Account

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyPair:
    public_key_pem: str
    private_key_pem: str

    def __repr__(self) -> str:
        return "KeyPair(public_key_pem=..., private_key_pem=<redacted>)"


def generate_key_pair() -> KeyPair:
    """Par RSA-2048 em PEM PKCS#1."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.PKCS1,
    )
    return KeyPair(public_key_pem=public_pem.decode(), private_key_pem=private_pem.decode())


async def ensure_key_pair(session: AsyncSession, account: Account) -> KeyPair:
    """
    Retorna o par de chaves da conta, criando e persistindo na primeira vez.
    A geração roda numa thread para não travar o event loop.
    """
    if account.public_key_pem and account.private_key_pem:
        return KeyPair(account.public_key_pem, account.private_key_pem)

    keys = await asyncio.to_thread(generate_key_pair)
    account.public_key_pem = keys.public_key_pem
    account.private_key_pem = keys.private_key_pem
    session.add(account)
    await session.flush()
    log.info(f"Par de chaves criado para {account.username}")
    return keys
