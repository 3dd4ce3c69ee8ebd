"""
Gera o par de chaves RSA de todas as contas que ainda não têm um.
Uso: uv run python scripts/generate_keys.py
"""

import asyncio

from sqlalchemy import or_, select

from app import database
from app.activitypub.keys import ensure_key_pair
from app.models.account import Account


async def generate_missing_keys() -> int:
    await database.init_db()
    async with database.async_session_factory() as session:
        async with session.begin():
            result = await session.execute(
                select(Account).where(
                    or_(Account.public_key_pem.is_(None), Account.private_key_pem.is_(None))
                )
            )
            accounts = result.scalars().all()
            for account in accounts:
                await ensure_key_pair(session, account)
    return len(accounts)


def main() -> None:
    created = asyncio.run(generate_missing_keys())
    print(f"✓ {created} par(es) de chaves gerado(s).")


if __name__ == "__main__":
    main()
