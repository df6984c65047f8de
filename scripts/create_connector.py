"""
Add an upstream OpenID provider users can sign in with.

    python scripts/create_connector.py <connector_id> <issuer> <client_id> <client_secret> [name]

Register `<issuer>/auth/callback/<connector_id>` as the redirect URI upstream.
"""

import asyncio
import sys

from loguru import logger

from sso.config import get_settings
from sso.database import Database
from sso.federation.repository import ConnectorRepository
from sso.federation.schemas import ConnectorArgs
from sso.federation.service import callback_url


async def create_connector(args: ConnectorArgs):
    settings = get_settings()
    database = Database(settings.database_url)
    await database.create_all()
    try:
        await ConnectorRepository(database.session_factory).create(args)
        logger.success(
            f"Created connector {args.connector_id}, callback {callback_url(settings.issuer_url, args.connector_id)}"
        )
    finally:
        await database.dispose()


if __name__ == "__main__":
    if len(sys.argv) < 5:
        print(__doc__)
        sys.exit(1)
    connector_id, issuer, client_id, client_secret = sys.argv[1:5]
    asyncio.run(
        create_connector(
            ConnectorArgs(
                connector_id=connector_id,
                issuer=issuer,
                client_id=client_id,
                client_secret=client_secret,
                name=sys.argv[5] if len(sys.argv) > 5 else "",
            )
        )
    )
