"""
Register a relying party.

    python scripts/create_client.py [client_id] [redirect_uri] [scopes]

Defaults to the demo client `sso-demo` redirecting to http://localhost:3000/callback.
"""

import asyncio
import sys

from loguru import logger

from sso.config import get_settings
from sso.database import Database
from sso.idp.registry import ClientRegistry, ClientRepository
from sso.idp.response import ClientCreationResponse
from sso.idp.schemas import ClientCreateArgs, parse_scope


async def create_client(client_id: str, redirect_uri: str, scopes: str):
    database = Database(get_settings().database_url)
    await database.create_all()
    registry = ClientRegistry(ClientRepository(database.session_factory))
    try:
        if await registry.repo.get(client_id):
            logger.warning(f"Client {client_id} already exists, rotating its secret")
            secret = await registry.rotate_secret(client_id)
        else:
            _, secret = await registry.register(
                ClientCreateArgs(
                    client_id=client_id,
                    name=client_id,
                    redirect_uris=[redirect_uri],
                    scopes=list(parse_scope(scopes)),
                )
            )
        client = await registry.lookup(client_id)
        logger.success(f"Client {client_id} ready")
        print(
            ClientCreationResponse(
                client_id=client.client_id,
                client_secret=secret,
                name=client.name,
                redirect_uris=sorted(client.redirect_uris),
                scopes=sorted(client.scopes),
            ).model_dump_json(indent=2)
        )
    finally:
        await database.dispose()


if __name__ == "__main__":
    args = sys.argv[1:]
    asyncio.run(
        create_client(
            args[0] if len(args) > 0 else "sso-demo",
            args[1] if len(args) > 1 else "http://localhost:3000/callback",
            args[2] if len(args) > 2 else "openid profile email offline_access",
        )
    )
