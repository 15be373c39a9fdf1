from typing import Any, Optional
from aiohttp import ClientSession


async def oauth_protected_resource(session: ClientSession, pds: str) -> Optional[Any]:
    async with session.get(f"{pds}/.well-known/oauth-protected-resource") as resp:
        if resp.status != 200:
            return None
        return await resp.json()


async def oauth_authorization_server(
    session: ClientSession, authorization_server: str
) -> Optional[Any]:
    async with session.get(
        f"{authorization_server}/.well-known/oauth-authorization-server"
    ) as resp:
        if resp.status != 200:
            return None
        return await resp.json()


async def discover_authorization_server(
    session: ClientSession, pds: str
) -> Optional[Any]:
    """Follow a PDS to the metadata of the first authorization server it names."""
    protected_resource = await oauth_protected_resource(session, pds)
    if protected_resource is None:
        return None

    first_authorization_server = next(
        iter(protected_resource.get("authorization_servers", [])), None
    )
    if first_authorization_server is None:
        return None

    return await oauth_authorization_server(session, first_authorization_server)
