import argparse
import asyncio
import base64
import logging
from typing import List

import aiohttp
from cryptography.fernet import Fernet
from jwcrypto import jwk
from ulid import ULID

from social.atmd.account.resolve.handle import resolve_subject

logger = logging.getLogger(__name__)


async def genJwk() -> None:
    key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
    print(key.export(private_key=True))


async def genJwks(count: int) -> None:
    """Print a JWK set suitable for the JSON_WEB_KEYS file."""
    key_set = jwk.JWKSet()
    for _ in range(count):
        key_set.add(jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256"))
    print(key_set.export(private_keys=True))


async def genCryptoKey() -> None:
    key = Fernet.generate_key()
    print(base64.b64encode(key).decode("utf-8"))


async def resolve(subjects: List[str], plc_hostname: str) -> None:
    async with aiohttp.ClientSession() as session:
        for subject in subjects:
            try:
                resolved_subject = await resolve_subject(session, plc_hostname, subject)
            except aiohttp.ClientError:
                logger.exception("Exception resolving subject %s", subject)
                continue
            if resolved_subject is None:
                print(f"{subject}: unresolved")
                continue
            print(
                f"{subject}: {resolved_subject.did} {resolved_subject.handle} {resolved_subject.pds}"
            )


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="accountutil", description="Account service utilities"
    )

    parser.add_argument(
        "--plc-hostname",
        default="plc.directory",
        help="The PLC hostname to use for resolving did-method-plc DIDs.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    _ = subparsers.add_parser("gen-jwk", help="Generate a JWK")
    gen_jwks = subparsers.add_parser("gen-jwks", help="Generate a JWK set")
    gen_jwks.add_argument("--count", type=int, default=1, help="Number of keys.")
    _ = subparsers.add_parser("gen-crypto", help="Generate an encryption key")
    resolve_parser = subparsers.add_parser("resolve", help="Resolve handles or DIDs")
    resolve_parser.add_argument("subject", nargs="+", help="The subject(s) to resolve.")

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-jwk":
        await genJwk()
    elif command == "gen-jwks":
        await genJwks(args["count"])
    elif command == "gen-crypto":
        await genCryptoKey()
    elif command == "resolve":
        await resolve(args["subject"], args["plc_hostname"])


def main() -> None:
    logging.basicConfig()
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
