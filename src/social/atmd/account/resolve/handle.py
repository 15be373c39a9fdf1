"""AT Protocol handle and DID resolution utilities.

Resolves handles to DIDs through the ``_atproto`` DNS TXT record or the HTTPS well-known
endpoint, then resolves the DID document (did:plc through the PLC directory, did:web
through ``did.json``) to find the account's canonical handle and PDS.
"""

import asyncio
from enum import IntEnum
import re
from typing import Any, Dict, Optional

from aiodns import DNSResolver
from aiohttp import ClientSession
from pydantic import BaseModel
import sentry_sdk

HANDLE_PATTERN = re.compile(
    r"^([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)


class SubjectType(IntEnum):
    did_method_plc = 1
    did_method_web = 2
    hostname = 3


class ParsedSubject(BaseModel):
    subject_type: SubjectType
    subject: str


class ResolvedSubject(BaseModel):
    """DID, canonical handle and PDS endpoint of an account."""

    did: str
    handle: str
    pds: str


def parse_input(subject: str) -> Optional[ParsedSubject]:
    """Classify user input as a DID or a handle.

    Surrounding whitespace and ``at://`` / ``@`` prefixes are tolerated. Handles are
    lowercased. Returns None for input that is neither a DID nor a syntactically valid
    handle.
    """
    subject = subject.strip().removeprefix("at://").removeprefix("@")

    if subject.startswith("did:plc:"):
        return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
    if subject.startswith("did:web:"):
        return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)

    subject = subject.lower()
    if len(subject) > 253 or HANDLE_PATTERN.match(subject) is None:
        return None
    return ParsedSubject(subject_type=SubjectType.hostname, subject=subject)


async def resolve_handle_dns(handle: str) -> Optional[str]:
    resolver = DNSResolver()
    try:
        results = await resolver.query(f"_atproto.{handle}", "TXT")
    except Exception as e:
        sentry_sdk.capture_exception(e)
        return None
    for result in results or []:
        text = result.text
        if isinstance(text, bytes):
            text = text.decode("utf-8", errors="replace")
        if text.startswith("did="):
            return text.removeprefix("did=")
    return None


async def resolve_handle_http(session: ClientSession, handle: str) -> Optional[str]:
    try:
        async with session.get(f"https://{handle}/.well-known/atproto-did") as resp:
            if resp.status != 200:
                return None
            body = (await resp.text()).strip()
            return body if body.startswith("did:") else None
    except Exception as e:
        sentry_sdk.capture_exception(e)
        return None


async def resolve_handle(session: ClientSession, handle: str) -> Optional[str]:
    """Resolve a handle with DNS and HTTPS concurrently, preferring the DNS answer."""
    async with asyncio.TaskGroup() as tg:
        dns_result = tg.create_task(resolve_handle_dns(handle))
        http_result = tg.create_task(resolve_handle_http(session, handle))
    return dns_result.result() or http_result.result()


def parse_did_document(did: str, document: Dict[str, Any]) -> Optional[ResolvedSubject]:
    """Extract the handle and PDS endpoint from a DID document."""
    if document.get("id", did) != did:
        return None

    handle = next(
        (
            value.removeprefix("at://")
            for value in document.get("alsoKnownAs", [])
            if isinstance(value, str) and value.startswith("at://")
        ),
        None,
    )
    pds = next(
        (
            service.get("serviceEndpoint")
            for service in document.get("service", [])
            if isinstance(service, dict)
            and service.get("type") == "AtprotoPersonalDataServer"
            and isinstance(service.get("serviceEndpoint"), str)
        ),
        None,
    )
    if handle is None or pds is None:
        return None
    return ResolvedSubject(did=did, handle=handle.lower(), pds=pds.rstrip("/"))


def did_document_url(plc_hostname: str, did: str) -> Optional[str]:
    if did.startswith("did:plc:"):
        return f"https://{plc_hostname}/{did}"
    if did.startswith("did:web:"):
        parts = did.removeprefix("did:web:").split(":")
        if len(parts) == 1:
            parts.append(".well-known")
        return "https://{inner}/did.json".format(inner="/".join(parts))
    return None


async def resolve_did(
    session: ClientSession, plc_hostname: str, did: str
) -> Optional[ResolvedSubject]:
    url = did_document_url(plc_hostname, did)
    if url is None:
        return None
    async with session.get(url) as resp:
        if resp.status != 200:
            return None
        document = await resp.json(content_type=None)
    if not isinstance(document, dict):
        return None
    return parse_did_document(did, document)


async def resolve_subject(
    session: ClientSession, plc_hostname: str, subject: str
) -> Optional[ResolvedSubject]:
    """Resolve a handle or DID to its DID, canonical handle and PDS.

    When the input is a handle, the DID document must claim that same handle; otherwise
    anyone controlling a DNS name could point it at someone else's DID.
    """
    parsed_subject = parse_input(subject)
    if parsed_subject is None:
        return None

    if parsed_subject.subject_type == SubjectType.hostname:
        did = await resolve_handle(session, parsed_subject.subject)
        if did is None:
            return None
    else:
        did = parsed_subject.subject

    resolved = await resolve_did(session, plc_hostname, did)
    if resolved is None:
        return None
    if (
        parsed_subject.subject_type == SubjectType.hostname
        and resolved.handle != parsed_subject.subject
    ):
        return None
    return resolved
