"""
GitHub App adapter.

Exchanges OAuth codes for user-to-server tokens, refreshes them when the App has token
expiration enabled, and lists the App installations the user can access.
"""

import logging
from typing import Any, Dict, List, Optional

from aiohttp import ClientSession
from pydantic import ValidationError as PydanticValidationError
import sentry_sdk

from social.atmd.account.entities import InstallationInfo, TokenPair
from social.atmd.account.errors import (
    ExternalServiceError,
    ExternalServiceErrorCode,
    status_error_code,
    translate_http_error,
)
from social.atmd.account.result import Err, Ok, Result

logger = logging.getLogger(__name__)

PROVIDER = "github"

GITHUB_OAUTH_URL = "https://github.com/login/oauth"
GITHUB_API_URL = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"

# OAuth errors GitHub reports with a 200 response that mean the grant is unusable.
REJECTED_GRANT_ERRORS = (
    "bad_verification_code",
    "bad_refresh_token",
    "incorrect_client_credentials",
)


class GitHubAppProvider:
    def __init__(
        self,
        http_session: ClientSession,
        client_id: str,
        client_secret: str,
    ) -> None:
        self.http_session = http_session
        self.client_id = client_id
        self.client_secret = client_secret

    async def _token_request(
        self, payload: Dict[str, str], message: str
    ) -> Result[TokenPair, ExternalServiceError]:
        body = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            **payload,
        }
        try:
            async with self.http_session.post(
                f"{GITHUB_OAUTH_URL}/access_token",
                json=body,
                headers={"Accept": "application/json"},
            ) as resp:
                if resp.status != 200:
                    return Err(
                        ExternalServiceError(
                            PROVIDER,
                            status_error_code(resp.status),
                            f"{message}: status {resp.status}",
                        )
                    )
                token_response: Any = await resp.json()
        except Exception as e:
            sentry_sdk.capture_exception(e)
            return Err(translate_http_error(PROVIDER, e, message))

        if not isinstance(token_response, dict):
            return Err(
                ExternalServiceError(
                    PROVIDER, ExternalServiceErrorCode.RESPONSE_INVALID, message
                )
            )

        # GitHub reports OAuth errors with a 200 and an "error" member.
        error: Optional[str] = token_response.get("error", None)
        if error is not None:
            code = (
                ExternalServiceErrorCode.AUTHENTICATION_FAILED
                if error in REJECTED_GRANT_ERRORS
                else ExternalServiceErrorCode.REQUEST_FAILED
            )
            return Err(ExternalServiceError(PROVIDER, code, f"{message}: {error}"))

        access_token = token_response.get("access_token", None)
        if not access_token:
            return Err(
                ExternalServiceError(
                    PROVIDER,
                    ExternalServiceErrorCode.RESPONSE_INVALID,
                    f"{message}: no access token",
                )
            )
        return Ok(
            TokenPair(
                access_token=access_token,
                refresh_token=token_response.get("refresh_token", None) or None,
            )
        )

    async def get_access_token(self, code: str) -> Result[TokenPair, ExternalServiceError]:
        return await self._token_request(
            {"code": code}, "unable to exchange authorization code"
        )

    async def refresh_access_token(
        self, refresh_token: str
    ) -> Result[TokenPair, ExternalServiceError]:
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "unable to refresh access token",
        )

    async def get_installations(
        self, access_token: str
    ) -> Result[List[InstallationInfo], ExternalServiceError]:
        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {access_token}",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }
        try:
            async with self.http_session.get(
                f"{GITHUB_API_URL}/user/installations", headers=headers
            ) as resp:
                if resp.status != 200:
                    return Err(
                        ExternalServiceError(
                            PROVIDER,
                            status_error_code(resp.status),
                            f"installation listing returned {resp.status}",
                        )
                    )
                body: Any = await resp.json()
        except Exception as e:
            sentry_sdk.capture_exception(e)
            return Err(translate_http_error(PROVIDER, e, "unable to list installations"))

        try:
            installations = [
                InstallationInfo(
                    id=installation["id"],
                    account_login=installation["account"]["login"],
                    account_type=installation["account"]["type"],
                    target_type=installation.get("target_type", None),
                    repository_selection=installation.get("repository_selection", None),
                    html_url=installation.get("html_url", None),
                )
                for installation in body.get("installations", [])
            ]
        except (AttributeError, KeyError, TypeError, PydanticValidationError) as e:
            logger.debug("unexpected installation payload: %s", e)
            return Err(
                ExternalServiceError(
                    PROVIDER,
                    ExternalServiceErrorCode.RESPONSE_INVALID,
                    "installation listing could not be read",
                    e,
                )
            )
        return Ok(installations)
