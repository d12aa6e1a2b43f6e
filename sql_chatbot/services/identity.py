"""
Client for the hosted identity provider and the FastAPI dependency that
authenticates callers with it.

The provider owns sign-in; this service only sees a bearer session token,
asks the provider which subject it belongs to, and reads that subject's
profile when an account row has to be created.
"""
import logging
from dataclasses import dataclass
from functools import cache
from typing import Any, Dict

import requests
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from sql_chatbot.errors import ExternalServiceError, UnauthorizedError
from sql_chatbot.settings import config

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

REQUEST_TIMEOUT = 10


@dataclass
class UserProfile:
    external_id: str
    email: str | None
    name: str | None


class IdentityProvider:
    def __init__(self, api_url: str, secret_key: str | None):
        self.api_url = api_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {secret_key}"} if secret_key else {}

    def verify_token(self, token: str) -> str:
        """Return the subject id the session token belongs to."""
        try:
            resp = requests.post(
                f"{self.api_url}/tokens/verify",
                headers=self.headers,
                json={"token": token},
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            raise ExternalServiceError(f"Identity provider unreachable: {e}") from e
        if resp.status_code in (401, 403, 404):
            raise UnauthorizedError()
        resp.raise_for_status()
        subject = resp.json().get("sub")
        if not subject:
            raise UnauthorizedError()
        return subject

    def get_user(self, external_id: str) -> UserProfile:
        try:
            resp = requests.get(
                f"{self.api_url}/users/{external_id}",
                headers=self.headers,
                timeout=REQUEST_TIMEOUT,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ExternalServiceError(f"Failed to fetch user profile: {e}") from e
        return parse_user_profile(external_id, resp.json())


def parse_user_profile(external_id: str, data: Dict[str, Any]) -> UserProfile:
    emails = data.get("email_addresses") or []
    primary_id = data.get("primary_email_address_id")
    email = None
    for entry in emails:
        if entry.get("id") == primary_id:
            email = entry.get("email_address")
            break
    if email is None and emails:
        email = emails[0].get("email_address")

    name = " ".join(
        part for part in (data.get("first_name"), data.get("last_name")) if part
    )
    return UserProfile(
        external_id=external_id,
        email=email,
        name=name or data.get("username"),
    )


@cache
def get_identity_provider() -> IdentityProvider:
    return IdentityProvider(config.identity_api_url, config.identity_secret_key)


def get_current_user_id(
    creds: HTTPAuthorizationCredentials | None = Depends(security),
    provider: IdentityProvider = Depends(get_identity_provider),
) -> str:
    if creds is None or creds.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return provider.verify_token(creds.credentials)
    except UnauthorizedError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except Exception as e:
        logger.error(f"Token verification failed: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
