"""Bearer-token gate for protected routes."""

from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tasklane.deps import get_identity_client
from tasklane.errors import Unauthorized
from tasklane.identity import IdentityClient, Principal

bearer_scheme = HTTPBearer(auto_error=False)


async def require_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    identity: IdentityClient = Depends(get_identity_client),
) -> Principal:
    """Resolve the request's bearer token through the identity provider."""
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Missing or invalid authorization header")
    return await identity.get_user(credentials.credentials)
