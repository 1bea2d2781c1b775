import hmac
from typing import Optional

from fastapi import Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .errors import Unauthorized
from .intake import UploadIntake
from .query import FileQuery

bearer_scheme = HTTPBearer(auto_error=False)


class AuthGate:
    """Accepts a bearer token or the API key header, both checked against API_KEY."""

    def __init__(self, api_key: str, api_key_header: str = "X-API-Key", enabled: bool = False):
        self.api_key = api_key
        self.api_key_header = api_key_header
        self.enabled = enabled

    def verify(self, credential: Optional[str]) -> str:
        if not credential:
            raise Unauthorized("Missing credentials")
        if not hmac.compare_digest(credential.encode(), self.api_key.encode()):
            raise Unauthorized("Invalid credentials")
        return "api-key"


def _credential(request: Request, bearer: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if bearer is not None:
        return bearer.credentials
    return request.headers.get(request.app.state.auth_gate.api_key_header)


async def require_auth(
    request: Request,
    bearer: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> Optional[str]:
    gate: AuthGate = request.app.state.auth_gate
    if not gate.enabled:
        return None
    return gate.verify(_credential(request, bearer))


async def require_principal(
    request: Request,
    bearer: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> str:
    return request.app.state.auth_gate.verify(_credential(request, bearer))


def get_intake(request: Request) -> UploadIntake:
    return request.app.state.intake


def get_query(request: Request) -> FileQuery:
    return request.app.state.query
