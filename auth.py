"""Caller identity for runmeter, resolved from JWT API tokens."""
import re
import jwt
import uuid
import urllib.parse
from datetime import datetime, timezone
from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from starlette.status import HTTP_401_UNAUTHORIZED
from typing import Optional

from models import CallerIdentity

# API key header security scheme
api_key_header = APIKeyHeader(name="X-API-Token", auto_error=False)

DEFAULT_TOKEN = "1"
DEFAULT_IDENTITY = CallerIdentity(user_id="default_user", project_id="default", api_key_ref=None)

_JWT_PATTERN = re.compile(r'^[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+$')
_USER_ID_PATTERN = re.compile(r'^[a-zA-Z0-9._-]+$')


class AuthManager:
    """Issues and verifies tokens signed with a shared secret.

    The token's ``jti`` claim doubles as the API key reference recorded on
    every metered call.
    """

    def __init__(self, secret: str, algorithm: str = "HS256", allow_default: bool = False):
        self.secret = secret
        self.algorithm = algorithm
        self.allow_default = allow_default

    def generate_token(self, user_id: str, project_id: Optional[str] = None) -> str:
        if not user_id:
            raise HTTPException(status_code=400, detail="user_id is required to generate a token")

        user_id = str(user_id).strip()
        if not _USER_ID_PATTERN.match(user_id):
            raise HTTPException(
                status_code=400,
                detail="user_id contains invalid characters. Use only letters, numbers, dots, hyphens, and underscores."
            )

        payload = {
            "user_id": user_id,
            "project_id": str(project_id).strip() if project_id else user_id,
            "iat": int(datetime.now(timezone.utc).timestamp()),
            "jti": str(uuid.uuid4())
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify_token(self, token: str) -> CallerIdentity:
        """
        Verify a token without any database lookup.

        Args:
            token: JWT token string

        Returns:
            CallerIdentity of the token holder
        """
        if not token:
            raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Missing API token")

        token = token.strip()
        if '%' in token:
            token = urllib.parse.unquote(token)

        if token == DEFAULT_TOKEN and self.allow_default:
            return DEFAULT_IDENTITY

        if not _JWT_PATTERN.match(token):
            raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Invalid token format")

        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Token expired")
        except jwt.InvalidTokenError as e:
            raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {str(e)}")

        user_id = payload.get("user_id")
        if not user_id:
            raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Invalid token: missing user_id")

        return CallerIdentity(
            user_id=user_id,
            project_id=payload.get("project_id") or user_id,
            api_key_ref=payload.get("jti")
        )

    def resolve(self, token: Optional[str]) -> CallerIdentity:
        if not token and self.allow_default:
            return DEFAULT_IDENTITY
        return self.verify_token(token)


# Authentication dependency for FastAPI routes
async def get_caller(request: Request, token: str = Security(api_key_header)) -> CallerIdentity:
    """Identity of the caller for protected routes."""
    identity = request.app.state.services.auth.resolve(token)
    request.state.caller = identity
    return identity
