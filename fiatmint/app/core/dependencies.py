"""
Request dependencies for FastAPI.

Authentication plus access to the collaborators built once in the
application lifespan (blockchain client, mint coordinator, payment gateway,
token service).
"""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from fiatmint.app.core.jwt import decode_access_token
from fiatmint.app.db.session import get_db
from fiatmint.app.services.identity import sync_user_from_claims

# HTTP Bearer security scheme
security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> dict:
    """
    FastAPI dependency for JWT authentication.

    1. Validates JWT token signature and expiry
    2. Requires a user_id claim
    3. Normalises roles to an explicit list claim
    4. Syncs the local user row (wallet address) from the claims

    Returns:
        Decoded token payload containing user information

    Raises:
        HTTPException: 401 if authentication fails for any reason
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("user_id")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    payload["roles"] = [str(role).upper() for role in roles]
    payload["user_id"] = str(user_id)

    await sync_user_from_claims(db, payload)
    return payload


def get_blockchain_client(request: Request):
    return request.app.state.blockchain


def get_payment_gateway(request: Request):
    return request.app.state.payment_gateway


def get_mint_coordinator(request: Request):
    return request.app.state.mint_coordinator


def get_outbox_dispatcher(request: Request):
    return request.app.state.outbox_dispatcher


def get_token_service(request: Request):
    return request.app.state.token_service
