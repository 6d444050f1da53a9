"""
Identity sync.

The identity provider owns accounts. The first authenticated request from a
user creates the local ``users`` row, and later tokens carrying a different
wallet address update it.
"""

import logging
from typing import Dict, Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fiatmint.app.core.exceptions import PersistenceError
from fiatmint.app.models.user import User

logger = logging.getLogger(__name__)


async def sync_user_from_claims(db: AsyncSession, claims: Dict[str, Any]) -> User:
    """
    Make sure a local user exists for verified token claims.

    Args:
        db: Database session
        claims: Decoded JWT payload (user_id, optional email and wallet_address)

    Returns:
        The local User row
    """
    user_id = str(claims["user_id"])
    wallet = claims.get("wallet_address")

    try:
        user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
        if user is None:
            user = User(id=user_id, email=claims.get("email"), wallet_address=wallet)
            db.add(user)
            try:
                await db.commit()
            except IntegrityError:
                # Concurrent first request created it.
                await db.rollback()
                user = (await db.execute(select(User).where(User.id == user_id))).scalar_one()
            else:
                logger.info("Local user created", extra={"user_id": user_id})
        elif wallet and user.wallet_address != wallet:
            user.wallet_address = wallet
            await db.commit()
            logger.info("Wallet address updated", extra={"user_id": user_id})
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError("Could not sync user") from exc

    return user
