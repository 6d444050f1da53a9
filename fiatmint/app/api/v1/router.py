"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from fiatmint.app.api.v1.endpoints import (
    payments, tokens, admin, perks, votes, transparency
)

router = APIRouter()

# Fiat -> token pipeline
router.include_router(payments.router)
router.include_router(tokens.router)

# Operator tooling
router.include_router(admin.router)

# Token utility
router.include_router(perks.router)
router.include_router(votes.router)

# Public reporting
router.include_router(transparency.router)
