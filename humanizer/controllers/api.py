from fastapi import APIRouter

from . import accounts, billing, transform, webhooks

router = APIRouter()
router.include_router(transform.router)
router.include_router(billing.router)
router.include_router(accounts.router)
# signature-authenticated, no bearer token
router.include_router(webhooks.router)
