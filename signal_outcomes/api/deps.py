"""Shared API dependencies."""

import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from signal_outcomes.config import settings
from signal_outcomes.services.ledger import LedgerStore, build_ledger
from signal_outcomes.services.price_oracle import PriceCache, PriceOracle

bearer_scheme = HTTPBearer(auto_error=False)


def require_api_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    """Check the bearer token when one is configured."""
    if not settings.api_token:
        return
    if credentials is None or not hmac.compare_digest(credentials.credentials, settings.api_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API token",
        )


def get_ledger() -> LedgerStore:
    return build_ledger()


def get_price_cache(request: Request) -> PriceCache | None:
    return getattr(request.app.state, "price_cache", None)


def get_oracle(price_cache: PriceCache | None = Depends(get_price_cache)) -> PriceOracle:
    from signal_outcomes.engine.cycle import build_oracle
    return build_oracle(price_cache)
