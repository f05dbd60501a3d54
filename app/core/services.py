from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.db import build_engine, build_session_factory
from app.services.auth import HostedAuthProvider, IdentityProvider
from app.services.http_client import JsonHttpClient
from app.services.payments import PaymentGateway, StripeGateway


@dataclass
class Services:
    """Process-wide collaborators, built once at startup and passed to handlers."""

    session_factory: async_sessionmaker[AsyncSession]
    payments: PaymentGateway
    identity: IdentityProvider
    engine: AsyncEngine | None = None

    async def aclose(self) -> None:
        await self.identity.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def build_services(settings: Settings) -> Services:
    engine = build_engine(settings.database_url)
    auth_http = JsonHttpClient(
        base_url=settings.auth_base_url,
        default_headers={"Accept": "application/json"},
    )
    return Services(
        engine=engine,
        session_factory=build_session_factory(engine),
        payments=StripeGateway(
            api_key=settings.stripe_secret_key.get_secret_value(),
            webhook_secret=settings.stripe_webhook_secret.get_secret_value(),
            webhook_tolerance=settings.webhook_tolerance_seconds,
        ),
        identity=HostedAuthProvider(auth_http, api_key=settings.auth_api_key.get_secret_value()),
    )
