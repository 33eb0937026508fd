from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from storytime.api.v1.router import api_router
from storytime.core.config import Settings, get_settings
from storytime.core.logging import configure_logging
from storytime.db.init_db import init_db
from storytime.db.session import create_engine_and_sessionmaker
from storytime.services.ai.registry import ProviderRegistry
from storytime.services.channels import ChannelRegistry, SlackChannel
from storytime.services.fallback import FallbackGenerator
from storytime.services.generation import GenerationOrchestrator
from storytime.services.jobs import scheduler_lifespan
from storytime.services.notifications import NotificationPipeline


def create_app(settings: Settings | None = None) -> FastAPI:
    app_settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(app_settings.log_level)
        engine, session_maker = create_engine_and_sessionmaker(app_settings.database_url)
        await init_db(engine)
        client = httpx.AsyncClient(timeout=app_settings.ai_http_timeout_seconds)

        channels = ChannelRegistry(
            [
                SlackChannel(
                    session_maker=session_maker,
                    client=client,
                    encryption_key=app_settings.encryption_key,
                    api_base_url=app_settings.slack_api_base_url,
                    timeout_seconds=app_settings.ai_http_timeout_seconds,
                )
            ]
        )
        notifications = NotificationPipeline(
            session_maker=session_maker,
            channels=channels,
            settings=app_settings,
        )
        orchestrator = GenerationOrchestrator(
            session_maker=session_maker,
            registry=ProviderRegistry.from_settings(client=client, settings=app_settings),
            fallback=FallbackGenerator(),
            settings=app_settings,
            notifications=notifications,
        )

        app.state.settings = app_settings
        app.state.engine = engine
        app.state.session_maker = session_maker
        app.state.http_client = client
        app.state.channels = channels
        app.state.notifications = notifications
        app.state.orchestrator = orchestrator
        try:
            async with scheduler_lifespan(
                orchestrator=orchestrator,
                notifications=notifications,
                session_maker=session_maker,
                settings=app_settings,
            ) as scheduler:
                app.state.scheduler = scheduler
                yield
        finally:
            await client.aclose()
            await engine.dispose()

    app = FastAPI(title=app_settings.app_name, lifespan=lifespan)
    app.include_router(api_router, prefix=app_settings.api_v1_prefix)

    return app


app = create_app()
