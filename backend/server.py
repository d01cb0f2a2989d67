import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from codeloop.config import Settings, configure_logging, load_environment

# Environment must be loaded before settings are read
load_environment()

from codeloop.api.generate import router as generate_router
from codeloop.api.interactions import router as interactions_router
from codeloop.api.models import router as models_router
from codeloop.api.native import router as native_router
from codeloop.services import Services


# Basic logger for server diagnostics (inherits uvicorn handlers)
logger = logging.getLogger("codeloop.server")


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)
    services = services or Services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        stopped = services.processes.stop()
        if stopped:
            logger.info("shutdown: signalled %d process group(s)", len(stopped))

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = services

    app.include_router(generate_router)
    app.include_router(interactions_router)
    app.include_router(native_router)
    app.include_router(models_router)

    @app.get("/")
    def read_root():
        return {"Hello": "Codeloop"}

    logger.info(
        "app ready gateway=%s projects_dir=%s",
        settings.gateway is not None,
        settings.projects_dir,
    )
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8081)
