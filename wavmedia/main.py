from contextlib import asynccontextmanager
from pathlib import Path
from urllib.parse import urlparse

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from wavmedia.api.v1.router import router as v1_router
from wavmedia.core import Settings, settings
from wavmedia.core.logging import configure_logging
from wavmedia.runtime import MediaRuntime
from wavmedia.schemas.api import HealthOut


def create_app(app_settings: Settings | None = None, *, runtime: MediaRuntime | None = None) -> FastAPI:
    cfg = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(cfg.LOG_LEVEL)
        rt = runtime or MediaRuntime(cfg)
        app.state.runtime = rt
        await rt.start(consume=cfg.API_RUNS_WORKERS)
        try:
            yield
        finally:
            await rt.close()
            app.state.runtime = None

    app = FastAPI(title="wavmedia API", version="0.1.0", lifespan=lifespan)
    app.include_router(v1_router, prefix="/v1")

    @app.get("/health", response_model=HealthOut)
    async def health() -> HealthOut:
        rt = getattr(app.state, "runtime", None)
        return HealthOut(status="ok", workers_running=bool(rt is not None and rt.queue.running))

    if cfg.STORAGE_BACKEND == "local":
        Path(cfg.STORAGE_DIR).mkdir(parents=True, exist_ok=True)
        mount_path = urlparse(cfg.STORAGE_BASE_URL).path.rstrip("/") or "/storage"
        app.mount(mount_path, StaticFiles(directory=cfg.STORAGE_DIR), name="storage")
    return app


app = create_app()
