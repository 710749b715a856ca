"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from converter.api.routes import router
from converter.config import CORS_ORIGINS, EMBEDDED_WORKERS, logger as config_logger
from converter.conversion.runner import WorkerPool
from converter.conversion.service import get_conversion_service

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    svc = get_conversion_service()
    pool = None
    if EMBEDDED_WORKERS > 0:
        # convenience for single-process deployments; production runs `python -m converter.worker run`
        pool = WorkerPool(lambda i: svc.make_runner(), size=EMBEDDED_WORKERS)
        pool.start()
    config_logger.info("Converter API started")
    yield
    if pool is not None:
        pool.stop()
    config_logger.info("Converter API shutting down")


app = FastAPI(
    title="File Conversion API",
    description="Queue file conversions on local FFmpeg or CloudConvert and track their progress.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    from converter.config import HOST, PORT
    uvicorn.run("converter.main:app", host=HOST, port=PORT, reload=True)
