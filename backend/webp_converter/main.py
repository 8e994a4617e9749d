"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from webp_converter import config as app_config
from webp_converter.api.routes import router
from webp_converter.batch import BatchDriver
from webp_converter.conversion.service import ConversionService
from webp_converter.db import OptionStore, dispose_engine, ensure_default_options, init_db
from webp_converter.rewriter import ReferenceRewriter

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    ensure_default_options()
    app.state.service = ConversionService(options=OptionStore())
    app.state.rewriter = ReferenceRewriter(app_config.UPLOADS_BASE_URL, app_config.UPLOADS_DIR)
    app.state.batch = BatchDriver()
    app_config.logger.info("WebP converter API started")
    yield
    dispose_engine()
    app_config.logger.info("WebP converter API shutting down")


app = FastAPI(
    title="WebP Converter API",
    description="Convert JPEG/PNG assets to size-limited WebP and rewrite references to them.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=app_config.CORS_ORIGINS if app_config.CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("webp_converter.main:app", host=app_config.HOST, port=app_config.PORT, reload=True)
