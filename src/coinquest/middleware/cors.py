"""CORS middleware configuration."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from coinquest.config import Settings


def setup_cors(app: FastAPI, settings: Settings) -> None:
    """Allow the web client origins."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id", "Retry-After", "X-RateLimit-Remaining", "X-RateLimit-Limit"],
    )
