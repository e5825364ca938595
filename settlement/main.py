from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from settlement.core.config import settings
from settlement.core.logging_setup import configure_logging
from settlement.api.v1.api import api_router

configure_logging()

app = FastAPI(title=settings.APP_NAME)

# CORS: use CORS_ORIGINS from env in production; default to localhost for dev
_default_origins = ["http://127.0.0.1:8080", "http://localhost:8080"]
_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()] if settings.CORS_ORIGINS else _default_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health")
def health():
    return {"status": "ok"}
