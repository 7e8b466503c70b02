from __future__ import annotations

import logging
import os
from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might need env vars
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes.workbooks import router as workbooks_router
from middleware.rate_limit import RateLimitMiddleware, RateLimitConfig
from services.settings import get_settings


settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Sheet Instruction Editor")

# Rate limiting (can be disabled in dev with DISABLE_RATE_LIMIT=1)
if not os.getenv("DISABLE_RATE_LIMIT"):
    rate_config = RateLimitConfig(
        requests_per_minute=60,
        requests_per_hour=1000,
        translator_requests_per_minute=20,
        translator_requests_per_hour=200,
        burst_limit=15,
    )
    app.add_middleware(RateLimitMiddleware, config=rate_config)

# Allow any origin in local dev mode.
# This should be tightened for production.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(workbooks_router)


@app.get("/")
async def root():
    return {"status": "ok", "translator_available": settings.gemini.available}
