# app/main.py
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.core.config import settings
from app.core.version import VERSION
from app.api.endpoints import x402, ledger
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=VERSION,
    openapi_url=f"{settings.API_V1_STR}/openapi.json" # Standard location for OpenAPI spec
)

# The wallet UI is served from a different origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-PAYMENT-RESPONSE"],
)

# Include the API router(s)
# The prefix ensures all routes start with /api/v1
app.include_router(x402.router, prefix=f"{settings.API_V1_STR}/x402", tags=["x402"])
app.include_router(x402.a2a_router, prefix=f"{settings.API_V1_STR}/a2a", tags=["a2a"])
app.include_router(ledger.router, prefix=f"{settings.API_V1_STR}", tags=["ledger"])

@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}", "version": VERSION}

# TODO: Add Security Dependencies on the policy admin routes
# (e.g., app.include_router(..., dependencies=[Depends(verify_api_key)]))
