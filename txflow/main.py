from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api import flows
from .config import settings
from .logging_config import setup_logging

setup_logging()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    await flows.start_flow_manager()
    yield
    await flows.stop_flow_manager()


# Create FastAPI app
app = FastAPI(
    title="Transaction Flow API",
    description="Orchestrates EVM transactions from request to on-chain confirmation",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(flows.router)


@app.get("/")
async def root():
    """Root endpoint with basic info"""
    return {
        "name": "Transaction Flow API",
        "version": __version__,
        "docs": "/docs",
        "flows": "/flows",
    }


@app.get("/healthz")
async def health_check():
    manager = flows.get_flow_manager()
    return {
        "status": "healthy" if settings.has_rpc_url else "degraded",
        "rpcConfigured": settings.has_rpc_url,
        "walletConnected": bool(manager.wallet and manager.wallet.is_connected()),
        "store": settings.store_backend,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "txflow.main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        log_level=settings.log_level.lower()
    )
