"""FastAPI application setup."""

from fastapi import FastAPI

from portfolio_recon.db.database import init_db
from portfolio_recon.api.routes import brokers, portfolio
from portfolio_recon.config import PRODUCT_NAME, PRODUCT_TAGLINE, PRODUCT_VERSION, PRODUCT_DESCRIPTION

app = FastAPI(
    title=f"{PRODUCT_NAME} API",
    description=PRODUCT_DESCRIPTION,
    version=PRODUCT_VERSION,
)


@app.on_event("startup")
def startup():
    """Initialize database on startup."""
    init_db()


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "name": PRODUCT_NAME,
        "version": PRODUCT_VERSION,
        "status": "ok",
        "tagline": PRODUCT_TAGLINE,
    }


# Mount API routers
app.include_router(portfolio.router, prefix="/api/portfolios", tags=["portfolio"])
app.include_router(brokers.router, prefix="/api", tags=["brokers"])
