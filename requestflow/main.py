"""Main FastAPI application entry point."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from requestflow.api.routes import engine_error_handler, router
from requestflow.config import configure_logging, get_settings
from requestflow.database import Base, engine
# Import models to register them with SQLAlchemy Base
from requestflow.models import audit, domain  # noqa: F401
from requestflow.services.errors import EngineError

configure_logging(get_settings())

# Create database tables
Base.metadata.create_all(bind=engine)

# Create FastAPI app
app = FastAPI(
    title="Requestflow - Service Request Lifecycle Engine",
    description="Lifecycle, assignment, field work and quality tracking for municipal service requests.",
    version="0.1.0"
)

# Enable CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # For MVP - restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(EngineError, engine_error_handler)

# Include API routes
app.include_router(router, prefix="/api", tags=["Requests"])


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "requestflow"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
