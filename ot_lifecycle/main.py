"""Main FastAPI application entry point."""
import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from ot_lifecycle.config import get_settings
from ot_lifecycle.database import engine, Base
from ot_lifecycle.api.errors import request_validation_error_handler, work_order_error_handler
from ot_lifecycle.api.routes import router
from ot_lifecycle.services.errors import WorkOrderError
# Import models to register them with SQLAlchemy Base
from ot_lifecycle.models import audit, domain  # noqa: F401

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

# Create FastAPI app
app = FastAPI(
    title="OT Lifecycle - Corrective Work Orders",
    description="Lifecycle of corrective maintenance work orders: assignment, waiting, return to production, guided close and the dispatcher board.",
    version="0.1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(WorkOrderError, work_order_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)

# Include API routes
app.include_router(router, prefix="/api", tags=["Work orders"])


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "OT Lifecycle"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
