from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pathlib import Path
from datetime import datetime

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from engine.exceptions import WorkflowError
from services import close_client, get_database, get_engine
from scholarship_routes import scholarship_router

# Create the main app
app = FastAPI(
    title="Scholarship Lifecycle & Disbursement Engine",
    version="1.0.0",
    description="Application state machine, committee review, budget ledger and grant disbursement"
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    """Translate engine errors into structured HTTP responses"""
    if exc.http_status >= 500:
        logger.error(f"[API] {exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"[API] {exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=jsonable_encoder(exc.to_dict()))


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow(),
        "version": "1.0.0",
        "payment_provider": os.environ.get("PAYMENT_PROVIDER", "paymongo")
    }


app.include_router(scholarship_router)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def create_indexes():
    engine = get_engine(get_database())
    await engine.create_indexes()


@app.on_event("shutdown")
async def shutdown_db_client():
    close_client()
