import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .code_rotation import CodeRotationWorker
from .config import CODE_ROTATION_ENABLED, CODE_ROTATION_INTERVAL_SECONDS, LOG_LEVEL
from .database import SessionLocal, init_db
from .errors import register_exception_handlers
from .logging_config import setup_logging
from .routers import auth_router, food_router, order_router, package_router

setup_logging(LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Surplus Market",
    description="Marketplace for discounted surplus food packages with rotating pickup codes",
    version="1.0.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Create database tables
init_db()

app.include_router(auth_router.router)
app.include_router(package_router.router)
app.include_router(food_router.router)
app.include_router(order_router.router)

rotation_worker = CodeRotationWorker(SessionLocal, CODE_ROTATION_INTERVAL_SECONDS)


@app.on_event("startup")
def _startup() -> None:
    if CODE_ROTATION_ENABLED:
        rotation_worker.start()
    else:
        logger.info("code rotation disabled")


@app.on_event("shutdown")
def _shutdown() -> None:
    rotation_worker.stop()


@app.get("/")
def root():
    return {
        "service": "Surplus Market",
        "status": "running",
        "version": "1.0.0",
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "code_rotation": rotation_worker.running,
    }
