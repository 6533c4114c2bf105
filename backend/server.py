"""
Print Broker Settlement Hub - Main Server

Entry point for the API. Routes are organized in /routes/, business logic in
/services/.
"""

from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
import asyncio
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from routes import jobs, chain_documents, pricing, webhooks

# ==================== SERVICES ====================
from services import settlement_config
from services.blob_store import GridFSBlobStore, InMemoryBlobStore
from services.document_parser import HttpDocumentParser
from services.notification_dispatcher import NotificationDispatcher
from services.notifier_service import get_notifier
from services.settlement_service import SettlementService
from services.stores import InMemorySettlementStore, MongoSettlementStore, get_database

mongo_client = None
dispatcher_task = None


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global mongo_client, dispatcher_task

    logger.info("Starting Print Broker Settlement Hub (store=%s)...", settlement_config.STORE_BACKEND)

    db = None
    if settlement_config.STORE_BACKEND == "memory":
        store = InMemorySettlementStore()
    else:
        mongo_client = AsyncIOMotorClient(settlement_config.MONGO_URL)
        db = get_database(mongo_client, settlement_config.DB_NAME)
        store = MongoSettlementStore(mongo_client, db)
        await store.ensure_indexes()
        if settlement_config.AUDIT_ROLE_PROVISIONING:
            await store.provision_audit_role(settlement_config.AUDIT_ROLE_NAME)

    if settlement_config.BLOB_BACKEND == "gridfs" and db is not None:
        blob_store = GridFSBlobStore(db)
    else:
        blob_store = InMemoryBlobStore()

    dispatcher = NotificationDispatcher(store, get_notifier(db))
    parser = HttpDocumentParser() if settlement_config.DOCUMENT_PARSER_URL else None
    service = SettlementService(store, dispatcher=dispatcher, parser=parser, blob_store=blob_store)

    # Initialize routers with the service
    jobs.set_dependencies(service, blob_store)
    chain_documents.set_dependencies(service)
    pricing.set_dependencies(service)
    webhooks.set_dependencies(service)

    if settlement_config.OUTBOX_DISPATCHER_ENABLED:
        dispatcher_task = asyncio.create_task(dispatcher.run_forever())

    logger.info("Print Broker Settlement Hub started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Print Broker Settlement Hub...")
    if dispatcher_task:
        dispatcher.stop()
        await dispatcher_task
    if mongo_client:
        mongo_client.close()


# ==================== APP SETUP ====================
app = FastAPI(
    title="Print Broker Settlement Hub",
    description="Job lifecycle and multi-tier settlement for print brokering",
    version="1.0.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settlement_config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API Router with /api prefix
api_router = APIRouter(prefix="/api")

# Include route modules
api_router.include_router(jobs.router)
api_router.include_router(chain_documents.router)
api_router.include_router(pricing.router)
api_router.include_router(webhooks.router)

# Mount to app
app.include_router(api_router)


# ==================== ROOT ENDPOINTS ====================
@app.get("/")
async def root():
    return {
        "service": "Print Broker Settlement Hub",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/api/health")
async def health():
    return {
        "status": "healthy",
        "service": "print-broker-settlement-hub",
        "store": settlement_config.STORE_BACKEND,
    }
