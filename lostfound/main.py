"""
FastAPI backend for the lost & found similarity search service.
Provides REST API endpoints for item upload, text/image search, ingestion
status polling and deletion.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional, Union

from fastapi import FastAPI, File, Form, Query, Request, UploadFile, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

# Fix OpenMP conflict between torch and faiss
os.environ.setdefault("KMP_DUPLICATE_LIB_OK", "TRUE")

from .auth import AuthProvider, PostgresSessionAuthProvider, StaticTokenAuthProvider, parse_bearer
from .blob_store import BlobStore, DatabaseConfig, DatabaseManager, LocalBlobStore, PostgresBlobStore
from .config import Config
from .deletion import DeletionCoordinator
from .embedder import ItemEmbedder, get_embedder
from .errors import LostFoundError, NotFoundError, ValidationError
from .ingestion import BackgroundIngestor, IngestionPipeline
from .models import Identity
from .search import SearchService
from .status_tracker import StatusTracker
from .status_worker import start_status_pruner
from .vector_store import ALL, FaissVectorStore

# Configure logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the request handlers need, built once per process."""
    embedder: ItemEmbedder
    vector_store: FaissVectorStore
    blob_store: BlobStore
    auth_provider: AuthProvider
    status_tracker: StatusTracker
    pipeline: IngestionPipeline
    search: SearchService
    deletion: DeletionCoordinator
    ingestor: BackgroundIngestor


def assemble_services(embedder, vector_store: FaissVectorStore, blob_store: BlobStore,
                      auth_provider: AuthProvider, status_tracker: StatusTracker = None,
                      cfg=Config) -> Services:
    """Wire the components together around the given collaborators."""
    status_tracker = status_tracker or StatusTracker(
        grace_seconds=cfg.STATUS_GRACE_SECONDS,
        max_attempts=cfg.STATUS_MAX_ATTEMPTS,
        max_lifetime_seconds=cfg.STATUS_MAX_LIFETIME_SECONDS,
    )
    pipeline = IngestionPipeline(
        embedder, vector_store, blob_store, status_tracker,
        max_text_length=cfg.MAX_TEXT_LENGTH,
        max_upload_size=cfg.MAX_UPLOAD_SIZE,
    )
    search = SearchService(
        embedder, vector_store, blob_store,
        default_top_k=cfg.DEFAULT_SEARCH_LIMIT,
        default_min_similarity=cfg.DEFAULT_MIN_SIMILARITY,
    )
    return Services(
        embedder=embedder,
        vector_store=vector_store,
        blob_store=blob_store,
        auth_provider=auth_provider,
        status_tracker=status_tracker,
        pipeline=pipeline,
        search=search,
        deletion=DeletionCoordinator(vector_store, blob_store, status_tracker),
        ingestor=BackgroundIngestor(pipeline),
    )


def build_services(cfg=Config) -> Services:
    """Build services from configuration."""
    vector_store = FaissVectorStore(
        embedding_dim=cfg.EMBEDDING_DIM,
        index_path=cfg.FAISS_INDEX_PATH if cfg.PERSIST_INDEX else None,
    )
    if cfg.PERSIST_INDEX and os.path.exists(cfg.FAISS_INDEX_PATH):
        vector_store.load(cfg.FAISS_INDEX_PATH)
        logger.info(f"Loaded FAISS index from {cfg.FAISS_INDEX_PATH}")
    else:
        logger.info("Starting with an empty item index")

    db_manager = None
    if cfg.BLOB_BACKEND == "postgres" or cfg.AUTH_BACKEND == "postgres":
        db_manager = DatabaseManager(DatabaseConfig(**cfg.get_db_config()))

    if cfg.BLOB_BACKEND == "postgres":
        blob_store = PostgresBlobStore(db_manager, cfg.PUBLIC_BASE_URL)
        blob_store.ensure_schema()
    else:
        blob_store = LocalBlobStore(cfg.BLOB_DIR, cfg.PUBLIC_BASE_URL)

    if cfg.AUTH_BACKEND == "postgres":
        auth_provider = PostgresSessionAuthProvider(db_manager)
    else:
        auth_provider = StaticTokenAuthProvider.from_string(cfg.AUTH_STATIC_TOKENS)
        if not auth_provider.tokens:
            logger.warning("No AUTH_STATIC_TOKENS configured; uploads and deletes will be rejected")

    return assemble_services(get_embedder(), vector_store, blob_store, auth_provider, cfg=cfg)


# Pydantic models for API requests
class TextSearchRequest(BaseModel):
    query: Optional[str] = ""
    minSimilarity: Optional[float] = None
    topK: Optional[Union[int, str]] = None


class SimilarSearchRequest(BaseModel):
    itemId: Optional[str] = None
    imageUrl: Optional[str] = None
    minSimilarity: Optional[float] = None
    topK: Optional[Union[int, str]] = None


class DeleteRequest(BaseModel):
    itemId: Optional[str] = None
    fileName: Optional[str] = None


def parse_top_k(value) -> Union[int, str, None]:
    """Accept an int, a numeric string or "all"."""
    if value is None or value == "":
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text == ALL:
        return ALL
    try:
        return int(text)
    except ValueError:
        raise ValidationError(f"topK must be a positive integer or '{ALL}'")


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_identity(request: Request) -> Identity:
    """Resolve the caller from the Authorization header."""
    token = parse_bearer(request.headers.get("Authorization"))
    return get_services(request).auth_provider.authenticate(token)


async def read_upload(file: Optional[UploadFile], max_size: int) -> bytes:
    if file is None:
        raise ValidationError("Missing required fields")
    if file.content_type and not file.content_type.startswith('image/'):
        raise ValidationError("File must be an image")
    if file.size and file.size > max_size:
        raise ValidationError("File too large")
    return await file.read()


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create the API. ``services`` is built from configuration at startup when omitted."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()
        stop_pruner = await start_status_pruner(app.state.services.status_tracker,
                                                interval=Config.STATUS_PRUNE_INTERVAL)
        logger.info("Application startup completed successfully")
        try:
            yield
        finally:
            await app.state.services.ingestor.drain()
            await stop_pruner()

    app = FastAPI(
        title="Lost & Found Similarity Search API",
        description="CLIP + FAISS matching of lost and found items",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in Config.CORS_ORIGINS.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LostFoundError)
    async def lost_found_error_handler(request: Request, exc: LostFoundError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors())
        return JSONResponse(status_code=400, content={"error": f"Invalid request: {errors}"})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error in {request.method} {request.url.path}", exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/health")
    async def health(services: Services = Depends(get_services)):
        """Service health and index size."""
        return {
            "status": "healthy",
            "items": len(services.vector_store),
            "model_loaded": services.embedder.is_loaded,
            "tracked_ingestions": len(services.status_tracker),
            "pending_ingestions": services.ingestor.pending,
        }

    @app.post("/upload")
    async def upload_item(
        title: Optional[str] = Form(None),
        description: Optional[str] = Form(""),
        location: Optional[str] = Form(None),
        image: Optional[UploadFile] = File(None),
        wait: bool = Query(True, description="Index before responding; false returns 202 and a status to poll"),
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ):
        """Upload a found item and index it for search."""
        image_data = await read_upload(image, Config.MAX_UPLOAD_SIZE)
        logger.info(f"Processing upload for user {identity.email} ({len(image_data)} bytes)")

        if not wait:
            item_id = services.ingestor.submit(
                title, description, location, image_data, identity,
                filename=image.filename, content_type=image.content_type)
            return JSONResponse(status_code=202, content={
                "success": True,
                "item": {"id": item_id, "title": (title or "").strip(), "location": (location or "").strip()},
                "status": "pending",
            })

        record = await asyncio.to_thread(
            services.pipeline.ingest, title, description, location, image_data, identity,
            filename=image.filename, content_type=image.content_type)
        return {"success": True, "item": record.to_dict()}

    @app.post("/search/text")
    async def search_text(request: TextSearchRequest, services: Services = Depends(get_services)):
        """Search found items by a text description."""
        if not request.query or not request.query.strip():
            return {"items": []}
        results = await asyncio.to_thread(
            services.search.search_by_text, request.query, request.minSimilarity, parse_top_k(request.topK))
        return {"items": [r.to_dict() for r in results]}

    @app.post("/search/image")
    async def search_image(
        image: Optional[UploadFile] = File(None),
        minSimilarity: Optional[float] = Form(None),
        topK: Optional[str] = Form(None),
        services: Services = Depends(get_services),
    ):
        """Search found items by photo."""
        image_data = await read_upload(image, Config.MAX_UPLOAD_SIZE)
        results = await asyncio.to_thread(
            services.search.search_by_image, image_data, minSimilarity, parse_top_k(topK), image.content_type)
        return {"items": [r.to_dict() for r in results]}

    @app.post("/search/similar")
    async def search_similar(request: SimilarSearchRequest, services: Services = Depends(get_services)):
        """Find items similar to an existing item (by id) or an image URL."""
        top_k = parse_top_k(request.topK)
        if request.itemId:
            results = await asyncio.to_thread(
                services.search.search_similar_to_item, request.itemId, request.minSimilarity, top_k)
        elif request.imageUrl:
            results = await asyncio.to_thread(
                services.search.search_by_image_url, request.imageUrl, request.minSimilarity, top_k)
        else:
            raise ValidationError("itemId or imageUrl is required")
        return {"items": [r.to_dict() for r in results]}

    @app.get("/status")
    async def ingestion_status(imageId: Optional[str] = Query(None), services: Services = Depends(get_services)):
        """Poll ingestion progress for an uploaded item."""
        if not imageId:
            raise ValidationError("imageId is required")
        exists = services.vector_store.contains(imageId)
        try:
            status = services.status_tracker.get(imageId)
        except NotFoundError:
            if exists:
                return {"exists": True, "status": "indexed", "message": "Item is searchable"}
            return JSONResponse(status_code=404, content={
                "exists": False, "status": "not_found", "message": f"No item or ingestion for {imageId}"})
        return {"exists": exists, "status": status.state.value, "message": status.message}

    @app.post("/delete")
    async def delete_item(
        request: DeleteRequest,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ):
        """Delete an item and its photo. Owners and admins only."""
        if not request.itemId:
            raise ValidationError("itemId is required")
        record = await asyncio.to_thread(services.deletion.delete, request.itemId, identity)
        if request.fileName and not record.image_url.endswith(request.fileName):
            logger.warning(f"Delete of {request.itemId}: fileName {request.fileName} does not match stored image")
        return {"success": True}

    @app.get("/items")
    async def recent_items(limit: int = Query(20, ge=1, le=100), services: Services = Depends(get_services)):
        """Most recently indexed items."""
        rows = services.vector_store.recent(limit)
        items = []
        for item_id, meta in rows:
            items.append({
                "id": item_id,
                "title": meta.get("title", ""),
                "description": meta.get("description", ""),
                "location": meta.get("location", ""),
                "image_url": meta.get("image_url", ""),
                "submitter_email": meta.get("submitter_identity", ""),
                "created_at": meta["created_at"].isoformat() if meta.get("created_at") else None,
            })
        return {"items": items}

    @app.get("/images/{file_name}")
    async def get_image(file_name: str, services: Services = Depends(get_services)):
        """Serve a stored item photo."""
        data = await asyncio.to_thread(services.blob_store.get, file_name)
        content_type = await asyncio.to_thread(services.blob_store.content_type, file_name)
        return Response(content=data, media_type=content_type, headers={"Cache-Control": "max-age=3600"})

    return app


app = create_app()
