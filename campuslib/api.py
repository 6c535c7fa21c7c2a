import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from campuslib import errors
from campuslib.catalog import CatalogLookup
from campuslib.circulation import CirculationService
from campuslib.config import Settings, settings
from campuslib.management import CatalogManager, ProfileRegistry
from campuslib.services.identity_service import Authorizer, build_authorizer
from campuslib.store import LibraryStore

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS = [
    (errors.ValidationError, 422),
    (errors.NotFound, 404),
    (errors.NotAuthorized, 403),
    (errors.StoreUnavailable, 503),
    (errors.GuardViolation, 409),
    (errors.InconsistentState, 409),
    (errors.RecordConflict, 409),
]


def status_for(exc: errors.LibraryError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


# --- Models ---
class BookModel(BaseModel):
    id: Optional[int] = None
    code: str
    title: str
    author: str
    category: str
    available: bool
    created_at: Optional[str] = None


class BookCreateModel(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    category: str = Field(description="Fiction, Science, Technology, History, Philosophy, Arts or Mathematics")


class ProfileModel(BaseModel):
    id: Optional[int] = None
    account_id: Optional[str] = None
    name: str
    serial: str
    email: str
    phone: Optional[str] = None
    department: Optional[str] = None
    verification_status: str
    id_document_path: Optional[str] = None
    created_at: Optional[str] = None


class ProfileCreateModel(BaseModel):
    name: str
    serial: str = Field(description="Institutional serial number, e.g. 1XX21CS001")
    email: str
    phone: Optional[str] = None
    department: Optional[str] = None
    account_id: Optional[str] = Field(default=None, description="Linked identity-service account")
    id_document_path: Optional[str] = Field(default=None, description="Key of the uploaded identity document")


class VerificationUpdateModel(BaseModel):
    status: str = Field(description="pending, verified or rejected")


class TransactionModel(BaseModel):
    id: Optional[int] = None
    book_id: int
    user_id: int
    kind: str
    issued_at: str
    due_at: Optional[str] = None
    returned_at: Optional[str] = None
    created_at: Optional[str] = None
    book_code: Optional[str] = None
    user_serial: Optional[str] = None


class IssueRequest(BaseModel):
    book_code: str
    serial: str


class ReturnRequest(BaseModel):
    book_code: str
    override: bool = Field(default=False, description="Repair a book flagged issued with no open transaction")


class ReceiptModel(BaseModel):
    book: BookModel
    transaction: Optional[TransactionModel] = None
    due_at: Optional[str] = None
    returned_at: Optional[str] = None
    repaired: bool = False


class StatsModel(BaseModel):
    total_books: int
    available: int
    issued: int
    users: int
    open_transactions: int
    overdue: int


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(request: Request, api_key: str = Security(api_key_header)):
    """Dependency to validate the API key."""
    if api_key == request.app.state.settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_actor(x_actor_id: Optional[str] = Header(default=None)) -> str:
    """The signed-in operator, as vouched for by the identity service session."""
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(status_code=401, detail="X-Actor-Id header required")
    return x_actor_id.strip()


def get_catalog(request: Request) -> CatalogLookup:
    return request.app.state.catalog


def get_circulation(request: Request) -> CirculationService:
    return request.app.state.circulation


def get_catalog_manager(request: Request) -> CatalogManager:
    return request.app.state.catalog_manager


def get_registry(request: Request) -> ProfileRegistry:
    return request.app.state.registry


def create_app(cfg: Optional[Settings] = None, store: Optional[LibraryStore] = None,
               authorizer: Optional[Authorizer] = None) -> FastAPI:
    """Build the API around an explicitly supplied store and authorizer."""
    cfg = cfg or settings
    logging.basicConfig(level=cfg.log_level)
    store = store or LibraryStore(cfg.database_file, busy_timeout=cfg.store_busy_timeout,
                                  seed_file=cfg.seed_file)
    authorizer = authorizer or build_authorizer(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.initialize()
        logger.info(f"{cfg.app_name} ready on {store.db_file}")
        yield

    app = FastAPI(title=f"{cfg.app_name} API", version=cfg.app_version, lifespan=lifespan)
    catalog = CatalogLookup(store)
    app.state.settings = cfg
    app.state.store = store
    app.state.catalog = catalog
    app.state.circulation = CirculationService(
        store, authorizer, catalog=catalog,
        loan_period_days=cfg.loan_period_days,
        require_verified_profile=cfg.require_verified_profile,
    )
    app.state.catalog_manager = CatalogManager(store, authorizer)
    app.state.registry = ProfileRegistry(store, authorizer)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        # circulation state changes under the client's feet
        if request.url.path.startswith(("/books", "/transactions", "/circulation", "/stats")):
            response.headers["Cache-Control"] = "no-store"
        return response

    @app.exception_handler(errors.LibraryError)
    async def library_error_handler(request: Request, exc: errors.LibraryError):
        status = status_for(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status, content=exc.to_dict())

    # --- Health ---
    @app.get("/health")
    async def health():
        """Lightweight health endpoint with a quick store round-trip."""
        db_ok = await store.ping()
        return {
            "status": "healthy" if db_ok else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "db": db_ok,
            "version": cfg.app_version,
        }

    # --- Catalog ---
    @app.get("/books", response_model=List[BookModel])
    async def list_books(
        q: Optional[str] = Query(None, description="Search title, author or code"),
        category: Optional[str] = Query(None, description="Category, or 'All'"),
        available: Optional[bool] = Query(None, description="Only available (true) or issued (false) books"),
        limit: Optional[int] = Query(None, ge=1, le=cfg.max_page_size),
        offset: int = Query(0, ge=0),
        catalog: CatalogLookup = Depends(get_catalog),
    ):
        books = await catalog.list_books(q, category, available, limit, offset)
        return [BookModel(**b.to_dict()) for b in books]

    @app.get("/books/{code}", response_model=BookModel)
    async def get_book(code: str, catalog: CatalogLookup = Depends(get_catalog)):
        book = await catalog.find_book_by_code(code)
        return BookModel(**book.to_dict())

    @app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
    async def add_book(payload: BookCreateModel, actor: str = Depends(get_actor),
                       manager: CatalogManager = Depends(get_catalog_manager)):
        book = await manager.add_book(payload.title, payload.author, payload.category, actor_id=actor)
        return BookModel(**book.to_dict())

    @app.delete("/books/{code}", dependencies=[Depends(get_api_key)])
    async def delete_book(code: str, actor: str = Depends(get_actor),
                          manager: CatalogManager = Depends(get_catalog_manager)):
        book = await manager.remove_book(code, actor_id=actor)
        return {"message": f"{book.code} removed."}

    # --- Users ---
    @app.post("/users", response_model=ProfileModel, status_code=201)
    async def register_user(payload: ProfileCreateModel, registry: ProfileRegistry = Depends(get_registry)):
        profile = await registry.register(**payload.model_dump())
        return ProfileModel(**profile.to_dict())

    @app.get("/users/{serial}", response_model=ProfileModel, dependencies=[Depends(get_api_key)])
    async def get_user(serial: str, catalog: CatalogLookup = Depends(get_catalog)):
        profile = await catalog.find_user_by_serial(serial)
        return ProfileModel(**profile.to_dict())

    @app.put("/users/{serial}/verification", response_model=ProfileModel, dependencies=[Depends(get_api_key)])
    async def update_verification(serial: str, payload: VerificationUpdateModel, actor: str = Depends(get_actor),
                                  registry: ProfileRegistry = Depends(get_registry)):
        profile = await registry.set_verification_status(serial, payload.status, actor_id=actor)
        return ProfileModel(**profile.to_dict())

    # --- Circulation ---
    @app.post("/circulation/issue", response_model=ReceiptModel, dependencies=[Depends(get_api_key)])
    async def issue_book(payload: IssueRequest, actor: str = Depends(get_actor),
                         circulation: CirculationService = Depends(get_circulation)):
        receipt = await circulation.issue_by_code(payload.book_code, payload.serial, actor_id=actor)
        return ReceiptModel(**receipt.to_dict())

    @app.post("/circulation/return", response_model=ReceiptModel, dependencies=[Depends(get_api_key)])
    async def return_book(payload: ReturnRequest, actor: str = Depends(get_actor),
                          circulation: CirculationService = Depends(get_circulation)):
        receipt = await circulation.return_by_code(payload.book_code, actor_id=actor, override=payload.override)
        return ReceiptModel(**receipt.to_dict())

    @app.get("/transactions", response_model=List[TransactionModel], dependencies=[Depends(get_api_key)])
    async def list_transactions(
        book_code: Optional[str] = Query(None),
        serial: Optional[str] = Query(None),
        open_only: bool = Query(False),
        limit: Optional[int] = Query(None, ge=1, le=cfg.max_page_size),
        circulation: CirculationService = Depends(get_circulation),
    ):
        entries = await circulation.history(book_code, serial, open_only, limit)
        return [TransactionModel(**t.to_dict()) for t in entries]

    @app.get("/transactions/overdue", response_model=List[TransactionModel], dependencies=[Depends(get_api_key)])
    async def list_overdue(circulation: CirculationService = Depends(get_circulation)):
        return [TransactionModel(**t.to_dict()) for t in await circulation.overdue()]

    # --- Dashboard ---
    @app.get("/stats", response_model=StatsModel)
    async def get_stats(circulation: CirculationService = Depends(get_circulation)):
        return StatsModel(**await circulation.statistics())

    @app.get("/admin/audit", response_model=List[BookModel], dependencies=[Depends(get_api_key)])
    async def audit(circulation: CirculationService = Depends(get_circulation)):
        return [BookModel(**b.to_dict()) for b in await circulation.audit()]

    return app
