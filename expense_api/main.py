import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.security.utils import get_authorization_scheme_param
from sqlalchemy.ext.asyncio import AsyncSession

from .accounts import AccountService
from .config import Settings, get_settings
from .database import build_engine, build_sessionmaker, create_tables
from .errors import Internal, ServiceError, Unauthenticated
from .expenses import ExpenseFilters, ExpenseQueries, ExpenseService, parse_date
from .schemas import (
    CategorySummary,
    ExpenseIn,
    ExpenseList,
    ExpenseOut,
    Message,
    Registration,
    Token,
    UserLogin,
    UserOut,
    UserRegister,
)
from .security import Clock, PasswordHasher, TokenService, authenticate, utcnow
from .store import ExpenseStore, UserStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
PROTECTED_PREFIXES = ("/expenses", "/auth/me")


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)


def _is_protected(path: str) -> bool:
    return any(path == prefix or path.startswith(prefix + "/") for prefix in PROTECTED_PREFIXES)


def _bearer_token(request: Request) -> Optional[str]:
    scheme, credentials = get_authorization_scheme_param(request.headers.get("Authorization"))
    if scheme.lower() != "bearer":
        return None
    return credentials or None


def _error_response(exc: ServiceError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"kind": exc.kind, "detail": exc.detail},
        headers=exc.headers,
    )


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path"))
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid request"


def create_app(settings: Optional[Settings] = None, clock: Clock = utcnow) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    engine = build_engine(settings)
    sessionmaker = build_sessionmaker(engine)
    tokens = TokenService.from_settings(settings, clock=clock)
    hasher = PasswordHasher(rounds=settings.bcrypt_rounds)
    bearer_scheme = HTTPBearer(auto_error=False)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await create_tables(engine)
        yield
        await engine.dispose()

    app = FastAPI(title="Expense Tracker API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------------
    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        # The body is decoded before dependencies run, so the gate is applied
        # here too for protected paths.
        if _is_protected(request.url.path):
            try:
                authenticate(tokens, _bearer_token(request))
            except Unauthenticated as denied:
                return _error_response(denied)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"kind": "invalid_argument", "detail": _validation_message(exc)},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("%s %s failed", request.method, request.url.path, exc_info=exc)
        return _error_response(Internal())

    # ------------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------------
    async def get_db() -> AsyncIterator[AsyncSession]:
        async with sessionmaker() as session:
            yield session

    def current_user_id(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    ) -> int:
        return authenticate(tokens, credentials.credentials if credentials else None)

    def get_accounts(db: AsyncSession = Depends(get_db)) -> AccountService:
        return AccountService(UserStore(db), hasher, tokens)

    def get_expense_queries(db: AsyncSession = Depends(get_db)) -> ExpenseQueries:
        return ExpenseQueries(ExpenseStore(db))

    def get_expense_service(db: AsyncSession = Depends(get_db)) -> ExpenseService:
        return ExpenseService(ExpenseStore(db))

    # ------------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------------
    @app.get("/")
    async def read_root():
        return {"message": "Expense Tracker API is running"}

    # ------------------------------------------------------------------------
    # Auth routes
    # ------------------------------------------------------------------------
    @app.post("/auth/register", response_model=Registration, status_code=status.HTTP_201_CREATED)
    async def register(payload: UserRegister, accounts: AccountService = Depends(get_accounts)):
        user, access_token = await accounts.register(payload.name, payload.email, payload.password)
        return Registration(user=UserOut.model_validate(user), access_token=access_token)

    @app.post("/auth/login", response_model=Token)
    async def login(payload: UserLogin, accounts: AccountService = Depends(get_accounts)):
        access_token = await accounts.login(payload.email, payload.password)
        return Token(access_token=access_token)

    @app.get("/auth/me", response_model=UserOut)
    async def me(
        user_id: int = Depends(current_user_id),
        accounts: AccountService = Depends(get_accounts),
    ):
        return await accounts.me(user_id)

    # ------------------------------------------------------------------------
    # Expenses
    # ------------------------------------------------------------------------
    @app.post("/expenses", response_model=ExpenseOut, status_code=status.HTTP_201_CREATED)
    async def create_expense(
        payload: ExpenseIn,
        user_id: int = Depends(current_user_id),
        expenses: ExpenseService = Depends(get_expense_service),
    ):
        return await expenses.create(
            user_id,
            amount=payload.amount,
            category=payload.category,
            date=payload.date,
            note=payload.note,
        )

    @app.get("/expenses", response_model=ExpenseList)
    async def list_expenses(
        category: Optional[str] = None,
        date_from: Optional[str] = Query(None, alias="from"),
        date_to: Optional[str] = Query(None, alias="to"),
        page: Optional[int] = None,
        page_size: Optional[int] = Query(None, alias="pageSize"),
        user_id: int = Depends(current_user_id),
        queries: ExpenseQueries = Depends(get_expense_queries),
    ):
        filters = ExpenseFilters(
            category=category or None,
            date_from=parse_date(date_from, "from") if date_from else None,
            date_to=parse_date(date_to, "to") if date_to else None,
        )
        result = await queries.list(user_id, filters, page=page, page_size=page_size)
        return ExpenseList(
            items=[ExpenseOut.model_validate(expense) for expense in result.items],
            total=result.total,
            total_pages=result.total_pages,
            page=result.page,
            page_size=result.page_size,
        )

    @app.get("/expenses/summary", response_model=CategorySummary)
    async def summarize_expenses(
        user_id: int = Depends(current_user_id),
        queries: ExpenseQueries = Depends(get_expense_queries),
    ):
        return await queries.summarize(user_id)

    @app.get("/expenses/{expense_id}", response_model=ExpenseOut)
    async def get_expense(
        expense_id: int,
        user_id: int = Depends(current_user_id),
        queries: ExpenseQueries = Depends(get_expense_queries),
    ):
        return await queries.get(user_id, expense_id)

    @app.api_route("/expenses/{expense_id}", methods=["PUT", "PATCH"], response_model=ExpenseOut)
    async def update_expense(
        expense_id: int,
        payload: ExpenseIn,
        user_id: int = Depends(current_user_id),
        expenses: ExpenseService = Depends(get_expense_service),
    ):
        return await expenses.update(user_id, expense_id, payload.model_dump(exclude_unset=True))

    @app.delete("/expenses/{expense_id}", response_model=Message)
    async def delete_expense(
        expense_id: int,
        user_id: int = Depends(current_user_id),
        expenses: ExpenseService = Depends(get_expense_service),
    ):
        await expenses.delete(user_id, expense_id)
        return Message(detail="Expense deleted")

    return app


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run("expense_api.main:create_app", factory=True, host="0.0.0.0", port=port)
