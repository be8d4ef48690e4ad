import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession

import crud, schemas
from auth import TOKEN_COOKIE, generate_token, get_current_user, make_password_context
from config import DEFAULT_JWT_SECRET, Settings, get_settings
from database import build_engine, build_session_factory, get_db, init_models
from errors import InvalidInput, NotFound, NotFoundOrUnauthorized, Unauthenticated, register_exception_handlers

logger = logging.getLogger("expense_tracker.main")

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
expense_router = APIRouter(prefix="/api/expenses", tags=["expenses"])


# ---------------------- AUTH ----------------------
@auth_router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(request: Request, payload: schemas.UserCreate, db: AsyncSession = Depends(get_db)):
    user = await crud.create_user(db, payload, request.app.state.pwd_context)
    return {
        "message": "User created successfully",
        "user": schemas.UserOut.model_validate(user),
    }

@auth_router.post("/login")
async def login(request: Request, response: Response, payload: schemas.UserLogin, db: AsyncSession = Depends(get_db)):
    settings = request.app.state.settings
    user = await crud.verify_credentials(db, payload.username, payload.password, request.app.state.pwd_context)
    if not user:
        logger.info("Failed login for username=%s", payload.username)
        raise Unauthenticated("The username or password you entered is incorrect. Please try again.")

    token = generate_token(user, settings)
    response.set_cookie(
        TOKEN_COOKIE,
        token,
        max_age=settings.jwt_expire_minutes * 60,
        httponly=True,
        samesite="lax",
    )
    logger.info("User id=%s logged in", user.id)
    return {
        "message": "Login successful",
        "user": schemas.UserOut.model_validate(user),
        "token": token,
    }

@auth_router.get("/profile")
async def profile(identity: schemas.Identity = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    user = await crud.get_user(db, identity.id)
    if not user:
        raise NotFound("The user profile could not be found. Please check your session or login again.")
    return {
        "message": "User profile retrieved successfully",
        "user": schemas.UserOut.model_validate(user),
    }

@auth_router.post("/logout")
def logout(response: Response):
    # Tokens are stateless; an already issued token stays valid until it expires
    response.delete_cookie(TOKEN_COOKIE, httponly=True, samesite="lax")
    return {
        "message": "Logged out successfully",
        "details": "You have been logged out and your session has been terminated.",
    }


# ---------------------- EXPENSES ----------------------
@expense_router.post("", status_code=status.HTTP_201_CREATED)
async def add_expense(
    payload: schemas.ExpenseCreate,
    identity: schemas.Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    expense = await crud.create_expense(db, identity.id, payload)
    return {
        "message": "Expense added successfully",
        "data": schemas.ExpenseOut.model_validate(expense),
    }

@expense_router.get("")
async def get_expenses(
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=1000, le=9999),
    identity: schemas.Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    if (month is None) != (year is None):
        raise InvalidInput("Provide both month and year to filter expenses, or neither.")

    expenses = await crud.list_expenses(db, identity.id, month, year)
    return {
        "message": "Expenses retrieved successfully",
        "data": [schemas.ExpenseOut.model_validate(e) for e in expenses],
    }

@expense_router.get("/summary")
async def get_monthly_summary(
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=1000, le=9999),
    identity: schemas.Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    if month is None or year is None:
        raise InvalidInput("Month and year are required. Please provide both to get the summary.")

    summary = await crud.monthly_summary(db, identity.id, month, year)
    if not summary['by_category']:
        raise NotFound("No expenses found for the given month and year.")

    return {
        "message": "Summary retrieved successfully",
        "data": schemas.SummaryOut(month=month, year=year, **summary),
    }

@expense_router.put("/{expense_id}")
async def update_expense(
    expense_id: int,
    payload: schemas.ExpenseCreate,
    identity: schemas.Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    expense = await crud.update_expense(db, expense_id, identity.id, payload)
    if not expense:
        raise NotFoundOrUnauthorized()
    return {
        "message": "Expense updated successfully",
        "data": schemas.ExpenseOut.model_validate(expense),
    }

@expense_router.delete("/{expense_id}")
async def delete_expense(
    expense_id: int,
    identity: schemas.Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    expense = await crud.delete_expense(db, expense_id, identity.id)
    if not expense:
        raise NotFoundOrUnauthorized()
    return {
        "message": "Expense deleted successfully",
        "data": schemas.ExpenseOut.model_validate(expense),
    }


# ---------------------- APP ----------------------
def create_app(settings: Settings = None) -> FastAPI:
    settings = settings or get_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if settings.jwt_secret == DEFAULT_JWT_SECRET:
        logger.warning("JWT_SECRET is not set; using the insecure default secret")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Creating database tables")
        await init_models(app.state.engine)
        yield
        await app.state.engine.dispose()

    app = FastAPI(title="Expense Tracker API", lifespan=lifespan, debug=settings.debug)
    app.state.settings = settings
    app.state.engine = build_engine(settings)
    app.state.session_factory = build_session_factory(app.state.engine)
    app.state.pwd_context = make_password_context(settings.bcrypt_rounds)

    origins = settings.cors_origins_list
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(auth_router)
    app.include_router(expense_router)

    @app.get("/")
    def read_root():
        return {"message": "API is running"}

    return app


app = create_app()
