import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from sqlmodel import Session, select

from . import models, orders_service, security
from .db import check_db_connection, create_db_and_tables, get_session
from .errors import TablesideError, Unauthenticated
from .orders_routes import router as orders_router
from .payments_routes import router as payments_router
from .settings import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application...")
    create_db_and_tables()
    yield


app = FastAPI(
    title="Tableside API",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Parse CORS origins from environment (comma-separated)
cors_origins_list = [
    origin.strip()
    for origin in settings.cors_origins.split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(orders_router, prefix="/orders", tags=["Orders"])
app.include_router(payments_router, prefix="/payments", tags=["Payments"])


@app.exception_handler(TablesideError)
async def tableside_error_handler(request: Request, exc: TablesideError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.kind, "detail": exc.detail},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content={"error": "InvalidInput", "detail": errors},
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/health/db")
def health_db() -> dict:
    """Check database connection."""
    try:
        check_db_connection()
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Database error: {e}")
    return {"status": "ok", "database": "connected"}


# ============ AUTH ============

@app.post("/token")
def login_for_access_token(
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    session: Session = Depends(get_session)
):
    statement = select(models.User).where(models.User.email == form_data.username)
    user = session.exec(statement).first()

    if not user or not security.verify_password(form_data.password, user.hashed_password):
        raise Unauthenticated("Incorrect username or password")
    if not user.is_active:
        raise Unauthenticated("User account has been deactivated")

    access_token = security.create_access_token(
        data={"sub": str(user.id), "role": user.role.value},
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes)
    )

    response = JSONResponse(content={"access_token": access_token, "token_type": "bearer"})
    response.set_cookie(
        key="access_token",
        value=access_token,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
        max_age=settings.access_token_expire_minutes * 60
    )
    return response


@app.post("/logout")
def logout():
    response = JSONResponse(content={"status": "success", "message": "Logged out"})
    response.delete_cookie(key="access_token", path="/")
    return response


@app.get("/users/me", response_model=models.UserRead)
def read_users_me(
    current_user: Annotated[models.User, Depends(security.get_current_user)]
) -> models.User:
    return current_user


@app.post("/session")
def issue_session(
    session_id: Annotated[str, Depends(security.get_customer_session)]
) -> dict:
    """Bind this browser to a customer session (cookie) and return its id."""
    return {"session_id": session_id}


# ============ PUBLIC MENU & TABLES ============

@app.get("/menu")
def get_menu(session: Session = Depends(get_session)) -> list[dict]:
    """Orderable menu items, grouped client-side by category."""
    items = session.exec(
        select(models.MenuItem)
        .where(models.MenuItem.is_available == True)  # noqa: E712
        .order_by(models.MenuItem.category, models.MenuItem.name)
    ).all()
    return [
        {
            "id": item.id,
            "name": item.name,
            "description": item.description,
            "price_cents": item.price_cents,
            "category": item.category,
            "image_url": item.image_url,
            "preparation_time": item.preparation_time,
        }
        for item in items
    ]


@app.get("/tables/{table_id}")
def get_table(table_id: int, session: Session = Depends(get_session)) -> dict:
    table = orders_service.find_table(session, table_id)
    return {"id": table.id, "table_number": table.table_number, "capacity": table.capacity}


@app.get("/tables/{table_id}/orders")
def list_table_orders(
    table_id: int,
    identity: Annotated[security.Identity, Depends(security.get_identity)],
    session: Session = Depends(get_session),
) -> list[dict]:
    return orders_service.list_table_orders(session, table_id, identity)


# ============ INTERNAL VALIDATION (for ws-bridge) ============

@app.get("/internal/validate-table/{table_id}")
def validate_table(table_id: int, session: Session = Depends(get_session)) -> dict:
    """Internal endpoint for the ws bridge to validate table rooms."""
    table = orders_service.find_table(session, table_id)
    return {"table_id": table.id, "table_number": table.table_number, "valid": True}
