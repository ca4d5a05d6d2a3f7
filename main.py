import math
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import (
    Principal, RateLimiter, authenticate, create_access_token, ensure_admin, get_current_user,
    limit_auth_attempts, register_user, require_admin,
)
from config import Settings, configure_logging
from database import Database, create_database
from errors import AppError, NotFoundError, StoreError, ValidationError, format_validation_errors
from orders import list_orders_for_user, place_order
from schemas import (
    ApiResponse, LoginIn, OrderCreate, PaginatedResponse, ProductIn, ProductUpdate,
    RegisterIn, UserOut,
)

log = logging.getLogger(__name__)


# ---------- Helpers ----------

def envelope(success: bool, message: str, obj=None, errors=None) -> dict:
    return ApiResponse(success=success, message=message, object=obj, errors=errors).model_dump()


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    db: Database = app.state.db
    db.connect()
    log.info("Store backend: %s", db.backend)
    ensure_admin(db, app.state.settings)
    yield
    db.close()


def create_app(settings: Optional[Settings] = None, db: Optional[Database] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = FastAPI(title="Ecommerce API", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or create_database(settings)
    app.state.auth_limiter = RateLimiter(settings.auth_rate_limit, settings.auth_rate_window_seconds)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    register_routes(app)
    return app


# ---------- Error Handlers ----------

def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        return JSONResponse(status_code=exc.status_code, content=envelope(False, exc.message, errors=exc.errors))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = format_validation_errors(exc.errors())
        return JSONResponse(status_code=400, content=envelope(False, ValidationError.message, errors=errors))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content=envelope(False, str(exc.detail), errors=[str(exc.detail)]),
                            headers=getattr(exc, "headers", None))

    @app.exception_handler(StoreError)
    async def handle_store_error(request: Request, exc: StoreError):
        log.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content=envelope(False, "Internal server error",
                                                             errors=["Request failed due to server error"]))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        log.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=envelope(False, "Internal server error",
                                                             errors=["Request failed due to server error"]))


def register_routes(app: FastAPI) -> None:

    # ---------- Basic Routes ----------

    @app.get("/")
    def read_root():
        return {"message": "Ecommerce Backend Running"}

    @app.get("/health")
    def health(db: Database = Depends(get_db)):
        healthy = db.ping()
        return {
            "backend": "running",
            "database": db.backend,
            "transactional": db.transactional,
            "connection_status": "Connected" if healthy else "Not Connected",
        }

    # ---------- Auth Routes ----------

    @app.post("/auth/register", status_code=201, response_model=ApiResponse,
              dependencies=[Depends(limit_auth_attempts)])
    def register(data: RegisterIn, db: Database = Depends(get_db)):
        user = register_user(db, data)
        return ApiResponse(success=True, message="User registered successfully",
                           object=UserOut.from_user(user).model_dump(by_alias=True, mode="json"))

    @app.post("/auth/login", response_model=ApiResponse, dependencies=[Depends(limit_auth_attempts)])
    def login(data: LoginIn, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
        user = authenticate(db, str(data.email), data.password)
        token = create_access_token(user, settings.jwt_secret, settings.jwt_expires_minutes)
        return ApiResponse(success=True, message="Login successful", object={
            "token": token,
            "user": UserOut.from_user(user).model_dump(by_alias=True, mode="json"),
        })

    # ---------- Product Routes ----------

    @app.get("/products", response_model=PaginatedResponse)
    def list_products(
        page: int = Query(1, ge=1),
        limit: Optional[int] = Query(None, ge=1, le=100),
        page_size: Optional[int] = Query(None, alias="pageSize", ge=1, le=100),
        search: str = "",
        category: str = "",
        sort: str = "",
        db: Database = Depends(get_db),
    ):
        size = limit or page_size or 10
        products, total = db.products.list(page=page, limit=size, search=search, category=category, sort=sort)
        return PaginatedResponse(
            success=True,
            message="Products retrieved successfully",
            object=[p.model_dump(mode="json") for p in products],
            page_number=page,
            page_size=size,
            total_size=total,
            total_pages=math.ceil(total / size),
        )

    @app.get("/products/{product_id}", response_model=ApiResponse)
    def get_product(product_id: str, db: Database = Depends(get_db)):
        product = db.products.get(product_id)
        if product is None:
            raise NotFoundError("Product not found", ["Product does not exist"])
        return ApiResponse(success=True, message="Product retrieved successfully", object=product.model_dump(mode="json"))

    @app.post("/products", status_code=201, response_model=ApiResponse)
    def create_product(data: ProductIn, admin: Principal = Depends(require_admin), db: Database = Depends(get_db)):
        product = db.products.create(data.model_dump(), owner_id=admin.id)
        log.info("Product %s created by %s", product.id, admin.id)
        return ApiResponse(success=True, message="Product created successfully", object=product.model_dump(mode="json"))

    @app.put("/products/{product_id}", response_model=ApiResponse)
    def update_product(product_id: str, data: ProductUpdate, admin: Principal = Depends(require_admin),
                       db: Database = Depends(get_db)):
        fields = data.model_dump(exclude_unset=True, exclude_none=True)
        if not fields:
            raise ValidationError("Product update failed", ["No fields to update"])
        product = db.products.update(product_id, fields)
        if product is None:
            raise NotFoundError("Product not found", ["Product does not exist"])
        return ApiResponse(success=True, message="Product updated successfully", object=product.model_dump(mode="json"))

    @app.delete("/products/{product_id}", response_model=ApiResponse)
    def delete_product(product_id: str, admin: Principal = Depends(require_admin), db: Database = Depends(get_db)):
        if not db.products.delete(product_id):
            raise NotFoundError("Product not found", ["Product does not exist"])
        log.info("Product %s deleted by %s", product_id, admin.id)
        return ApiResponse(success=True, message="Product deleted successfully")

    # ---------- Order Routes ----------

    @app.post("/orders", status_code=201, response_model=ApiResponse)
    def create_order(data: OrderCreate, user: Principal = Depends(get_current_user), db: Database = Depends(get_db),
                     settings: Settings = Depends(get_settings)):
        order = place_order(db, user.id, data, timeout=settings.order_timeout_seconds)
        return ApiResponse(success=True, message="Order placed successfully",
                           object=order.model_dump(by_alias=True, mode="json"))

    @app.get("/orders", response_model=ApiResponse)
    def get_my_orders(user: Principal = Depends(get_current_user), db: Database = Depends(get_db)):
        orders = list_orders_for_user(db, user.id)
        message = "Orders retrieved successfully" if orders else "No orders found"
        return ApiResponse(success=True, message=message,
                           object=[o.model_dump(by_alias=True, mode="json") for o in orders])


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
