import logging
import jwt
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Depends, HTTPException, Request, Response
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from common.error_handling import BusinessLogicError, ErrorCodes, add_error_handlers
from common.schemas import Credentials, WithdrawRequest, OrderOut, BalanceOut, WithdrawalOut
from common.security import hash_password, mint_user_jwt, verify_token
from common.settings import Settings, settings as default_settings
from common.tracing import api_tracer, tracing_middleware
from .accrual import AccrualClient
from .db import make_engine
from .luhn import is_order_number, validate
from .reconciler import Reconciler
from .storage import Storage, OrderRegistration, WithdrawResult

logger = logging.getLogger(__name__)


def _authenticated(login: str, config: Settings, message: str) -> Response:
    token = mint_user_jwt(sub=login, config=config)
    resp = PlainTextResponse(message)
    resp.set_cookie("token", token, httponly=True)
    resp.headers["Authorization"] = f"Bearer {token}"
    return resp


async def current_login(request: Request) -> str:
    """Login of the caller, from the ``token`` cookie or a bearer header."""
    token = request.cookies.get("token")
    authorization = request.headers.get("authorization", "")
    if authorization.startswith("Bearer "):
        token = authorization.split(" ", 1)[1]
    if not token:
        raise HTTPException(401, "user authentication failed")
    try:
        claims = verify_token(token, request.app.state.settings)
    except jwt.PyJWTError as e:
        raise HTTPException(401, f"user authentication failed: {e}")
    return claims["sub"]


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def create_app(config: Optional[Settings] = None, storage: Optional[Storage] = None,
               reconciler: Optional[Reconciler] = None, run_reconciler: bool = True) -> FastAPI:
    config = config or default_settings
    storage = storage or Storage(make_engine(config.database_uri))
    if reconciler is None and run_reconciler:
        client = AccrualClient(
            config.accrual_system_address,
            timeout=config.accrual_timeout,
            default_retry_after=config.accrual_default_retry_after,
        )
        reconciler = Reconciler(storage, client, interval=config.accrual_poll_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        storage.create_schema()
        if reconciler is not None:
            reconciler.start()
        logger.info("Loyalty service started")
        yield
        if reconciler is not None:
            reconciler.stop(timeout=10)

    app = FastAPI(title="Loyalty Ledger Service", lifespan=lifespan)
    app.state.settings = config
    app.state.storage = storage
    app.state.reconciler = reconciler
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    add_error_handlers(app)

    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, api_tracer)

    @app.post("/api/user/register")
    def register(creds: Credentials, storage: Storage = Depends(get_storage)):
        storage.register_user(creds.login, hash_password(creds.password))
        return _authenticated(creds.login, config, "user registered and authenticated successfully")

    @app.post("/api/user/login")
    def login(creds: Credentials, storage: Storage = Depends(get_storage)):
        if not storage.authenticate(creds.login, hash_password(creds.password)):
            raise BusinessLogicError(ErrorCodes.INVALID_CREDENTIALS, "wrong credentials")
        return _authenticated(creds.login, config, "user authenticated successfully")

    @app.post("/api/user/orders")
    async def submit_order(request: Request, login: str = Depends(current_login),
                           storage: Storage = Depends(get_storage)):
        number = (await request.body()).decode("utf-8", errors="replace").strip()
        if not is_order_number(number):
            raise HTTPException(400, "bad request")
        if not validate(number):
            raise BusinessLogicError(ErrorCodes.INVALID_ORDER_NUMBER, "incorrect order number",
                                     field="number", context={"number": number})

        outcome = await run_in_threadpool(storage.register_order, login, number)
        if outcome == OrderRegistration.OWNED_BY_OTHER:
            raise BusinessLogicError(ErrorCodes.ORDER_OWNED_BY_OTHER, "order registered by another user",
                                     field="number", context={"number": number})
        if outcome == OrderRegistration.OWNED_BY_CALLER:
            return PlainTextResponse("order already registered", status_code=200)
        return PlainTextResponse("order registered successfully", status_code=202)

    @app.get("/api/user/orders", response_model=List[OrderOut])
    def list_orders(login: str = Depends(current_login), storage: Storage = Depends(get_storage)):
        orders = storage.list_orders(login)
        if not orders:
            return Response(status_code=204)
        return [OrderOut.model_validate(o) for o in orders]

    @app.get("/api/user/balance", response_model=BalanceOut)
    def balance(login: str = Depends(current_login), storage: Storage = Depends(get_storage)):
        return BalanceOut.model_validate(storage.get_balance(login))

    @app.post("/api/user/balance/withdraw")
    def withdraw(req: WithdrawRequest, login: str = Depends(current_login),
                 storage: Storage = Depends(get_storage)):
        if not is_order_number(req.order):
            raise HTTPException(400, "bad request")
        if not validate(req.order):
            raise BusinessLogicError(ErrorCodes.INVALID_ORDER_NUMBER, "incorrect order number",
                                     field="order", context={"order": req.order})
        if storage.withdraw(login, req.order, req.sum) == WithdrawResult.INSUFFICIENT_FUNDS:
            raise BusinessLogicError(ErrorCodes.INSUFFICIENT_FUNDS, "not enough points")
        return PlainTextResponse("successful withdraw")

    @app.get("/api/user/withdrawals", response_model=List[WithdrawalOut])
    def list_withdrawals(login: str = Depends(current_login), storage: Storage = Depends(get_storage)):
        withdrawals = storage.list_withdrawals(login)
        if not withdrawals:
            return Response(status_code=204)
        return [WithdrawalOut.model_validate(w) for w in withdrawals]

    @app.get("/health")
    async def health():
        running = reconciler is not None and not reconciler.stopping
        return {"ok": True, "service": "loyalty", "reconciler": running}

    return app
