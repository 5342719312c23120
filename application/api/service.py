"""FastAPI application exposing the arbitrage engine's operation surface."""

from __future__ import annotations

import logging
from decimal import Decimal
from enum import Enum
from http import HTTPStatus
from typing import Any, Mapping

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from application.system import ArbitrageSystem
from domain.arbitrage import ArbitrageRequest, BatchPolicy, RouteStep
from execution.errors import (
    AccessDenied,
    AdmissionRejected,
    ArbitrageError,
    CircuitOpen,
    InvalidRequest,
    InvalidStrategy,
    RateLimited,
    RepaymentShortfall,
    StrategyAlreadyExists,
    UnknownStrategy,
)
from execution.risk import RiskParameters, TokenRiskProfile

__all__ = [
    "ApiErrorCode",
    "ArbitrageRequestModel",
    "BatchRequestModel",
    "ErrorPayload",
    "ErrorResponse",
    "RouteStepModel",
    "create_app",
]

_LOGGER = logging.getLogger("flashroute.api")
_UNPROCESSABLE = int(HTTPStatus.UNPROCESSABLE_ENTITY)


class ApiErrorCode(str, Enum):
    """Stable error codes returned by the HTTP API."""

    BAD_REQUEST = "ERR_BAD_REQUEST"
    FORBIDDEN = "ERR_FORBIDDEN"
    NOT_FOUND = "ERR_NOT_FOUND"
    CONFLICT = "ERR_CONFLICT"
    RATE_LIMIT = "ERR_RATE_LIMIT"
    VALIDATION_FAILED = "ERR_VALIDATION_FAILED"
    ADMISSION_REJECTED = "ERR_ADMISSION_REJECTED"
    EXECUTION_FAILED = "ERR_EXECUTION_FAILED"
    CIRCUIT_OPEN = "ERR_CIRCUIT_OPEN"
    INTERNAL = "ERR_INTERNAL"


DEFAULT_ERROR_CODES: dict[int, ApiErrorCode] = {
    status.HTTP_400_BAD_REQUEST: ApiErrorCode.BAD_REQUEST,
    status.HTTP_403_FORBIDDEN: ApiErrorCode.FORBIDDEN,
    status.HTTP_404_NOT_FOUND: ApiErrorCode.NOT_FOUND,
    status.HTTP_409_CONFLICT: ApiErrorCode.CONFLICT,
    _UNPROCESSABLE: ApiErrorCode.VALIDATION_FAILED,
    status.HTTP_429_TOO_MANY_REQUESTS: ApiErrorCode.RATE_LIMIT,
    status.HTTP_500_INTERNAL_SERVER_ERROR: ApiErrorCode.INTERNAL,
    status.HTTP_503_SERVICE_UNAVAILABLE: ApiErrorCode.CIRCUIT_OPEN,
}


class ErrorPayload(BaseModel):
    """Canonical error payload returned by the HTTP API."""

    code: ApiErrorCode = Field(..., description="Stable application error code.")
    message: str = Field(..., description="Human-readable description of the error.")
    path: str = Field(..., description="Request path that triggered the error.")
    meta: dict[str, Any] | None = Field(
        default=None,
        description="Machine-parsable context such as the failing hop or limit.",
    )


class ErrorResponse(BaseModel):
    error: ErrorPayload


class RouteStepModel(BaseModel):
    venue: str = Field(..., min_length=1)
    token_in: str = Field(..., min_length=1)
    token_out: str = Field(..., min_length=1)
    amount_in: Decimal = Field(Decimal("0"), ge=0)
    min_amount_out: Decimal = Field(Decimal("0"), ge=0)
    path: str = ""
    fee_tier: int = Field(0, ge=0)
    expected_amount_out: Decimal | None = Field(default=None, ge=0)

    model_config = ConfigDict(extra="forbid")


class ArbitrageRequestModel(BaseModel):
    """Request payload describing one flash-loan arbitrage."""

    base_token: str = Field(..., min_length=1)
    borrow_amount: Decimal = Field(..., gt=0)
    routes: list[RouteStepModel] = Field(..., min_length=1)
    min_profit: Decimal = Field(Decimal("0"), ge=0)
    strategy_id: str | None = None
    quoted_block: int | None = Field(default=None, ge=0)
    request_id: str | None = Field(default=None, max_length=128)

    model_config = ConfigDict(extra="forbid")

    def to_domain(self) -> ArbitrageRequest:
        kwargs: dict[str, Any] = {
            "base_token": self.base_token,
            "borrow_amount": self.borrow_amount,
            "routes": tuple(RouteStep(**step.model_dump()) for step in self.routes),
            "min_profit": self.min_profit,
            "strategy_id": self.strategy_id,
            "quoted_block": self.quoted_block,
        }
        if self.request_id:
            kwargs["request_id"] = self.request_id
        return ArbitrageRequest(**kwargs)


class BatchRequestModel(BaseModel):
    requests: list[ArbitrageRequestModel]
    policy: BatchPolicy = BatchPolicy.FAIL_SOFT


class StrategyExecutionModel(BaseModel):
    market_data: dict[str, Any] = Field(default_factory=dict)


class TokenProfileModel(BaseModel):
    max_exposure: Decimal | None = Field(default=None, ge=0)
    max_slippage_bps: int | None = Field(default=None, ge=0, le=10_000)
    blacklisted: bool = False
    volatility_score: int = Field(0, ge=0, le=10_000)

    model_config = ConfigDict(extra="forbid")


class WhitelistModel(BaseModel):
    tokens: list[str] | None = None


class ExposureResetModel(BaseModel):
    token: str | None = None


class ReasonModel(BaseModel):
    reason: str = Field(..., min_length=1, max_length=512)


class TreasuryModel(BaseModel):
    account: str = Field(..., min_length=1)


def _error_status(exc: Exception) -> tuple[int, ApiErrorCode]:
    if isinstance(exc, AccessDenied):
        return status.HTTP_403_FORBIDDEN, ApiErrorCode.FORBIDDEN
    if isinstance(exc, RateLimited):
        return status.HTTP_429_TOO_MANY_REQUESTS, ApiErrorCode.RATE_LIMIT
    if isinstance(exc, CircuitOpen):
        return status.HTTP_503_SERVICE_UNAVAILABLE, ApiErrorCode.CIRCUIT_OPEN
    if isinstance(exc, InvalidRequest):
        return status.HTTP_400_BAD_REQUEST, ApiErrorCode.BAD_REQUEST
    if isinstance(exc, AdmissionRejected):
        return status.HTTP_409_CONFLICT, ApiErrorCode.ADMISSION_REJECTED
    if isinstance(exc, RepaymentShortfall):
        return status.HTTP_500_INTERNAL_SERVER_ERROR, ApiErrorCode.INTERNAL
    if isinstance(exc, ArbitrageError):
        return _UNPROCESSABLE, ApiErrorCode.EXECUTION_FAILED
    if isinstance(exc, UnknownStrategy):
        return status.HTTP_404_NOT_FOUND, ApiErrorCode.NOT_FOUND
    if isinstance(exc, StrategyAlreadyExists):
        return status.HTTP_409_CONFLICT, ApiErrorCode.CONFLICT
    if isinstance(exc, InvalidStrategy):
        return status.HTTP_400_BAD_REQUEST, ApiErrorCode.BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR, ApiErrorCode.INTERNAL


def _error_meta(exc: Exception) -> dict[str, Any] | None:
    meta: dict[str, Any] = {"error_type": type(exc).__name__}
    if isinstance(exc, ArbitrageError):
        meta["kind"] = exc.kind
        meta.update({key: _jsonable(value) for key, value in exc.details.items()})
    elif isinstance(exc, AccessDenied):
        meta["required_roles"] = list(exc.required_roles)
    return meta


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def _error_response(
    request: Request, status_code: int, code: ApiErrorCode, message: str, meta: Any = None
) -> JSONResponse:
    payload = ErrorPayload(
        code=code,
        message=message,
        path=request.url.path,
        meta=meta if isinstance(meta, dict) else None,
    )
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=payload).model_dump())


def _get_system(request: Request) -> ArbitrageSystem:
    system = getattr(request.app.state, "arbitrage_system", None)
    if not isinstance(system, ArbitrageSystem):  # pragma: no cover - misconfigured app
        raise RuntimeError("ArbitrageSystem not initialised on application state")
    return system


def _caller(x_caller: str = Header(..., alias="X-Caller", min_length=1)) -> str:
    return x_caller.strip()


def _domain_request(payload: ArbitrageRequestModel) -> ArbitrageRequest:
    try:
        return payload.to_domain()
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def create_app(system: ArbitrageSystem, *, title: str = "FlashRoute Engine API") -> FastAPI:
    """Instantiate a FastAPI app bound to ``system``.

    The acting subject is read from the ``X-Caller`` header and checked by the
    system's access controller on every mutating route.
    """

    app = FastAPI(title=title)
    app.state.arbitrage_system = system

    @app.get("/health", tags=["system"])
    def health(system: ArbitrageSystem = Depends(_get_system)) -> dict[str, Any]:
        breaker = system.get_circuit_breaker_state()
        return {"status": "ok" if breaker.accepting else "degraded", "circuit_breaker": breaker.to_dict()}

    @app.get("/metrics", response_class=PlainTextResponse, tags=["system"])
    def metrics(system: ArbitrageSystem = Depends(_get_system)) -> PlainTextResponse:
        return PlainTextResponse(system.metrics.render_prometheus())

    # -- execution ---------------------------------------------------------
    @app.post("/v1/arbitrage", tags=["execution"])
    def execute_arbitrage(
        payload: ArbitrageRequestModel,
        caller: str = Depends(_caller),
        system: ArbitrageSystem = Depends(_get_system),
    ) -> dict[str, Any]:
        result = system.execute_arbitrage(caller, _domain_request(payload))
        return result.to_dict()

    @app.post("/v1/arbitrage/batch", tags=["execution"])
    def execute_batch(
        payload: BatchRequestModel,
        caller: str = Depends(_caller),
        system: ArbitrageSystem = Depends(_get_system),
    ) -> dict[str, Any]:
        requests = [_domain_request(entry) for entry in payload.requests]
        return system.execute_batch_arbitrage(caller, requests, policy=payload.policy).to_dict()

    @app.post("/v1/strategies/{strategy_id}/execute", tags=["strategies"])
    def execute_strategy(
        strategy_id: str,
        payload: StrategyExecutionModel | None = None,
        caller: str = Depends(_caller),
        system: ArbitrageSystem = Depends(_get_system),
    ) -> dict[str, Any]:
        market_data = payload.market_data if payload is not None else None
        result = system.execute_strategy(caller, strategy_id, market_data=market_data)
        return {"executed": result is not None, "result": None if result is None else result.to_dict()}

    # -- strategies --------------------------------------------------------
    @app.get("/v1/strategies/{strategy_id}", tags=["strategies"])
    def read_strategy(
        strategy_id: str, system: ArbitrageSystem = Depends(_get_system)
    ) -> dict[str, Any]:
        return system.get_strategy_config(strategy_id).to_dict()

    @app.post("/v1/strategies/{strategy_id}/activate", tags=["strategies"])
    def activate_strategy(
        strategy_id: str,
        caller: str = Depends(_caller),
        system: ArbitrageSystem = Depends(_get_system),
    ) -> dict[str, Any]:
        return system.activate_strategy(caller, strategy_id).to_dict()

    @app.delete("/v1/strategies/{strategy_id}", tags=["strategies"])
    def remove_strategy(
        strategy_id: str,
        caller: str = Depends(_caller),
        system: ArbitrageSystem = Depends(_get_system),
    ) -> dict[str, Any]:
        return system.remove_strategy(caller, strategy_id).to_dict()

    # -- risk ---------------------------------------------------------------
    @app.get("/v1/risk/params", tags=["risk"])
    def read_risk_params(system: ArbitrageSystem = Depends(_get_system)) -> dict[str, Any]:
        return system.get_risk_params().to_dict()

    @app.put("/v1/risk/params", tags=["risk"])
    def update_risk_params(
        payload: dict[str, Any],
        caller: str = Depends(_caller),
        system: ArbitrageSystem = Depends(_get_system),
    ) -> dict[str, Any]:
        try:
            params = RiskParameters.from_mapping(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return system.update_risk_params(caller, params).to_dict()

    @app.put("/v1/risk/tokens/{token}", tags=["risk"])
    def set_token_profile(
        token: str,
        payload: TokenProfileModel,
        caller: str = Depends(_caller),
        system: ArbitrageSystem = Depends(_get_system),
    ) -> dict[str, Any]:
        profile = TokenRiskProfile(**payload.model_dump())
        system.set_token_profile(caller, token, profile)
        return {"token": token, "profile": profile.to_dict()}

    @app.delete("/v1/risk/tokens/{token}", tags=["risk"])
    def clear_token_profile(
        token: str,
        caller: str = Depends(_caller),
        system: ArbitrageSystem = Depends(_get_system),
    ) -> dict[str, Any]:
        system.set_token_profile(caller, token, None)
        return {"token": token, "profile": None}

    @app.put("/v1/risk/whitelist", tags=["risk"])
    def set_token_whitelist(
        payload: WhitelistModel,
        caller: str = Depends(_caller),
        system: ArbitrageSystem = Depends(_get_system),
    ) -> dict[str, Any]:
        whitelist = system.set_token_whitelist(caller, payload.tokens)
        return {"tokens": None if whitelist is None else sorted(whitelist)}

    @app.post("/v1/risk/exposure/reset", tags=["risk"])
    def reset_exposure(
        payload: ExposureResetModel,
        caller: str = Depends(_caller),
        system: ArbitrageSystem = Depends(_get_system),
    ) -> dict[str, Any]:
        exposures = system.reset_exposure(caller, payload.token)
        return {"token": payload.token, "exposures": _jsonable(exposures)}

    @app.get("/v1/metrics/global", tags=["risk"])
    def read_global_metrics(system: ArbitrageSystem = Depends(_get_system)) -> dict[str, Any]:
        return system.get_global_metrics().to_dict()

    # -- circuit breaker ----------------------------------------------------
    @app.get("/v1/circuit-breaker", tags=["safety"])
    def read_circuit_breaker(system: ArbitrageSystem = Depends(_get_system)) -> dict[str, Any]:
        return system.get_circuit_breaker_state().to_dict()

    @app.post("/v1/circuit-breaker/trip", tags=["safety"])
    def trip_circuit_breaker(
        payload: ReasonModel,
        caller: str = Depends(_caller),
        system: ArbitrageSystem = Depends(_get_system),
    ) -> dict[str, Any]:
        return system.trip_circuit_breaker(caller, payload.reason).to_dict()

    @app.post("/v1/circuit-breaker/reset", tags=["safety"])
    def reset_circuit_breaker(
        caller: str = Depends(_caller), system: ArbitrageSystem = Depends(_get_system)
    ) -> dict[str, Any]:
        return system.reset_circuit_breaker(caller).to_dict()

    @app.post("/v1/emergency/stop", tags=["safety"])
    def emergency_stop(
        payload: ReasonModel,
        caller: str = Depends(_caller),
        system: ArbitrageSystem = Depends(_get_system),
    ) -> dict[str, Any]:
        return system.emergency_stop(caller, payload.reason).to_dict()

    @app.post("/v1/emergency/resume", tags=["safety"])
    def resume(
        caller: str = Depends(_caller), system: ArbitrageSystem = Depends(_get_system)
    ) -> dict[str, Any]:
        return system.resume(caller).to_dict()

    # -- venues, treasury and roles ----------------------------------------
    @app.delete("/v1/venues/{venue}", tags=["admin"])
    def remove_venue(
        venue: str,
        caller: str = Depends(_caller),
        system: ArbitrageSystem = Depends(_get_system),
    ) -> dict[str, Any]:
        if not system.remove_venue(caller, venue):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown venue: {venue}")
        return {"venue": venue, "removed": True}

    @app.put("/v1/treasury", tags=["admin"])
    def set_treasury(
        payload: TreasuryModel,
        caller: str = Depends(_caller),
        system: ArbitrageSystem = Depends(_get_system),
    ) -> dict[str, Any]:
        try:
            account = system.set_treasury(caller, payload.account)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return {"treasury": account}

    @app.put("/v1/roles/{subject}/{role}", tags=["admin"])
    def grant_role(
        subject: str,
        role: str,
        caller: str = Depends(_caller),
        system: ArbitrageSystem = Depends(_get_system),
    ) -> dict[str, Any]:
        try:
            added = system.grant_role(caller, subject, role)
        except KeyError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown role: {role}") from exc
        return {"subject": subject, "role": role, "changed": added}

    @app.delete("/v1/roles/{subject}/{role}", tags=["admin"])
    def revoke_role(
        subject: str,
        role: str,
        caller: str = Depends(_caller),
        system: ArbitrageSystem = Depends(_get_system),
    ) -> dict[str, Any]:
        try:
            removed = system.revoke_role(caller, subject, role)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return {"subject": subject, "role": role, "changed": removed}

    # -- error handling -----------------------------------------------------
    async def engine_error_handler(request: Request, exc: Exception) -> JSONResponse:
        status_code, code = _error_status(exc)
        log = _LOGGER.error if status_code >= 500 else _LOGGER.info
        log(
            "api.request_failed",
            extra={"path": request.url.path, "status": status_code, "error": type(exc).__name__},
        )
        return _error_response(request, status_code, code, str(exc), _error_meta(exc))

    for error_type in (
        ArbitrageError,
        AccessDenied,
        UnknownStrategy,
        StrategyAlreadyExists,
        InvalidStrategy,
    ):
        app.add_exception_handler(error_type, engine_error_handler)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return _error_response(
            request,
            _UNPROCESSABLE,
            ApiErrorCode.VALIDATION_FAILED,
            "Invalid request payload.",
            {"errors": _jsonable(exc.errors())},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        code = DEFAULT_ERROR_CODES.get(exc.status_code, ApiErrorCode.INTERNAL)
        message = exc.detail if isinstance(exc.detail, str) and exc.detail else None
        if message is None:
            message = HTTPStatus(exc.status_code).phrase
        return _error_response(request, exc.status_code, code, message)

    return app
