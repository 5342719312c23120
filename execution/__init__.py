"""Flash-loan orchestration, route execution and risk tooling."""

from .audit import ExecutionAuditLogger, get_execution_audit_logger
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerState,
    CircuitState,
    SQLiteCircuitBreakerStateStore,
)
from .errors import (
    AccessDenied,
    AdmissionRejected,
    ArbitrageError,
    ChainStateUnavailable,
    CircuitOpen,
    ExecutionFailed,
    ExposureLimitExceeded,
    GasLimitExceeded,
    GasPriceTooHigh,
    InvalidRequest,
    ProfitInsufficient,
    RateLimited,
    ReentrantCall,
    RepaymentShortfall,
    SlippageExceeded,
    StaleQuote,
    SwapFailed,
    TokenNotAllowed,
    VolatilityTooHigh,
)
from .flash_loan import FlashLoanOrchestrator
from .ledger import BalanceLedger, PendingChangeset
from .rate_limit import CallerRateLimiter, RateLimitPolicy
from .risk import ExposureReservation, RiskManager, RiskParameters, RiskState, TokenRiskProfile
from .routing import RouteExecutor

__all__ = [
    "AccessDenied",
    "AdmissionRejected",
    "ArbitrageError",
    "BalanceLedger",
    "CallerRateLimiter",
    "CircuitBreaker",
    "CircuitBreakerState",
    "ChainStateUnavailable",
    "CircuitOpen",
    "CircuitState",
    "ExecutionAuditLogger",
    "ExecutionFailed",
    "ExposureLimitExceeded",
    "ExposureReservation",
    "FlashLoanOrchestrator",
    "GasLimitExceeded",
    "GasPriceTooHigh",
    "InvalidRequest",
    "PendingChangeset",
    "ProfitInsufficient",
    "RateLimitPolicy",
    "RateLimited",
    "ReentrantCall",
    "RepaymentShortfall",
    "RiskManager",
    "RiskParameters",
    "RiskState",
    "RouteExecutor",
    "SQLiteCircuitBreakerStateStore",
    "SlippageExceeded",
    "StaleQuote",
    "SwapFailed",
    "TokenNotAllowed",
    "TokenRiskProfile",
    "VolatilityTooHigh",
    "get_execution_audit_logger",
]
