from __future__ import annotations
from typing import Optional


class VaultError(Exception):
    """Base of every failure the vault surfaces to callers.

    `code` is the stable classification callers branch on; `detail` carries the
    numbers that explain it. The message is for humans only.
    """
    code = "vault_error"

    def __init__(self, message: str = "", **detail) -> None:
        super().__init__(message or self.code)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self), "detail": dict(self.detail)}


class InvalidAmount(VaultError):
    code = "invalid_amount"


class InvalidAllocation(VaultError):
    code = "invalid_allocation"


class InsufficientLiquidity(VaultError):
    code = "insufficient_liquidity"


class Unauthorized(VaultError):
    code = "unauthorized"


class OraclePriceUnavailable(VaultError):
    code = "oracle_price_unavailable"


class HealthFactorViolation(VaultError):
    code = "health_factor_violation"


class DivisionDegenerate(VaultError):
    code = "division_degenerate"


class ReentrantCall(VaultError):
    code = "reentrant_call"


class AdapterError(VaultError):
    """Typed failure raised by an external protocol or strategy adapter."""
    code = "adapter_error"

    def __init__(self, message: str = "", reason: Optional[str] = None, **detail) -> None:
        super().__init__(message, **detail)
        self.reason = reason or "adapter_failure"
