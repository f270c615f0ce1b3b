from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class TurnErrorCode(str, Enum):
    STORE_ERROR = "store_error"
    ENGINE_ERROR = "engine_error"
    RUN_FAILED = "run_failed"
    RUN_TIMEOUT = "run_timeout"
    GATEWAY_ERROR = "gateway_error"


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: "str | TurnErrorCode" = "unknown") -> "Result[T]":
        if isinstance(code, TurnErrorCode):
            code = code.value
        return Result(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
