from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    issues: list[str] = field(default_factory=list)

    @staticmethod
    def success(value: T = None) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown", issues: Optional[list[str]] = None) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code, issues=list(issues or []))

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
