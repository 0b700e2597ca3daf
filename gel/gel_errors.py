"""
Error types for the GEL parser and evaluator.

All runtime errors share the GelError shape (kind, message, location, cause)
so a `catch` clause binds and inspects any of them the same way.
"""
from typing import Any, Dict, List, Optional


class GelError(Exception):
    """Base class for every error a GEL program can raise."""
    kind = "Error"

    def __init__(self, message: str, *, loc: Optional[Dict[str, Any]] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.loc = loc
        self.cause = cause

    @property
    def line(self) -> Optional[int]:
        return (self.loc or {}).get('line')

    @property
    def col(self) -> Optional[int]:
        return (self.loc or {}).get('col')

    def attach_loc(self, loc: Optional[Dict[str, Any]]) -> 'GelError':
        """Record where the error happened. The innermost location wins."""
        if self.loc is None and loc:
            self.loc = dict(loc)
        return self

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.message!r} loc={self.loc!r}>"


class GelSyntaxError(GelError):
    """Raised by the parser; always aborts before evaluation begins."""
    kind = "SyntaxError"

    def __init__(self, message: str, *, line: int, col: int, expected: Optional[List[str]] = None):
        super().__init__(message, loc={'line': line, 'col': col})
        self.expected = list(expected or [])


class UndefinedVariable(GelError):
    kind = "UndefinedVariable"


class UndefinedAlias(GelError):
    kind = "UndefinedAlias"


class ArityMismatch(GelError):
    kind = "ArityMismatch"

    def __init__(self, message: str, *, expected: Optional[int] = None, got: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.expected = expected
        self.got = got


class GelTypeError(GelError):
    """Bad operand kinds, non-iterable loop sources, division by zero."""
    kind = "TypeError"


class CapabilityError(GelError):
    """Wraps a failure raised by a capability port or host callable."""
    kind = "CapabilityError"

    def __init__(self, message: str, *, port: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.port = port


class CallDepthExceeded(GelError):
    """Raised when closures recurse deeper than the host interpreter allows."""
    kind = "RecursionError"


class InternalError(GelError):
    kind = "InternalError"
