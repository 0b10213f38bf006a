"""
Error hierarchy for the canrepl interpreter.

Every error raised on purpose by the interpreter derives from ReplError so the
ScriptRunner can format it with a kind prefix (``CastError: ...``) and keep the
session alive.
"""
from typing import Optional, Iterable


class ReplError(Exception):
    """Base class for all interpreter errors."""

    @property
    def kind(self) -> str:
        return type(self).__name__


# --- Parsing -----------------------------------------------------------------

class ParseError(ReplError):
    """Lexical or grammar error; carries the offending span and expected tokens."""
    def __init__(self, message: str, span=None, expected: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.span = span
        self.expected = sorted(set(expected or ()))


# --- Evaluation --------------------------------------------------------------

class EvalError(ReplError):
    pass


class UndefinedVariable(EvalError):
    def __init__(self, name: str):
        super().__init__(f"Undefined variable {name}")
        self.name = name


class ArityMismatch(EvalError):
    def __init__(self, name: str, expected, got: int):
        super().__init__(f"{name} expects {expected} argument(s), got {got}")
        self.name = name
        self.expected = expected
        self.got = got


class SelectorError(EvalError):
    pass


class FieldNotFound(SelectorError):
    def __init__(self, label, value_repr: str = ""):
        msg = f"field {label} not found"
        if value_repr:
            msg = f"{msg} in {value_repr}"
        super().__init__(msg)
        self.label = label


class CastError(EvalError):
    pass


class AssertionFailed(EvalError):
    pass


# --- Network -----------------------------------------------------------------

class NetworkError(ReplError):
    """Failure while talking to a replica; carries the canister/method context."""
    def __init__(self, message: str, canister=None, method: Optional[str] = None):
        if canister is not None and method:
            message = f"{message} (calling {canister}.{method})"
        super().__init__(message)
        self.canister = canister
        self.method = method


class RejectError(NetworkError):
    def __init__(self, code: int, message: str, canister=None, method: Optional[str] = None):
        super().__init__(f"rejected with code {code}: {message}", canister, method)
        self.code = code
        self.reject_message = message


class CallTimeout(NetworkError):
    pass


class InterfaceError(NetworkError):
    pass


# --- Configuration -----------------------------------------------------------

class ConfigError(ReplError):
    pass
