"""Classification of browser driver failures into engine error kinds."""

from __future__ import annotations

import enum
import logging
import re
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from ..models import OperationOutcome, OutcomeCode

LOGGER = logging.getLogger(__name__)

CLOSURE_SIGNATURES = (
    "Target page, context or browser has been closed",
    "Browser has been disconnected",
    "Browser has been closed",
    "Session was closed",
    "Cannot access a disposed object",
)

NETWORK_SIGNATURES = (
    "net::ERR_NAME_NOT_RESOLVED",
    "net::ERR_INTERNET_DISCONNECTED",
    "net::ERR_NETWORK_CHANGED",
    "net::ERR_CONNECTION_RESET",
    "Navigation failed",
)

_TIMEOUT_PATTERN = re.compile(r"Timeout \d+(\.\d+)?ms exceeded", re.IGNORECASE)


class FailureKind(str, enum.Enum):
    """How the engine reacts to a driver failure."""

    DELIBERATE_CLOSURE = "deliberate_closure"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


class EngineError(RuntimeError):
    """Base class for errors raised inside the engine."""

    kind: FailureKind = FailureKind.UNKNOWN


class BrowserClosedError(EngineError):
    """The page, context or browser was closed underneath an operation."""

    kind = FailureKind.DELIBERATE_CLOSURE


class DriverTimeoutError(EngineError):
    """A wait inside the driver or the detector ran out of time."""

    kind = FailureKind.TIMEOUT


class NetworkFailureError(EngineError):
    """The page could not reach WhatsApp Web."""

    kind = FailureKind.NETWORK_ERROR


class DriverError(EngineError):
    """Any other driver failure; the original message is preserved."""


class SessionCreationError(EngineError):
    """A browser session could not be constructed for a moderator."""


_ERROR_BY_KIND = {
    FailureKind.DELIBERATE_CLOSURE: BrowserClosedError,
    FailureKind.TIMEOUT: DriverTimeoutError,
    FailureKind.NETWORK_ERROR: NetworkFailureError,
    FailureKind.UNKNOWN: DriverError,
}


class FailureClassifier:
    """Tag exceptions thrown by the browser driver.

    ``guard`` is the only place where raw driver exceptions are caught; past
    it callers only ever see :class:`EngineError` subclasses.
    """

    def __init__(
        self,
        closure_signatures: Iterable[str] = CLOSURE_SIGNATURES,
        network_signatures: Iterable[str] = NETWORK_SIGNATURES,
    ) -> None:
        self._closure_signatures = tuple(closure_signatures)
        self._network_signatures = tuple(network_signatures)

    def classify(self, exc: BaseException) -> FailureKind:
        if isinstance(exc, EngineError) and not isinstance(exc, (DriverError, SessionCreationError)):
            return exc.kind
        message = str(exc)
        if _contains_any(message, self._closure_signatures):
            return FailureKind.DELIBERATE_CLOSURE
        if isinstance(exc, (PlaywrightTimeoutError, TimeoutError)) or _TIMEOUT_PATTERN.search(message):
            return FailureKind.TIMEOUT
        if _contains_any(message, self._network_signatures):
            return FailureKind.NETWORK_ERROR
        return FailureKind.UNKNOWN

    def wrap(self, exc: BaseException, operation: Optional[str] = None) -> EngineError:
        """Return an engine error of the right kind for ``exc``."""

        if isinstance(exc, EngineError):
            return exc
        kind = self.classify(exc)
        prefix = f"{operation}: " if operation else ""
        error = _ERROR_BY_KIND[kind](f"{prefix}{exc}")
        error.__cause__ = exc
        return error

    @contextmanager
    def guard(self, operation: str) -> Iterator[None]:
        """Convert any exception raised inside the block into an engine error."""

        try:
            yield
        except EngineError:
            raise
        except Exception as exc:
            error = self.wrap(exc, operation)
            LOGGER.debug("Driver call %s failed (%s): %s", operation, error.kind.value, exc)
            raise error from exc

    def to_outcome(self, exc: BaseException) -> OperationOutcome:
        """Map ``exc`` onto the outcome callers should report."""

        kind = self.classify(exc)
        message = str(exc)
        if kind is FailureKind.DELIBERATE_CLOSURE:
            return OperationOutcome.warning(
                f"Browser was closed: {message}",
                code=OutcomeCode.DELIBERATE_CLOSURE,
            )
        if kind is FailureKind.NETWORK_ERROR:
            return OperationOutcome.network_unavailable(message, code=OutcomeCode.NETWORK_ERROR)
        if kind is FailureKind.TIMEOUT:
            return OperationOutcome.failure(message, code=OutcomeCode.TIMEOUT)
        return OperationOutcome.failure(message, code=OutcomeCode.UNKNOWN)


def _contains_any(message: str, signatures: Iterable[str]) -> bool:
    lowered = message.lower()
    return any(signature.lower() in lowered for signature in signatures)
