"""Browser driver abstractions consumed by the session engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class BrowserActionError(RuntimeError):
    """Raised when a driver is used outside of its started lifetime."""


class BrowserDriver(ABC):
    """Interface for an automation-capable page bound to one profile directory.

    Implementations may raise their own driver exceptions; the engine converts
    them through :class:`~whatsapp_session_engine.engine.failures.FailureClassifier`.
    """

    @abstractmethod
    def start(self) -> None:
        """Launch the browser and open the page."""

    @abstractmethod
    def stop(self) -> None:
        """Terminate the browser and release the profile directory."""

    @abstractmethod
    def navigate_to(self, url: str) -> None:
        """Load ``url`` in the page."""

    @abstractmethod
    def query_selector(self, selector: str) -> Optional[Any]:
        """Return an element handle matching ``selector`` or ``None``."""

    @abstractmethod
    def get_current_url(self) -> str:
        """Return the URL currently loaded in the page."""

    @abstractmethod
    def screenshot_element(self, element: Any) -> bytes:
        """Return a PNG screenshot of ``element``."""

    @abstractmethod
    def fill(self, element: Any, text: str) -> None:
        """Replace the content of an editable ``element`` with ``text``."""

    @abstractmethod
    def click(self, element: Any) -> None:
        """Click ``element``."""

    @abstractmethod
    def press(self, element: Any, key: str) -> None:
        """Press ``key`` while ``element`` has focus."""

    @abstractmethod
    def get_attribute(self, element: Any, name: str) -> Optional[str]:
        """Return the ``name`` attribute of ``element`` or ``None``."""

    @abstractmethod
    def is_closed(self) -> bool:
        """Return ``True`` once the page or its browser is gone."""
