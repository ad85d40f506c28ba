from __future__ import annotations

"""Exception taxonomy shared by every component of the explorer.

Page- and action-level failures are absorbed by the orchestrator and surface
only as entries of the action log. Driver-fatal and unrecoverable storage
failures end the session.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .knowledge import GuardrailVerdict


class ExplorerError(Exception):
    """Base class for all explorer errors."""


class NavigationError(ExplorerError):
    """Network failure or page-load timeout for a single URL."""

    def __init__(self, url: str, message: str = "") -> None:
        super().__init__(f"{url}: {message}" if message else url)
        self.url = url
        self.message = message


class ActionError(ExplorerError):
    """A click or type interaction could not be carried out."""

    def __init__(self, element_ref: str, message: str = "") -> None:
        super().__init__(f"{element_ref}: {message}" if message else element_ref)
        self.element_ref = element_ref
        self.message = message


class GuardrailViolation(ExplorerError):
    """Raised by callers that prefer exceptions over inspecting a verdict."""

    def __init__(self, verdict: "GuardrailVerdict") -> None:
        rule = verdict.rule.value if verdict.rule else "allowed"
        super().__init__(f"{rule}: {verdict.reason}")
        self.verdict = verdict


class StorageError(ExplorerError):
    """Memory store write or read failure."""

    def __init__(self, message: str, fingerprint: Optional[str] = None) -> None:
        super().__init__(message)
        self.fingerprint = fingerprint


class DriverFatalError(ExplorerError):
    """The browser driver is no longer usable (e.g. the browser process died)."""


class SessionTimeout(ExplorerError):
    """The session deadline elapsed. A planned termination, not a failure."""
