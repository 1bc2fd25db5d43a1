"""Error taxonomy shared by the automation, sync and HTTP layers."""

from __future__ import annotations

from typing import Any, Optional


class BridgeError(Exception):
    """Base for failures the HTTP layer answers with ``status_code`` and the message."""

    error_type = "BRIDGE_ERROR"
    status_code = 500

    def __init__(self, message: str, *, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.data = data or {}


class SessionNotReady(BridgeError):
    """The automation session has not finished startup, or its page is gone."""

    error_type = "SESSION_NOT_READY"

    def __init__(self, message: str = "automation session not ready", **kwargs: Any):
        super().__init__(message, **kwargs)


class NavigationTimeout(BridgeError):
    error_type = "NAVIGATION_TIMEOUT"


class ExtractionContainerTimeout(NavigationTimeout):
    """A view's root container never became visible.

    Usually means the web client's markup no longer matches our selectors.
    """

    error_type = "EXTRACTION_CONTAINER_TIMEOUT"


class ConversationNotFound(BridgeError):
    error_type = "CONVERSATION_NOT_FOUND"
    status_code = 404

    def __init__(self, label: str, **kwargs: Any):
        super().__init__(f"No conversation for: {label}", **kwargs)
        self.label = label


class ComposerNotReady(BridgeError):
    error_type = "COMPOSER_NOT_READY"


class StoreWriteFailed(BridgeError):
    error_type = "STORE_WRITE_FAILED"
