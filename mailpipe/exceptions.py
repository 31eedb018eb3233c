"""Mailpipe exception hierarchy."""

from __future__ import annotations


class MailpipeError(Exception):
    """Base exception for all mailpipe errors."""


class NotFound(MailpipeError):
    """Unknown pipeline, template, queue item or recipient."""

    def __init__(self, kind: str, identifier) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} '{identifier}' not found")


class AlreadyRunning(MailpipeError):
    """A single-flight operation is already in progress."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"'{name}' is already running")


class ValidationFailed(MailpipeError):
    """Malformed template or queue item data, or an illegal request."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = errors or []
        if self.errors:
            message = f"{message}: {', '.join(self.errors)}"
        super().__init__(message)


class InvalidTransition(ValidationFailed):
    """Queue item status change not allowed by the state machine."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition queue item from {current} to {target}")


class StaleTransition(ValidationFailed):
    """The queue item changed status between read and write."""

    def __init__(self, item_id: int, expected: str) -> None:
        self.item_id = item_id
        self.expected = expected
        super().__init__(f"Queue item {item_id} is no longer {expected}")


class TransientGenerationFailure(MailpipeError):
    """Content generation failed in a way that may succeed on retry."""


class TransientSendFailure(MailpipeError):
    """Outbound send failed in a way that may succeed on retry."""


class ConfigurationError(MailpipeError):
    """Startup-time misconfiguration, e.g. a malformed pipeline definition."""
