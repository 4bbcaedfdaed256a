"""Error taxonomy shared by the JSON functions and the HTML views."""

from __future__ import annotations

from typing import Optional


class AppError(Exception):
    """Base class for failures that map onto a structured JSON response."""

    status_code = 500
    public_message = 'Internal server error'

    def __init__(self, message: Optional[str] = None, *, details: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.details = details
        self.reason = reason

    def to_payload(self) -> dict:
        payload = {'error': self.message}
        if self.reason:
            payload['reason'] = self.reason
        if self.details:
            payload['details'] = self.details
        return payload


class ConfigurationError(AppError):
    """A required setting is missing from the environment."""

    status_code = 500
    public_message = 'Server configuration error'

    def to_payload(self) -> dict:
        # The error string stays generic; reason and details say what is missing.
        payload = {'error': self.public_message, 'reason': self.reason or 'missing_configuration'}
        payload['details'] = self.details or self.message
        return payload


class ValidationError(AppError):
    """The caller sent a request that is missing required fields."""

    status_code = 400
    public_message = 'Invalid request'


class UpstreamError(AppError):
    """The completion API, the record store or a webhook answered with a failure.

    The upstream body is kept on the exception for logging only and is never
    part of the payload sent back to the browser.
    """

    status_code = 500
    public_message = 'Upstream service error'

    def __init__(self, message: Optional[str] = None, *, upstream_status: Optional[int] = None, upstream_body: Optional[str] = None):
        super().__init__(message, reason='upstream_error')
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body

    def to_payload(self) -> dict:
        return {'error': self.public_message, 'reason': self.reason}


class StoreError(UpstreamError):
    public_message = 'Record store error'


class CompletionError(UpstreamError):
    public_message = 'Completion service error'


class WebhookError(UpstreamError):
    public_message = 'Webhook delivery failed'
