"""Credential handling for the cloud provisioning API.

SECURITY INVARIANTS:
1. The API key is read once at startup (config.py) and only ever leaves this
   process inside an IAM token exchange
2. This module is the ONLY place that turns the key into an authenticator
3. The key is never logged; only a masked prefix may appear in logs
"""

from __future__ import annotations

import logging

from ibm_cloud_sdk_core.authenticators import IAMAuthenticator

from .config import CloudCredentials, mask_secret

logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """Raised when credentials cannot be turned into an authenticator."""

    pass


def build_authenticator(credentials: CloudCredentials) -> IAMAuthenticator:
    """Build an IAM authenticator from validated credentials.

    Args:
        credentials: Credentials taken from OperatorConfig.

    Returns:
        IAMAuthenticator that exchanges the API key for bearer tokens.

    Raises:
        CredentialError: If the SDK rejects the credentials.
    """
    try:
        authenticator = IAMAuthenticator(credentials.api_key, url=credentials.iam_endpoint)
    except ValueError as e:
        # Raised by the SDK for malformed keys; the message never contains the key
        raise CredentialError(f"Invalid IAM credentials: {e}") from e

    logger.debug(
        "Built IAM authenticator",
        extra={
            "iam_endpoint": credentials.iam_endpoint,
            "api_key": mask_secret(credentials.api_key),
        },
    )
    return authenticator


def log_security_audit_event(
    event_type: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    Destructive cloud operations are logged with structured data for SIEM ingestion.

    Args:
        event_type: Type of security event (deletion, credential, etc.)
        target_resource: Cloud resource or object being acted on.
        action: Action being performed.
        result: Result of the action (success, failure).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
