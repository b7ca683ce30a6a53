"""Security module for mailflow."""

from mailflow.security.credentials import (
    GoogleCredentialProvider,
    StaticTokenProvider,
    load_credential_provider,
)

__all__ = ["GoogleCredentialProvider", "StaticTokenProvider", "load_credential_provider"]
