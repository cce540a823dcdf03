"""
Credential model and persistence.
"""

from .store import Credential, CredentialStore, parse_expires_in

__all__ = ["Credential", "CredentialStore", "parse_expires_in"]
