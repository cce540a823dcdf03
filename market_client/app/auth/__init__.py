"""
Session endpoint client.

Login, register, refresh and logout against the REST backend. Token
responses are validated with pydantic before a Credential is issued.
"""

from .client import AuthClient, TokenPair, credential_from_response

__all__ = ["AuthClient", "TokenPair", "credential_from_response"]
