"""Credential lookup for node parameters."""

from edgeflow.credentials.service import CachingCredentialLookup, CredentialLookup, StaticCredentialLookup

__all__ = [
    "CachingCredentialLookup",
    "CredentialLookup",
    "StaticCredentialLookup",
]
