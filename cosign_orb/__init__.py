"""
Signing orchestration for cosign across major versions 1, 2 and 3.

This package drives the cosign executable with either pre-provisioned key
pairs or short-lived OIDC identities, without leaving key material behind.
"""

__version__ = "0.1.0"
