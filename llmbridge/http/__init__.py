"""Shared HTTP utilities.

Usage:
    from llmbridge.http import get_requests_session, get_requests_kwargs
    session = get_requests_session()
    response = session.post(url, json=body, **get_requests_kwargs(url))

Environment Variables:
    HTTPS_PROXY / HTTP_PROXY: Standard proxy URL
    NO_PROXY: Standard no-proxy hosts (suffix matching)
    LITELLM_NO_PROXY: Exact host matching for no-proxy
    REQUESTS_CA_BUNDLE / SSL_CERT_FILE: Corporate CA bundle
"""

from .session import (
    active_cert_bundle,
    get_requests_kwargs,
    get_requests_session,
    should_bypass_proxy,
)

__all__ = [
    "active_cert_bundle",
    "get_requests_kwargs",
    "get_requests_session",
    "should_bypass_proxy",
]
