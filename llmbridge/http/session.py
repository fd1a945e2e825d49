"""requests session configuration for gateway calls.

Supports:
- Standard proxy environment variables (HTTP_PROXY, HTTPS_PROXY, NO_PROXY);
  requests reads these itself, this module only adds exact-host bypass.
- LITELLM_NO_PROXY for exact host matching (unlike NO_PROXY suffix matching)
- REQUESTS_CA_BUNDLE / SSL_CERT_FILE for corporate CA bundles
"""

import logging
import os
import urllib.parse
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

ENV_NO_PROXY = "NO_PROXY"
ENV_LITELLM_NO_PROXY = "LITELLM_NO_PROXY"
ENV_CA_BUNDLES = ("REQUESTS_CA_BUNDLE", "SSL_CERT_FILE")


def active_cert_bundle() -> Optional[str]:
    """Return the CA bundle path configured in the environment, if any."""
    for var in ENV_CA_BUNDLES:
        value = os.environ.get(var)
        if value:
            return value
    return None


def _get_exact_no_proxy_hosts() -> List[str]:
    value = os.environ.get(ENV_LITELLM_NO_PROXY, "")
    return [h.strip().lower() for h in value.split(",") if h.strip()]


def _get_no_proxy_entries() -> List[str]:
    value = os.environ.get(ENV_NO_PROXY) or os.environ.get(ENV_NO_PROXY.lower(), "")
    return [e.strip().lower() for e in value.split(",") if e.strip()]


def _matches_no_proxy(host: str, port: Optional[int], entry: str) -> bool:
    """Check if a host[:port] matches a single NO_PROXY entry.

    Standard NO_PROXY matching rules:
    - '*' matches everything
    - '.domain.com' and 'domain.com' match the domain and its subdomains
    - 'host:port' matches only when both host and port match
    """
    if entry == "*":
        return True

    entry_host = entry
    entry_port = None
    if ":" in entry:
        head, _, tail = entry.rpartition(":")
        if tail.isdigit():
            entry_host, entry_port = head, int(tail)

    if entry_port is not None and port != entry_port:
        return False

    entry_host = entry_host.lstrip(".")
    return host == entry_host or host.endswith("." + entry_host)


def should_bypass_proxy(url: str) -> bool:
    """Check if a URL should bypass the proxy.

    Args:
        url: The URL to check.

    Returns:
        True if the host matches LITELLM_NO_PROXY exactly or a NO_PROXY entry.
    """
    parsed = urllib.parse.urlparse(url)
    host = parsed.hostname
    if not host:
        return False
    host = host.lower()

    if host in _get_exact_no_proxy_hosts():
        return True
    return any(_matches_no_proxy(host, parsed.port, e) for e in _get_no_proxy_entries())


def get_requests_session() -> requests.Session:
    """Create a requests Session with the configured CA bundle.

    Returns:
        Configured requests.Session.
    """
    session = requests.Session()

    ca_bundle = active_cert_bundle()
    if ca_bundle:
        if os.path.isfile(ca_bundle):
            session.verify = ca_bundle
        else:
            logger.warning(
                "SSL CA bundle not found: %s (from REQUESTS_CA_BUNDLE or "
                "SSL_CERT_FILE). Falling back to default certificate verification.",
                ca_bundle,
            )

    return session


def get_requests_kwargs(url: str) -> Dict[str, Any]:
    """Per-request kwargs for ``url`` (an empty proxy map when bypassing)."""
    if should_bypass_proxy(url):
        return {"proxies": {}}
    return {}
