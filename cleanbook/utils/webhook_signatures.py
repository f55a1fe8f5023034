"""
Webhook helpers - payload hashing for the audit trail, and the public
origin of a request for the post-payment return URL.
"""
import hashlib
import logging

logger = logging.getLogger(__name__)


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for dedup and audit."""
    return hashlib.sha256(body).hexdigest()


def get_public_base_url(request) -> str:
    """
    Reconstruct the public origin of the current request.
    Behind a reverse proxy, request.url returns the internal URL
    (e.g., http://api:8000/...). We use X-Forwarded-Proto and
    X-Forwarded-Host headers to reconstruct the one clients used.
    """
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    host = request.headers.get("x-forwarded-host") or request.headers.get("host", "")
    return f"{proto}://{host}"


def get_return_url(request) -> str:
    """Where the client lands after payment: its Origin header, else our own origin."""
    origin = request.headers.get("origin")
    if origin:
        return origin.rstrip("/")
    return get_public_base_url(request)
