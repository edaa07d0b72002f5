"""
Callback signing.

The callback URLs handed to the gateway carry an HMAC-SHA256 over the
canonical parameter string, so the callback can be authenticated without
relying on the gateway's own scheme.
"""
import hashlib
import hmac
from typing import Mapping, Optional
from urllib.parse import urlencode


def canonicalize(params: Mapping[str, Optional[str]]) -> str:
    """Sort keys and form-encode; absent values are left out"""
    items = [(key, str(params[key])) for key in sorted(params) if params[key] is not None]
    return urlencode(items)


def sign(secret: str, params: Mapping[str, Optional[str]]) -> str:
    digest = hmac.new(
        secret.encode("utf-8"),
        canonicalize(params).encode("utf-8"),
        hashlib.sha256,
    )
    return digest.hexdigest()


def verify(secret: str, params: Mapping[str, Optional[str]], signature: Optional[str]) -> bool:
    """Constant-time check of a hex signature against the parameters"""
    if not signature:
        return False
    expected = sign(secret, params)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def signed_query(secret: Optional[str], params: Mapping[str, Optional[str]]) -> str:
    """
    Query string for a callback URL.

    The signature is appended only when a secret is configured.
    """
    query = {key: value for key, value in params.items() if value is not None}
    if secret:
        query["signature"] = sign(secret, params)
    return urlencode(query)
