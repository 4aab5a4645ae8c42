"""
Ed25519 request signing for the Backpack REST and streaming APIs.

Every signed call covers the string

    instruction=<name>&<canonical params>&timestamp=<ms>&window=<ms>

where the canonical params are the request fields sorted by key. The
signature is sent base64 encoded in ``X-Signature`` next to the key,
timestamp and window headers.
"""

import base64
import binascii
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from config.settings import ConfigurationError


__all__ = [
    "ConfigurationError",
    "Credentials",
    "RequestSigner",
    "canonical_params",
    "DEFAULT_WINDOW_MS",
]

DEFAULT_WINDOW_MS = 5000
CONTENT_TYPE = "application/json; charset=utf-8"


def _render_value(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (list, tuple, dict)):
        return None
    # bool before int: True is an int in Python
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    return str(value)


def canonical_params(params: Optional[Mapping[str, Any]]) -> str:
    """Serialize request fields as ``k=v&...`` in ascending key order.

    Null, array and object values are dropped.
    """
    if not params:
        return ""
    parts = []
    for key in sorted(params):
        rendered = _render_value(params[key])
        if rendered is None:
            continue
        parts.append(f"{key}={rendered}")
    return "&".join(parts)


@dataclass(frozen=True)
class Credentials:
    api_key: str
    private_key: Ed25519PrivateKey = field(repr=False, compare=False)

    @classmethod
    def from_base64(cls, api_key: Optional[str], secret_b64: Optional[str]) -> "Credentials":
        if not api_key:
            raise ConfigurationError("API key is missing (BP_API_KEY)")
        if not secret_b64:
            raise ConfigurationError("API secret is missing (BP_API_SECRET)")
        try:
            seed = base64.b64decode(secret_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError(f"Failed to decode API secret: {exc}") from exc
        if len(seed) != 32:
            raise ConfigurationError(
                f"Invalid private key length: expected 32 bytes, got {len(seed)}"
            )
        return cls(api_key=api_key, private_key=Ed25519PrivateKey.from_private_bytes(seed))

    def public_key(self) -> Ed25519PublicKey:
        return self.private_key.public_key()


class RequestSigner:
    """Builds the authentication headers for one request. Holds only the key pair."""

    def __init__(self, credentials: Credentials, window_ms: int = DEFAULT_WINDOW_MS):
        self._credentials = credentials
        self.window_ms = int(window_ms)

    @property
    def api_key(self) -> str:
        return self._credentials.api_key

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    @staticmethod
    def signing_payload(
        instruction: str,
        params: Optional[Mapping[str, Any]],
        timestamp: int,
        window: int,
    ) -> str:
        segments = [f"instruction={instruction}"]
        query = canonical_params(params)
        if query:
            segments.append(query)
        segments.append(f"timestamp={timestamp}")
        segments.append(f"window={window}")
        return "&".join(segments)

    def _signature(self, payload: str) -> str:
        raw = self._credentials.private_key.sign(payload.encode("utf-8"))
        return base64.b64encode(raw).decode("ascii")

    def sign(
        self,
        instruction: str,
        params: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[int] = None,
        window: Optional[int] = None,
    ) -> Dict[str, str]:
        # Recomputed per call; the exchange rejects stale timestamps.
        ts = self._now_ms() if timestamp is None else int(timestamp)
        win = self.window_ms if window is None else int(window)
        payload = self.signing_payload(instruction, params, ts, win)
        return {
            "X-API-Key": self._credentials.api_key,
            "X-Timestamp": str(ts),
            "X-Window": str(win),
            "X-Signature": self._signature(payload),
            "Content-Type": CONTENT_TYPE,
        }

    def ws_signature(self, timestamp: Optional[int] = None) -> List[str]:
        """Signature tuple for a private stream SUBSCRIBE frame."""
        ts = self._now_ms() if timestamp is None else int(timestamp)
        payload = self.signing_payload("subscribe", None, ts, self.window_ms)
        return [self._credentials.api_key, self._signature(payload), str(ts), str(self.window_ms)]
