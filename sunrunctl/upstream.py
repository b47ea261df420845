"""HTTP client for the upstream run-record API."""
import base64
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .errors import UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Connection": "keep-alive",
    "Accept-Encoding": "gzip, deflate, br",
    "Accept": "application/json",
    "User-Agent": "TotoroSchool/1.2.14 (iPhone; iOS 17.4.1; Scale/3.00)",
}


class PayloadEncoder(Protocol):
    def encode(self, payload: Dict[str, Any]) -> bytes: ...


class RsaPayloadEncoder:
    """
    JSON -> RSA PKCS#1 v1.5 -> base64. Payloads longer than one block are
    split into `key_bytes - 11` byte chunks whose ciphertexts are concatenated.
    """

    def __init__(self, key: rsa.RSAPrivateKey):
        self._public_key = key.public_key()
        self._chunk = key.key_size // 8 - 11

    @classmethod
    def from_pem_file(cls, path: Path) -> "RsaPayloadEncoder":
        key = serialization.load_pem_private_key(Path(path).read_bytes(), password=None)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ValueError(f"{path} does not contain an RSA private key")
        return cls(key)

    def encode(self, payload: Dict[str, Any]) -> bytes:
        raw = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        cipher = b"".join(
            self._public_key.encrypt(raw[i:i + self._chunk], padding.PKCS1v15())
            for i in range(0, len(raw), self._chunk)
        )
        return base64.b64encode(cipher)


class UpstreamClient:
    def __init__(
        self,
        base_url: str,
        encoder: PayloadEncoder,
        *,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._encoder = encoder
        self._client = httpx.Client(
            base_url=base_url,
            headers=DEFAULT_HEADERS,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    def submit(self, path: str, payload: Dict[str, Any], *, encrypted: bool = True) -> Dict[str, Any]:
        """POST `payload` to `path`; encrypted bodies go out as text/plain, structured ones as JSON."""
        if encrypted:
            content = self._encoder.encode(payload)
            content_type = "text/plain; charset=utf-8"
        else:
            content = json.dumps(payload, ensure_ascii=False).encode("utf-8")
            content_type = "application/json; charset=utf-8"

        try:
            response = self._client.post(path, content=content, headers={"Content-Type": content_type})
        except httpx.HTTPError as e:
            raise UpstreamError(None, f"{type(e).__name__}: {e}", path) from e

        if not response.is_success:
            raise UpstreamError(response.status_code, response.text, path)
        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamError(response.status_code, response.text, path) from e
        if not isinstance(body, dict):
            raise UpstreamError(response.status_code, response.text, path)
        logger.debug("upstream %s -> %s", path, response.status_code)
        return body

    def close(self):
        self._client.close()
