from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from jwt.algorithms import ECAlgorithm

from authcore.logging import get_logger
from authcore.service.errors import KeyManagerNotInitializedError

logger = get_logger(__name__)

SIGNING_ALGORITHM = "ES256"
PRIVATE_KEY_FILENAME = "signing_key.pem"


class KeyManager:
    """Owns the deployment's ES256 signing key pair.

    The pair is generated on first boot and persisted as PEM under
    ``key_dir``; later boots reload it. Consumers receive the manager by
    reference and call :meth:`init` (or rely on the lazy init inside the
    getters) before signing.
    """

    def __init__(self, key_dir: Path | str, *, key_id: str) -> None:
        self.key_dir = Path(key_dir)
        self.key_id = key_id
        self._private_key: Optional[ec.EllipticCurvePrivateKey] = None
        self._public_jwk: Optional[Dict[str, Any]] = None
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._private_key is not None

    @property
    def key_path(self) -> Path:
        return self.key_dir / PRIVATE_KEY_FILENAME

    def init(self) -> None:
        """Load the persisted key pair, generating and persisting one if absent.

        Safe to call repeatedly and from several threads; only the first
        successful call does any work.
        """
        if self._private_key is not None:
            return
        with self._lock:
            if self._private_key is not None:
                return
            key = self._load_existing()
            if key is None:
                key = ec.generate_private_key(ec.SECP256R1())
                self._persist(key)
                logger.info("signing_key_generated", kid=self.key_id, path=str(self.key_path))
            else:
                logger.info("signing_key_loaded", kid=self.key_id, path=str(self.key_path))
            self._public_jwk = self._build_public_jwk(key)
            self._private_key = key

    def _ensure_ready(self) -> None:
        if self._private_key is not None:
            return
        try:
            self.init()
        except Exception as exc:
            logger.error("signing_key_init_failed", error=str(exc), path=str(self.key_path))
            raise KeyManagerNotInitializedError(
                "signing key unavailable", detail={"kid": self.key_id}
            ) from exc

    def get_private_key(self) -> ec.EllipticCurvePrivateKey:
        self._ensure_ready()
        return self._private_key

    def get_public_key(self) -> ec.EllipticCurvePublicKey:
        return self.get_private_key().public_key()

    def get_public_jwk(self) -> Dict[str, Any]:
        self._ensure_ready()
        return dict(self._public_jwk)

    def jwks(self) -> Dict[str, Any]:
        return {"keys": [self.get_public_jwk()]}

    def _load_existing(self) -> Optional[ec.EllipticCurvePrivateKey]:
        path = self.key_path
        if not path.exists():
            return None
        if path.is_symlink():
            raise RuntimeError(f"refusing to load signing key through symlink: {path}")
        key = serialization.load_pem_private_key(path.read_bytes(), password=None)
        if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(
            key.curve, ec.SECP256R1
        ):
            raise RuntimeError("persisted signing key is not a P-256 EC key")
        return key

    def _persist(self, key: ec.EllipticCurvePrivateKey) -> None:
        self.key_dir.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(self.key_dir, 0o700)
        except PermissionError:
            # Directory may be owned by another user (e.g. mounted secret volume)
            pass
        pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        # Atomic write: temp file with restrictive mode, then rename
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.key_dir), prefix=".signing_key_", suffix=".tmp"
        )
        try:
            try:
                os.write(fd, pem)
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(self.key_path))
        except Exception:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise

    def _build_public_jwk(self, key: ec.EllipticCurvePrivateKey) -> Dict[str, Any]:
        jwk = json.loads(ECAlgorithm.to_jwk(key.public_key()))
        jwk.update({"kid": self.key_id, "use": "sig", "alg": SIGNING_ALGORITHM})
        return jwk
