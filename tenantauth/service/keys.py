from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from jwt.algorithms import RSAAlgorithm

from tenantauth.config import Settings
from tenantauth.logging import get_logger

logger = get_logger(__name__)

KID_LENGTH = 16


class KeyMaterialError(RuntimeError):
    """Signing keys are missing, unreadable, or do not form a pair."""


@dataclass(frozen=True)
class KeyMaterial:
    private_key: rsa.RSAPrivateKey
    public_key: rsa.RSAPublicKey
    public_pem: bytes
    kid: str


def compute_kid(public_pem: bytes) -> str:
    return hashlib.sha256(public_pem).hexdigest()[:KID_LENGTH]


def _read_pem(path: Path, label: str) -> bytes:
    try:
        return path.read_bytes()
    except FileNotFoundError as exc:
        raise KeyMaterialError(
            f"{label} key not found at {path}; generate a pair with "
            "tenantauth.service.keys.generate_key_pair or set "
            f"{label.upper()}_KEY_PATH"
        ) from exc
    except OSError as exc:
        raise KeyMaterialError(f"{label} key at {path} is unreadable: {exc}") from exc


def load_key_material(private_path: Path, public_path: Path) -> KeyMaterial:
    private_pem = _read_pem(private_path, "private")
    public_pem = _read_pem(public_path, "public")
    try:
        private_key = serialization.load_pem_private_key(private_pem, password=None)
        public_key = serialization.load_pem_public_key(public_pem)
    except (ValueError, TypeError) as exc:
        raise KeyMaterialError(f"invalid PEM key material: {exc}") from exc
    if not isinstance(private_key, rsa.RSAPrivateKey) or not isinstance(
        public_key, rsa.RSAPublicKey
    ):
        raise KeyMaterialError("signing keys must be RSA")
    if private_key.public_key().public_numbers() != public_key.public_numbers():
        raise KeyMaterialError(
            f"public key at {public_path} does not match private key at {private_path}"
        )
    return KeyMaterial(
        private_key=private_key,
        public_key=public_key,
        public_pem=public_pem,
        kid=compute_kid(public_pem),
    )


class KeyProvider:
    """Loads the RS256 key pair once and serves it for the process lifetime."""

    def __init__(self, settings: Settings) -> None:
        self._private_path = Path(settings.private_key_path)
        self._public_path = Path(settings.public_key_path)
        self._material: Optional[KeyMaterial] = None
        self._lock = threading.Lock()

    def material(self) -> KeyMaterial:
        if self._material is None:
            with self._lock:
                if self._material is None:
                    self._material = load_key_material(
                        self._private_path, self._public_path
                    )
                    logger.info("signing_key_loaded", kid=self._material.kid)
        return self._material

    @property
    def kid(self) -> str:
        return self.material().kid

    def signing_key(self) -> rsa.RSAPrivateKey:
        return self.material().private_key

    def verification_key(self) -> rsa.RSAPublicKey:
        return self.material().public_key

    def sign(self, data: bytes) -> bytes:
        return self.signing_key().sign(data, padding.PKCS1v15(), hashes.SHA256())

    def public_jwk(self) -> Dict[str, Any]:
        material = self.material()
        jwk = RSAAlgorithm.to_jwk(material.public_key, as_dict=True)
        return {
            "kty": jwk["kty"],
            "n": jwk["n"],
            "e": jwk["e"],
            "kid": material.kid,
            "alg": "RS256",
            "use": "sig",
        }


def generate_key_pair(directory: Path, *, key_size: int = 2048) -> Tuple[Path, Path]:
    """Write a fresh unencrypted RSA pair as private.pem / public.pem."""
    directory.mkdir(parents=True, exist_ok=True)
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_path = directory / "private.pem"
    public_path = directory / "public.pem"
    private_path.write_bytes(
        private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    private_path.chmod(0o600)
    public_path.write_bytes(
        private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )
    return private_path, public_path
