"""Plugin archive signing and verification.

Archives are signed with a detached signature over their bytes. The private
key is a PEM document read from the ``CAS_PRIVATE_KEY`` environment variable.
RSA keys sign with PSS/SHA-256; Ed25519 keys are accepted as well.
"""

from __future__ import annotations

import datetime
import hashlib
import os
import pathlib
from dataclasses import dataclass
from typing import Mapping, Optional, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, padding, rsa

from caskit.core.logging_manager import get_logger
from caskit.utils.exceptions import SigningError

logger = get_logger(__name__)

PRIVATE_KEY_ENV = "CAS_PRIVATE_KEY"
SIGNATURE_SUFFIX = ".signature"

PrivateKey = Union[rsa.RSAPrivateKey, ed25519.Ed25519PrivateKey]
PublicKey = Union[rsa.RSAPublicKey, ed25519.Ed25519PublicKey]


@dataclass
class SigningKey:
    """A generated key pair on disk.

    Attributes:
        private_path: PEM file holding the private key
        public_path: PEM file holding the public key
        created_at: When the key was created
        fingerprint: SHA-256 of the public key PEM
    """

    private_path: pathlib.Path
    public_path: pathlib.Path
    created_at: datetime.datetime
    fingerprint: str


def _pss() -> padding.PSS:
    return padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH)


def private_key_from_env(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """PEM private key from the environment, or None when unset or blank."""
    environ = os.environ if environ is None else environ
    value = environ.get(PRIVATE_KEY_ENV, "")
    # Single-line secrets often carry escaped newlines
    value = value.replace("\\n", "\n").strip()
    return value or None


def load_private_key(pem: Union[str, bytes]) -> PrivateKey:
    """Parse an unencrypted PEM private key.

    Raises:
        SigningError: If the key cannot be parsed or is of an unsupported type
    """
    data = pem.encode("utf-8") if isinstance(pem, str) else pem
    try:
        key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise SigningError(f"Invalid private key: {e}") from e
    if not isinstance(key, (rsa.RSAPrivateKey, ed25519.Ed25519PrivateKey)):
        raise SigningError(f"Unsupported private key type: {type(key).__name__}")
    return key


def load_public_key(pem: Union[str, bytes]) -> PublicKey:
    """Parse a PEM public key.

    Raises:
        SigningError: If the key cannot be parsed or is of an unsupported type
    """
    data = pem.encode("utf-8") if isinstance(pem, str) else pem
    try:
        key = serialization.load_pem_public_key(data)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise SigningError(f"Invalid public key: {e}") from e
    if not isinstance(key, (rsa.RSAPublicKey, ed25519.Ed25519PublicKey)):
        raise SigningError(f"Unsupported public key type: {type(key).__name__}")
    return key


def public_key_pem(private_pem: Union[str, bytes]) -> bytes:
    """Public half of a PEM private key, as PEM."""
    return load_private_key(private_pem).public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def sign_bytes(data: bytes, private_pem: Union[str, bytes]) -> bytes:
    """Detached signature over ``data``.

    Raises:
        SigningError: If the key is unusable
    """
    key = load_private_key(private_pem)
    if isinstance(key, rsa.RSAPrivateKey):
        return key.sign(data, _pss(), hashes.SHA256())
    return key.sign(data)


def verify_bytes(data: bytes, signature: bytes, public_pem: Union[str, bytes]) -> bool:
    """Check a detached signature.

    Returns:
        True if the signature matches ``data``

    Raises:
        SigningError: If the public key is unusable
    """
    key = load_public_key(public_pem)
    try:
        if isinstance(key, rsa.RSAPublicKey):
            key.verify(signature, data, _pss(), hashes.SHA256())
        else:
            key.verify(signature, data)
    except InvalidSignature:
        return False
    return True


def signature_path(archive_path: pathlib.Path) -> pathlib.Path:
    """Sibling signature file of an archive: ``plugin-1.0.0.zip`` -> ``plugin-1.0.0.signature``."""
    return archive_path.with_suffix(SIGNATURE_SUFFIX)


def sign_file(path: pathlib.Path, private_pem: Union[str, bytes]) -> bytes:
    """Sign a file and write the signature next to it.

    Returns:
        The signature bytes

    Raises:
        SigningError: If the key is unusable or the files cannot be accessed
    """
    try:
        data = path.read_bytes()
        signature = sign_bytes(data, private_pem)
        signature_path(path).write_bytes(signature)
    except OSError as e:
        raise SigningError(f"Failed to sign {path}: {e}", archive_path=str(path)) from e
    logger.info("Archive signed", path=str(path), signature=str(signature_path(path)))
    return signature


def verify_file(
    path: pathlib.Path,
    public_pem: Union[str, bytes],
    signature_file: Optional[pathlib.Path] = None,
) -> bool:
    """Verify a file against its detached signature.

    Raises:
        SigningError: If the key is unusable or the files cannot be read
    """
    signature_file = signature_file or signature_path(path)
    try:
        data = path.read_bytes()
        signature = signature_file.read_bytes()
    except OSError as e:
        raise SigningError(f"Failed to read {e.filename}: {e.strerror}", archive_path=str(path)) from e
    return verify_bytes(data, signature, public_pem)


def generate_signing_key(path: Union[str, pathlib.Path], key_size: int = 2048) -> SigningKey:
    """Generate an RSA key pair and write it as PEM files.

    The private key goes to ``path`` (mode 0600), the public key to
    ``path`` with a ``.pub`` suffix.

    Args:
        path: Where to write the private key
        key_size: RSA modulus size in bits

    Returns:
        Description of the written key pair

    Raises:
        SigningError: If the files cannot be written
    """
    private_path = pathlib.Path(path)
    public_path = private_path.with_suffix(".pub")

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )

    try:
        private_path.parent.mkdir(parents=True, exist_ok=True)
        private_path.write_bytes(private_bytes)
        private_path.chmod(0o600)
        public_path.write_bytes(public_bytes)
    except OSError as e:
        raise SigningError(f"Failed to write signing key: {e}") from e

    fingerprint = hashlib.sha256(public_bytes).hexdigest()
    logger.info("Signing key generated", private_key=str(private_path), fingerprint=fingerprint)
    return SigningKey(
        private_path=private_path,
        public_path=public_path,
        created_at=datetime.datetime.now(),
        fingerprint=fingerprint,
    )
