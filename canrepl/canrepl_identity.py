"""Signing identities: anonymous, Ed25519, secp256k1 (PEM) and hardware-backed."""
import getpass
import os
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from canrepl.canrepl_errors import ConfigError
from canrepl.canrepl_principal import PrincipalId

HSM_PIN_ENV = "DFX_HSM_PIN"


class Identity(ABC):
    """The required base class for anything that signs requests."""

    @abstractmethod
    def sender(self) -> PrincipalId: raise NotImplementedError

    @abstractmethod
    def public_key(self) -> Optional[bytes]: raise NotImplementedError

    @abstractmethod
    def sign(self, message: bytes) -> Optional[bytes]: raise NotImplementedError


class AnonymousIdentity(Identity):
    def sender(self) -> PrincipalId:
        return PrincipalId.anonymous()

    def public_key(self) -> Optional[bytes]:
        return None

    def sign(self, message: bytes) -> Optional[bytes]:
        return None


class _KeyIdentity(Identity):
    def __init__(self, private_key):
        self._key = private_key
        self._der = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def sender(self) -> PrincipalId:
        return PrincipalId.self_authenticating(self._der)

    def public_key(self) -> Optional[bytes]:
        return self._der

    def to_pem(self) -> bytes:
        return self._key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )


class Ed25519Identity(_KeyIdentity):
    @classmethod
    def generate(cls) -> 'Ed25519Identity':
        return cls(ed25519.Ed25519PrivateKey.generate())

    def sign(self, message: bytes) -> bytes:
        return self._key.sign(message)


class Secp256k1Identity(_KeyIdentity):
    def sign(self, message: bytes) -> bytes:
        der = self._key.sign(message, ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        return r.to_bytes(32, "big") + s.to_bytes(32, "big")


class ExternalIdentity(Identity):
    """An identity whose key lives elsewhere (e.g. a PKCS#11 token)."""

    def __init__(self, der_public_key: bytes, signer: Callable[[bytes], bytes]):
        self._der = der_public_key
        self._signer = signer

    def sender(self) -> PrincipalId:
        return PrincipalId.self_authenticating(self._der)

    def public_key(self) -> Optional[bytes]:
        return self._der

    def sign(self, message: bytes) -> bytes:
        return self._signer(message)


def load_pem_identity(path: str) -> Identity:
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise ConfigError(f"cannot read identity file {path}: {e}") from e
    try:
        key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise ConfigError(f"invalid PEM identity {path}: {e}") from e
    if isinstance(key, ed25519.Ed25519PrivateKey):
        return Ed25519Identity(key)
    if isinstance(key, ec.EllipticCurvePrivateKey) and isinstance(key.curve, ec.SECP256K1):
        return Secp256k1Identity(key)
    raise ConfigError(f"unsupported key type in {path}: only Ed25519 and secp256k1 are supported")


PKCS11_LIBPATH_ENV = "PKCS11_LIBPATH"
_PKCS11_DEFAULTS = {
    "darwin": "/Library/OpenSC/lib/pkcs11/opensc-pkcs11.so",
    "win32": "C:/Program Files/OpenSC Project/OpenSC/pkcs11/opensc-pkcs11.dll",
}


def pkcs11_lib_path() -> str:
    default = _PKCS11_DEFAULTS.get(sys.platform, "/usr/lib/x86_64-linux-gnu/opensc-pkcs11.so")
    return os.environ.get(PKCS11_LIBPATH_ENV, default)


def hsm_pin(prompt: Optional[Callable[[str], str]] = None) -> str:
    pin = os.environ.get(HSM_PIN_ENV)
    if pin:
        return pin
    pin = (prompt or getpass.getpass)("HSM PIN: ")
    if not pin:
        raise ConfigError(f"no HSM PIN given (set {HSM_PIN_ENV})")
    return pin


def no_hsm_loader(lib_path: str, slot_index: int, key_id: str, pin: str) -> Identity:
    raise ConfigError(f"no hardware security module support is configured (library {lib_path})")
