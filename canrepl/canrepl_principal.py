"""Principal ids: textual form (crc32 + base32, dash grouped) and constructors."""
import base64
import hashlib
import zlib


class PrincipalId:
    __slots__ = ("raw",)

    MAX_LEN = 29

    def __init__(self, raw: bytes):
        raw = bytes(raw)
        if len(raw) > self.MAX_LEN:
            raise ValueError(f"principal too long: {len(raw)} bytes")
        self.raw = raw

    @classmethod
    def from_text(cls, text: str) -> 'PrincipalId':
        norm = text.strip().lower()
        compact = norm.replace("-", "")
        if not compact:
            raise ValueError("empty principal text")
        padded = compact.upper() + "=" * (-len(compact) % 8)
        try:
            data = base64.b32decode(padded)
        except ValueError as e:
            raise ValueError(f"invalid principal text {text!r}") from e
        if len(data) < 4:
            raise ValueError(f"invalid principal text {text!r}")
        p = cls(data[4:])
        if data[:4] != zlib.crc32(p.raw).to_bytes(4, "big") or p.to_text() != norm:
            raise ValueError(f"invalid principal checksum {text!r}")
        return p

    def to_text(self) -> str:
        checksum = zlib.crc32(self.raw).to_bytes(4, "big")
        s = base64.b32encode(checksum + self.raw).decode("ascii").lower().rstrip("=")
        return "-".join(s[i:i + 5] for i in range(0, len(s), 5))

    @classmethod
    def management(cls) -> 'PrincipalId':
        return cls(b"")

    @classmethod
    def anonymous(cls) -> 'PrincipalId':
        return cls(b"\x04")

    @classmethod
    def self_authenticating(cls, der_public_key: bytes) -> 'PrincipalId':
        return cls(hashlib.sha224(der_public_key).digest() + b"\x02")

    @classmethod
    def from_canister_index(cls, index: int) -> 'PrincipalId':
        return cls(index.to_bytes(8, "big") + b"\x01\x01")

    def is_management(self) -> bool:
        return self.raw == b""

    def __eq__(self, other):
        return isinstance(other, PrincipalId) and other.raw == self.raw

    def __hash__(self):
        return hash(self.raw)

    def __str__(self):
        return self.to_text()

    def __repr__(self):
        return f"PrincipalId({self.to_text()!r})"


def is_principal_text(text: str) -> bool:
    try:
        PrincipalId.from_text(text)
        return True
    except ValueError:
        return False
