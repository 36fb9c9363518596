"""Authentication, encryption and replay traits of OpenVPN messages, and wrapped client keys."""

from __future__ import annotations

import struct
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

from .crypto import (
    AUTH_DIGEST_DEFAULT,
    AUTH_DIGESTS,
    CRYPT_CIPHER_DEFAULT,
    CRYPT_HMAC_BYTES_TOTAL,
    STATIC_KEY_BYTES_HALF,
    STATIC_KEY_BYTES_TOTAL,
    STATIC_KEY_FILE_BASE64,
    AuthDigest,
    CryptCipher,
    InvalidStaticKeyFileContents,
    StaticKey,
    read_key_file,
)

LENGTH_BYTES_TOTAL = 2
META_DATA_TYPE_BYTES_TOTAL = 1

WRAPPED_KEY_BYTES_MAX = 1024
WRAPPED_KEY_BYTES_MIN = CRYPT_HMAC_BYTES_TOTAL + STATIC_KEY_BYTES_TOTAL + LENGTH_BYTES_TOTAL

META_DATA_PAYLOAD_BYTES_MAX = WRAPPED_KEY_BYTES_MAX - META_DATA_TYPE_BYTES_TOTAL - WRAPPED_KEY_BYTES_MIN

TIMESTAMP_VALIDATION_INTERVAL = 15.0

_UINT16 = struct.Struct(">H")


class MessageError(ValueError):
    """A message could not be parsed, built, authenticated or encrypted."""

    default_message = "invalid message"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)


class InvalidAuthPrerequisites(MessageError):
    default_message = "invalid auth prerequisites"


class InvalidCryptPrerequisites(MessageError):
    default_message = "invalid crypt prerequisites"


class InvalidEncryptedLength(MessageError):
    default_message = "invalid encrypted length"


class InvalidHeaderOpcode(MessageError):
    default_message = "invalid header opcode"


class InvalidHMACLength(MessageError):
    default_message = "invalid HMAC length"


class InvalidPlainLength(MessageError):
    default_message = "invalid plain length"


class InvalidSourceLength(MessageError):
    default_message = "invalid source length"


class MissingReusableHeader(MessageError):
    default_message = "missing reusable header"


def _valid_signing_key(static_key: Optional[StaticKey]) -> bool:
    # A half key is accepted so that a server key may sign or check a wrapped key.
    return static_key is not None and len(static_key.key_bytes) in (STATIC_KEY_BYTES_TOTAL, STATIC_KEY_BYTES_HALF)


@dataclass
class AuthTrait:
    """The HMAC of a message and the digest it was computed with."""

    digest: Optional[AuthDigest] = None
    hmac: bytes = b""

    def _authenticate(
        self,
        digest: Optional[AuthDigest],
        produce: Callable[[], bytes],
        validate: Callable[[AuthDigest, bytes], bool],
    ) -> bool:
        plain = produce()
        size = len(self.hmac)

        if digest is not None:
            if size == digest.size and validate(digest, plain):
                self.digest = digest
                return True
            return False

        last = self.digest
        if last is not None and size == last.size and validate(last, plain):
            return True

        for candidate in AUTH_DIGESTS:
            if candidate is not last and size == candidate.size and validate(candidate, plain):
                self.digest = candidate
                return True
        return False

    def authenticate_on_client(
        self, digest: Optional[AuthDigest], static_key: Optional[StaticKey], produce: Callable[[], bytes]
    ) -> bool:
        """Check the HMAC of data composed on the server, trying digests in turn if none is given."""
        if not self.hmac or not _valid_signing_key(static_key):
            return False
        assert static_key is not None
        return self._authenticate(
            digest, produce, lambda d, plain: d.hmac_validate_on_client(static_key, plain, self.hmac)
        )

    def authenticate_on_server(
        self, digest: Optional[AuthDigest], static_key: Optional[StaticKey], produce: Callable[[], bytes]
    ) -> bool:
        """Check the HMAC of data composed on the client, trying digests in turn if none is given."""
        if not self.hmac or static_key is None or len(static_key.key_bytes) != STATIC_KEY_BYTES_TOTAL:
            return False
        return self._authenticate(
            digest, produce, lambda d, plain: d.hmac_validate_on_server(static_key, plain, self.hmac)
        )

    def sign_on_client(
        self, digest: Optional[AuthDigest], static_key: Optional[StaticKey], produce: Callable[[], bytes]
    ) -> None:
        """Compute the HMAC as the client would; the default digest is always the one used."""
        if not _valid_signing_key(static_key):
            raise InvalidAuthPrerequisites()
        assert static_key is not None
        plain = produce()
        self.digest = AUTH_DIGEST_DEFAULT
        self.hmac = AUTH_DIGEST_DEFAULT.hmac_generate_on_client(static_key, plain)

    def sign_on_server(
        self, digest: Optional[AuthDigest], static_key: Optional[StaticKey], produce: Callable[[], bytes]
    ) -> None:
        """Compute the HMAC as the server would; the default digest is always the one used."""
        if not _valid_signing_key(static_key):
            raise InvalidAuthPrerequisites()
        assert static_key is not None
        plain = produce()
        self.digest = AUTH_DIGEST_DEFAULT
        self.hmac = AUTH_DIGEST_DEFAULT.hmac_generate_on_server(static_key, plain)


@dataclass
class CryptTrait:
    """The encrypted part of a message and the cipher protecting it."""

    cipher: Optional[CryptCipher] = None
    encrypted: bytes = b""

    def _iv(self, static_key: Optional[StaticKey], auth: AuthTrait) -> bytes:
        if (
            static_key is None
            or self.cipher is None
            or auth.digest is None
            or len(auth.hmac) != auth.digest.size
        ):
            raise InvalidCryptPrerequisites()
        return auth.hmac[: min(self.cipher.size_block, auth.digest.size)]

    def decrypt_on_client(
        self, static_key: Optional[StaticKey], auth: AuthTrait, consume: Callable[[bytes], None]
    ) -> None:
        """Decrypt bytes the server encrypted and pass the plain text to consume."""
        iv = self._iv(static_key, auth)
        assert self.cipher is not None and static_key is not None
        consume(self.cipher.decrypt_on_client(static_key, iv, self.encrypted))

    def decrypt_on_server(
        self, static_key: Optional[StaticKey], auth: AuthTrait, consume: Callable[[bytes], None]
    ) -> None:
        """Decrypt bytes the client encrypted and pass the plain text to consume."""
        iv = self._iv(static_key, auth)
        assert self.cipher is not None and static_key is not None
        consume(self.cipher.decrypt_on_server(static_key, iv, self.encrypted))

    def encrypt_on_client(
        self, static_key: Optional[StaticKey], auth: AuthTrait, produce: Callable[[], bytes]
    ) -> None:
        """Encrypt the bytes produce returns as the client would."""
        iv = self._iv(static_key, auth)
        assert self.cipher is not None and static_key is not None
        plain = produce()
        self.encrypted = self.cipher.encrypt_on_client(static_key, iv, plain)
        if len(plain) != len(self.encrypted):
            raise InvalidEncryptedLength()

    def encrypt_on_server(
        self, static_key: Optional[StaticKey], auth: AuthTrait, produce: Callable[[], bytes]
    ) -> None:
        """Encrypt the bytes produce returns as the server would."""
        iv = self._iv(static_key, auth)
        assert self.cipher is not None and static_key is not None
        plain = produce()
        self.encrypted = self.cipher.encrypt_on_server(static_key, iv, plain)
        if len(plain) != len(self.encrypted):
            raise InvalidEncryptedLength()


@dataclass
class ReplayTrait:
    """The packet ID and timestamp used for replay protection."""

    replay_packet_id: int = 0
    replay_timestamp: int = 0

    def validate_replay_timestamp(self, now: Union[datetime, float, None] = None) -> bool:
        """Tell whether the timestamp lies strictly within 15 seconds of now."""
        if now is None:
            now_ts = time.time()
        elif isinstance(now, datetime):
            now_ts = now.timestamp()
        else:
            now_ts = float(now)
        return now_ts - TIMESTAMP_VALIDATION_INTERVAL < self.replay_timestamp < now_ts + TIMESTAMP_VALIDATION_INTERVAL


@dataclass
class WrappedKey(AuthTrait, CryptTrait):
    """A client key authenticated and encrypted with a server key (tls-crypt-v2)."""

    key_bytes: bytes = b""
    meta_type: int = 0
    payload: bytes = b""

    @property
    def static_key(self) -> StaticKey:
        """The client key as a static key."""
        return StaticKey(self.key_bytes)

    def authenticate(self, digest: Optional[AuthDigest], static_key: Optional[StaticKey]) -> bool:
        """Check the HMAC with a server key."""
        return self.authenticate_on_client(digest, static_key, self.to_bytes_auth)

    def decrypt_and_authenticate(self, digest: Optional[AuthDigest], static_key: Optional[StaticKey]) -> bool:
        """Decrypt the client key with a server key, then check its HMAC."""
        limit = WRAPPED_KEY_BYTES_MAX - LENGTH_BYTES_TOTAL - CRYPT_HMAC_BYTES_TOTAL
        if not STATIC_KEY_BYTES_TOTAL <= len(self.encrypted) <= limit:
            return False
        try:
            self.decrypt_on_client(static_key, self, self.load_plain)
        except MessageError:
            return False
        return self.authenticate(digest, static_key)

    def encrypt_and_sign(self, digest: Optional[AuthDigest], static_key: Optional[StaticKey]) -> None:
        """Encrypt the client key with a server key, then sign it."""
        self.encrypt_on_server(static_key, self, self.to_bytes_crypt)
        self.sign(digest, static_key)

    def sign(self, digest: Optional[AuthDigest], static_key: Optional[StaticKey]) -> None:
        """Compute the HMAC with a server key."""
        self.sign_on_client(digest, static_key, self.to_bytes_auth)

    def load_bytes(self, src: bytes) -> None:
        """Fill the HMAC and encrypted part from their wire form."""
        src = bytes(src)
        if (
            not WRAPPED_KEY_BYTES_MIN <= len(src) <= WRAPPED_KEY_BYTES_MAX
            or len(src) != _UINT16.unpack(src[-LENGTH_BYTES_TOTAL:])[0]
        ):
            raise InvalidSourceLength()
        self.digest = AUTH_DIGEST_DEFAULT
        self.hmac = src[:CRYPT_HMAC_BYTES_TOTAL]
        self.cipher = CRYPT_CIPHER_DEFAULT
        self.encrypted = src[CRYPT_HMAC_BYTES_TOTAL:-LENGTH_BYTES_TOTAL]

    def load_plain(self, plain: bytes) -> None:
        """Fill the key and metadata from decrypted bytes."""
        if len(plain) != len(self.encrypted):
            raise InvalidPlainLength()
        plain = bytes(plain)
        self.key_bytes = plain[:STATIC_KEY_BYTES_TOTAL]
        if len(plain) > STATIC_KEY_BYTES_TOTAL:
            self.meta_type = plain[STATIC_KEY_BYTES_TOTAL]
        if len(plain) > STATIC_KEY_BYTES_TOTAL + META_DATA_TYPE_BYTES_TOTAL:
            self.payload = plain[STATIC_KEY_BYTES_TOTAL + META_DATA_TYPE_BYTES_TOTAL :]

    def to_bytes(self) -> bytes:
        """Return the wire form: HMAC, encrypted part and total length."""
        total = len(self.hmac) + len(self.encrypted) + LENGTH_BYTES_TOTAL
        return bytes(self.hmac) + bytes(self.encrypted) + _UINT16.pack(total & 0xFFFF)

    def to_bytes_auth(self) -> bytes:
        """Return the bytes the HMAC is computed over."""
        body = self.to_bytes_crypt()
        total = LENGTH_BYTES_TOTAL + len(body) + CRYPT_HMAC_BYTES_TOTAL
        return _UINT16.pack(total & 0xFFFF) + body

    def to_bytes_crypt(self) -> bytes:
        """Return the plain bytes to be encrypted."""
        if self.payload:
            return bytes(self.key_bytes) + bytes((self.meta_type,)) + bytes(self.payload)
        return bytes(self.key_bytes)

    @classmethod
    def from_base64(cls, s: str) -> "WrappedKey":
        """Build from a base64 client key: the plain key followed by its wrapped form."""
        src = StaticKey.from_base64(s).key_bytes
        if not (
            WRAPPED_KEY_BYTES_MIN + STATIC_KEY_BYTES_TOTAL
            <= len(src)
            <= WRAPPED_KEY_BYTES_MAX + STATIC_KEY_BYTES_TOTAL
        ):
            raise InvalidSourceLength()
        wrapped = cls(key_bytes=src[:STATIC_KEY_BYTES_TOTAL])
        wrapped.load_bytes(src[STATIC_KEY_BYTES_TOTAL:])
        return wrapped

    @classmethod
    def from_client_key_file(cls, path: str) -> "WrappedKey":
        """Load a tls-crypt-v2 client key file."""
        raw = StaticKey.from_base64(read_key_file(path, STATIC_KEY_FILE_BASE64, 0)).key_bytes
        if not WRAPPED_KEY_BYTES_MIN <= len(raw) <= WRAPPED_KEY_BYTES_MAX:
            raise InvalidStaticKeyFileContents()
        wrapped = cls()
        wrapped.load_bytes(raw[STATIC_KEY_BYTES_TOTAL:])
        wrapped.key_bytes = raw[:STATIC_KEY_BYTES_TOTAL]
        return wrapped