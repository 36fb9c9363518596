"""Static keys, HMAC digests and ciphers protecting OpenVPN control messages."""

from __future__ import annotations

import base64
import binascii
import functools
import hashlib
import hmac
import re
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

AUTH_HMAC_BYTES_MAX = 64
AUTH_HMAC_BYTES_MIN = 16

CRYPT_HMAC_BYTES_TOTAL = 32

STATIC_KEY_BYTES_TOTAL = 256
STATIC_KEY_BYTES_HALF = STATIC_KEY_BYTES_TOTAL // 2
STATIC_KEY_BYTES_QUARTER = STATIC_KEY_BYTES_TOTAL // 4

_KEY_FILE_READ_LIMIT = 1024

STATIC_KEY_FILE_BASE64 = re.compile(
    r"(?:#.*?\r?\n)*"
    r"-----BEGIN OpenVPN tls-crypt-v2 (?:client|server) key-----\r?\n"
    r"([0-9a-zA-Z+=/\r\n]+)"
    r"-----END OpenVPN tls-crypt-v2 (?:client|server) key-----(?:\r?\n)?"
)

STATIC_KEY_FILE_HEX = re.compile(
    r"(?:#.*?\r?\n)*"
    r"-----BEGIN OpenVPN Static key V1-----\r?\n"
    r"([0-9a-fA-F\r\n]+)"
    r"-----END OpenVPN Static key V1-----(?:\r?\n)?"
)


class InvalidStaticKeyFileContents(ValueError):
    """A key file does not hold a key in the expected form."""

    def __init__(self, message: str = "invalid static key file contents") -> None:
        super().__init__(message)


class Hasher(Protocol):
    """The part of a hash object that HMAC computation needs."""

    block_size: int

    def update(self, data: bytes) -> None: ...

    def digest(self) -> bytes: ...


class _FixedLengthShake:
    """A SHAKE hash producing a fixed number of output bytes."""

    def __init__(self, factory: Callable[[], "hashlib._Hash"], size: int) -> None:
        self._hash = factory()
        self._size = size
        self.block_size = self._hash.block_size

    def update(self, data: bytes) -> None:
        self._hash.update(data)

    def digest(self) -> bytes:
        return self._hash.digest(self._size)  # type: ignore[call-arg]


def hmac_digest(creator: Callable[[], Hasher], key: bytes, plain: bytes) -> bytes:
    """Compute an HMAC of plain with key using hashes made by creator."""
    inner = creator()
    block_size = inner.block_size
    if len(key) > block_size:
        hashed = creator()
        hashed.update(key)
        key = hashed.digest()
    key = key.ljust(block_size, b"\x00")
    inner.update(bytes(b ^ 0x36 for b in key))
    inner.update(plain)
    outer = creator()
    outer.update(bytes(b ^ 0x5C for b in key))
    outer.update(inner.digest())
    return outer.digest()


def _decode_base64(s: str) -> bytes:
    return base64.b64decode(s.replace("\r", "").replace("\n", ""), validate=True)


def _decode_hex(s: str) -> bytes:
    return binascii.unhexlify(s)


@dataclass(frozen=True)
class StaticKey:
    """An OpenVPN static key used to authenticate and encrypt control messages.

    For authentication, a bidirectional key uses the second quarter on both sides.
    Otherwise the client signs with the fourth quarter (normal direction) or the
    second quarter (inverse direction). Bidi takes precedence over inverse.
    For encryption the client uses the third quarter and decrypts with the first
    one, unless the direction is inverse; the server does the opposite.
    """

    key_bytes: bytes = b""
    inverse: bool = False
    bidi: bool = False

    def quarter(self, q: int) -> bytes:
        """Return the q-th (0-based) quarter of the key bytes."""
        q %= 4
        size = len(self.key_bytes)
        if size < STATIC_KEY_BYTES_TOTAL:
            q %= 2
        if size < STATIC_KEY_BYTES_HALF:
            q = 0
        if size < STATIC_KEY_BYTES_QUARTER:
            return self.key_bytes
        return self.key_bytes[q * STATIC_KEY_BYTES_QUARTER : (q + 1) * STATIC_KEY_BYTES_QUARTER]

    @staticmethod
    def _cut(data: bytes, size: int) -> bytes:
        return data[: min(size, STATIC_KEY_BYTES_QUARTER)]

    def client_auth_bytes(self) -> bytes:
        return self.quarter(1 if self.inverse or self.bidi else 3)

    def client_auth_key(self, size: int) -> bytes:
        return self._cut(self.client_auth_bytes(), size)

    def client_encrypt_bytes(self) -> bytes:
        return self.quarter(0 if self.inverse else 2)

    def client_encrypt_key(self, size: int) -> bytes:
        return self._cut(self.client_encrypt_bytes(), size)

    def client_decrypt_bytes(self) -> bytes:
        return self.quarter(2 if self.inverse else 0)

    def client_decrypt_key(self, size: int) -> bytes:
        return self._cut(self.client_decrypt_bytes(), size)

    def server_auth_bytes(self) -> bytes:
        return self.quarter(3 if self.inverse and not self.bidi else 1)

    def server_auth_key(self, size: int) -> bytes:
        return self._cut(self.server_auth_bytes(), size)

    def server_encrypt_bytes(self) -> bytes:
        return self.client_decrypt_bytes()

    def server_encrypt_key(self, size: int) -> bytes:
        return self.client_decrypt_key(size)

    def server_decrypt_bytes(self) -> bytes:
        return self.client_encrypt_bytes()

    def server_decrypt_key(self, size: int) -> bytes:
        return self.client_encrypt_key(size)

    def to_base64(self) -> str:
        return base64.b64encode(self.key_bytes).decode("ascii")

    def to_hex(self) -> str:
        return self.key_bytes.hex()

    @classmethod
    def from_base64(cls, s: str, inverse: bool = False, bidi: bool = False) -> "StaticKey":
        """Build a key from a base64 string; raise ValueError if it is malformed."""
        return cls(_decode_base64(s), inverse=inverse, bidi=bidi)

    @classmethod
    def from_hex(cls, s: str, inverse: bool = False, bidi: bool = False) -> "StaticKey":
        """Build a key from a hex string; raise ValueError if it is malformed."""
        return cls(_decode_hex(s), inverse=inverse, bidi=bidi)

    @classmethod
    def from_group_key_file(cls, path: str) -> "StaticKey":
        """Load a group (tls-auth / tls-crypt) key file."""
        return cls.from_hex(read_key_file(path, STATIC_KEY_FILE_HEX, STATIC_KEY_BYTES_TOTAL * 2))

    @classmethod
    def from_server_key_file(cls, path: str) -> "StaticKey":
        """Load a tls-crypt-v2 server key file."""
        encoded_len = (STATIC_KEY_BYTES_HALF + 2) // 3 * 4
        return cls.from_base64(read_key_file(path, STATIC_KEY_FILE_BASE64, encoded_len))


def read_key_file(path: str, pattern: "re.Pattern[str]", size: int) -> str:
    """Return the encoded key text held in a key file, without line breaks.

    Only the first kilobyte of the file is looked at. A size of 0 accepts any length.
    """
    with open(path, "rb") as file:
        data = file.read(_KEY_FILE_READ_LIMIT)
    if data:
        found = pattern.fullmatch(data.decode("latin-1"))
        if found is not None:
            text = found.group(1).replace("\r", "").replace("\n", "")
            if size == 0 or len(text) == size:
                return text
    raise InvalidStaticKeyFileContents()


@dataclass(frozen=True, eq=False)
class AuthDigest:
    """A digest used for computing HMACs of control messages."""

    names: tuple[str, ...]
    size: int
    creator: Optional[Callable[[], Hasher]] = None
    generator: Optional[Callable[[bytes, bytes], bytes]] = None

    def __post_init__(self) -> None:
        if self.creator is None and self.generator is None:
            raise ValueError("an auth digest needs a creator or a generator")

    def generate(self, key: bytes, plain: bytes) -> bytes:
        """Compute an HMAC of plain with key."""
        if self.generator is not None:
            return self.generator(key, plain)
        assert self.creator is not None
        return hmac_digest(self.creator, key, plain)

    def hmac_generate_on_client(self, static_key: StaticKey, plain: bytes) -> bytes:
        return self.generate(static_key.client_auth_key(self.size), plain)

    def hmac_generate_on_server(self, static_key: StaticKey, plain: bytes) -> bytes:
        return self.generate(static_key.server_auth_key(self.size), plain)

    def hmac_validate_on_client(self, static_key: StaticKey, plain: bytes, expected: bytes) -> bool:
        """Check an HMAC the client received from the server."""
        return hmac.compare_digest(self.hmac_generate_on_server(static_key, plain), bytes(expected))

    def hmac_validate_on_server(self, static_key: StaticKey, plain: bytes, expected: bytes) -> bool:
        """Check an HMAC the server received from the client."""
        return hmac.compare_digest(self.hmac_generate_on_client(static_key, plain), bytes(expected))


@dataclass(frozen=True, eq=False)
class CryptCipher:
    """A cipher used for encrypting and decrypting control messages."""

    names: tuple[str, ...]
    size_block: int
    size_key: int
    encryptor: Callable[[bytes, bytes, bytes], bytes]
    decryptor: Callable[[bytes, bytes, bytes], bytes]

    def decrypt_on_client(self, static_key: StaticKey, iv: bytes, encrypted: bytes) -> bytes:
        return self.decryptor(static_key.client_decrypt_key(self.size_key), iv, encrypted)

    def decrypt_on_server(self, static_key: StaticKey, iv: bytes, encrypted: bytes) -> bytes:
        return self.decryptor(static_key.server_decrypt_key(self.size_key), iv, encrypted)

    def encrypt_on_client(self, static_key: StaticKey, iv: bytes, plain: bytes) -> bytes:
        return self.encryptor(static_key.client_encrypt_key(self.size_key), iv, plain)

    def encrypt_on_server(self, static_key: StaticKey, iv: bytes, plain: bytes) -> bytes:
        return self.encryptor(static_key.server_encrypt_key(self.size_key), iv, plain)


def _hashlib_creator(name: str) -> Callable[[], Hasher]:
    return functools.partial(hashlib.new, name)


def _shake_creator(factory: Callable[[], "hashlib._Hash"], size: int) -> Callable[[], Hasher]:
    return functools.partial(_FixedLengthShake, factory, size)


def _md5_sha1_generate(key: bytes, plain: bytes) -> bytes:
    return hmac.digest(key[:16], plain, "md5") + hmac.digest(key[:20], plain, "sha1")


def _aes_ctr(key: bytes, iv: bytes, data: bytes) -> bytes:
    context = Cipher(algorithms.AES(bytes(key)), modes.CTR(bytes(iv))).encryptor()
    return context.update(bytes(data)) + context.finalize()


AUTH_DIGESTS: tuple[AuthDigest, ...] = (
    AuthDigest(("MD5", "SSL3-MD5", "md5", "ssl3-md5"), 16, _hashlib_creator("md5")),
    AuthDigest(("SHA-1", "SHA1", "SSL3-SHA1", "sha-1", "sha1", "ssl3-sha1"), 20, _hashlib_creator("sha1")),
    AuthDigest(("SHA-224", "SHA2-224", "SHA224", "sha-224", "sha2-224", "sha224"), 28, _hashlib_creator("sha224")),
    AuthDigest(("SHA-256", "SHA2-256", "SHA256", "sha-256", "sha2-256", "sha256"), 32, _hashlib_creator("sha256")),
    AuthDigest(("SHA-384", "SHA2-384", "SHA384", "sha-384", "sha2-384", "sha384"), 48, _hashlib_creator("sha384")),
    AuthDigest(("SHA-512", "SHA2-512", "SHA512", "sha-512", "sha2-512", "sha512"), 64, _hashlib_creator("sha512")),
    AuthDigest(
        ("SHA-512/224", "SHA2-512/224", "SHA512-224", "sha-512/224", "sha2-512/224", "sha512-224"),
        28,
        _hashlib_creator("sha512_224"),
    ),
    AuthDigest(
        ("SHA-512/256", "SHA2-512/256", "SHA512-256", "sha-512/256", "sha2-512/256", "sha512-256"),
        32,
        _hashlib_creator("sha512_256"),
    ),
    AuthDigest(("SHA3-224", "sha3-224"), 28, _hashlib_creator("sha3_224")),
    AuthDigest(("SHA3-256", "sha3-256"), 32, _hashlib_creator("sha3_256")),
    AuthDigest(("SHA3-384", "sha3-384"), 48, _hashlib_creator("sha3_384")),
    AuthDigest(("SHA3-512", "sha3-512"), 64, _hashlib_creator("sha3_512")),
    AuthDigest(("BLAKE2s-256", "BLAKE2S-256", "blake2s-256", "blake2S-256"), 32, hashlib.blake2s),
    AuthDigest(("BLAKE2b-512", "BLAKE2B-512", "blake2b-512", "blake2B-512"), 64, hashlib.blake2b),
    AuthDigest(("SHAKE-128", "SHAKE128", "shake-128", "shake128"), 32, _shake_creator(hashlib.shake_128, 32)),
    AuthDigest(("SHAKE-256", "SHAKE256", "shake-256", "shake256"), 64, _shake_creator(hashlib.shake_256, 64)),
    # This combination matches common generators but not the HMACs that OpenVPN builds produce.
    AuthDigest(
        ("MD5+SHA1", "MD5-SHA1", "MD5SHA1", "md5+sha1", "md5-sha1", "md5sha1"),
        16 + 20,
        generator=_md5_sha1_generate,
    ),
)

AUTH_DIGEST_SIZES: tuple[int, ...] = tuple(sorted({digest.size for digest in AUTH_DIGESTS}))

CRYPT_CIPHERS: tuple[CryptCipher, ...] = (
    CryptCipher(
        names=("AES-256-CTR", "aes-256-ctr"),
        size_block=16,
        size_key=32,
        encryptor=_aes_ctr,
        decryptor=_aes_ctr,
    ),
)


def find_auth_digest(name: str) -> Optional[AuthDigest]:
    """Return the digest known under name, or None."""
    return next((digest for digest in AUTH_DIGESTS if name in digest.names), None)


def find_crypt_cipher(name: str) -> Optional[CryptCipher]:
    """Return the cipher known under name, or None."""
    return next((cipher for cipher in CRYPT_CIPHERS if name in cipher.names), None)


AUTH_DIGEST_DEFAULT: AuthDigest = find_auth_digest("SHA-256")  # type: ignore[assignment]
CRYPT_CIPHER_DEFAULT: CryptCipher = find_crypt_cipher("AES-256-CTR")  # type: ignore[assignment]