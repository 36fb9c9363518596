"""OpenVPN client reset messages: parsing, building, matching and protection."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .crypto import (
    AUTH_DIGEST_DEFAULT,
    AUTH_DIGEST_SIZES,
    AUTH_HMAC_BYTES_MAX,
    AUTH_HMAC_BYTES_MIN,
    CRYPT_CIPHER_DEFAULT,
    CRYPT_HMAC_BYTES_TOTAL,
    STATIC_KEY_BYTES_TOTAL,
    AuthDigest,
    StaticKey,
)
from .wrapped import (
    LENGTH_BYTES_TOTAL,
    META_DATA_PAYLOAD_BYTES_MAX,
    META_DATA_TYPE_BYTES_TOTAL,
    AuthTrait,
    CryptTrait,
    InvalidHeaderOpcode,
    InvalidHMACLength,
    InvalidPlainLength,
    InvalidSourceLength,
    MessageError,
    MissingReusableHeader,
    ReplayTrait,
    WrappedKey,
)

OPCODE_CONTROL_HARD_RESET_CLIENT_V2 = 7
OPCODE_CONTROL_HARD_RESET_CLIENT_V3 = 10

OPCODE_SHIFT = 3
KEY_ID_MASK = (1 << OPCODE_SHIFT) - 1

ACK_PACKET_IDS_COUNT_BYTES_TOTAL = 1
OPCODE_KEY_ID_BYTES_TOTAL = 1
PACKET_ID_BYTES_TOTAL = 4
SESSION_ID_BYTES_TOTAL = 8
TIMESTAMP_BYTES_TOTAL = 4

MESSAGE_PLAIN_BYTES_TOTAL_HL = SESSION_ID_BYTES_TOTAL + ACK_PACKET_IDS_COUNT_BYTES_TOTAL + PACKET_ID_BYTES_TOTAL
MESSAGE_PLAIN_BYTES_TOTAL = OPCODE_KEY_ID_BYTES_TOTAL + MESSAGE_PLAIN_BYTES_TOTAL_HL
MESSAGE_AUTH_BYTES_MAX_HL = (
    MESSAGE_PLAIN_BYTES_TOTAL_HL + AUTH_HMAC_BYTES_MAX + PACKET_ID_BYTES_TOTAL + TIMESTAMP_BYTES_TOTAL
)
MESSAGE_AUTH_BYTES_MAX = OPCODE_KEY_ID_BYTES_TOTAL + MESSAGE_AUTH_BYTES_MAX_HL
MESSAGE_AUTH_BYTES_MIN_HL = (
    MESSAGE_PLAIN_BYTES_TOTAL_HL + AUTH_HMAC_BYTES_MIN + PACKET_ID_BYTES_TOTAL + TIMESTAMP_BYTES_TOTAL
)
MESSAGE_AUTH_BYTES_MIN = OPCODE_KEY_ID_BYTES_TOTAL + MESSAGE_AUTH_BYTES_MIN_HL
MESSAGE_CRYPT_BYTES_TOTAL_HL = (
    MESSAGE_PLAIN_BYTES_TOTAL_HL + PACKET_ID_BYTES_TOTAL + TIMESTAMP_BYTES_TOTAL + CRYPT_HMAC_BYTES_TOTAL
)
MESSAGE_CRYPT_BYTES_TOTAL = OPCODE_KEY_ID_BYTES_TOTAL + MESSAGE_CRYPT_BYTES_TOTAL_HL
MESSAGE_CRYPT2_BYTES_MIN_HL = (
    MESSAGE_CRYPT_BYTES_TOTAL_HL + LENGTH_BYTES_TOTAL + CRYPT_HMAC_BYTES_TOTAL + STATIC_KEY_BYTES_TOTAL
)
MESSAGE_CRYPT2_BYTES_MIN = OPCODE_KEY_ID_BYTES_TOTAL + MESSAGE_CRYPT2_BYTES_MIN_HL
MESSAGE_CRYPT2_BYTES_MAX_HL = MESSAGE_CRYPT2_BYTES_MIN_HL + META_DATA_TYPE_BYTES_TOTAL + META_DATA_PAYLOAD_BYTES_MAX
MESSAGE_CRYPT2_BYTES_MAX = OPCODE_KEY_ID_BYTES_TOTAL + MESSAGE_CRYPT2_BYTES_MAX_HL

_U32 = struct.Struct(">I")
_U64 = struct.Struct(">Q")


def _u32(data: bytes) -> int:
    return _U32.unpack(data)[0]


def _split_header(src: bytes, opcode: int) -> "tuple[MessageHeader, bytes]":
    header = MessageHeader.from_bytes(src[:OPCODE_KEY_ID_BYTES_TOTAL])
    if header.opcode != opcode:
        raise InvalidHeaderOpcode()
    return header, src[OPCODE_KEY_ID_BYTES_TOTAL:]


@dataclass
class MessageHeader:
    """The one-byte header: opcode in the high 5 bits, key ID in the low 3 bits."""

    opcode: int = 0
    key_id: int = 0

    @classmethod
    def from_bytes(cls, src: bytes) -> "MessageHeader":
        if len(src) != OPCODE_KEY_ID_BYTES_TOTAL:
            raise InvalidSourceLength()
        return cls(opcode=src[0] >> OPCODE_SHIFT, key_id=src[0] & KEY_ID_MASK)

    def to_bytes(self) -> bytes:
        return bytes(((self.key_id | (self.opcode << OPCODE_SHIFT)) & 0xFF,))

    def _header_fields(self) -> dict:
        return {"opcode": self.opcode, "key_id": self.key_id}


@dataclass
class MessagePlain(MessageHeader):
    """A P_CONTROL_HARD_RESET_CLIENT_V2 message with no authentication."""

    local_session_id: int = 0
    prev_packet_ids_count: int = 0
    this_packet_id: int = 0

    @classmethod
    def from_bytes(cls, src: bytes) -> "MessagePlain":
        src = bytes(src)
        if len(src) != MESSAGE_PLAIN_BYTES_TOTAL:
            raise InvalidSourceLength()
        header, rest = _split_header(src, OPCODE_CONTROL_HARD_RESET_CLIENT_V2)
        return cls.from_bytes_headless(rest, header)

    @classmethod
    def from_bytes_headless(cls, src: bytes, header: Optional[MessageHeader]) -> "MessagePlain":
        src = bytes(src)
        if len(src) != MESSAGE_PLAIN_BYTES_TOTAL_HL:
            raise InvalidSourceLength()
        if header is None:
            raise MissingReusableHeader()
        return cls(
            opcode=header.opcode,
            key_id=header.key_id,
            local_session_id=_U64.unpack(src[:SESSION_ID_BYTES_TOTAL])[0],
            prev_packet_ids_count=src[SESSION_ID_BYTES_TOTAL],
            this_packet_id=_u32(src[-PACKET_ID_BYTES_TOTAL:]),
        )

    def match(self) -> bool:
        return self.local_session_id > 0 and self.prev_packet_ids_count == 0 and self.this_packet_id == 0

    def _header(self) -> bytes:
        return MessageHeader.to_bytes(self)

    def to_bytes(self) -> bytes:
        return (
            self._header()
            + _U64.pack(self.local_session_id)
            + bytes((self.prev_packet_ids_count,))
            + _U32.pack(self.this_packet_id)
        )


@dataclass
class MessageAuth(MessagePlain, AuthTrait, ReplayTrait):
    """A P_CONTROL_HARD_RESET_CLIENT_V2 message with an HMAC (tls-auth)."""

    @classmethod
    def from_bytes(cls, src: bytes) -> "MessageAuth":
        src = bytes(src)
        if not MESSAGE_AUTH_BYTES_MIN <= len(src) <= MESSAGE_AUTH_BYTES_MAX:
            raise InvalidSourceLength()
        header, rest = _split_header(src, OPCODE_CONTROL_HARD_RESET_CLIENT_V2)
        return cls.from_bytes_headless(rest, header)

    @classmethod
    def from_bytes_headless(cls, src: bytes, header: Optional[MessageHeader]) -> "MessageAuth":
        src = bytes(src)
        if not MESSAGE_AUTH_BYTES_MIN_HL <= len(src) <= MESSAGE_AUTH_BYTES_MAX_HL:
            raise InvalidSourceLength()
        if header is None:
            raise MissingReusableHeader()
        end = len(src) - 2 * PACKET_ID_BYTES_TOTAL - OPCODE_KEY_ID_BYTES_TOTAL - TIMESTAMP_BYTES_TOTAL
        mac = src[SESSION_ID_BYTES_TOTAL:end]
        if len(mac) not in AUTH_DIGEST_SIZES:
            raise InvalidHMACLength()
        return cls(
            opcode=header.opcode,
            key_id=header.key_id,
            local_session_id=_U64.unpack(src[:SESSION_ID_BYTES_TOTAL])[0],
            hmac=mac,
            replay_packet_id=_u32(src[end : end + 4]),
            replay_timestamp=_u32(src[end + 4 : end + 8]),
            prev_packet_ids_count=src[end + 8],
            this_packet_id=_u32(src[end + 9 :]),
        )

    def authenticate(self, digest: Optional[AuthDigest], static_key: Optional[StaticKey]) -> bool:
        return self.authenticate_on_server(digest, static_key, self.to_bytes_auth)

    def match(
        self,
        ignore_timestamp: bool = False,
        ignore_crypto: bool = False,
        digest: Optional[AuthDigest] = None,
        static_key: Optional[StaticKey] = None,
    ) -> bool:
        return (
            MessagePlain.match(self)
            and self.replay_packet_id == 1
            and (ignore_timestamp or self.validate_replay_timestamp())
            and (digest is None or digest.size == len(self.hmac))
            and (ignore_crypto or static_key is None or self.authenticate(digest, static_key))
        )

    def sign(self, digest: Optional[AuthDigest], static_key: Optional[StaticKey]) -> None:
        self.sign_on_client(digest, static_key, self.to_bytes_auth)

    def to_bytes(self) -> bytes:
        return (
            self._header()
            + _U64.pack(self.local_session_id)
            + bytes(self.hmac)
            + _U32.pack(self.replay_packet_id)
            + _U32.pack(self.replay_timestamp)
            + bytes((self.prev_packet_ids_count,))
            + _U32.pack(self.this_packet_id)
        )

    def to_bytes_auth(self) -> bytes:
        """Return the bytes the HMAC is computed over."""
        return (
            _U32.pack(self.replay_packet_id)
            + _U32.pack(self.replay_timestamp)
            + self._header()
            + _U64.pack(self.local_session_id)
            + bytes((self.prev_packet_ids_count,))
            + _U32.pack(self.this_packet_id)
        )


@dataclass
class MessageCrypt(MessageAuth, CryptTrait):
    """A P_CONTROL_HARD_RESET_CLIENT_V2 message with an HMAC and encryption (tls-crypt)."""

    @classmethod
    def from_bytes(cls, src: bytes) -> "MessageCrypt":
        src = bytes(src)
        if len(src) != MESSAGE_CRYPT_BYTES_TOTAL:
            raise InvalidSourceLength()
        header, rest = _split_header(src, OPCODE_CONTROL_HARD_RESET_CLIENT_V2)
        return cls.from_bytes_headless(rest, header)

    @classmethod
    def from_bytes_headless(cls, src: bytes, header: Optional[MessageHeader]) -> "MessageCrypt":
        src = bytes(src)
        if len(src) != MESSAGE_CRYPT_BYTES_TOTAL_HL:
            raise InvalidSourceLength()
        if header is None:
            raise MissingReusableHeader()
        return cls._parse(src, header)

    @classmethod
    def _parse(cls, src: bytes, header: MessageHeader, **extra):
        off = SESSION_ID_BYTES_TOTAL
        mac_end = off + 8 + AUTH_DIGEST_DEFAULT.size
        return cls(
            opcode=header.opcode,
            key_id=header.key_id,
            local_session_id=_U64.unpack(src[:off])[0],
            replay_packet_id=_u32(src[off : off + 4]),
            replay_timestamp=_u32(src[off + 4 : off + 8]),
            digest=AUTH_DIGEST_DEFAULT,
            hmac=src[off + 8 : mac_end],
            cipher=CRYPT_CIPHER_DEFAULT,
            encrypted=src[mac_end:],
            **extra,
        )

    def authenticate(self, digest: Optional[AuthDigest], static_key: Optional[StaticKey]) -> bool:
        return self.authenticate_on_server(digest, static_key, self.to_bytes_auth)

    def decrypt_and_authenticate(self, digest: Optional[AuthDigest], static_key: Optional[StaticKey]) -> bool:
        """Decrypt the encrypted part with the client's key, then check the HMAC."""
        if len(self.encrypted) != OPCODE_KEY_ID_BYTES_TOTAL + PACKET_ID_BYTES_TOTAL:
            return False
        try:
            self.decrypt_on_server(static_key, self, self.load_plain)
        except MessageError:
            return False
        return MessageCrypt.authenticate(self, digest, static_key)

    def encrypt_and_sign(self, digest: Optional[AuthDigest], static_key: Optional[StaticKey]) -> None:
        self.encrypt_on_client(static_key, self, self.to_bytes_crypt)
        MessageCrypt.sign(self, digest, static_key)

    def load_plain(self, plain: bytes) -> None:
        """Fill the packet counters from decrypted bytes."""
        if len(plain) != len(self.encrypted):
            raise InvalidPlainLength()
        plain = bytes(plain)
        self.prev_packet_ids_count = plain[0]
        self.this_packet_id = _u32(plain[OPCODE_KEY_ID_BYTES_TOTAL:])

    def match(
        self,
        ignore_timestamp: bool = False,
        ignore_crypto: bool = False,
        digest: Optional[AuthDigest] = None,
        static_key: Optional[StaticKey] = None,
    ) -> bool:
        return (
            self.local_session_id > 0
            and self.replay_packet_id == 1
            and (ignore_timestamp or self.validate_replay_timestamp())
            and (
                ignore_crypto
                or static_key is None
                or (
                    MessageCrypt.decrypt_and_authenticate(self, digest, static_key)
                    and self.prev_packet_ids_count == 0
                    and self.this_packet_id == 0
                )
            )
        )

    def sign(self, digest: Optional[AuthDigest], static_key: Optional[StaticKey]) -> None:
        self.sign_on_client(digest, static_key, self.to_bytes_auth)

    def to_bytes(self) -> bytes:
        return (
            self._header()
            + _U64.pack(self.local_session_id)
            + _U32.pack(self.replay_packet_id)
            + _U32.pack(self.replay_timestamp)
            + bytes(self.hmac)
            + bytes(self.encrypted)
        )

    def to_bytes_auth(self) -> bytes:
        return (
            self._header()
            + _U64.pack(self.local_session_id)
            + _U32.pack(self.replay_packet_id)
            + _U32.pack(self.replay_timestamp)
            + bytes((self.prev_packet_ids_count,))
            + _U32.pack(self.this_packet_id)
        )

    def to_bytes_crypt(self) -> bytes:
        return bytes((self.prev_packet_ids_count,)) + _U32.pack(self.this_packet_id)


@dataclass
class MessageCrypt2(MessageCrypt):
    """A P_CONTROL_HARD_RESET_CLIENT_V3 message carrying a wrapped client key (tls-crypt-v2)."""

    wrapped: WrappedKey = field(default_factory=WrappedKey)

    @classmethod
    def from_bytes(cls, src: bytes) -> "MessageCrypt2":
        src = bytes(src)
        if not MESSAGE_CRYPT2_BYTES_MIN <= len(src) <= MESSAGE_CRYPT2_BYTES_MAX:
            raise InvalidSourceLength()
        header, rest = _split_header(src, OPCODE_CONTROL_HARD_RESET_CLIENT_V3)
        return cls.from_bytes_headless(rest, header)

    @classmethod
    def from_bytes_headless(cls, src: bytes, header: Optional[MessageHeader]) -> "MessageCrypt2":
        src = bytes(src)
        if not MESSAGE_CRYPT2_BYTES_MIN_HL <= len(src) <= MESSAGE_CRYPT2_BYTES_MAX_HL:
            raise InvalidSourceLength()
        if header is None:
            raise MissingReusableHeader()
        wrapped = WrappedKey()
        wrapped.load_bytes(src[MESSAGE_CRYPT_BYTES_TOTAL_HL:])
        return cls._parse(src[:MESSAGE_CRYPT_BYTES_TOTAL_HL], header, wrapped=wrapped)

    def decrypt_and_authenticate(self, digest: Optional[AuthDigest], static_key: Optional[StaticKey]) -> bool:
        """Unwrap the client key with a server key, then decrypt and check the message."""
        if not self.wrapped.decrypt_and_authenticate(digest, static_key):
            return False
        return MessageCrypt.decrypt_and_authenticate(self, digest, self.wrapped.static_key)

    def encrypt_and_sign(self, digest: Optional[AuthDigest], static_key: Optional[StaticKey]) -> None:
        self.wrapped.encrypt_and_sign(digest, static_key)
        MessageCrypt.encrypt_and_sign(self, digest, self.wrapped.static_key)

    def match(
        self,
        ignore_timestamp: bool = False,
        ignore_crypto: bool = False,
        digest: Optional[AuthDigest] = None,
        static_key: Optional[StaticKey] = None,
        client_keys: Optional[Sequence[WrappedKey]] = None,
    ) -> bool:
        if not (
            self.local_session_id > 0
            and self.replay_packet_id in (1, 0x0F000001)
            and (ignore_timestamp or self.validate_replay_timestamp())
        ):
            return False
        if ignore_crypto:
            return True
        if client_keys:
            for key in client_keys:
                if bytes(key.hmac) == bytes(self.wrapped.hmac) and bytes(key.encrypted) == bytes(
                    self.wrapped.encrypted
                ):
                    return (
                        MessageCrypt.decrypt_and_authenticate(self, digest, key.static_key)
                        and self.prev_packet_ids_count == 0
                        and self.this_packet_id == 0
                    )
            return False
        return static_key is None or (
            self.decrypt_and_authenticate(digest, static_key)
            and self.prev_packet_ids_count == 0
            and self.this_packet_id == 0
        )

    def to_bytes(self) -> bytes:
        return MessageCrypt.to_bytes(self) + self.wrapped.to_bytes()