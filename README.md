# l4match

Tools for deciding, from the first bytes a client sends, which protocol a
connection speaks. They are meant for layer 4 multiplexers that peek at the
opening of a stream before handing it on.

Two protocols are covered:

- **PostgreSQL** opening messages: `SSLRequest`, `CancelRequest` and a
  protocol 3 `StartupMessage` with a well-formed parameter block, through a
  ready-to-use matcher.
- **OpenVPN** client reset messages in the `plain`, `auth` (tls-auth),
  `crypt` (tls-crypt) and `crypt2` (tls-crypt-v2) forms: parsing,
  serialising, signing, encrypting, and checking that a message is a valid
  client reset. When keys are supplied, messages are decrypted and their
  HMACs verified.

## Requirements

Python 3.10 or later and the `cryptography` distribution.

## PostgreSQL

```python
import io

from l4match.postgres import MatchPostgres

ssl_request = bytes.fromhex("0000000804d2162f")
assert MatchPostgres().match(io.BytesIO(ssl_request))
```

`MatchPostgres.match` reads from any binary stream with a `read` method. A
stream that ends before a whole message arrives does not match; a declared
payload larger than 16 KiB is rejected. The helper
`validate_startup_message_format` checks the `key\0value\0...\0` parameter
block of a startup message on its own.

## OpenVPN

The pieces live in three modules.

### `l4match.openvpn.crypto`

- `StaticKey`: a 2048-bit group key (or a 1024-bit tls-crypt-v2 server key)
  with `inverse` and `bidi` direction flags. Its `client_*` and `server_*`
  methods return the quarter of the key used for authentication,
  encryption or decryption on each side. Build one with
  `StaticKey.from_hex`, `StaticKey.from_base64`,
  `StaticKey.from_group_key_file` (an `OpenVPN Static key V1` file) or
  `StaticKey.from_server_key_file` (a tls-crypt-v2 server key file). A
  file that does not hold a key in the expected form raises
  `InvalidStaticKeyFileContents`.
- `AUTH_DIGESTS`: the supported HMAC digests (MD5, SHA-1, the SHA-2 and
  SHA-3 families, SHA-512/224 and /256, BLAKE2s-256, BLAKE2b-512,
  SHAKE-128, SHAKE-256 and MD5+SHA1). `find_auth_digest` looks one up by
  any of its common names, e.g. `"SHA-256"` or `"sha256"`.
- `CRYPT_CIPHERS` with AES-256-CTR, found with `find_crypt_cipher`.

### `l4match.openvpn.wrapped`

- `WrappedKey`: a tls-crypt-v2 client key, loaded with
  `WrappedKey.from_base64` or `WrappedKey.from_client_key_file`. It can be
  unwrapped and checked with a server key (`decrypt_and_authenticate`) or
  wrapped and signed (`encrypt_and_sign`).
- `AuthTrait`, `CryptTrait` and `ReplayTrait`: the HMAC, encryption and
  replay-protection parts shared by messages. `validate_replay_timestamp`
  accepts timestamps strictly within 15 seconds of now.
- `MessageError` and its subclasses, such as `InvalidSourceLength`,
  `InvalidHeaderOpcode` and `InvalidHMACLength`, raised for malformed input.

### `l4match.openvpn.messages`

`MessageHeader`, `MessagePlain`, `MessageAuth`, `MessageCrypt` and
`MessageCrypt2`. Each parses itself with `from_bytes` (a whole message) or
`from_bytes_headless` (the bytes after an already parsed header), serialises
back with `to_bytes`, and decides with `match` whether it is a valid client
reset.

```python
from l4match.openvpn.crypto import StaticKey
from l4match.openvpn.messages import MessageAuth

group_key = StaticKey.from_group_key_file("ta.key")
message = MessageAuth.from_bytes(packet)
if message.match(True, False, None, group_key):
    print("authenticated with", message.digest.names[0])
```

The arguments of `match` are `ignore_timestamp`, `ignore_crypto`, a digest
(or `None` to try every supported one) and a key (or `None` to skip the
cryptographic check). `MessageCrypt2.match` also takes a list of
`WrappedKey` client keys; when given, the message's wrapped key must be one
of them.

Messages are given without the two-byte length that precedes each OpenVPN
message over TCP; strip it first.

## What this package does not do

- There is no ready-made OpenVPN connection matcher: nothing reads an
  OpenVPN message from a stream, strips the TCP length prefix, chooses among
  modes or loads key settings from configuration. Callers read the message
  themselves and use the message classes above.
- It does not listen for, accept or forward connections; it only inspects
  bytes it is given.