"""OpenVPN client reset messages: static keys, digests, ciphers, wrapped keys, parsing and validation."""