from datetime import datetime, timezone

import pytest

from l4match.openvpn.crypto import StaticKey, find_auth_digest
from l4match.openvpn.messages import (
    MessageAuth,
    MessageCrypt,
    MessageCrypt2,
    MessageHeader,
    MessagePlain,
)
from l4match.openvpn.wrapped import (
    InvalidCryptPrerequisites,
    InvalidHeaderOpcode,
    InvalidSourceLength,
    MissingReusableHeader,
    WrappedKey,
)

GROUP_KEY_HEX = (
    "21d94830510107f8753d3b6f3145e01d"
    "ed37075115afcb0538ecdd8503ee9663"
    "7218c9ed38d908d594231d7d143c73da"
    "5055310f89d336da99c8b3dcb18909c7"
    "9dd44f540670ebc0f120beb7211e9683"
    "9cb542572c48bfa7ffaa9a22cb8304b7"
    "869b92f4442918e598745bb78ac8877f"
    "02b00a7cdef3f2446c130d39a7c45126"
    "9ef399fd6029cdfc80a7c604041312ab"
    "0a969bc906bdee6e6d707afdcbe8c7fb"
    "97beb66049c3d328340775025433ceba"
    "1e38008a826cf92443d903106199373b"
    "dadd9c2c735cf481e580db4e81b99f12"
    "e3f46b6159c687cd1b9e689f7712573c"
    "0f02735a45573dfb5cd55cf464942389"
    "2c7e91f439bdd7337a8ceebd302cfbfa"
)
GROUP_KEY = StaticKey.from_hex(GROUP_KEY_HEX)

PLAIN = [
    bytes([56, 131, 30, 193, 48, 89, 179, 111, 104, 0, 0, 0, 0, 0]),
    bytes([56, 48, 212, 183, 154, 72, 13, 92, 194, 0, 0, 0, 0, 0]),
    bytes([56, 232, 90, 55, 186, 10, 31, 142, 127, 0, 0, 0, 0, 0]),
    bytes([56, 177, 22, 70, 225, 86, 175, 190, 204, 0, 0, 0, 0, 0]),
]

AUTH_MD5_1 = bytes([56, 108, 88, 142, 73, 58, 114, 77, 35, 45, 192, 5, 145, 148, 66, 118, 118, 229, 204, 60, 174, 162, 74, 50, 78, 0, 0, 0, 1, 102, 234, 243, 9, 0, 0, 0, 0, 0])
AUTH_KNOWN = [
    AUTH_MD5_1,
    bytes([56, 31, 34, 72, 211, 219, 0, 85, 46, 200, 142, 75, 104, 53, 70, 109, 234, 137, 253, 29, 138, 148, 218, 83, 141, 0, 0, 0, 1, 102, 234, 243, 39, 0, 0, 0, 0, 0]),
    bytes([56, 38, 129, 217, 92, 90, 2, 14, 97, 123, 32, 15, 106, 140, 112, 232, 206, 242, 138, 133, 246, 151, 31, 71, 44, 140, 201, 188, 248, 0, 0, 0, 1, 102, 234, 241, 204, 0, 0, 0, 0, 0]),
    bytes([56, 241, 168, 141, 190, 188, 201, 75, 111, 199, 1, 198, 27, 138, 167, 106, 34, 70, 142, 66, 147, 64, 216, 37, 38, 62, 8, 150, 42, 120, 226, 65, 81, 10, 81, 27, 180, 47, 147, 125, 81, 0, 0, 0, 1, 102, 234, 244, 77, 0, 0, 0, 0, 0]),
    bytes([56, 120, 93, 159, 15, 39, 241, 197, 215, 124, 49, 249, 190, 40, 30, 103, 24, 237, 160, 8, 161, 166, 93, 197, 148, 86, 250, 10, 149, 235, 99, 28, 241, 101, 144, 232, 87, 0, 0, 0, 1, 102, 235, 51, 45, 0, 0, 0, 0, 0]),
    bytes([56, 102, 44, 44, 250, 78, 239, 197, 24, 141, 207, 4, 172, 243, 182, 248, 89, 85, 126, 211, 221, 77, 58, 132, 232, 210, 92, 100, 224, 138, 249, 189, 233, 173, 65, 107, 247, 44, 12, 44, 25, 0, 0, 0, 1, 102, 235, 49, 221, 0, 0, 0, 0, 0]),
    bytes([56, 117, 185, 201, 73, 60, 231, 94, 83, 79, 58, 65, 198, 193, 150, 251, 40, 240, 186, 67, 214, 103, 173, 128, 71, 85, 169, 180, 57, 185, 190, 142, 169, 29, 70, 15, 227, 16, 233, 122, 248, 0, 0, 0, 1, 102, 235, 52, 237, 0, 0, 0, 0, 0]),
]

AUTH_UNKNOWN = [
    bytes([56, 215, 5, 24, 98, 120, 183, 161, 99, 207, 88, 65, 149, 207, 91, 106, 49, 202, 38, 190, 180, 159, 186, 132, 12, 0, 0, 0, 1, 102, 231, 18, 140, 0, 0, 0, 0, 0]),
    bytes([56, 102, 151, 183, 239, 253, 36, 110, 23, 150, 73, 73, 166, 35, 204, 199, 240, 149, 243, 16, 8, 55, 68, 108, 31, 11, 74, 186, 254, 65, 15, 81, 5, 222, 184, 12, 106, 72, 2, 114, 154, 0, 0, 0, 1, 102, 231, 17, 9, 0, 0, 0, 0, 0]),
]

CRYPT_KNOWN = [
    bytes([56, 76, 98, 159, 244, 184, 134, 148, 158, 0, 0, 0, 1, 102, 237, 91, 50, 14, 141, 87, 40, 125, 165, 204, 227, 61, 5, 91, 201, 99, 44, 253, 7, 202, 200, 84, 124, 48, 80, 144, 250, 52, 248, 173, 26, 201, 173, 67, 166, 16, 189, 73, 203, 12]),
    bytes([56, 162, 49, 153, 71, 88, 124, 182, 93, 0, 0, 0, 1, 102, 237, 91, 95, 84, 154, 63, 127, 63, 175, 65, 227, 69, 45, 146, 14, 64, 81, 56, 239, 162, 229, 54, 81, 103, 167, 133, 38, 57, 83, 119, 60, 149, 149, 218, 201, 144, 193, 202, 149, 111]),
]
CRYPT_UNKNOWN = [
    bytes([56, 114, 151, 86, 204, 204, 137, 212, 215, 0, 0, 0, 1, 102, 231, 24, 196, 58, 184, 197, 69, 200, 222, 132, 120, 248, 163, 68, 112, 17, 137, 97, 240, 56, 122, 62, 49, 172, 177, 176, 86, 180, 187, 148, 69, 17, 251, 38, 0, 31, 203, 0, 237, 122]),
    bytes([56, 49, 193, 232, 78, 82, 175, 151, 76, 0, 0, 0, 1, 102, 231, 25, 92, 82, 125, 47, 131, 35, 217, 41, 164, 145, 71, 178, 38, 218, 194, 60, 100, 167, 212, 8, 160, 131, 22, 61, 246, 52, 20, 100, 6, 16, 108, 18, 127, 24, 185, 240, 99, 156]),
]

SERVER_KEY_B64 = "U2hihe8H77pInpRzMEWNZ/NwM1CBSSVSw5HyXT7/+1pspISJzKBiECs+LRvE6QlwgKm606H1wLv0defgJRNU1UG1fi25oMPqjFcYybU+wOgY8eX6OWM0EWI6d2XaL6Neu1E9fMGDAWnzQFsFZhMQH80xv0kzzLm13UjL7lrdQnM="
CLIENT_KEY_B64 = "HZVyTZ3S2YMR9UFUei+kWmNcCaxxT31StqhozQFXVQ41WK203PFtunbuA7HZNPaBLQbyC3aaxwGcEsqW1Jnm/3WptcPWFYhFGhW+H37x2howQyAGj6IIsjZQyS9gwYgGr8bVNTZIywz3hw+KLRCAzkhTqk6ONen1wf5rewu03g2RNq/suLU6V31OTDOxeyb1WkUA25Ych7le6FJzO8YqI5jOosokID3ueT05vCdMIDa6FsHR3BmPjX2OYLquV+wBF7IBykKcxrCvrT2Qf/tBpv7PtUkKx6pCApKiUuPxLALMxqv3ATa7vrCB8qZQWmO4dRY40ORYZ622MiqCDmDFGKQca1bPxdHdpFCr5o8gvYHR9p0Xm2t6KcCvAO+CUAMKA1DsUqIYrrhQIkkZI/dbffBGnxyrb/XlzGnSynv5d8oAl7QSrW292JLtm7VCGE7NePEMvAx9iAXNTwxpdwNNfPmb3ZNWq7H+mGUaYQpcs7xW45zzyUkV9fESFEnlePxeJ3pjqxawcjnOBy1yLk/RKyFOakNJ/Z6r7IFjgI6usooo1i7+Tp6O5MHQasWcpyLWzW5KvjGPIKH0SFl6VJdBMkWWYm1D5KdgqXX8716uNvpY0dVpXgE+KfJPxIRQDGCuS8zyrxAHCvm8MAbiOpi9g35/4vKFj+cvar4EssHrvSX+l0Z7q5kGnMbnvStH7MEzTQXCcMT30vDWBn2W9SEkOh9KIq1z3/46owEr"

_CRYPT2_TAIL = [164, 28, 107, 86, 207, 197, 209, 221, 164, 80, 171, 230, 143, 32, 189, 129, 209, 246, 157, 23, 155, 107, 122, 41, 192, 175, 0, 239, 130, 80, 3, 10, 3, 80, 236, 82, 162, 24, 174, 184, 80, 34, 73, 25, 35, 247, 91, 125, 240, 70, 159, 28, 171, 111, 245, 229, 204, 105, 210, 202, 123, 249, 119, 202, 0, 151, 180, 18, 173, 109, 189, 216, 146, 237, 155, 181, 66, 24, 78, 205, 120, 241, 12, 188, 12, 125, 136, 5, 205, 79, 12, 105, 119, 3, 77, 124, 249, 155, 221, 147, 86, 171, 177, 254, 152, 101, 26, 97, 10, 92, 179, 188, 86, 227, 156, 243, 201, 73, 21, 245, 241, 18, 20, 73, 229, 120, 252, 94, 39, 122, 99, 171, 22, 176, 114, 57, 206, 7, 45, 114, 46, 79, 209, 43, 33, 78, 106, 67, 73, 253, 158, 171, 236, 129, 99, 128, 142, 174, 178, 138, 40, 214, 46, 254, 78, 158, 142, 228, 193, 208, 106, 197, 156, 167, 34, 214, 205, 110, 74, 190, 49, 143, 32, 161, 244, 72, 89, 122, 84, 151, 65, 50, 69, 150, 98, 109, 67, 228, 167, 96, 169, 117, 252, 239, 94, 174, 54, 250, 88, 209, 213, 105, 94, 1, 62, 41, 242, 79, 196, 132, 80, 12, 96, 174, 75, 204, 242, 175, 16, 7, 10, 249, 188, 48, 6, 226, 58, 152, 189, 131, 126, 127, 226, 242, 133, 143, 231, 47, 106, 190, 4, 178, 193, 235, 189, 37, 254, 151, 70, 123, 171, 153, 6, 156, 198, 231, 189, 43, 71, 236, 193, 51, 77, 5, 194, 112, 196, 247, 210, 240, 214, 6, 125, 150, 245, 33, 36, 58, 31, 74, 34, 173, 115, 223, 254, 58, 163, 1, 43]

CRYPT2 = [
    bytes([80, 100, 224, 45, 159, 27, 166, 162, 220, 15, 0, 0, 1, 102, 240, 100, 162, 53, 85, 10, 213, 183, 32, 34, 176, 186, 16, 66, 59, 48, 128, 24, 240, 143, 116, 59, 133, 18, 152, 241, 84, 81, 95, 195, 181, 88, 112, 148, 217, 127, 200, 222, 197, 88] + _CRYPT2_TAIL),
    bytes([80, 136, 240, 154, 124, 25, 199, 138, 59, 15, 0, 0, 1, 102, 240, 107, 4, 103, 91, 3, 26, 182, 97, 79, 186, 12, 192, 49, 251, 104, 205, 177, 215, 107, 141, 155, 102, 232, 247, 246, 206, 142, 216, 230, 20, 218, 58, 153, 248, 131, 173, 105, 2, 213] + _CRYPT2_TAIL),
]


def test_header_round_trip():
    header = MessageHeader.from_bytes(bytes([56]))
    assert (header.opcode, header.key_id) == (7, 0)
    assert header.to_bytes() == bytes([56])


def test_header_wrong_length():
    with pytest.raises(InvalidSourceLength):
        MessageHeader.from_bytes(b"")


@pytest.mark.parametrize("packet", PLAIN)
def test_plain_round_trip_and_match(packet):
    msg = MessagePlain.from_bytes(packet)
    assert msg.to_bytes() == packet
    assert msg.match() is True


def test_plain_errors():
    with pytest.raises(InvalidSourceLength):
        MessagePlain.from_bytes(PLAIN[0][:-1])
    with pytest.raises(InvalidHeaderOpcode):
        MessagePlain.from_bytes(bytes([80]) + PLAIN[0][1:])
    with pytest.raises(MissingReusableHeader):
        MessagePlain.from_bytes_headless(PLAIN[0][1:], None)


@pytest.mark.parametrize("packet", AUTH_KNOWN)
def test_auth_known_key(packet):
    msg = MessageAuth.from_bytes(packet)
    assert msg.match(True, False, None, GROUP_KEY) is True
    assert msg.to_bytes() == packet


def test_auth_records_digest_and_checks_timestamp():
    msg = MessageAuth.from_bytes(AUTH_MD5_1)
    assert msg.match(True, False, None, GROUP_KEY) is True
    assert msg.digest.names[0] == "MD5"
    assert msg.match(False, False, None, GROUP_KEY) is False
    assert msg.match(True, False, find_auth_digest("shake128"), GROUP_KEY) is False


def test_auth_inverse_key_fails():
    msg = MessageAuth.from_bytes(AUTH_MD5_1)
    assert msg.match(True, False, None, StaticKey.from_hex(GROUP_KEY_HEX, inverse=True)) is False


@pytest.mark.parametrize("packet", AUTH_UNKNOWN)
def test_auth_unknown_key(packet):
    msg = MessageAuth.from_bytes(packet)
    assert msg.match(True, True, None, GROUP_KEY) is True
    assert msg.match(True, False, None, GROUP_KEY) is False


def test_auth_sign_then_authenticate():
    msg = MessageAuth.from_bytes(AUTH_MD5_1)
    msg.sign(None, GROUP_KEY)
    assert len(msg.hmac) == 32
    assert msg.authenticate(None, GROUP_KEY) is True


def test_replay_timestamp_window():
    msg = MessageAuth.from_bytes(AUTH_MD5_1)
    moment = datetime.fromtimestamp(msg.replay_timestamp + 10, tz=timezone.utc)
    assert msg.validate_replay_timestamp(moment) is True
    assert msg.validate_replay_timestamp(msg.replay_timestamp + 15) is False


@pytest.mark.parametrize("packet", CRYPT_KNOWN)
def test_crypt_known_key(packet):
    msg = MessageCrypt.from_bytes(packet)
    assert msg.match(True, False, None, GROUP_KEY) is True
    assert msg.to_bytes() == packet
    assert (msg.prev_packet_ids_count, msg.this_packet_id) == (0, 0)


@pytest.mark.parametrize("packet", CRYPT_UNKNOWN)
def test_crypt_unknown_key(packet):
    msg = MessageCrypt.from_bytes(packet)
    assert msg.match(True, True, None, GROUP_KEY) is True
    assert msg.match(True, False, None, GROUP_KEY) is False


def test_crypt_encrypt_requires_digest():
    msg = MessageCrypt(local_session_id=1)
    with pytest.raises(InvalidCryptPrerequisites):
        msg.encrypt_and_sign(None, GROUP_KEY)


@pytest.mark.parametrize("packet", CRYPT2)
def test_crypt2_matches(packet):
    msg = MessageCrypt2.from_bytes(packet)
    assert msg.match(True, False, None, StaticKey.from_base64(SERVER_KEY_B64), None) is True
    assert msg.match(True, False, None, None, [WrappedKey.from_base64(CLIENT_KEY_B64)]) is True
    assert msg.match(True, False, None, None, None) is True
    assert msg.to_bytes() == packet


def test_crypt2_wrong_client_key():
    msg = MessageCrypt2.from_bytes(CRYPT2[0])
    other = WrappedKey.from_base64(CLIENT_KEY_B64)
    other.hmac = bytes(32)
    assert msg.match(True, False, None, None, [other]) is False


def test_crypt2_wrong_opcode():
    with pytest.raises(InvalidHeaderOpcode):
        MessageCrypt2.from_bytes(bytes([56]) + CRYPT2[0][1:])