import pytest

from sopsfile import agecrypt
from sopsfile.agecrypt import AgeError, NoIdentityMatchError

RECIPIENT = "age1lzd99uklcjnc0e7d860axevet2cz99ce9pq6tzuzd05l5nr28ams36nvun"
IDENTITY = "AGE-SECRET-KEY-1G0Q5K9TV4REQ3ZSQRMTMG8NSWQGYT0T7TZ33RAZEE0GZYVZN0APSU24RK7"
OTHER_IDENTITY = "AGE-SECRET-KEY-1432K5YRNSC44GC4986NXMX6GVZ52WTMT9C79CLUVWYY4DKDHD5JSNDP4MC"


def test_identity_derives_matching_recipient():
    identity = agecrypt.parse_x25519_identity(IDENTITY)
    assert str(identity.recipient()) == RECIPIENT


def test_string_forms_round_trip():
    assert str(agecrypt.parse_x25519_recipient(RECIPIENT)) == RECIPIENT
    assert str(agecrypt.parse_x25519_identity(IDENTITY)) == IDENTITY


def test_generated_identity_round_trip():
    identity = agecrypt.X25519Identity.generate()
    assert agecrypt.parse_x25519_identity(str(identity)) == identity
    assert str(identity).startswith("AGE-SECRET-KEY-1")


@pytest.mark.parametrize("text", ["invalid", RECIPIENT[:-1] + "q", IDENTITY])
def test_invalid_recipient(text):
    with pytest.raises(AgeError):
        agecrypt.parse_x25519_recipient(text)


def test_parse_identities_skips_comments():
    ids = agecrypt.parse_identities(f"# comment\n\n{IDENTITY}\n{OTHER_IDENTITY}\n")
    assert len(ids) == 2


def test_parse_identities_errors():
    with pytest.raises(AgeError):
        agecrypt.parse_identities("invalid")
    with pytest.raises(AgeError, match="no secret keys found"):
        agecrypt.parse_identities("# only\n")


@pytest.mark.parametrize("size", [0, 5, 64 * 1024, 64 * 1024 + 3])
def test_encrypt_decrypt_round_trip(size):
    identity = agecrypt.X25519Identity.generate()
    data = bytes(range(256)) * (size // 256) + b"x" * (size % 256)
    blob = agecrypt.encrypt(data, [identity.recipient()])
    assert blob.startswith(b"age-encryption.org/v1\n-> X25519 ")
    assert agecrypt.decrypt(blob, [identity]) == data


def test_decrypt_with_wrong_identity():
    blob = agecrypt.encrypt(b"data", [agecrypt.parse_x25519_recipient(RECIPIENT)])
    other = agecrypt.parse_x25519_identity(OTHER_IDENTITY)
    with pytest.raises(NoIdentityMatchError, match="no identity matched any of the recipients"):
        agecrypt.decrypt(blob, [other])


def test_tampered_payload_fails():
    identity = agecrypt.X25519Identity.generate()
    blob = bytearray(agecrypt.encrypt(b"payload data", [identity.recipient()]))
    blob[-1] ^= 1
    with pytest.raises(AgeError):
        agecrypt.decrypt(bytes(blob), [identity])


def test_armor_round_trip():
    data = bytes(range(200))
    text = agecrypt.armor(data)
    assert text.startswith("-----BEGIN AGE ENCRYPTED FILE-----\n")
    assert text.rstrip().endswith("-----END AGE ENCRYPTED FILE-----")
    assert agecrypt.dearmor(text) == data


def test_dearmor_rejects_garbage():
    with pytest.raises(AgeError):
        agecrypt.dearmor("invalid")