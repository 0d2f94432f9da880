import itertools

import pytest

from aws_cpi.backend.storage.encryption import resolve, volume_encryption_params
from aws_cpi.models import EncryptionPolicy

FLAGS = (None, True, False)
KEYS = (None, "arn:global", "arn:class", "arn:explicit")


def _expected(layers):
    deciding = None
    for index in (2, 1, 0):
        if layers[index][0] is not None:
            deciding = index
            break
    if deciding is None or not layers[deciding][0]:
        return EncryptionPolicy(False, None)
    for index in (2, 1, 0):
        if index >= deciding and layers[index][1]:
            return EncryptionPolicy(True, layers[index][1])
    return EncryptionPolicy(True, None)


@pytest.mark.parametrize(
    "g_flag,c_flag,e_flag",
    list(itertools.product(FLAGS, FLAGS, FLAGS)),
)
@pytest.mark.parametrize("with_keys", [False, True])
def test_resolve_precedence(g_flag, c_flag, e_flag, with_keys):
    keys = ("arn:global", "arn:class", "arn:explicit") if with_keys else (None, None, None)
    layers = [(g_flag, keys[0]), (c_flag, keys[1]), (e_flag, keys[2])]
    sources = [{"encrypted": flag, "kms_key_arn": key} for flag, key in layers]
    assert resolve(*sources) == _expected(layers)


def test_key_alone_does_not_encrypt():
    assert resolve({"kms_key_arn": "arn:global"}) == EncryptionPolicy(False, None)


def test_key_below_deciding_layer_is_ignored():
    policy = resolve({"encrypted": False, "kms_key_arn": "arn:global"}, {"encrypted": True})
    assert policy == EncryptionPolicy(True, None)


def test_key_above_deciding_layer_applies():
    policy = resolve({"encrypted": True}, {"kms_key_arn": "arn:class"})
    assert policy == EncryptionPolicy(True, "arn:class")


def test_explicit_false_overrides_encrypted_global():
    assert resolve({"encrypted": True, "kms_key_arn": "arn:global"}, None, {"encrypted": False}).encrypted is False


def test_volume_params():
    assert volume_encryption_params(EncryptionPolicy(False, None)) == {"Encrypted": False}
    assert volume_encryption_params(EncryptionPolicy(True, None)) == {"Encrypted": True}
    assert volume_encryption_params(EncryptionPolicy(True, "arn:k")) == {"Encrypted": True, "KmsKeyId": "arn:k"}
