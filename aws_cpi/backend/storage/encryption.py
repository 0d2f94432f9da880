"""
Encryption policy resolution.
A policy is computed per request from three layers, lowest precedence first:
global aws config, resource-class config, explicit per-call override.
"""
from typing import Any, Dict, List, Optional, Tuple

from aws_cpi.models import EncryptionPolicy
from aws_cpi.utils.validation import is_truthy

Layer = Tuple[Optional[bool], Optional[str]]


def _layer(source: Any) -> Layer:
    """Extract (encrypted, kms_key_arn) from a dict, a config model or None."""
    if source is None:
        return None, None
    if isinstance(source, dict):
        encrypted = source.get("encrypted")
        key_ref = source.get("kms_key_arn")
    else:
        encrypted = getattr(source, "encrypted", None)
        key_ref = getattr(source, "kms_key_arn", None)
    return (None if encrypted is None else is_truthy(encrypted)), (key_ref or None)


def resolve(global_config: Any, resource_class_config: Any = None, explicit_override: Any = None) -> EncryptionPolicy:
    """
    Resolve the encryption policy.
    Rules:
      - the highest layer that sets ``encrypted`` decides it; nothing set means unencrypted.
      - the key is taken from that layer or a higher one; a key below it is ignored,
        and with no key the provider default key is used.
      - a key alone never turns encryption on.
    """
    layers: List[Layer] = [_layer(global_config), _layer(resource_class_config), _layer(explicit_override)]
    deciding = None
    for index in range(len(layers) - 1, -1, -1):
        if layers[index][0] is not None:
            deciding = index
            break
    if deciding is None or not layers[deciding][0]:
        return EncryptionPolicy(encrypted=False, key_ref=None)
    key_ref = None
    for _, candidate in reversed(layers[deciding:]):
        if candidate:
            key_ref = candidate
            break
    return EncryptionPolicy(encrypted=True, key_ref=key_ref)


def volume_encryption_params(policy: EncryptionPolicy) -> Dict[str, Any]:
    """create_volume keyword arguments for a policy."""
    params: Dict[str, Any] = {"Encrypted": policy.encrypted}
    if policy.encrypted and policy.key_ref:
        params["KmsKeyId"] = policy.key_ref
    return params
