"""
Field ciphers for sensitive values written to the remote store.

Two implementations share the ``FieldCipher`` interface:

- ``ObfuscatingCipher``: reversible layered obfuscation (Caesar shift, XOR
  with a repeating key, checksum, base64 framing). It hides provider keys
  from casual inspection only; it is NOT encryption and must not be relied
  on as a security boundary.
- ``FernetCipher``: authenticated symmetric encryption from ``cryptography``.
  Use it wherever confidentiality actually matters.
"""

import base64
import binascii
import logging
from typing import Optional, Protocol, Union

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

OBFUSCATED_PREFIX = "enc_v2:"
LEGACY_PREFIX = "enc:"
FERNET_PREFIX = "enc_f1:"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class CipherError(Exception):
    """A protected value could not be decoded."""


class FieldCipher(Protocol):
    """Encrypts and decrypts single string values.

    ``user_id`` scopes the key where the cipher supports it.
    """

    def encrypt(self, text: str, user_id: Optional[str] = None) -> str: ...

    def decrypt(self, token: str, user_id: Optional[str] = None) -> str: ...


def _to_int32(value: int) -> int:
    return ((value + 2**31) % 2**32) - 2**31


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def checksum(text: str) -> str:
    """32-bit rolling string hash (``h * 31 + c``) in base36, padded to 6."""
    h = 0
    for char in text:
        h = _to_int32(_to_int32(h << 5) - h + ord(char))
    return _base36(abs(h)).rjust(6, "0")


def _caesar(text: str, shift: int) -> str:
    out = []
    for char in text:
        if "a" <= char <= "z":
            out.append(chr((ord(char) - 97 + shift) % 26 + 97))
        elif "A" <= char <= "Z":
            out.append(chr((ord(char) - 65 + shift) % 26 + 65))
        else:
            out.append(char)
    return "".join(out)


def _xor(text: str, key: str) -> str:
    return "".join(chr(ord(c) ^ ord(key[i % len(key)])) for i, c in enumerate(text))


def _b64encode(text: str) -> str:
    return base64.b64encode(text.encode("utf-8", "surrogatepass")).decode("ascii")


def _b64decode(text: str) -> str:
    return base64.b64decode(text, validate=True).decode("utf-8", "surrogatepass")


class ObfuscatingCipher:
    """Layered reversible obfuscation keyed by user id plus a local secret.

    Args:
        secret: Device-local secret mixed into the key. It must stay stable
            for previously written values to remain readable.
    """

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("ObfuscatingCipher requires a non-empty secret")
        self._secret = secret

    def _key(self, user_id: Optional[str]) -> str:
        return (user_id or "fallback-key") + self._secret

    def encrypt(self, text: str, user_id: Optional[str] = None) -> str:
        if not text:
            return text
        key = self._key(user_id)
        shifted = _caesar(text, len(key) % 26)
        payload = checksum(text) + ":" + _xor(shifted, key)
        return OBFUSCATED_PREFIX + _b64encode(payload)

    def decrypt(self, token: str, user_id: Optional[str] = None) -> str:
        if not token:
            return token
        if not token.startswith(OBFUSCATED_PREFIX):
            return self._legacy_decrypt(token, user_id)

        key = self._key(user_id)
        try:
            payload = _b64decode(token[len(OBFUSCATED_PREFIX):])
        except (binascii.Error, UnicodeDecodeError) as e:
            raise CipherError(f"Invalid obfuscated value: {e}") from e

        expected, sep, data = payload.partition(":")
        if not sep or not data:
            raise CipherError("Invalid obfuscated format")

        text = _caesar(_xor(data, key), -(len(key) % 26))
        if checksum(text) != expected:
            raise CipherError("Checksum verification failed")
        return text

    def _legacy_decrypt(self, token: str, user_id: Optional[str]) -> str:
        """Decode the older ``base64("enc:" + xor)`` format.

        Values that are not in that format are returned unchanged; they were
        stored before protection was introduced.
        """
        try:
            decoded = _b64decode(token)
        except (binascii.Error, UnicodeDecodeError):
            return token
        if not decoded.startswith(LEGACY_PREFIX):
            return token
        return _xor(decoded[len(LEGACY_PREFIX):], user_id or "default-key")


class FernetCipher:
    """Authenticated encryption with a Fernet key.

    Args:
        key: URL-safe base64 Fernet key (``Fernet.generate_key()``).
        legacy: Cipher used to read values written before the key was
            configured.
    """

    def __init__(self, key: Union[str, bytes], legacy: Optional[FieldCipher] = None):
        self._fernet = Fernet(key)
        self._legacy = legacy

    def encrypt(self, text: str, user_id: Optional[str] = None) -> str:
        if not text:
            return text
        return FERNET_PREFIX + self._fernet.encrypt(text.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str, user_id: Optional[str] = None) -> str:
        if not token:
            return token
        if token.startswith(FERNET_PREFIX):
            try:
                return self._fernet.decrypt(token[len(FERNET_PREFIX):].encode("ascii")).decode(
                    "utf-8"
                )
            except InvalidToken as e:
                raise CipherError("Encrypted value failed authentication") from e
        if self._legacy is not None:
            logger.debug("Reading value protected by the legacy cipher")
            return self._legacy.decrypt(token, user_id)
        raise CipherError("Value is not protected by this cipher")
