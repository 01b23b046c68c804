"""
Credential resolution for OpenPond agents.
Handles private key decoding, agent ID derivation, and request signing.
"""

import base64
import binascii
import hashlib
import logging
from datetime import datetime, timezone
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from nacl.signing import SigningKey

from .config import OpenPondConfig
from .errors import InvalidCredentialError, MissingCredentialError

logger = logging.getLogger(__name__)

KEY_PREFIX = "ed25519:"

HEADER_AGENT_ID = "X-Agent-Id"
HEADER_PUBLIC_KEY = "X-Public-Key"
HEADER_TIMESTAMP = "X-Timestamp"
HEADER_SIGNATURE = "X-Signature"
HEADER_API_KEY = "X-API-Key"


def derive_agent_id(public_key: bytes) -> str:
    """
    Derive an agent ID from an Ed25519 public key.
    agent_id = base58(sha256(public_key)[:20])
    """
    hash_bytes = hashlib.sha256(public_key).digest()[:20]

    # Base58 encoding (Bitcoin-style alphabet)
    ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

    n = int.from_bytes(hash_bytes, 'big')
    result = []
    while n > 0:
        n, remainder = divmod(n, 58)
        result.append(ALPHABET[remainder])

    for byte in hash_bytes:
        if byte == 0:
            result.append(ALPHABET[0])
        else:
            break

    return ''.join(reversed(result))


def parse_private_key(key_str: str) -> SigningKey:
    """
    Decode a private key string into a signing key.

    Accepts 'ed25519:<base64>', '0x<hex>', bare 64-char hex, or base64.
    The decoded value must be a 32-byte seed or a 64-byte seed+public key.
    """
    raw = key_str.strip()
    if raw.startswith(KEY_PREFIX):
        raw = raw[len(KEY_PREFIX):]

    try:
        if raw.startswith(("0x", "0X")):
            key_bytes = bytes.fromhex(raw[2:])
        elif len(raw) == 64 and all(c in "0123456789abcdefABCDEF" for c in raw):
            key_bytes = bytes.fromhex(raw)
        else:
            key_bytes = base64.b64decode(raw, validate=True)
    except (ValueError, binascii.Error) as e:
        raise InvalidCredentialError(f"Private key is not valid hex or base64: {e}") from e

    if len(key_bytes) == 64:
        key_bytes = key_bytes[:32]
    if len(key_bytes) != 32:
        raise InvalidCredentialError(
            f"Private key must decode to 32 bytes, got {len(key_bytes)}"
        )

    return SigningKey(key_bytes)


def generate_private_key() -> str:
    """Generate a fresh Ed25519 private key, encoded with its type prefix."""
    signing_key = SigningKey.generate()
    return KEY_PREFIX + base64.b64encode(bytes(signing_key)).decode()


class CredentialKind(Enum):
    PRIVATE_KEY = "private_key"
    API_KEY = "api_key"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class Credential:
    """
    Normalized identity/auth descriptor attached to every outbound call.
    Immutable; safe to share between concurrent requests.
    """
    kind: CredentialKind
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    signing_key: Optional[SigningKey] = field(default=None, repr=False, compare=False)
    api_key: Optional[str] = field(default=None, repr=False)

    @property
    def public_key_b64(self) -> Optional[str]:
        if self.signing_key is None:
            return None
        return base64.b64encode(bytes(self.signing_key.verify_key)).decode()

    def sign_timestamp(self) -> tuple[datetime, str]:
        """Sign the current timestamp for request authentication."""
        if self.signing_key is None:
            raise InvalidCredentialError("Credential has no signing key")
        now = datetime.now(timezone.utc)
        signature = self.signing_key.sign(now.isoformat().encode()).signature
        return now, base64.b64encode(signature).decode()

    def headers(self) -> Dict[str, str]:
        """Build the authentication headers for one request."""
        if self.kind == CredentialKind.PRIVATE_KEY:
            timestamp, signature = self.sign_timestamp()
            return {
                HEADER_AGENT_ID: self.agent_id,
                HEADER_PUBLIC_KEY: self.public_key_b64,
                HEADER_TIMESTAMP: timestamp.isoformat(),
                HEADER_SIGNATURE: signature,
            }
        if self.kind == CredentialKind.API_KEY:
            return {HEADER_API_KEY: self.api_key}
        return {}


def resolve_credential(config: OpenPondConfig) -> Credential:
    """
    Turn a configuration into a Credential.

    A private key takes precedence over an API key when both are set. With
    neither, an anonymous credential is returned if the configuration allows
    it, otherwise MissingCredentialError is raised.
    """
    if config.private_key:
        if config.api_key:
            logger.warning("Both private_key and api_key configured; using private_key")
        signing_key = parse_private_key(config.private_key)
        return Credential(
            kind=CredentialKind.PRIVATE_KEY,
            agent_id=derive_agent_id(bytes(signing_key.verify_key)),
            agent_name=config.agent_name,
            signing_key=signing_key,
        )

    if config.api_key:
        return Credential(
            kind=CredentialKind.API_KEY,
            agent_name=config.agent_name,
            api_key=config.api_key,
        )

    if config.allow_anonymous:
        return Credential(kind=CredentialKind.ANONYMOUS, agent_name=config.agent_name)

    raise MissingCredentialError()
