"""Signing keys: algorithms, PEM handling, JWK export and key generation."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa

from portier_broker.logging import get_logger
from portier_broker.service.errors import KeyGenerationFailure

logger = get_logger(__name__)

_PEM_BLOCK = re.compile(
    r"-----BEGIN ([A-Z0-9 ]+)-----.+?-----END \1-----", re.DOTALL
)


class SigningAlgorithm(str, Enum):
    """JWS algorithms the broker can sign identity tokens with."""

    RS256 = "RS256"
    EDDSA = "EdDSA"

    @classmethod
    def parse(cls, value: Any) -> "SigningAlgorithm":
        if isinstance(value, SigningAlgorithm):
            return value
        normalized = str(value).strip().lower()
        for alg in cls:
            if alg.value.lower() == normalized:
                return alg
        raise ValueError(f"unsupported signing algorithm: {value!r}")


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_uint(n: int) -> str:
    return b64url(n.to_bytes((n.bit_length() + 7) // 8, "big"))


def _algorithm_for_key(private_key: Any) -> SigningAlgorithm:
    if isinstance(private_key, rsa.RSAPrivateKey):
        return SigningAlgorithm.RS256
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        return SigningAlgorithm.EDDSA
    raise ValueError(f"unsupported private key type: {type(private_key).__name__}")


@dataclass
class SigningKeyPair:
    """One private signing key, its derived public key and key id."""

    alg: SigningAlgorithm
    private_pem: str
    created_at: float
    private_key: Any = field(repr=False)
    kid: str = ""

    def __post_init__(self) -> None:
        if not self.kid:
            public_der = self.public_key.public_bytes(
                serialization.Encoding.DER,
                serialization.PublicFormat.SubjectPublicKeyInfo,
            )
            self.kid = b64url(hashlib.sha256(public_der).digest())

    @classmethod
    def from_pem(
        cls,
        pem: str,
        alg: Optional[SigningAlgorithm] = None,
        *,
        created_at: Optional[float] = None,
    ) -> "SigningKeyPair":
        """Load a PEM private key; ``alg`` is inferred when not given.

        Raises ValueError when the PEM is unreadable or its key type does not
        match the requested algorithm.
        """
        private_key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
        detected = _algorithm_for_key(private_key)
        if alg is not None and detected is not alg:
            raise ValueError(f"expected a {alg.value} key, got a {detected.value} key")
        return cls(
            alg=detected,
            private_pem=pem.strip() + "\n",
            created_at=time.time() if created_at is None else created_at,
            private_key=private_key,
        )

    @property
    def public_key(self) -> Any:
        return self.private_key.public_key()

    def to_jwk(self) -> Dict[str, str]:
        if self.alg is SigningAlgorithm.RS256:
            numbers = self.public_key.public_numbers()
            return {
                "kty": "RSA",
                "alg": self.alg.value,
                "use": "sig",
                "kid": self.kid,
                "n": _b64url_uint(numbers.n),
                "e": _b64url_uint(numbers.e),
            }
        raw = self.public_key.public_bytes(
            serialization.Encoding.Raw, serialization.PublicFormat.Raw
        )
        return {
            "kty": "OKP",
            "crv": "Ed25519",
            "alg": self.alg.value,
            "use": "sig",
            "kid": self.kid,
            "x": b64url(raw),
        }

    def sign(self, claims: Dict[str, Any]) -> str:
        headers = {"kid": self.kid, "alg": self.alg.value, "typ": "JWT"}
        return jwt.encode(claims, self.private_key, algorithm=self.alg.value, headers=headers)

    def to_record(self) -> Dict[str, Any]:
        return {"alg": self.alg.value, "pem": self.private_pem, "created_at": self.created_at}

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "SigningKeyPair":
        return cls.from_pem(
            record["pem"],
            SigningAlgorithm.parse(record["alg"]),
            created_at=float(record["created_at"]),
        )


def split_pem_blocks(text: str) -> List[str]:
    """Return every PEM block found in ``text``."""
    return [match.group(0) for match in _PEM_BLOCK.finditer(text or "")]


def _generate_in_process(alg: SigningAlgorithm) -> str:
    if alg is SigningAlgorithm.RS256:
        private_key: Any = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    else:
        private_key = ed25519.Ed25519PrivateKey.generate()
    return private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")


class KeyGenerator:
    """Produces fresh PEM private keys.

    RSA keys come from ``generate_rsa_command`` (for example
    ``openssl genrsa 2048``) when one is configured; everything else is
    generated in-process with ``cryptography`` on a worker thread.
    """

    def __init__(
        self, generate_rsa_command: Optional[Sequence[str]] = None, *, timeout: float = 60.0
    ) -> None:
        self.generate_rsa_command = list(generate_rsa_command or [])
        self.timeout = timeout

    async def generate(self, alg: SigningAlgorithm) -> str:
        if alg is SigningAlgorithm.RS256 and self.generate_rsa_command:
            pem = await self._run_command()
        else:
            try:
                pem = await asyncio.to_thread(_generate_in_process, alg)
            except Exception as exc:
                raise KeyGenerationFailure(f"{alg.value} key generation failed") from exc
        try:
            SigningKeyPair.from_pem(pem, alg)
        except ValueError as exc:
            raise KeyGenerationFailure(f"generated {alg.value} key is unusable") from exc
        return pem

    async def _run_command(self) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.generate_rsa_command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise KeyGenerationFailure("unable to run key generation command") from exc
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise KeyGenerationFailure("key generation command timed out") from exc
        if proc.returncode != 0:
            logger.error(
                "key_generation_command_failed",
                command=self.generate_rsa_command[0],
                returncode=proc.returncode,
                stderr=stderr.decode("utf-8", "replace")[:200],
            )
            raise KeyGenerationFailure("key generation command exited with an error")
        blocks = split_pem_blocks(stdout.decode("utf-8", "replace"))
        if not blocks:
            raise KeyGenerationFailure("key generation command produced no PEM output")
        return blocks[0]
