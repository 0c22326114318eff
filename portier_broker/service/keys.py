"""Signing key lifecycle.

``KeyManager`` owns every signing key. In rotating mode it persists the key
set per algorithm under ``keys:<alg>`` and keeps one pending key published
ahead of the signing key. A pending key starts signing only after it has been
in the JWKS for a whole ``keys_ttl`` cache period, so relying parties holding
a cached key set can always verify fresh tokens. Superseded keys stay
published until tokens signed with them have expired. In static mode the
operator-supplied keys are used as-is and never rotated.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from portier_broker.config import ConfigError
from portier_broker.crypto import KeyGenerator, SigningAlgorithm, SigningKeyPair, split_pem_blocks
from portier_broker.logging import get_logger
from portier_broker.service.errors import KeyGenerationFailure, NoSuchAlgorithm, ServerError
from portier_broker.storage.base import Store, key_lock_key, keys_key

logger = get_logger(__name__)

LOCK_TTL_SECONDS = 60


class KeyManagerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    GENERATING = "generating"
    READY = "ready"
    ROTATING = "rotating"


class _LockBusy(Exception):
    """Another process holds the generation lock for an algorithm."""


@dataclass(frozen=True)
class KeySet:
    """Immutable snapshot of known keys, oldest first per algorithm.

    With ``publish_lead`` unset the newest key signs. Otherwise a key only
    signs once it has been published for ``publish_lead`` seconds; until any
    key qualifies the oldest one signs.
    """

    keys: Dict[SigningAlgorithm, Tuple[SigningKeyPair, ...]] = field(default_factory=dict)
    publish_lead: Optional[float] = None

    def signing_key(self, alg: SigningAlgorithm, now: float) -> Optional[SigningKeyPair]:
        pairs = self.keys.get(alg)
        if not pairs:
            return None
        return pairs[signing_index(pairs, now, self.publish_lead)]

    def jwks(self) -> List[Dict[str, str]]:
        return [pair.to_jwk() for pairs in self.keys.values() for pair in pairs]

    def replace(self, alg: SigningAlgorithm, pairs: Sequence[SigningKeyPair]) -> "KeySet":
        updated = dict(self.keys)
        updated[alg] = tuple(pairs)
        return KeySet(updated, self.publish_lead)


def signing_index(
    pairs: Sequence[SigningKeyPair], now: float, publish_lead: Optional[float]
) -> int:
    if publish_lead is None:
        return len(pairs) - 1
    index = 0
    for position, pair in enumerate(pairs):
        if pair.created_at + publish_lead <= now:
            index = position
    return index


def load_static_keys(
    keyfiles: Iterable[str] = (), keytext: Optional[str] = None
) -> List[SigningKeyPair]:
    """Read PEM private keys from files and inline text, in the order given."""
    sources: List[Tuple[str, str]] = []
    for path in keyfiles:
        try:
            sources.append((path, Path(path).read_text(encoding="utf-8")))
        except OSError as exc:
            raise ConfigError(f"unable to read key file {path}: {exc.strerror}") from exc
    if keytext:
        sources.append(("keytext", keytext))

    now = time.time()
    pairs: List[SigningKeyPair] = []
    for origin, text in sources:
        blocks = split_pem_blocks(text)
        if not blocks:
            raise ConfigError(f"no PEM private keys found in {origin}")
        for block in blocks:
            try:
                pairs.append(SigningKeyPair.from_pem(block, created_at=now))
            except ValueError as exc:
                raise ConfigError(f"invalid private key in {origin}: {exc}") from exc
    return pairs


class KeyManager:
    def __init__(
        self,
        store: Store,
        algs: Sequence[SigningAlgorithm],
        *,
        generator: Optional[KeyGenerator] = None,
        keys_ttl: int = 86_400,
        token_ttl: int = 600,
        static_keys: Optional[Sequence[SigningKeyPair]] = None,
        lock_retry_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not algs:
            raise ConfigError("at least one signing algorithm is required")
        self.store = store
        self.algs = list(dict.fromkeys(algs))
        self.generator = generator or KeyGenerator()
        self.keys_ttl = keys_ttl
        self.token_ttl = token_ttl
        self.static_keys = list(static_keys) if static_keys else None
        self.lock_retry_seconds = lock_retry_seconds
        # One JWKS cache period plus the time a peer may need to adopt the key
        self.publish_lead = float(keys_ttl) + lock_retry_seconds
        self._clock = clock
        self._sleep = sleep
        self.state = KeyManagerState.UNINITIALIZED
        self._keyset = KeySet(publish_lead=self.publish_lead if self.rotating else None)
        self._task: Optional[asyncio.Task] = None

    @property
    def rotating(self) -> bool:
        return self.static_keys is None

    @property
    def keyset(self) -> KeySet:
        return self._keyset

    async def start(self, *, background: bool = True) -> None:
        """Load or generate keys; fatal if any configured algorithm ends up keyless."""
        if self.static_keys is not None:
            self._load_static()
            self.state = KeyManagerState.READY
            logger.info("keys_loaded_static", algs=[alg.value for alg in self.algs])
            return

        self.state = KeyManagerState.GENERATING
        keyset = self._keyset
        for alg in self.algs:
            deadline = self._clock() + LOCK_TTL_SECONDS + self.lock_retry_seconds
            while True:
                try:
                    pairs = await self._ensure_current(alg)
                    break
                except _LockBusy:
                    if self._clock() >= deadline:
                        raise KeyGenerationFailure(
                            f"timed out waiting for {alg.value} key generation lock"
                        )
                    await self._sleep(self.lock_retry_seconds)
            keyset = keyset.replace(alg, pairs)
        self._keyset = keyset
        self.state = KeyManagerState.READY
        logger.info(
            "keys_ready",
            algs=[alg.value for alg in self.algs],
            kids=[pair.kid for pair in keyset.keys.get(self.algs[0], ())],
        )
        if background:
            self._task = asyncio.create_task(self._rotation_loop())

    def _load_static(self) -> None:
        grouped: Dict[SigningAlgorithm, List[SigningKeyPair]] = {}
        for pair in self.static_keys or []:
            if pair.alg in self.algs:
                grouped.setdefault(pair.alg, []).append(pair)
        missing = [alg.value for alg in self.algs if alg not in grouped]
        if missing:
            raise KeyGenerationFailure(
                f"no static key configured for: {', '.join(missing)}"
            )
        self._keyset = KeySet({alg: tuple(pairs) for alg, pairs in grouped.items()})

    async def _load_persisted(self, alg: SigningAlgorithm) -> List[SigningKeyPair]:
        raw = await self.store.get(keys_key(alg.value))
        if raw is None:
            return []
        try:
            pairs = [SigningKeyPair.from_record(record) for record in json.loads(raw)]
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("key_set_corrupt", alg=alg.value, error=str(exc))
            return []
        return sorted(pairs, key=lambda pair: pair.created_at)

    def _has_pending(self, pairs: Sequence[SigningKeyPair]) -> bool:
        """True when a published key is queued behind the current signing key."""
        if not pairs:
            return False
        return signing_index(pairs, self._clock(), self.publish_lead) < len(pairs) - 1

    def prune(self, pairs: Sequence[SigningKeyPair]) -> List[SigningKeyPair]:
        """Drop keys superseded for longer than ``token_ttl``."""
        now = self._clock()
        current = signing_index(pairs, now, self.publish_lead) if pairs else 0
        kept = []
        for index, pair in enumerate(pairs):
            if index < current:
                superseded_at = pairs[index + 1].created_at + self.publish_lead
                if now - superseded_at >= self.token_ttl:
                    continue
            kept.append(pair)
        return kept

    async def _ensure_current(
        self, alg: SigningAlgorithm, *, force: bool = False
    ) -> List[SigningKeyPair]:
        """Return a current key list for ``alg``, generating a pending key if none is queued.

        Another process may have rotated already; its persisted set is adopted
        instead of generating again. A fresh deployment gets two keys: one that
        signs immediately and the pending one behind it.
        """
        persisted = await self._load_persisted(alg)
        if not force and self._has_pending(persisted):
            return self.prune(persisted)

        lock = key_lock_key(alg.value)
        if await self.store.increment_with_expiry(lock, LOCK_TTL_SECONDS) != 1:
            raise _LockBusy(alg.value)
        try:
            pairs = await self._load_persisted(alg)
            if not force and self._has_pending(pairs):
                return self.prune(pairs)
            while force or not self._has_pending(pairs):
                pem = await self.generator.generate(alg)
                pair = SigningKeyPair.from_pem(pem, alg, created_at=self._clock())
                pairs = [*pairs, pair]
                force = False
                logger.info("key_generated", alg=alg.value, kid=pair.kid)
            pairs = self.prune(pairs)
            await self.store.put(
                keys_key(alg.value), json.dumps([p.to_record() for p in pairs]), None
            )
            return pairs
        finally:
            await self.store.delete(lock)

    async def rotate_once(self, *, force: bool = False) -> None:
        """Bring every algorithm's key set up to date and publish it."""
        if not self.rotating:
            return
        self.state = KeyManagerState.ROTATING
        try:
            keyset = self._keyset
            for alg in self.algs:
                pairs = await self._ensure_current(alg, force=force)
                keyset = keyset.replace(alg, pairs)
            # Single reference swap; signers see the old or the new set, never a mix
            self._keyset = keyset
        finally:
            self.state = KeyManagerState.READY

    def next_rotation_delay(self) -> float:
        """Seconds until the earliest pending key starts signing."""
        now = self._clock()
        due = []
        for alg in self.algs:
            pairs = self._keyset.keys.get(alg, ())
            if not pairs:
                continue
            index = signing_index(pairs, now, self.publish_lead)
            if index == len(pairs) - 1:
                due.append(0.0)
            else:
                due.append(pairs[index + 1].created_at + self.publish_lead - now)
        return max(1.0, min(due)) if due else 1.0

    async def _rotation_loop(self) -> None:
        delay = self.next_rotation_delay()
        while True:
            await self._sleep(delay)
            try:
                await self.rotate_once()
                delay = self.next_rotation_delay()
            except _LockBusy as exc:
                logger.info("key_rotation_lock_busy", alg=str(exc))
                delay = self.lock_retry_seconds
            except Exception as exc:
                logger.error("key_rotation_failed", error=str(exc), retry_in=self.keys_ttl)
                delay = float(self.keys_ttl)

    def sign(self, claims: Dict[str, Any], alg: Optional[Any] = None) -> str:
        if self.state is KeyManagerState.UNINITIALIZED:
            raise ServerError("signing keys are not loaded")
        try:
            requested = SigningAlgorithm.parse(alg or self.default_alg)
        except ValueError:
            raise NoSuchAlgorithm(str(alg)) from None
        pair = self._keyset.signing_key(requested, self._clock())
        if pair is None or requested not in self.algs:
            raise NoSuchAlgorithm(requested.value)
        return pair.sign(claims)

    @property
    def default_alg(self) -> SigningAlgorithm:
        if SigningAlgorithm.RS256 in self.algs:
            return SigningAlgorithm.RS256
        return self.algs[0]

    def public_jwks(self) -> List[Dict[str, str]]:
        return self._keyset.jwks()

    async def close(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
