"""
Identity Rotator

Owns the pool of network/browser identities (proxy + fingerprint) handed to
acquisition strategies. An identity is leased to one in-flight attempt at a
time, counts its uses, and is retired when it gets blocked or wears out.

The pool is the only mutable state shared between concurrent target
sessions; every mutation happens under one lock.
"""

import itertools
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from threading import Lock
from typing import TYPE_CHECKING

from .exceptions import IdentityPoolExhaustedException
from .utils import mask_proxy

if TYPE_CHECKING:
    from ...core.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FingerprintProfile:
    """Client fingerprint presented to the target site."""

    user_agent: str
    impersonate: str  # curl_cffi impersonation target, e.g. "chrome124"
    accept_language: str = "en-US,en;q=0.9"


@dataclass
class Identity:
    """One egress point + fingerprint, leased per attempt."""

    proxy_endpoint: str | None
    fingerprint: FingerprintProfile
    session_handle: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    usage_count: int = 0
    retired: bool = False
    in_use: bool = False
    last_used: float = 0.0

    def describe(self) -> str:
        return (
            f"identity={self.session_handle} proxy={mask_proxy(self.proxy_endpoint)} "
            f"impersonate={self.fingerprint.impersonate} uses={self.usage_count}"
        )


class IdentityRotator:
    """
    Bounded, thread-safe pool of identities.

    acquire() hands out the least-recently-used idle identity, or provisions a
    new one while the pool has room. release() returns a lease; retire() drops
    an identity for good and is idempotent.

    Proxies come from the run's proxy pool config (round-robin), else from
    HARVEST_PROXY_URLS, else HARVEST_PROXY_URL, else no proxy.
    """

    def __init__(
        self,
        settings: "Settings",
        proxy_pool_config: list[str] | tuple[str, ...] | None = None,
        pool_size: int | None = None,
        max_uses: int | None = None,
    ) -> None:
        self.settings = settings
        self.pool_size = max(1, pool_size if pool_size is not None else settings.HARVEST_IDENTITY_POOL_SIZE)
        self.max_uses = max(1, max_uses if max_uses is not None else settings.HARVEST_IDENTITY_MAX_USES)

        proxies = list(proxy_pool_config or settings.HARVEST_PROXY_URLS or [])
        if not proxies and settings.HARVEST_PROXY_URL:
            proxies = [settings.HARVEST_PROXY_URL]
        self._proxy_cycle = itertools.cycle(proxies) if proxies else None

        self._lock = Lock()
        self._pool: list[Identity] = []
        self._provisioned = 0
        self._retired_total = 0

        logger.info(
            f"IdentityRotator initialized: pool_size={self.pool_size}, "
            f"max_uses={self.max_uses}, proxies={len(proxies)}"
        )

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._pool)

    def acquire(self) -> Identity:
        """Lease an identity for one attempt.

        Raises:
            IdentityPoolExhaustedException: every pooled identity is in use
                and the pool is at capacity
        """
        with self._lock:
            idle = [i for i in self._pool if not i.in_use and not i.retired]
            if idle:
                identity = min(idle, key=lambda i: i.last_used)
            elif len(self._pool) < self.pool_size:
                identity = self._provision()
                self._pool.append(identity)
            else:
                raise IdentityPoolExhaustedException(
                    "No idle identity available",
                    pool_size=self.pool_size,
                )

            identity.in_use = True
            identity.usage_count += 1
            identity.last_used = time.monotonic()

        logger.debug(f"Acquired {identity.describe()}")
        return identity

    def release(self, identity: Identity) -> None:
        """End a lease. Worn-out identities are retired here."""
        with self._lock:
            identity.in_use = False
            identity.last_used = time.monotonic()
            if not identity.retired and identity.usage_count > self.max_uses:
                logger.info(f"Retiring worn-out {identity.describe()}")
                self._retire_locked(identity)

    def retire(self, identity: Identity, reason: str | None = None) -> None:
        """Remove an identity from rotation. Safe to call more than once."""
        with self._lock:
            if identity.retired:
                return
            identity.in_use = False
            logger.info(f"Retiring {identity.describe()} (reason={reason})")
            self._retire_locked(identity)

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "pool_size": self.pool_size,
                "active": len(self._pool),
                "in_use": sum(1 for i in self._pool if i.in_use),
                "provisioned_total": self._provisioned,
                "retired_total": self._retired_total,
            }

    def _retire_locked(self, identity: Identity) -> None:
        identity.retired = True
        self._retired_total += 1
        if identity in self._pool:
            self._pool.remove(identity)

    def _provision(self) -> Identity:
        proxy = next(self._proxy_cycle) if self._proxy_cycle else None
        user_agents = self.settings.HARVEST_USER_AGENTS
        profiles = self.settings.HARVEST_IMPERSONATE_PROFILES
        languages = self.settings.HARVEST_ACCEPT_LANGUAGES or ["en-US,en;q=0.9"]

        # Keep UA and TLS profile from the same browser family when possible
        index = random.randrange(len(user_agents)) if user_agents else 0
        user_agent = user_agents[index] if user_agents else (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
        )
        impersonate = profiles[index % len(profiles)] if profiles else "chrome"

        self._provisioned += 1
        identity = Identity(
            proxy_endpoint=proxy,
            fingerprint=FingerprintProfile(
                user_agent=user_agent,
                impersonate=impersonate,
                accept_language=random.choice(languages),
            ),
        )
        logger.debug(f"Provisioned {identity.describe()}")
        return identity
