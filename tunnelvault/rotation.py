"""WireGuard private key rotation.

Provides:
- Policy-gated rotation (always, or once the key is old enough)
- Server-side key replacement before the local commit
- A periodic rotation scheduler
- Reconciliation of the local key with the server after an interrupted rotation
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from .api import ApiError, ApiRejectedError, KeyExchangeClient, WireguardAssociatedAddresses
from .config import settings
from .configuration import TunnelConfiguration
from .manager import SearchTerm, TunnelConfigurationError, TunnelConfigurationManager
from .security.keys import WireguardPrivateKey

logger = logging.getLogger(__name__)

DEFAULT_ROTATION_INTERVAL = timedelta(days=7)


class RotationOutcome(str, Enum):
    """Result of a rotation attempt."""

    ROTATED = "ROTATED"
    NOT_ROTATED = "NOT_ROTATED"


class ReconcileOutcome(str, Enum):
    """Result of a reconciliation pass."""

    IN_SYNC = "IN_SYNC"  # Server already knows the local key
    REPUSHED = "REPUSHED"  # Local key was registered again


class RotationStatus(str, Enum):
    """Status of the last rotation for a configuration."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class KeyRotationError(Exception):
    """Base class for key rotation failures.

    The manager or API error that caused it is kept in ``source``.
    """

    def __init__(self, message: str = "", source: Optional[Exception] = None):
        super().__init__(message)
        self.source = source


class ReadConfigurationError(KeyRotationError):
    """The current configuration could not be loaded."""


class KeyExchangeError(KeyRotationError):
    """The server did not accept the new key."""


class KeyExchangeTransportError(KeyExchangeError):
    """The key exchange request did not get through."""


class KeyExchangeRejectedError(KeyExchangeError):
    """The server refused the key exchange, e.g. the old key is stale."""

    @property
    def code(self):
        return getattr(self.source, "code", None)


class CommitError(KeyRotationError):
    """The new key was accepted by the server but could not be stored."""


@dataclass(frozen=True)
class RotationPrecondition:
    """Decides whether a rotation attempt should go ahead.

    ``min_key_age`` of None means always rotate.
    """

    min_key_age: Optional[timedelta] = None

    @classmethod
    def always(cls) -> "RotationPrecondition":
        return cls()

    @classmethod
    def when_aged_enough(cls, threshold: timedelta = DEFAULT_ROTATION_INTERVAL) -> "RotationPrecondition":
        return cls(min_key_age=threshold)

    def is_satisfied(self, created_at: datetime, now: datetime) -> bool:
        if self.min_key_age is None:
            return True
        return now >= created_at + self.min_key_age


@dataclass
class KeyRotationState:
    """State of key rotation for one configuration."""

    search_term: SearchTerm
    status: RotationStatus = RotationStatus.PENDING
    last_rotation: Optional[datetime] = None
    error_message: Optional[str] = None


def _exchange_error(e: ApiError, what: str) -> KeyExchangeError:
    if isinstance(e, ApiRejectedError):
        return KeyExchangeRejectedError(f"{what} rejected: {e}", e)
    return KeyExchangeTransportError(f"{what} failed: {e}", e)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireguardKeyRotation:
    """Rotates the WireGuard key stored for an account.

    The new public key is registered with the server before the local
    configuration is touched, so the stored private key always has a
    server-side counterpart.

    Usage:
        rotation = WireguardKeyRotation(manager, api_client)
        outcome = await rotation.rotate_private_key(
            SearchTerm.by_account(token), RotationPrecondition.when_aged_enough()
        )
    """

    def __init__(
        self,
        manager: TunnelConfigurationManager,
        api_client: KeyExchangeClient,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize key rotation.

        Args:
            manager: Configuration manager holding the keys
            api_client: Key exchange API client
            clock: Returns the current UTC time (for tests)
        """
        self.manager = manager
        self.api_client = api_client
        self._clock = clock or _utcnow
        self._states: dict[SearchTerm, KeyRotationState] = {}
        self._running = False
        self._stop_requested = False
        self._stop_event: Optional[asyncio.Event] = None

    def get_rotation_status(self, search_term: SearchTerm) -> Optional[KeyRotationState]:
        """Get the last rotation state for a configuration, if any."""
        return self._states.get(search_term)

    def _state(self, search_term: SearchTerm) -> KeyRotationState:
        if search_term not in self._states:
            self._states[search_term] = KeyRotationState(search_term=search_term)
        return self._states[search_term]

    def _fail(self, state: KeyRotationState, error: KeyRotationError) -> KeyRotationError:
        state.status = RotationStatus.FAILED
        state.error_message = str(error)
        logger.error(f"Key rotation failed for {state.search_term}: {error}")
        return error

    async def _load(self, search_term: SearchTerm, state: KeyRotationState):
        try:
            return await self.manager.load(search_term)
        except TunnelConfigurationError as e:
            raise self._fail(state, ReadConfigurationError(f"Failed to read configuration: {e}", e)) from e

    async def _commit(
        self,
        search_term: SearchTerm,
        state: KeyRotationState,
        transform: Callable[[TunnelConfiguration], None],
        on_success: Callable[[], None],
    ) -> None:
        # Once issued, the write runs to completion even if the caller is cancelled.
        # State is settled by the write itself so an abandoned commit still lands in it.
        abandoned = False
        write = asyncio.ensure_future(self.manager.update(search_term, transform))

        def settle(task: asyncio.Future) -> None:
            if task.cancelled():
                state.status = RotationStatus.FAILED
                state.error_message = "Commit cancelled"
                return
            error = task.exception()
            if error is None:
                on_success()
                return
            state.status = RotationStatus.FAILED
            state.error_message = str(error)
            if abandoned:
                logger.error(f"Abandoned commit for {search_term} failed: {error}")

        write.add_done_callback(settle)
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            abandoned = True
            logger.warning(f"Caller cancelled while committing {search_term}, the write continues")
            raise
        except TunnelConfigurationError as e:
            raise self._fail(state, CommitError(f"Failed to store configuration: {e}", e)) from e

    async def rotate_private_key(
        self,
        search_term: SearchTerm,
        precondition: Optional[RotationPrecondition] = None,
    ) -> RotationOutcome:
        """Replace the stored private key with a new one.

        Args:
            search_term: Which configuration to rotate
            precondition: Rotation policy (always rotate if not provided)

        Returns:
            ROTATED, or NOT_ROTATED when the precondition isn't met

        Raises:
            ReadConfigurationError: If the configuration can't be loaded
            KeyExchangeError: If the server doesn't accept the new key
            CommitError: If the new key can't be stored
        """
        precondition = precondition or RotationPrecondition.always()
        state = self._state(search_term)
        state.status = RotationStatus.IN_PROGRESS

        entry = await self._load(search_term, state)
        old_key = entry.tunnel_configuration.interface.private_key
        now = self._clock()

        if not precondition.is_satisfied(old_key.created_at, now):
            state.status = RotationStatus.SKIPPED
            logger.debug(f"Key for {search_term} is {old_key.age(now)} old, not rotating")
            return RotationOutcome.NOT_ROTATED

        new_key = WireguardPrivateKey.generate(created_at=now)
        try:
            addresses = await self.api_client.replace_wireguard_key(
                entry.account_token, old_key.public_key, new_key.public_key
            )
        except ApiError as e:
            raise self._fail(state, _exchange_error(e, "Key exchange")) from e

        def apply(configuration: TunnelConfiguration) -> None:
            configuration.interface.private_key = new_key
            configuration.interface.addresses = addresses.as_list()

        def completed() -> None:
            state.status = RotationStatus.COMPLETED
            state.last_rotation = now
            state.error_message = None
            logger.info(f"Rotated WireGuard key for {search_term}")

        await self._commit(search_term, state, apply, completed)
        return RotationOutcome.ROTATED

    async def reconcile(self, search_term: SearchTerm) -> ReconcileOutcome:
        """Make sure the server knows the locally stored key.

        A rotation interrupted between the key exchange and the local commit
        leaves the server with a key this device never stored. The local key
        is authoritative: if the server no longer lists it, it is pushed
        again and the addresses the server returns are stored.

        The configuration's rotation state tracks the pass like a rotation,
        without touching ``last_rotation``.

        Raises:
            ReadConfigurationError: If the configuration can't be loaded
            KeyExchangeError: If the server can't be queried or refuses the key
            CommitError: If the new addresses can't be stored
        """
        state = self._state(search_term)
        state.status = RotationStatus.IN_PROGRESS
        entry = await self._load(search_term, state)
        local_key = entry.tunnel_configuration.interface.private_key

        try:
            if await self.api_client.check_wireguard_key(entry.account_token, local_key.public_key):
                logger.debug(f"Key for {search_term} is registered")
                state.status = RotationStatus.COMPLETED
                state.error_message = None
                return ReconcileOutcome.IN_SYNC
            addresses: WireguardAssociatedAddresses = await self.api_client.push_wireguard_key(
                entry.account_token, local_key.public_key
            )
        except ApiError as e:
            raise self._fail(state, _exchange_error(e, "Key reconciliation")) from e

        def apply(configuration: TunnelConfiguration) -> None:
            # A rotation may have landed meanwhile; its addresses win
            if configuration.interface.private_key == local_key:
                configuration.interface.addresses = addresses.as_list()

        def repushed() -> None:
            state.status = RotationStatus.COMPLETED
            state.error_message = None
            logger.warning(f"Key for {search_term} was missing on the server and has been pushed again")

        await self._commit(search_term, state, apply, repushed)
        return ReconcileOutcome.REPUSHED

    async def run_scheduler(
        self,
        search_term: SearchTerm,
        check_interval: Optional[timedelta] = None,
        threshold: Optional[timedelta] = None,
    ) -> None:
        """Rotate the key whenever it gets older than threshold.

        Failures are logged and retried on the next check.

        Args:
            search_term: Which configuration to keep fresh
            check_interval: Time between checks. If not provided, uses settings.
            threshold: Key age that triggers a rotation. If not provided, uses settings.
        """
        check_interval = check_interval or timedelta(hours=settings.rotation_check_interval_hours)
        threshold = threshold or timedelta(days=settings.key_rotation_interval_days)
        # A stop requested before the loop started still counts
        self._running = not self._stop_requested
        self._stop_event = asyncio.Event()
        precondition = RotationPrecondition.when_aged_enough(threshold)
        logger.info("Starting key rotation scheduler")

        while self._running:
            try:
                await self.rotate_private_key(search_term, precondition)
            except KeyRotationError as e:
                logger.error(f"Scheduled key rotation error: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=check_interval.total_seconds())
            except asyncio.TimeoutError:
                pass

        self._stop_requested = False
        self._stop_event = None
        logger.info("Key rotation scheduler stopped")

    def stop_scheduler(self) -> None:
        """Stop the rotation scheduler, or keep the next run from starting."""
        self._running = False
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()
