"""Tests for WireGuard key rotation."""

import asyncio
from datetime import datetime, timedelta, timezone
from ipaddress import ip_interface
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from tunnelvault.api import ApiRejectedError, ApiTransportError
from tunnelvault.manager import GetFromStoreError, SearchTerm, UpdateStoreError
from tunnelvault.rotation import (
    CommitError,
    KeyExchangeError,
    KeyExchangeRejectedError,
    KeyExchangeTransportError,
    KeyRotationError,
    ReadConfigurationError,
    ReconcileOutcome,
    RotationOutcome,
    RotationPrecondition,
    RotationStatus,
    WireguardKeyRotation,
)
from tunnelvault.security.keys import WireguardPrivateKey
from tunnelvault.store.base import StoreUnavailableError

ACCOUNT = "1234567890123456"
KEY_CREATED_AT = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
TERM = SearchTerm.by_account(ACCOUNT)


def clock_at(days: float):
    """Clock fixed at some days after the sample key was created."""
    now = KEY_CREATED_AT + timedelta(days=days)
    return lambda: now


async def settled(rotation, status, timeout=5.0):
    """Wait until the rotation state for TERM reaches status."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while rotation.get_rotation_status(TERM).status != status:
        assert loop.time() < deadline, f"still {rotation.get_rotation_status(TERM).status}"
        await asyncio.sleep(0.01)


@pytest_asyncio.fixture
async def stored(manager, sample_configuration):
    """Sample configuration stored for ACCOUNT."""
    await manager.add(sample_configuration, ACCOUNT)
    return sample_configuration


class TestRotationPrecondition:
    """Test rotation policy."""

    def test_always(self):
        """Test the default policy always rotates."""
        assert RotationPrecondition.always().is_satisfied(KEY_CREATED_AT, KEY_CREATED_AT)

    def test_when_aged_enough(self):
        """Test an age policy only passes once the threshold is reached."""
        precondition = RotationPrecondition.when_aged_enough(timedelta(days=7))
        assert not precondition.is_satisfied(KEY_CREATED_AT, KEY_CREATED_AT + timedelta(days=3))
        assert precondition.is_satisfied(KEY_CREATED_AT, KEY_CREATED_AT + timedelta(days=7))
        assert precondition.is_satisfied(KEY_CREATED_AT, KEY_CREATED_AT + timedelta(days=8))

    def test_default_threshold(self):
        """Test the default threshold is a week."""
        assert RotationPrecondition.when_aged_enough().min_key_age == timedelta(days=7)


class TestRotatePrivateKey:
    """Test rotate_private_key."""

    @pytest.mark.asyncio
    async def test_rotates_key_and_addresses(self, manager, api_client, stored, private_key):
        """Test a successful rotation stores the new key and addresses."""
        rotation = WireguardKeyRotation(manager, api_client, clock=clock_at(8))

        outcome = await rotation.rotate_private_key(TERM)

        assert outcome == RotationOutcome.ROTATED
        entry = await manager.load(TERM)
        interface = entry.tunnel_configuration.interface
        assert interface.private_key.raw != private_key.raw
        assert interface.private_key.created_at == KEY_CREATED_AT + timedelta(days=8)
        assert interface.addresses == [ip_interface("1.2.3.4"), ip_interface("fd00::1")]
        assert entry.tunnel_configuration.peers == stored.peers
        assert interface.dns == stored.interface.dns

        api_client.replace_wireguard_key.assert_awaited_once_with(
            ACCOUNT, private_key.public_key, interface.private_key.public_key
        )

    @pytest.mark.asyncio
    async def test_aged_key_rotates(self, manager, api_client, stored):
        """Test an 8 day old key rotates under a 7 day policy."""
        rotation = WireguardKeyRotation(manager, api_client, clock=clock_at(8))
        outcome = await rotation.rotate_private_key(TERM, RotationPrecondition.when_aged_enough(timedelta(days=7)))
        assert outcome == RotationOutcome.ROTATED
        api_client.replace_wireguard_key.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_young_key_is_kept(self, manager, api_client, stored):
        """Test a 3 day old key is left alone without calling the server."""
        rotation = WireguardKeyRotation(manager, api_client, clock=clock_at(3))

        outcome = await rotation.rotate_private_key(TERM, RotationPrecondition.when_aged_enough(timedelta(days=7)))

        assert outcome == RotationOutcome.NOT_ROTATED
        api_client.replace_wireguard_key.assert_not_awaited()
        entry = await manager.load(TERM)
        assert entry.tunnel_configuration == stored
        assert rotation.get_rotation_status(TERM).status == RotationStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_missing_configuration(self, manager, api_client):
        """Test an unknown account fails before any exchange."""
        rotation = WireguardKeyRotation(manager, api_client)

        with pytest.raises(ReadConfigurationError) as exc_info:
            await rotation.rotate_private_key(TERM)

        assert isinstance(exc_info.value.source, GetFromStoreError)
        api_client.replace_wireguard_key.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_exchange_leaves_store(self, manager, api_client, stored):
        """Test a refused exchange changes nothing locally."""
        api_client.replace_wireguard_key.side_effect = ApiRejectedError(-32001, "stale key")
        rotation = WireguardKeyRotation(manager, api_client, clock=clock_at(8))

        with pytest.raises(KeyExchangeRejectedError) as exc_info:
            await rotation.rotate_private_key(TERM)

        assert exc_info.value.code == -32001
        assert isinstance(exc_info.value, KeyExchangeError)
        entry = await manager.load(TERM)
        assert entry.tunnel_configuration == stored

    @pytest.mark.asyncio
    async def test_transport_failure_leaves_store(self, manager, api_client, stored):
        """Test a network failure changes nothing locally."""
        api_client.replace_wireguard_key.side_effect = ApiTransportError("connection reset")
        rotation = WireguardKeyRotation(manager, api_client, clock=clock_at(8))

        with pytest.raises(KeyExchangeTransportError):
            await rotation.rotate_private_key(TERM)

        entry = await manager.load(TERM)
        assert entry.tunnel_configuration == stored
        state = rotation.get_rotation_status(TERM)
        assert state.status == RotationStatus.FAILED
        assert "connection reset" in state.error_message

    @pytest.mark.asyncio
    async def test_commit_failure(self, manager, api_client, stored):
        """Test a failed local write after a successful exchange is a CommitError."""
        manager.update = AsyncMock(side_effect=UpdateStoreError("locked", StoreUnavailableError("locked")))
        rotation = WireguardKeyRotation(manager, api_client, clock=clock_at(8))

        with pytest.raises(CommitError) as exc_info:
            await rotation.rotate_private_key(TERM)

        assert isinstance(exc_info.value.source, UpdateStoreError)
        api_client.replace_wireguard_key.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_status_lifecycle(self, manager, api_client, stored):
        """Test rotation status moves to COMPLETED with a timestamp."""
        rotation = WireguardKeyRotation(manager, api_client, clock=clock_at(8))
        assert rotation.get_rotation_status(TERM) is None

        await rotation.rotate_private_key(TERM)

        state = rotation.get_rotation_status(TERM)
        assert state.status == RotationStatus.COMPLETED
        assert state.last_rotation == KEY_CREATED_AT + timedelta(days=8)
        assert state.error_message is None

    @pytest.mark.asyncio
    async def test_commit_survives_cancellation(self, manager, api_client, stored, private_key):
        """Test cancelling the caller mid-commit still stores the new key."""
        rotation = WireguardKeyRotation(manager, api_client, clock=clock_at(8))
        started = asyncio.Event()
        release = asyncio.Event()
        finished = asyncio.Event()
        real_update = manager.update

        async def slow_update(search_term, transform):
            started.set()
            await release.wait()
            result = await real_update(search_term, transform)
            finished.set()
            return result

        manager.update = slow_update
        task = asyncio.create_task(rotation.rotate_private_key(TERM))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        release.set()
        await asyncio.wait_for(finished.wait(), timeout=5)

        entry = await manager.load(TERM)
        assert entry.tunnel_configuration.interface.private_key.raw != private_key.raw
        await settled(rotation, RotationStatus.COMPLETED)
        assert rotation.get_rotation_status(TERM).last_rotation == KEY_CREATED_AT + timedelta(days=8)

    @pytest.mark.asyncio
    async def test_abandoned_commit_failure_is_recorded(self, manager, api_client, stored):
        """Test a commit that fails after its caller was cancelled still marks the rotation failed."""
        rotation = WireguardKeyRotation(manager, api_client, clock=clock_at(8))
        started = asyncio.Event()
        release = asyncio.Event()

        async def failing_update(search_term, transform):
            started.set()
            await release.wait()
            raise UpdateStoreError("locked", StoreUnavailableError("locked"))

        manager.update = failing_update
        task = asyncio.create_task(rotation.rotate_private_key(TERM))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert rotation.get_rotation_status(TERM).status == RotationStatus.IN_PROGRESS

        release.set()
        await settled(rotation, RotationStatus.FAILED)
        assert "locked" in rotation.get_rotation_status(TERM).error_message


class TestReconcile:
    """Test reconciliation with the server."""

    @pytest.mark.asyncio
    async def test_in_sync(self, manager, api_client, stored, private_key):
        """Test a registered key needs nothing."""
        rotation = WireguardKeyRotation(manager, api_client)

        assert await rotation.reconcile(TERM) == ReconcileOutcome.IN_SYNC
        api_client.check_wireguard_key.assert_awaited_once_with(ACCOUNT, private_key.public_key)
        api_client.push_wireguard_key.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_repushes_missing_key(self, manager, api_client, stored, private_key):
        """Test an unregistered local key is pushed again and its addresses stored."""
        api_client.check_wireguard_key.return_value = False
        rotation = WireguardKeyRotation(manager, api_client)

        assert await rotation.reconcile(TERM) == ReconcileOutcome.REPUSHED

        api_client.push_wireguard_key.assert_awaited_once_with(ACCOUNT, private_key.public_key)
        entry = await manager.load(TERM)
        assert entry.tunnel_configuration.interface.private_key == private_key
        assert entry.tunnel_configuration.interface.addresses == [ip_interface("1.2.3.4"), ip_interface("fd00::1")]

    @pytest.mark.asyncio
    async def test_rotation_in_between_wins(self, manager, api_client, stored, exchanged_addresses):
        """Test addresses from a push are dropped if the key changed meanwhile."""
        api_client.check_wireguard_key.return_value = False
        rotated_key = WireguardPrivateKey.generate()
        rotated_addresses = [ip_interface("10.99.0.1/32")]

        async def push_during_rotation(account_token, public_key):
            def rotate(configuration):
                configuration.interface.private_key = rotated_key
                configuration.interface.addresses = rotated_addresses

            await manager.update(TERM, rotate)
            return exchanged_addresses

        api_client.push_wireguard_key.side_effect = push_during_rotation
        rotation = WireguardKeyRotation(manager, api_client)

        assert await rotation.reconcile(TERM) == ReconcileOutcome.REPUSHED

        entry = await manager.load(TERM)
        assert entry.tunnel_configuration.interface.private_key.raw == rotated_key.raw
        assert entry.tunnel_configuration.interface.addresses == rotated_addresses

    @pytest.mark.asyncio
    async def test_check_failure(self, manager, api_client, stored):
        """Test a failed check is a key exchange error."""
        api_client.check_wireguard_key.side_effect = ApiTransportError("timeout")
        rotation = WireguardKeyRotation(manager, api_client)

        with pytest.raises(KeyExchangeTransportError):
            await rotation.reconcile(TERM)
        api_client.push_wireguard_key.assert_not_awaited()
        assert rotation.get_rotation_status(TERM).status == RotationStatus.FAILED

    @pytest.mark.asyncio
    async def test_status_tracks_in_sync_pass(self, manager, api_client, stored):
        """Test a reconcile pass is in progress while it runs and completed after."""
        rotation = WireguardKeyRotation(manager, api_client)
        seen = []

        async def check(account_token, public_key):
            seen.append(rotation.get_rotation_status(TERM).status)
            return True

        api_client.check_wireguard_key.side_effect = check
        await rotation.reconcile(TERM)

        assert seen == [RotationStatus.IN_PROGRESS]
        state = rotation.get_rotation_status(TERM)
        assert state.status == RotationStatus.COMPLETED
        assert state.last_rotation is None

    @pytest.mark.asyncio
    async def test_status_after_repush(self, manager, api_client, stored):
        """Test a repush clears an earlier failure."""
        api_client.replace_wireguard_key.side_effect = ApiTransportError("offline")
        api_client.check_wireguard_key.return_value = False
        rotation = WireguardKeyRotation(manager, api_client, clock=clock_at(8))
        with pytest.raises(KeyExchangeTransportError):
            await rotation.rotate_private_key(TERM)

        assert await rotation.reconcile(TERM) == ReconcileOutcome.REPUSHED

        state = rotation.get_rotation_status(TERM)
        assert state.status == RotationStatus.COMPLETED
        assert state.error_message is None


class TestScheduler:
    """Test the periodic rotation loop."""

    @pytest.mark.asyncio
    async def test_rotates_once_then_waits(self, manager, api_client, stored):
        """Test an aged key is rotated and the fresh key is left alone."""
        rotation = WireguardKeyRotation(manager, api_client, clock=clock_at(8))
        task = asyncio.create_task(
            rotation.run_scheduler(TERM, check_interval=timedelta(milliseconds=10), threshold=timedelta(days=7))
        )

        await asyncio.sleep(0.1)
        rotation.stop_scheduler()
        await asyncio.wait_for(task, timeout=5)

        api_client.replace_wireguard_key.assert_awaited_once()
        assert rotation.get_rotation_status(TERM).status == RotationStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_keeps_running_after_failure(self, manager, api_client, stored):
        """Test rotation errors don't stop the loop."""
        api_client.replace_wireguard_key.side_effect = ApiTransportError("offline")
        rotation = WireguardKeyRotation(manager, api_client, clock=clock_at(8))
        task = asyncio.create_task(rotation.run_scheduler(TERM, check_interval=timedelta(milliseconds=10)))

        await asyncio.sleep(0.1)
        assert not task.done()
        rotation.stop_scheduler()
        await asyncio.wait_for(task, timeout=5)

        assert api_client.replace_wireguard_key.await_count >= 2
        assert rotation.get_rotation_status(TERM).status == RotationStatus.FAILED

    @pytest.mark.asyncio
    async def test_stop_before_first_check_returns(self, manager, api_client, stored):
        """Test stopping wakes a loop that is waiting for the next check."""
        rotation = WireguardKeyRotation(manager, api_client, clock=clock_at(1))
        task = asyncio.create_task(rotation.run_scheduler(TERM, check_interval=timedelta(hours=24)))

        await asyncio.sleep(0.05)
        rotation.stop_scheduler()
        await asyncio.wait_for(task, timeout=5)
        api_client.replace_wireguard_key.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_before_start(self, manager, api_client, stored):
        """Test a stop issued before the loop starts keeps it from running."""
        rotation = WireguardKeyRotation(manager, api_client, clock=clock_at(8))
        rotation.stop_scheduler()

        await asyncio.wait_for(rotation.run_scheduler(TERM, check_interval=timedelta(hours=24)), timeout=5)
        api_client.replace_wireguard_key.assert_not_awaited()

        # The stop is used up; the next run rotates
        task = asyncio.create_task(rotation.run_scheduler(TERM, check_interval=timedelta(hours=24)))
        await asyncio.sleep(0.05)
        rotation.stop_scheduler()
        await asyncio.wait_for(task, timeout=5)
        api_client.replace_wireguard_key.assert_awaited_once()


def test_errors_share_base():
    """Test every rotation error is a KeyRotationError."""
    for cls in (ReadConfigurationError, KeyExchangeError, CommitError):
        assert issubclass(cls, KeyRotationError)
