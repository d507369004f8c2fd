"""Example script demonstrating tunnel key storage and rotation."""

import asyncio
import logging
import sys

from tunnelvault import (
    KeyExchangeClient,
    RotationPrecondition,
    SearchTerm,
    TunnelConfiguration,
    TunnelConfigurationManager,
    WireguardKeyRotation,
)
from tunnelvault.config import settings
from tunnelvault.manager import GetFromStoreError
from tunnelvault.rotation import KeyRotationError
from tunnelvault.store import ItemNotFoundError, create_store

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main(account_token: str):
    """Make sure the account has a fresh key registered with the server."""
    logger.info(f"Using {settings.store_backend} store, API at {settings.api_url}")

    store = create_store()
    manager = TunnelConfigurationManager(store)
    search_term = SearchTerm.by_account(account_token)

    try:
        await manager.load(search_term)
    except GetFromStoreError as e:
        if not isinstance(e.source, ItemNotFoundError):
            raise
        logger.info("No configuration yet, creating one")
        await manager.add(TunnelConfiguration.new(), account_token)

    async with KeyExchangeClient() as client:
        rotation = WireguardKeyRotation(manager, client)
        try:
            await rotation.reconcile(search_term)
            outcome = await rotation.rotate_private_key(search_term, RotationPrecondition.when_aged_enough())
            logger.info(f"Rotation outcome: {outcome.value}")
        except KeyRotationError as e:
            logger.error(f"Rotation failed: {e}", exc_info=True)

    entry = await manager.load(search_term)
    interface = entry.tunnel_configuration.interface
    logger.info(f"Public key: {interface.private_key.public_key_base64}")
    logger.info(f"Addresses: {', '.join(str(a) for a in interface.addresses) or '(none)'}")

    store.close()


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("usage: python example.py ACCOUNT_TOKEN")
        sys.exit(2)
    asyncio.run(main(sys.argv[1]))
