"""
Session lifecycle for the puppeted user.

SessionManager.start() builds a nio AsyncClient from resolved credentials,
starts sync_forever in the background and returns once the first sync has
been processed, so callers never observe events before the initial room and
membership state is available.
"""
import asyncio
import logging
from typing import Callable, Optional

from nio import AsyncClient, SyncError, SyncResponse

from matrix_puppet.core.errors import PuppetConnectionError, PuppetError
from matrix_puppet.core.types import Credentials

logger = logging.getLogger(__name__)

# Sync errors that will never recover by retrying the same token
FATAL_SYNC_ERRCODES = {"M_UNKNOWN_TOKEN", "M_MISSING_TOKEN", "M_FORBIDDEN"}

ClientFactory = Callable[[str, str], AsyncClient]


def _default_client_factory(homeserver_url: str, user_id: str) -> AsyncClient:
    return AsyncClient(homeserver=homeserver_url, user=user_id)


class SessionManager:
    """Owns the single Matrix client of this process"""

    def __init__(self, sync_timeout_ms: int = 30000, client_factory: Optional[ClientFactory] = None):
        self.sync_timeout_ms = sync_timeout_ms
        self._client_factory = client_factory or _default_client_factory
        self.client: Optional[AsyncClient] = None
        self._sync_task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None

    @property
    def is_ready(self) -> bool:
        ready = self._ready
        return ready is not None and ready.done() and not ready.cancelled() and ready.exception() is None

    async def start(self, credentials: Credentials, router=None) -> AsyncClient:
        """
        Connect and block until the first sync completes.

        There is no timeout; wrap the call (e.g. asyncio.wait_for) to bound it.

        Raises:
            PuppetConnectionError: if the sync loop dies or the token is rejected
                before the first sync
        """
        if self.client is not None:
            raise PuppetError("Session already started")

        client = self._client_factory(credentials.homeserver_url, credentials.user_id)
        client.user_id = credentials.user_id
        client.access_token = credentials.access_token
        if credentials.device_id:
            client.device_id = credentials.device_id
        self.client = client

        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        client.add_response_callback(self._on_sync, SyncResponse)
        client.add_response_callback(self._on_sync_error, SyncError)

        # Callbacks go in before the first sync so its state events are seen
        if router is not None:
            router.install(client)

        logger.info(
            "Starting Matrix session",
            extra={"homeserver_url": credentials.homeserver_url, "user_id": credentials.user_id},
        )
        self._sync_task = asyncio.create_task(
            client.sync_forever(timeout=self.sync_timeout_ms, full_state=True)
        )

        ready, sync_task = self._ready, self._sync_task
        try:
            done, _pending = await asyncio.wait(
                {ready, sync_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            # Cancelled from outside, e.g. by asyncio.wait_for
            await self.close()
            raise

        if ready in done:
            try:
                ready.result()
            except PuppetConnectionError:
                await self.close()
                raise
            logger.info("synced")
            return client

        error = None if sync_task.cancelled() else sync_task.exception()
        await self.close()
        if error is not None:
            raise PuppetConnectionError(f"Sync loop failed before the first sync: {error}") from error
        raise PuppetConnectionError("Sync loop stopped before the first sync")

    async def _on_sync(self, response: SyncResponse) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(response)

    async def _on_sync_error(self, response: SyncError) -> None:
        errcode = getattr(response, "status_code", None)
        logger.warning("Sync failed", extra={"errcode": errcode, "error": getattr(response, "message", None)})
        if errcode in FATAL_SYNC_ERRCODES and self._ready is not None and not self._ready.done():
            self._ready.set_exception(
                PuppetConnectionError(f"Homeserver rejected the session: {errcode}")
            )

    async def wait_closed(self) -> None:
        """Wait until the background sync loop ends"""
        if self._sync_task is not None:
            await self._sync_task

    async def close(self) -> None:
        """Stop syncing and close the client; start() may be called again afterwards"""
        sync_task, client = self._sync_task, self.client
        self._sync_task = None
        self._ready = None
        self.client = None

        if sync_task is not None and not sync_task.done():
            sync_task.cancel()
            try:
                await sync_task
            except asyncio.CancelledError:
                pass
        if client is not None:
            logger.info("Closing client session")
            await client.close()
