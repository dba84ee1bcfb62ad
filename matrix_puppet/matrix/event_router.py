"""
Routes Matrix client events to the registry and the bridging application.

Two event kinds are handled:
- RoomMemberEvent: rebuild the room's member list in the RoomRegistry
- ReceiptEvent: when the puppeted user read something in a room bound to a
  third party conversation, tell the app to mirror the read receipt
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Optional, Set, Tuple, Type

from nio import MatrixRoom, ReceiptEvent, RoomMemberEvent

from matrix_puppet.core.room_registry import RoomRegistry

logger = logging.getLogger(__name__)

READ_RECEIPT = "m.read"


class EventRouter:
    """
    Dispatch table from nio event classes to handlers.

    The router starts unarmed. While unarmed the registry is still updated but
    nothing is forwarded; set_app() arms it.
    """

    def __init__(self, own_user_id: str, registry: RoomRegistry):
        self.own_user_id = own_user_id
        self.registry = registry
        self._app: Any = None
        self._pending: Set[asyncio.Future] = set()
        # (event class, handler, ephemeral)
        self._handlers: Tuple[Tuple[Type, Callable[[MatrixRoom, Any], None], bool], ...] = (
            (RoomMemberEvent, self.on_membership, False),
            (ReceiptEvent, self.on_receipt, True),
        )

    @property
    def armed(self) -> bool:
        return self._app is not None

    def set_app(self, app: Any) -> None:
        self._app = app
        logger.debug(f"Event router {'armed' if self.armed else 'disarmed'}")

    def install(self, client) -> None:
        """Register dispatch() on a nio client for every event kind in the table"""
        for event_type, _handler, ephemeral in self._handlers:
            if ephemeral:
                client.add_ephemeral_callback(self.dispatch, event_type)
            else:
                client.add_event_callback(self.dispatch, event_type)

    async def dispatch(self, room: MatrixRoom, event: Any) -> None:
        for event_type, handler, _ephemeral in self._handlers:
            if isinstance(event, event_type):
                handler(room, event)
                return

    def on_membership(self, room: MatrixRoom, event: Any) -> None:
        self.registry.replace_members(room.room_id, room.users.keys())

    def snapshot(self, rooms: Dict[str, MatrixRoom]) -> None:
        """Replace membership for every room the client knows about"""
        for room_id, room in rooms.items():
            self.registry.replace_members(room_id, room.users.keys())
        logger.info(f"Membership snapshot taken for {len(rooms)} rooms")

    def on_receipt(self, room: MatrixRoom, event: ReceiptEvent) -> None:
        third_party_room_id = self.registry.third_party_room_id(room.room_id)
        if third_party_room_id is None or not self.armed:
            return

        for receipt in event.receipts:
            if receipt.receipt_type == READ_RECEIPT and receipt.user_id == self.own_user_id:
                logger.info(
                    "Receive a read event from ourself",
                    extra={"room_id": room.room_id, "event_id": receipt.event_id},
                )
                self._forward_read_receipt(third_party_room_id)
                return

    def _forward_read_receipt(self, third_party_room_id: str) -> None:
        result = self._app.send_read_receipt_as_puppet_to_third_party_room_with_id(third_party_room_id)
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._pending.add(future)
            future.add_done_callback(self._forward_done)

    def _forward_done(self, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(
                "Forwarding read receipt to the bridge failed",
                exc_info=(type(error), error, error.__traceback__),
            )

    @property
    def pending_forwards(self) -> int:
        return len(self._pending)
