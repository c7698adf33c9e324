"""
ut_gittorrent Extension
=======================

Negotiates "I want object X" / "here is a transfer handle for X" on top of
a Wire. All messages are JSON objects with a ``type`` field:

| type             | Sender    | Fields     | Meaning                                  |
|------------------|-----------|------------|------------------------------------------|
| ask              | requester | id         | send me transfer metadata for object id  |
| generatePack     | requester | id         | produce and seed packed data for id      |
| sendTransfer     | provider  | transfer   | packed data is seeded at transfer id     |
| receivedTransfer | provider  | transfer   | transfer metadata for your ask is ready  |

A provider treats ``ask`` and ``generatePack`` alike and answers with
``sendTransfer``. A requester accepts either ``receivedTransfer`` or
``sendTransfer`` as the answer.

[STATE] Requester:
    CONNECTED -> HANDSHAKE_EXCHANGED -> ASK_SENT -> AWAITING_TRANSFER -> TRANSFER_RECEIVED

[STATE] Provider:
    CONNECTED -> HANDSHAKE_EXCHANGED -> AWAITING_REQUEST -> PACK_GENERATING
              -> SEEDING -> REPLIED

Nothing here retries or times out. A provider that never answers leaves
its requester in AWAITING_TRANSFER for as long as the connection lives.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .directory import is_object_id
from .wire import ExtensionHandler, Handshake, WireError

logger = logging.getLogger(__name__)


EXTENSION_NAME = "ut_gittorrent"


class ExtensionMessageType(str, Enum):
    ASK = "ask"
    RECEIVED_TRANSFER = "receivedTransfer"
    GENERATE_PACK = "generatePack"
    SEND_TRANSFER = "sendTransfer"


TRANSFER_REPLIES = (ExtensionMessageType.RECEIVED_TRANSFER.value, ExtensionMessageType.SEND_TRANSFER.value)
PACK_REQUESTS = (ExtensionMessageType.ASK.value, ExtensionMessageType.GENERATE_PACK.value)


class RequesterState(Enum):
    CONNECTED = "connected"
    HANDSHAKE_EXCHANGED = "handshake_exchanged"
    ASK_SENT = "ask_sent"
    AWAITING_TRANSFER = "awaiting_transfer"
    TRANSFER_RECEIVED = "transfer_received"


class ProviderState(Enum):
    CONNECTED = "connected"
    HANDSHAKE_EXCHANGED = "handshake_exchanged"
    AWAITING_REQUEST = "awaiting_request"
    PACK_GENERATING = "pack_generating"
    SEEDING = "seeding"
    REPLIED = "replied"


# (transfer_id, extension) -> awaitable
TransferCallback = Callable[[str, "RequesterExtension"], Awaitable[None]]
# object_id -> transfer id, or None when the request cannot be served
PackGenerator = Callable[[str], Awaitable[Optional[str]]]


def build_message(msg_type: ExtensionMessageType, **fields: Any) -> Dict[str, Any]:
    message: Dict[str, Any] = {"type": msg_type.value}
    message.update(fields)
    return message


class RequesterExtension(ExtensionHandler):
    """Requester side of one connection, pursuing one object id."""

    name = EXTENSION_NAME

    def __init__(self, object_id: str, on_transfer: TransferCallback):
        super().__init__()
        self.object_id = object_id
        self.on_transfer = on_transfer
        self.state = RequesterState.CONNECTED
        self.transfer_id: Optional[str] = None
        self.handshake: Optional[Handshake] = None

    async def on_handshake(self, handshake: Handshake) -> None:
        if self.state is not RequesterState.CONNECTED:
            logger.debug(f"[EXT] Repeated handshake for {self.object_id} ignored")
            return
        self.handshake = handshake
        self.state = RequesterState.HANDSHAKE_EXCHANGED
        await self.ask()

    async def ask(self) -> None:
        await self.send(build_message(ExtensionMessageType.ASK, id=self.object_id))
        self.state = RequesterState.ASK_SENT
        logger.debug(f"[EXT] Asked for {self.object_id}")
        self.state = RequesterState.AWAITING_TRANSFER

    async def on_message(self, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")
        if msg_type not in TRANSFER_REPLIES:
            logger.warning(f"[EXT] Unexpected message {msg_type!r} for requester of {self.object_id}")
            return

        if self.state in (RequesterState.CONNECTED, RequesterState.HANDSHAKE_EXCHANGED):
            logger.error(f"[EXT] {msg_type} before handshake for {self.object_id}, dropped")
            return
        if self.state is RequesterState.TRANSFER_RECEIVED:
            logger.debug(f"[EXT] Duplicate {msg_type} for {self.object_id} ignored")
            return

        transfer_id = message.get("transfer")
        if not is_object_id(transfer_id):
            logger.warning(f"[EXT] Invalid transfer id {transfer_id!r} for {self.object_id}")
            return

        self.transfer_id = transfer_id
        self.state = RequesterState.TRANSFER_RECEIVED
        logger.info(f"[EXT] Transfer {transfer_id} offered for {self.object_id}")
        await self.on_transfer(transfer_id, self)


class ProviderExtension(ExtensionHandler):
    """
    Provider side of one inbound connection.

    The pack pipeline runs in its own task so the connection keeps reading
    while git works.
    """

    name = EXTENSION_NAME

    def __init__(self, generate: PackGenerator):
        super().__init__()
        self.generate = generate
        self.state = ProviderState.CONNECTED
        self.object_id: Optional[str] = None
        self.transfer_id: Optional[str] = None
        self._tasks: Set[asyncio.Task] = set()

    async def on_handshake(self, handshake: Handshake) -> None:
        if self.state is not ProviderState.CONNECTED:
            return
        self.state = ProviderState.HANDSHAKE_EXCHANGED
        logger.info(f"[EXT] Received handshake for {handshake.info_hash.hex()}")
        self.state = ProviderState.AWAITING_REQUEST

    async def on_message(self, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")
        if msg_type not in PACK_REQUESTS:
            logger.warning(f"[EXT] Unexpected message {msg_type!r} for provider")
            return

        if self.state is not ProviderState.AWAITING_REQUEST:
            logger.warning(f"[EXT] {msg_type} in state {self.state.value}, dropped")
            return

        object_id = message.get("id")
        if not is_object_id(object_id):
            logger.warning(f"[EXT] Invalid object id in {msg_type}: {object_id!r}")
            return

        self.object_id = object_id
        self.state = ProviderState.PACK_GENERATING
        task = asyncio.create_task(self._serve(object_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _serve(self, object_id: str) -> None:
        try:
            transfer_id = await self.generate(object_id)
        except Exception as e:
            logger.error(f"[EXT] Pack pipeline for {object_id} failed: {e}")
            transfer_id = None

        if transfer_id is None:
            # no reply: the requester stays in AWAITING_TRANSFER
            self.state = ProviderState.AWAITING_REQUEST
            return

        self.state = ProviderState.SEEDING
        self.transfer_id = transfer_id
        try:
            await self.send(build_message(ExtensionMessageType.SEND_TRANSFER, transfer=transfer_id))
        except (WireError, ConnectionError) as e:
            logger.warning(f"[EXT] Could not send transfer for {object_id}: {e}")
            return
        self.state = ProviderState.REPLIED
        logger.info(f"[EXT] Sent transfer {transfer_id} for {object_id}")

    async def wait_idle(self) -> None:
        """Wait for running pack pipelines, mostly useful in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
