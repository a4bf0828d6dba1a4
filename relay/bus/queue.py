"""In-process message bus between channel adapters and the dispatcher."""

import asyncio
from typing import Optional

from relay.domain.models import InboundMessage, OutboundMessage


class MessageBus:
    """Bounded inbound and outbound queues."""

    def __init__(self, buffer_size: int = 100):
        self.inbound: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self.outbound: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)

    async def publish_inbound(self, message: InboundMessage) -> None:
        await self.inbound.put(message)

    async def consume_inbound(self, timeout: Optional[float] = None) -> Optional[InboundMessage]:
        """Next inbound message, or None when ``timeout`` elapses first."""
        if timeout is None:
            return await self.inbound.get()
        try:
            return await asyncio.wait_for(self.inbound.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def publish_outbound(self, message: OutboundMessage) -> None:
        await self.outbound.put(message)

    async def consume_outbound(self, timeout: Optional[float] = None) -> Optional[OutboundMessage]:
        if timeout is None:
            return await self.outbound.get()
        try:
            return await asyncio.wait_for(self.outbound.get(), timeout)
        except asyncio.TimeoutError:
            return None

    @property
    def inbound_size(self) -> int:
        return self.inbound.qsize()

    @property
    def outbound_size(self) -> int:
        return self.outbound.qsize()
