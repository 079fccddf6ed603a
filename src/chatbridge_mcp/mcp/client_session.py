"""
Client session used for every ChatBridge connection to an MCP server.

Extends the base MCP client session with request/notification logging
keyed by the server id.
"""

from typing import Optional

from mcp import ClientSession
from mcp.shared.session import ReceiveResultT, SendNotificationT, SendRequestT
from mcp.types import ServerNotification

from chatbridge_mcp.utils.logging import get_logger

logger = get_logger(__name__)


class ChatBridgeClientSession(ClientSession):
    """
    Client session for ChatBridge connections to MCP servers.
    """

    def __init__(self, *args, server_id: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.server_id = server_id

    @property
    def _prefix(self) -> str:
        return f"{self.server_id}: " if self.server_id else ""

    async def send_request(
        self,
        request: SendRequestT,
        result_type: type[ReceiveResultT],
        *args,
        **kwargs,
    ) -> ReceiveResultT:
        logger.debug(f"{self._prefix}send_request: request=", data=request.model_dump())
        try:
            result = await super().send_request(request, result_type, *args, **kwargs)
            logger.debug(f"{self._prefix}send_request: response=", data=result.model_dump())
            return result
        except Exception as e:
            logger.error(f"{self._prefix}send_request failed: {e}")
            raise

    async def send_notification(self, notification: SendNotificationT, *args, **kwargs) -> None:
        logger.debug(f"{self._prefix}send_notification:", data=notification.model_dump())
        try:
            return await super().send_notification(notification, *args, **kwargs)
        except Exception as e:
            logger.error(f"{self._prefix}send_notification failed: {e}")
            raise

    async def _received_notification(self, notification: ServerNotification) -> None:
        logger.info(
            f"{self._prefix}_received_notification: notification=",
            data=notification.model_dump(),
        )
        return await super()._received_notification(notification)
