"""LINE Messaging API tools: push_text_message, push_flex_message, get_profile."""

import json
import logging
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import RemoteAPIFailure
from ..models import ToolResult
from ..services.line_client import LineMessagingClient
from .registry import ToolRegistry

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 5000

USER_ID_DESCRIPTION = "The user ID to receive a message. Defaults to DESTINATION_USER_ID."


class TextMessage(BaseModel):
    type: Literal["text"] = "text"
    text: str = Field(
        ...,
        max_length=MAX_TEXT_LENGTH,
        description="The plain text content to send to the user.",
    )


class PushTextMessageInput(BaseModel):
    userId: Optional[str] = Field(None, description=USER_ID_DESCRIPTION)
    message: TextMessage


class FlexContainer(BaseModel):
    """Bubble or carousel container; the rest of the LINE Flex structure passes through."""

    model_config = ConfigDict(extra="allow")

    type: Literal["bubble", "carousel"] = Field(
        ...,
        description=(
            "Type of the container. 'bubble' for single container, "
            "'carousel' for multiple swipeable bubbles."
        ),
    )


class FlexMessage(BaseModel):
    type: Literal["flex"] = "flex"
    altText: str = Field(
        ..., description="Alternative text shown when flex message cannot be displayed."
    )
    contents: FlexContainer = Field(
        ...,
        description=(
            "Flexible container structure following LINE Flex Message format. For 'bubble' "
            "type, can include header, hero, body, footer, and styles sections. For "
            "'carousel' type, includes an array of bubble containers in the 'contents' property."
        ),
    )


class PushFlexMessageInput(BaseModel):
    userId: Optional[str] = Field(None, description=USER_ID_DESCRIPTION)
    message: FlexMessage


class GetProfileInput(BaseModel):
    userId: Optional[str] = Field(
        None,
        description=(
            "The ID of the user whose profile you want to retrieve. "
            "Defaults to DESTINATION_USER_ID."
        ),
    )


class LineTools:
    """Tool handlers bound to a LINE API client and the default destination user."""

    def __init__(self, client: LineMessagingClient, destination_user_id: str = "") -> None:
        self._client = client
        self._destination_user_id = destination_user_id

    def _target(self, user_id: Optional[str]) -> str:
        target = user_id or self._destination_user_id
        if not target:
            raise RemoteAPIFailure("No userId given and DESTINATION_USER_ID is not set")
        return target

    async def push_text_message(self, args: PushTextMessageInput) -> ToolResult:
        target = self._target(args.userId)
        logger.info("Sending text message to user: %s", target)
        logger.debug("Message content: %s", args.message)
        try:
            response = await self._client.send_message(target, args.message.model_dump())
        except RemoteAPIFailure as e:
            logger.error("Failed to send message: %s", e)
            return ToolResult.failure(str(e))
        logger.info("Message sent successfully: %s", response)
        return ToolResult.success(json.dumps(response))

    async def push_flex_message(self, args: PushFlexMessageInput) -> ToolResult:
        target = self._target(args.userId)
        logger.info("Sending flex message to user: %s", target)
        logger.debug("Flex message content: %s", args.message)
        try:
            response = await self._client.send_message(target, args.message.model_dump())
        except RemoteAPIFailure as e:
            logger.error("Failed to send flex message: %s", e)
            return ToolResult.failure(str(e))
        logger.info("Flex message sent successfully: %s", response)
        return ToolResult.success(json.dumps(response))

    async def get_profile(self, args: GetProfileInput) -> ToolResult:
        target = self._target(args.userId)
        logger.info("Getting profile for user: %s", target)
        try:
            response = await self._client.get_profile(target)
        except RemoteAPIFailure as e:
            logger.error("Failed to get profile for user %s: %s", target, e)
            return ToolResult.failure(str(e))
        logger.info("Got profile successfully: %s", response)
        return ToolResult.success(json.dumps(response))


def build_line_registry(
    client: LineMessagingClient,
    destination_user_id: str = "",
) -> ToolRegistry:
    """Create a registry holding the LINE tools."""
    tools = LineTools(client, destination_user_id)
    registry = ToolRegistry()
    registry.register(
        "push_text_message",
        "Push a simple text message to user via LINE. Use this for sending plain text "
        "messages without formatting.",
        PushTextMessageInput,
        tools.push_text_message,
    )
    registry.register(
        "push_flex_message",
        "Push a highly customizable flex message to user via LINE. Supports both bubble "
        "(single container) and carousel (multiple swipeable bubbles) layouts.",
        PushFlexMessageInput,
        tools.push_flex_message,
    )
    registry.register(
        "get_profile",
        "Get detailed profile information of a LINE user including display name, profile "
        "picture URL, status message and language.",
        GetProfileInput,
        tools.get_profile,
    )
    return registry
