import logging
from typing import Any, Optional, Protocol

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from config import Settings
from errors import MessagingError

logger = logging.getLogger(__name__)


class Messenger(Protocol):
    def post_message(self, channel: str, text: str, blocks: list[dict]) -> str: ...

    def update_message(
        self, channel: str, ts: str, text: str, blocks: list[dict]
    ) -> None: ...

    def get_message(self, channel: str, ts: str) -> Optional[dict[str, Any]]: ...

    def open_modal(self, trigger_id: str, view: dict) -> None: ...


class SlackMessenger:
    def __init__(self, client: WebClient):
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "SlackMessenger":
        return cls(WebClient(token=settings.require("slack_bot_token")))

    def _call(self, operation: str, fn, **kwargs):
        try:
            return fn(**kwargs)
        except SlackApiError as exc:
            error = exc.response.get("error") if exc.response is not None else None
            logger.warning(f"messaging_call_failed: op={operation} error={error}")
            raise MessagingError(f"Messaging call {operation} failed: {error}") from exc

    def post_message(self, channel: str, text: str, blocks: list[dict]) -> str:
        response = self._call(
            "chat_postMessage",
            self.client.chat_postMessage,
            channel=channel,
            text=text,
            blocks=blocks,
        )
        return response["ts"]

    def update_message(self, channel: str, ts: str, text: str, blocks: list[dict]) -> None:
        self._call(
            "chat_update",
            self.client.chat_update,
            channel=channel,
            ts=ts,
            text=text,
            blocks=blocks,
        )

    def get_message(self, channel: str, ts: str) -> Optional[dict[str, Any]]:
        response = self._call(
            "conversations_history",
            self.client.conversations_history,
            channel=channel,
            latest=ts,
            limit=1,
            inclusive=True,
        )
        messages = response.get("messages") or []
        return messages[0] if messages else None

    def open_modal(self, trigger_id: str, view: dict) -> None:
        self._call("views_open", self.client.views_open, trigger_id=trigger_id, view=view)
