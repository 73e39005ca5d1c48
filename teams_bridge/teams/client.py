import html
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import quote

import httpx

from .errors import RetryableError, TeamsAPIError, raise_for_response
from .models import (
    GIPHY_ITEM_TYPE,
    ConsumptionHorizon,
    RemoteConversation,
    RemoteMessage,
    sequence_sort_key,
)


logger = logging.getLogger(__name__)


CONVERSATIONS_URL = "https://teams.live.com/api/chatsvc/consumer/v1/users/ME/conversations"
MESSAGES_URL = "https://msgapi.teams.live.com/v1/users/ME/conversations"
SEND_MESSAGES_URL = "https://teams.live.com/api/chatsvc/consumer/v1/users/ME/conversations"
CONSUMPTION_HORIZONS_URL = "https://teams.live.com/api/chatsvc/consumer/v1/threads"


def format_html_content(text: str) -> str:
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    escaped = html.escape(normalized, quote=True).replace("\n", "<br>")
    return f"<p>{escaped}</p>"


def format_gif_content(gif_url: str, title: str) -> str:
    title = html.escape(title or "GIF", quote=True)
    src = html.escape(gif_url, quote=True)
    return (
        f'<readonly title="{title}" itemtype="{GIPHY_ITEM_TYPE}" contenteditable="false">'
        f'<img alt="{title}" src="{src}" itemtype="{GIPHY_ITEM_TYPE}" style="width:auto;height:auto">'
        f"</readonly>"
    )


def _require(value: str, what: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValueError(f"missing {what}")
    return value


def _path(value: str) -> str:
    return quote(value, safe="")


class TeamsClient:

    def __init__(
        self,
        http: httpx.AsyncClient,
        token_getter: Callable[[], str],
        conversations_url: str = CONVERSATIONS_URL,
        messages_url: str = MESSAGES_URL,
        send_messages_url: str = SEND_MESSAGES_URL,
        consumption_horizons_url: str = CONSUMPTION_HORIZONS_URL,
    ):
        self._http = http
        self._token_getter = token_getter
        self.conversations_url = conversations_url.rstrip("/")
        self.messages_url = messages_url.rstrip("/")
        self.send_messages_url = send_messages_url.rstrip("/")
        self.consumption_horizons_url = consumption_horizons_url.rstrip("/")

    async def _request(
        self,
        method: str,
        url: str,
        token: Optional[str] = None,
        json: Any = None,
    ) -> httpx.Response:
        token = token or self._token_getter()
        if not token:
            raise ValueError("missing session token")
        headers = {
            "authentication": f"skypetoken={token}",
            "Accept": "application/json",
        }
        try:
            response = await self._http.request(method, url, headers=headers, json=json)
        except httpx.TransportError as e:
            raise RetryableError(0, message=f"teams request failed: {e}") from e
        logger.debug("%s %s -> %s", method, url, response.status_code)
        raise_for_response(response)
        return response

    def _decode(self, response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise TeamsAPIError(response.status_code, response.text, "invalid json in teams response") from e
        return data if isinstance(data, dict) else {}

    async def list_conversations(self, token: str) -> list[RemoteConversation]:
        response = await self._request("GET", self.conversations_url, token=token)
        payload = self._decode(response)
        return [
            RemoteConversation.from_api(item)
            for item in payload.get("conversations") or []
            if isinstance(item, dict)
        ]

    async def list_messages(self, conversation_id: str, cursor: str = "") -> list[RemoteMessage]:
        # The endpoint only serves the most recent page; ingestion filters by cursor.
        conversation_id = _require(conversation_id, "conversation id")
        url = f"{self.messages_url}/{_path(conversation_id)}/messages"
        payload = self._decode(await self._request("GET", url))
        messages = [
            RemoteMessage.from_api(item)
            for item in payload.get("messages") or []
            if isinstance(item, dict)
        ]
        messages.sort(key=sequence_sort_key)
        return messages

    async def add_reaction(self, thread_id: str, message_id: str, emotion_key: str, applied_at_ms: int) -> None:
        payload = {"emotions": {"key": _require(emotion_key, "emotion key"), "value": applied_at_ms}}
        await self._send_reaction("PUT", thread_id, message_id, payload)

    async def remove_reaction(self, thread_id: str, message_id: str, emotion_key: str) -> None:
        payload = {"emotions": {"key": _require(emotion_key, "emotion key")}}
        await self._send_reaction("DELETE", thread_id, message_id, payload)

    async def _send_reaction(self, method: str, thread_id: str, message_id: str, payload: dict) -> None:
        thread_id = _require(thread_id, "thread id")
        message_id = _require(message_id, "message id")
        url = (
            f"{self.send_messages_url}/{_path(thread_id)}/messages/"
            f"{_path(message_id)}/properties?name=emotions"
        )
        await self._request(method, url, json=payload)

    async def get_consumption_horizons(self, thread_id: str) -> list[ConsumptionHorizon]:
        thread_id = _require(thread_id, "thread id")
        url = f"{self.consumption_horizons_url}/{_path(thread_id)}/consumptionhorizons"
        payload = self._decode(await self._request("GET", url))
        horizons = []
        for item in payload.get("consumptionhorizons") or []:
            if not isinstance(item, dict):
                continue
            user_id = (item.get("id") or "").strip()
            if user_id:
                horizons.append(ConsumptionHorizon(user_id=user_id, horizon=item.get("consumptionhorizon") or ""))
        return horizons

    async def set_consumption_horizon(self, thread_id: str, horizon: str) -> None:
        thread_id = _require(thread_id, "thread id")
        url = f"{self.send_messages_url}/{_path(thread_id)}/properties?name=consumptionhorizon"
        await self._request("PUT", url, json={"consumptionhorizon": _require(horizon, "horizon")})

    def _message_payload(
        self,
        thread_id: str,
        sender_id: str,
        correlation_id: str,
        message_type: str,
        content: Optional[str] = None,
    ) -> dict:
        now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        payload = {
            "type": "Message",
            "conversationid": thread_id,
            "messagetype": message_type,
            "contenttype": "Text",
            "clientmessageid": correlation_id,
            "composetime": now,
            "originalarrivaltime": now,
            "from": sender_id,
            "fromUserId": sender_id,
        }
        if content is not None:
            payload["content"] = content
        return payload

    async def _post_message(self, thread_id: str, payload: dict) -> None:
        url = f"{self.send_messages_url}/{_path(thread_id)}/messages"
        await self._request("POST", url, json=payload)

    async def send_message_with_id(self, thread_id: str, body: str, sender_id: str, correlation_id: str) -> None:
        thread_id = _require(thread_id, "thread id")
        payload = self._message_payload(
            thread_id,
            _require(sender_id, "sender id"),
            _require(correlation_id, "correlation id"),
            "RichText/Html",
            format_html_content(body),
        )
        await self._post_message(thread_id, payload)

    async def send_gif_with_id(
        self,
        thread_id: str,
        gif_url: str,
        title: str,
        sender_id: str,
        correlation_id: str
    ) -> None:
        thread_id = _require(thread_id, "thread id")
        payload = self._message_payload(
            thread_id,
            _require(sender_id, "sender id"),
            _require(correlation_id, "correlation id"),
            "RichText/Html",
            format_gif_content(_require(gif_url, "gif url"), title),
        )
        await self._post_message(thread_id, payload)

    async def send_typing(self, thread_id: str, sender_id: str, correlation_id: str) -> None:
        thread_id = _require(thread_id, "thread id")
        payload = self._message_payload(
            thread_id,
            _require(sender_id, "sender id"),
            _require(correlation_id, "correlation id"),
            "Control/Typing",
        )
        await self._post_message(thread_id, payload)
