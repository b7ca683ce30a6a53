"""Gmail REST API client."""

from __future__ import annotations

from typing import Any

import httpx

from mailflow.core.config import GmailSettings
from mailflow.core.http import AuthorizedApiClient
from mailflow.core.types import CredentialProvider, HistoryPage, MessageId, Watermark
from mailflow.observability.logging import get_logger
from mailflow.resilience.retry import RetryPolicy

logger = get_logger(__name__)


class GmailClient(AuthorizedApiClient):
    """
    Async client for the subset of the Gmail API used by mailflow.

    Example:
        async with GmailClient(provider, settings) as gmail:
            ids, _ = await gmail.list_messages("is:unread", max_results=5)
    """

    api_name = "gmail"

    def __init__(
        self,
        credentials: CredentialProvider,
        settings: GmailSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = settings or GmailSettings()
        super().__init__(
            credentials,
            base_url=settings.api_base_url,
            timeout=settings.request_timeout,
            retry_policy=RetryPolicy(
                max_attempts=settings.max_retries,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            http_client=http_client,
        )
        self._user = settings.user_id

    async def list_messages(
        self,
        query: str = "",
        max_results: int = 10,
        page_token: str | None = None,
        label_ids: list[str] | None = None,
        include_spam_trash: bool = False,
    ) -> tuple[list[MessageId], str | None]:
        params: dict[str, Any] = {
            "maxResults": max_results,
            "includeSpamTrash": str(include_spam_trash).lower(),
        }
        if query:
            params["q"] = query
        if page_token:
            params["pageToken"] = page_token
        if label_ids:
            params["labelIds"] = label_ids

        data = await self._request("GET", f"users/{self._user}/messages", params=params)
        ids = [m["id"] for m in data.get("messages", [])]
        return ids, data.get("nextPageToken")

    async def get_message(self, message_id: MessageId) -> dict[str, Any]:
        return await self._request(
            "GET",
            f"users/{self._user}/messages/{message_id}",
            params={"format": "full"},
        )

    async def list_history(
        self,
        start_watermark: Watermark,
        history_types: list[str] | None = None,
        page_token: str | None = None,
    ) -> HistoryPage:
        params: dict[str, Any] = {
            "startHistoryId": str(start_watermark),
            "historyTypes": history_types or ["messageAdded"],
        }
        if page_token:
            params["pageToken"] = page_token

        data = await self._request("GET", f"users/{self._user}/history", params=params)
        history_id = data.get("historyId")
        return HistoryPage(
            history=data.get("history", []),
            next_page_token=data.get("nextPageToken"),
            history_id=int(history_id) if history_id is not None else None,
        )

    async def create_watch(
        self,
        topic_name: str,
        label_ids: list[str] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"topicName": topic_name}
        if label_ids:
            body["labelIds"] = label_ids
            body["labelFilterAction"] = "include"

        data = await self._request("POST", f"users/{self._user}/watch", json=body)
        logger.info(
            "Gmail watch registered",
            topic=topic_name,
            history_id=data.get("historyId"),
            expiration=data.get("expiration"),
        )
        return data

    async def stop_watch(self) -> None:
        await self._request("POST", f"users/{self._user}/stop")
        logger.info("Gmail watch stopped")

    async def get_profile(self) -> dict[str, Any]:
        return await self._request("GET", f"users/{self._user}/profile")
