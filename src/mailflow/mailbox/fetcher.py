"""One-shot message retrieval on top of the mailbox client."""

from __future__ import annotations

from mailflow.core.types import MailboxClient
from mailflow.mailbox.models import EmailFilter, EmailMessage
from mailflow.observability.logging import get_logger

logger = get_logger(__name__)


class EmailFetcher:
    """Lists messages matching a filter and resolves them to EmailMessage."""

    def __init__(self, client: MailboxClient) -> None:
        self._client = client

    async def fetch_emails(self, email_filter: EmailFilter) -> list[EmailMessage]:
        """Run the filter as a search query and fetch every hit."""
        ids, _next_page = await self._client.list_messages(
            query=email_filter.build_query(),
            max_results=email_filter.max_results,
            page_token=email_filter.page_token,
            label_ids=list(email_filter.label_ids) or None,
            include_spam_trash=email_filter.include_spam_trash,
        )

        logger.debug("Listed messages", count=len(ids), query=email_filter.build_query())
        return [await self.get_email(message_id) for message_id in ids]

    async def get_email(self, message_id: str) -> EmailMessage:
        return EmailMessage.from_gmail(await self._client.get_message(message_id))

    async def get_user_email(self) -> str:
        profile = await self._client.get_profile()
        return profile.get("emailAddress", "")
