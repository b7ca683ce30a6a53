"""Results produced by history resolution."""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from mailflow.core.types import BatchToken
from mailflow.mailbox.models import EmailMessage


class Matched(BaseModel):
    """A record that passed the filter."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["matched"] = "matched"
    record: EmailMessage

    @property
    def is_filtered(self) -> bool:
        return False


class Filtered(BaseModel):
    """A record that was fetched but rejected by the filter."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["filtered"] = "filtered"
    record: EmailMessage

    @property
    def is_filtered(self) -> bool:
        return True


class Failed(BaseModel):
    """A record or notification that could not be processed."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["failed"] = "failed"
    reason: str
    message_id: str | None = None

    @property
    def is_filtered(self) -> bool:
        return True


ProcessedRecord = Annotated[Union[Matched, Filtered, Failed], Field(discriminator="kind")]


class InboundRecord(BaseModel):
    """A processed record tagged with the batch token of its notification."""

    model_config = ConfigDict(frozen=True)

    batch_id: BatchToken
    result: ProcessedRecord

    @property
    def is_filtered(self) -> bool:
        return self.result.is_filtered

    @property
    def email(self) -> EmailMessage | None:
        if isinstance(self.result, (Matched, Filtered)):
            return self.result.record
        return None
