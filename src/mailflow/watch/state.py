"""Persistence of watch registrations."""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field, ValidationError, field_validator

from mailflow.observability.logging import get_logger

logger = get_logger(__name__)

STATE_FILE_TEMPLATE = "{service}-watch-{application}.json"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WatchRegistration(BaseModel):
    """A time-bounded watch registration for one (service, application) key."""

    service_type: str
    watch_id: str
    topic_name: str
    application_name: str
    expiration: datetime
    created_at: datetime = Field(default_factory=utcnow)
    service_specific_data: dict[str, Any] = Field(default_factory=dict)
    # Whether this process created the registration. Never persisted.
    owned: bool = Field(default=False, exclude=True)

    @field_validator("expiration", "created_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    def is_active(self, now: datetime | None = None, buffer: timedelta = timedelta(0)) -> bool:
        """True if the registration outlives now plus buffer."""
        return self.expiration > (now or utcnow()) + buffer

    def time_to_expiry(self, now: datetime | None = None) -> timedelta:
        return self.expiration - (now or utcnow())


class WatchStateStore(Protocol):
    """Storage for watch registrations keyed by (service_type, application_name)."""

    async def load(self, service_type: str, application_name: str) -> WatchRegistration | None:
        ...

    async def save(self, registration: WatchRegistration) -> None:
        ...

    async def delete(self, service_type: str, application_name: str) -> bool:
        ...

    async def list_all(self) -> list[WatchRegistration]:
        ...


class FileWatchStateStore:
    """
    One JSON file per registration under a state directory.

    Files are named {service}-watch-{application}.json in lower case and
    replaced atomically on save. Unreadable files are treated as absent.
    """

    def __init__(self, state_directory: Path) -> None:
        self._directory = state_directory.expanduser()

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, service_type: str, application_name: str) -> Path:
        name = STATE_FILE_TEMPLATE.format(
            service=service_type.lower(),
            application=application_name.lower(),
        )
        return self._directory / name

    def _read(self, path: Path) -> WatchRegistration | None:
        if not path.exists():
            return None
        try:
            return WatchRegistration.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as e:
            logger.warning("Ignoring unreadable watch state", path=str(path), error=str(e))
            return None

    def _write(self, registration: WatchRegistration) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(registration.service_type, registration.application_name)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(registration.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def _remove(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    async def load(self, service_type: str, application_name: str) -> WatchRegistration | None:
        return await asyncio.to_thread(self._read, self.path_for(service_type, application_name))

    async def save(self, registration: WatchRegistration) -> None:
        await asyncio.to_thread(self._write, registration)
        logger.debug(
            "Saved watch state",
            service_type=registration.service_type,
            application_name=registration.application_name,
            expiration=registration.expiration.isoformat(),
        )

    async def delete(self, service_type: str, application_name: str) -> bool:
        return await asyncio.to_thread(self._remove, self.path_for(service_type, application_name))

    async def list_all(self) -> list[WatchRegistration]:
        def _scan() -> list[WatchRegistration]:
            if not self._directory.is_dir():
                return []
            found = [self._read(p) for p in sorted(self._directory.glob("*-watch-*.json"))]
            return [r for r in found if r is not None]

        return await asyncio.to_thread(_scan)


class InMemoryWatchStateStore:
    """Process-local store, used in tests and one-shot runs."""

    def __init__(self) -> None:
        self._items: dict[tuple[str, str], WatchRegistration] = {}

    @staticmethod
    def _key(service_type: str, application_name: str) -> tuple[str, str]:
        return service_type.lower(), application_name.lower()

    async def load(self, service_type: str, application_name: str) -> WatchRegistration | None:
        stored = self._items.get(self._key(service_type, application_name))
        # Mirror the file store: ownership is not persisted
        return stored.model_copy(update={"owned": False}) if stored else None

    async def save(self, registration: WatchRegistration) -> None:
        self._items[self._key(registration.service_type, registration.application_name)] = (
            registration.model_copy()
        )

    async def delete(self, service_type: str, application_name: str) -> bool:
        return self._items.pop(self._key(service_type, application_name), None) is not None

    async def list_all(self) -> list[WatchRegistration]:
        return [r.model_copy(update={"owned": False}) for r in self._items.values()]
