"""Persistent record of reconciled checkout sessions and checkout-flow flags."""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import weakref
from copy import deepcopy
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

import aiofiles
import aiofiles.os
import aiofiles.ospath
import aiofiles.tempfile

from .models import BypassFlag

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

FLAG_IN_PROGRESS = "checkout_in_progress"
FLAG_COMPLETED = "checkout_completed"
FLAG_ERROR_RECOVERY = "error_recovery"

DEFAULT_BYPASS_TTL = timedelta(hours=1)
DEFAULT_COMPLETED_TTL = timedelta(seconds=5)
DEFAULT_IN_PROGRESS_TTL = timedelta(minutes=30)


class CheckoutStorage(Protocol):
    """Storage operations used by the completion service."""

    async def is_processed(self, session_id: str) -> bool:
        ...

    async def mark_processed(self, session_id: str) -> None:
        ...

    async def set_extended_bypass(self) -> None:
        ...

    async def is_bypass_active(self) -> bool:
        ...

    async def start_checkout_flow(self) -> None:
        ...

    async def clear_checkout_flow(self) -> None:
        ...

    async def clear_error_recovery(self) -> None:
        ...

    async def in_checkout_flow(self) -> bool:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _empty_document() -> Dict[str, Any]:
    return {"processed_sessions": [], "flags": {}, "bypass": None}


def _parse_datetime(value: object) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class _DocumentCheckoutStorage:
    """Implements the storage contract over a JSON-compatible document.

    Subclasses only decide where the document lives. Reads that fail are
    treated as an empty document so a broken store never causes legitimate
    work to be skipped. Every mutation is a read-modify-write held under
    ``_lock()`` so concurrent reconciliations cannot drop each other's marks.
    """

    def __init__(
        self,
        *,
        bypass_ttl: timedelta = DEFAULT_BYPASS_TTL,
        completed_ttl: timedelta = DEFAULT_COMPLETED_TTL,
        in_progress_ttl: timedelta = DEFAULT_IN_PROGRESS_TTL,
        clock: Optional[Clock] = None,
    ) -> None:
        if bypass_ttl <= timedelta(0):
            raise ValueError("bypass_ttl must be positive")
        self.bypass_ttl = bypass_ttl
        self.completed_ttl = completed_ttl
        self.in_progress_ttl = in_progress_ttl
        self._clock: Clock = clock or _utcnow
        self._mutation_lock = asyncio.Lock()

    def _now(self) -> datetime:
        return self._clock()

    def _lock(self) -> asyncio.Lock:
        return self._mutation_lock

    async def _load(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def _save(self, document: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _read(self) -> Dict[str, Any]:
        try:
            document = await self._load()
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Checkout storage unreadable, treating as empty: %s", exc)
            return _empty_document()
        if not isinstance(document, dict):
            return _empty_document()
        sessions = document.get("processed_sessions")
        flags = document.get("flags")
        return {
            "processed_sessions": [str(s) for s in sessions] if isinstance(sessions, list) else [],
            "flags": dict(flags) if isinstance(flags, dict) else {},
            "bypass": document.get("bypass") if isinstance(document.get("bypass"), dict) else None,
        }

    async def _write(self, document: Dict[str, Any]) -> None:
        try:
            await self._save(document)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Failed to persist checkout storage: %s", exc)

    async def _mutate(self, change: Callable[[Dict[str, Any]], None]) -> None:
        async with self._lock():
            document = await self._read()
            change(document)
            await self._write(document)

    def _set_flag(self, document: Dict[str, Any], name: str, ttl: timedelta) -> None:
        document["flags"][name] = (self._now() + ttl).isoformat()

    def _flag_active(self, document: Dict[str, Any], name: str) -> bool:
        expires_at = _parse_datetime(document["flags"].get(name))
        return expires_at is not None and self._now() < expires_at

    async def is_processed(self, session_id: str) -> bool:
        if not session_id:
            return False
        document = await self._read()
        return session_id in document["processed_sessions"]

    async def mark_processed(self, session_id: str) -> None:
        if not session_id:
            return

        def change(document: Dict[str, Any]) -> None:
            if session_id not in document["processed_sessions"]:
                document["processed_sessions"].append(session_id)
            self._set_flag(document, FLAG_COMPLETED, self.completed_ttl)

        await self._mutate(change)

    async def processed_sessions(self) -> List[str]:
        document = await self._read()
        return list(document["processed_sessions"])

    async def set_extended_bypass(self) -> None:
        def change(document: Dict[str, Any]) -> None:
            flag = BypassFlag(active=True, expires_at=self._now() + self.bypass_ttl)
            document["bypass"] = {"active": flag.active, "expires_at": flag.expires_at.isoformat()}
            self._set_flag(document, FLAG_ERROR_RECOVERY, self.bypass_ttl)
            self._set_flag(document, FLAG_COMPLETED, self.completed_ttl)

        await self._mutate(change)

    async def get_bypass(self) -> Optional[BypassFlag]:
        document = await self._read()
        raw = document["bypass"]
        if raw is None:
            return None
        expires_at = _parse_datetime(raw.get("expires_at"))
        if expires_at is None:
            return None
        return BypassFlag(active=bool(raw.get("active")), expires_at=expires_at)

    async def is_bypass_active(self) -> bool:
        flag = await self.get_bypass()
        return flag is not None and flag.is_valid(self._now())

    async def start_checkout_flow(self) -> None:
        await self._mutate(lambda document: self._set_flag(document, FLAG_IN_PROGRESS, self.in_progress_ttl))

    async def clear_checkout_flow(self) -> None:
        def change(document: Dict[str, Any]) -> None:
            document["flags"].pop(FLAG_IN_PROGRESS, None)
            document["flags"].pop(FLAG_COMPLETED, None)

        await self._mutate(change)

    async def clear_error_recovery(self) -> None:
        await self._mutate(lambda document: document["flags"].pop(FLAG_ERROR_RECOVERY, None))

    async def in_checkout_flow(self) -> bool:
        document = await self._read()
        if any(self._flag_active(document, name) for name in (FLAG_IN_PROGRESS, FLAG_COMPLETED, FLAG_ERROR_RECOVERY)):
            return True
        return await self.is_bypass_active()


class InMemoryCheckoutStorage(_DocumentCheckoutStorage):
    """Process-local storage suitable for tests and short-lived workers."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._document: Dict[str, Any] = _empty_document()

    async def _load(self) -> Dict[str, Any]:
        return deepcopy(self._document)

    async def _save(self, document: Dict[str, Any]) -> None:
        self._document = deepcopy(document)


# Stores sharing a file (one per namespace) must serialize on the same lock.
_FILE_LOCKS: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


class JsonFileCheckoutStorage(_DocumentCheckoutStorage):
    """Durable storage kept in a JSON file, one section per namespace."""

    def __init__(self, path: str | os.PathLike[str], *, namespace: str = "checkout", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.path = Path(path)
        self.namespace = namespace
        key = os.path.abspath(self.path)
        lock = _FILE_LOCKS.get(key)
        if lock is None:
            lock = asyncio.Lock()
            _FILE_LOCKS[key] = lock
        self._file_lock = lock

    def _lock(self) -> asyncio.Lock:
        return self._file_lock

    async def _load_all(self) -> Dict[str, Any]:
        if not await aiofiles.ospath.exists(self.path):
            return {}
        async with aiofiles.open(self.path, "r", encoding="utf-8") as handle:
            raw = await handle.read()
        if not raw.strip():
            return {}
        data = json.loads(raw)
        return data if isinstance(data, dict) else {}

    async def _load(self) -> Dict[str, Any]:
        data = await self._load_all()
        return data.get(self.namespace) or _empty_document()

    async def _save(self, document: Dict[str, Any]) -> None:
        try:
            data = await self._load_all()
        except ValueError:
            data = {}
        data[self.namespace] = document
        directory = self.path.parent
        await aiofiles.os.makedirs(directory, exist_ok=True)
        async with aiofiles.tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=directory,
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            tmp_name = handle.name
            await handle.write(json.dumps(data, indent=2, sort_keys=True))
        try:
            await aiofiles.os.replace(tmp_name, self.path)
        except OSError:
            with contextlib.suppress(OSError):
                await aiofiles.os.remove(tmp_name)
            raise


__all__ = [
    "CheckoutStorage",
    "DEFAULT_BYPASS_TTL",
    "FLAG_COMPLETED",
    "FLAG_ERROR_RECOVERY",
    "FLAG_IN_PROGRESS",
    "InMemoryCheckoutStorage",
    "JsonFileCheckoutStorage",
]
