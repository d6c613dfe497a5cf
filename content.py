"""
DateNight
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import asyncio
import functools
import logging
from datetime import date
from typing import Callable, Optional

from store import Change, Channel, Store, StoreError, dispatch

"""
Content rooms are append-mostly tables (messages, stars, capsules) read in creation order. A room keeps its
own ordered copy, fed by the change feed and refreshed by polling, and merges both by row id.

Messages and capsules exist in deployments with an older column layout. Reads accept either layout; writes
try the current layout first and the older one second.
"""

LIBRARY_SENDER = "The Library"

PROMPTS = (
    "What is a memory of us that always makes you smile?",
    "What do you miss most about being together?",
    "If we could be anywhere in the world right now, where would it be?",
    "What is something I do that makes you feel loved?",
    "What is a dream you have for our future together?",
    "What ordinary moment together are you secretly dreaming about the most?",
    "What's the most ridiculous thing you've done because you missed me?",
    "When do you feel closest to me despite the distance?",
    "How do you think this distance has changed the way we love?",
    "What's the first thing you'd do if I were next to you right now?",
)

ANSWERS_PER_ROUND = 2
REQUIRED_ROUNDS = 3
REQUIRED_STARS = 5
CAPSULE_TYPES = ("love-letter", "future-wish", "secret")


class MessageAdapter:
    table = "messages"

    @staticmethod
    def normalize(row: dict) -> dict:
        sender = row.get("sender_name") or row.get("sender") or "Unknown"
        legacy_prompt = row.get("prompt")
        if isinstance(row.get("is_prompt"), bool):
            is_prompt = row["is_prompt"]
        else:
            is_prompt = sender == LIBRARY_SENDER or (isinstance(legacy_prompt, str) and len(legacy_prompt) > 0)
        return {
            "id": row["id"],
            "sender_name": sender,
            "content": row.get("content") or legacy_prompt or "",
            "is_prompt": is_prompt,
            "created_at": row.get("created_at"),
        }

    @staticmethod
    def rows(session_id: str, sender: str, content: str, is_prompt: bool) -> tuple[dict, dict]:
        primary = {"session_id": session_id, "sender_name": sender, "content": content, "is_prompt": is_prompt}
        legacy = {"session_id": session_id, "sender": sender, "content": content}
        if is_prompt:
            legacy["prompt"] = content
        return primary, legacy


class CapsuleAdapter:
    table = "capsules"

    @staticmethod
    def normalize(row: dict) -> dict:
        if isinstance(row.get("unlocked"), bool):
            unlocked = row["unlocked"]
        elif isinstance(row.get("sealed"), bool):
            unlocked = not row["sealed"]
        else:
            unlocked = False
        return {
            "id": row["id"],
            "author_name": row.get("author_name") or row.get("author") or "Unknown",
            "content": row.get("content") or row.get("message") or "",
            "capsule_type": row.get("capsule_type") or CAPSULE_TYPES[0],
            "unlocked": unlocked,
            "created_at": row.get("created_at"),
        }

    @staticmethod
    def rows(session_id: str, author: str, content: str, capsule_type: str) -> tuple[dict, dict]:
        primary = {"session_id": session_id, "author_name": author, "content": content,
                   "capsule_type": capsule_type}
        legacy = {"session_id": session_id, "author": author, "message": content,
                  "unlock_date": date.today().isoformat(), "sealed": True}
        return primary, legacy

    @staticmethod
    def unlock_values() -> tuple[dict, dict]:
        return {"unlocked": True}, {"sealed": False}


class StarAdapter:
    table = "stars"

    @staticmethod
    def normalize(row: dict) -> dict:
        return {
            "id": row["id"],
            "placed_by": row.get("placed_by") or "Unknown",
            "x": float(row.get("x") or 0),
            "y": float(row.get("y") or 0),
            "label": row.get("label"),
            "created_at": row.get("created_at"),
        }


class ContentFeed:
    """Ordered, de-duplicated view of one content table for a session."""
    _channel: Optional[Channel] = None
    _poll_task: Optional[asyncio.Task] = None

    def __init__(self, store: Store, session_id: str, adapter, on_change: Optional[Callable] = None,
                 poll_interval: float = 1.5, is_complete: Optional[Callable] = None,
                 on_complete: Optional[Callable] = None):
        self._store = store
        self.session_id = session_id
        self.adapter = adapter
        self._on_change = on_change
        self._is_complete = is_complete
        self._on_complete = on_complete
        self._fired = False
        self._poll_interval = poll_interval
        self._closed = False
        self.items: list[dict] = []
        self.error: Optional[str] = None

    @property
    def table(self) -> str:
        return self.adapter.table

    def get(self, item_id: str) -> Optional[dict]:
        return next((item for item in self.items if item["id"] == item_id), None)

    async def _notify(self):
        if self._on_change is not None:
            await dispatch(self._on_change, self.items)
        await self._check_complete()

    async def _check_complete(self):
        if self._fired or self._is_complete is None or not self._is_complete():
            return
        self._fired = True
        logging.debug(f"{self.table} content complete for {self.session_id}")
        if self._on_complete is not None:
            await dispatch(self._on_complete)

    async def load(self) -> list[dict]:
        try:
            rows = await self._store.select(self.table, {"session_id": self.session_id}, order_by="created_at")
        except StoreError as e:
            logging.debug(f"Could not load {self.table}: {e}")
            return self.items
        if self._closed:
            return self.items
        items = [self.adapter.normalize(row) for row in rows]
        if items != self.items:
            self.items = items
            await self._notify()
        return self.items

    async def merge(self, row: dict) -> bool:
        item = self.adapter.normalize(row)
        for index, existing in enumerate(self.items):
            if existing["id"] == item["id"]:
                if existing == item:
                    return False
                self.items[index] = item
                break
        else:
            self.items.append(item)
        await self._notify()
        return True

    async def _on_row_change(self, change: Change):
        if self._closed:
            return
        await self.merge(change.new)

    async def start(self):
        await self.load()
        self._channel = self._store.channel(f"{self.table}-{self.session_id}")
        self._channel.on_changes(self.table, self._on_row_change, event="INSERT",
                                 filter=("session_id", self.session_id))
        self._channel.on_changes(self.table, self._on_row_change, event="UPDATE",
                                 filter=("session_id", self.session_id))
        await self._channel.subscribe()
        if self._poll_interval:
            self._poll_task = asyncio.create_task(self._poll())

    async def _poll(self):
        while not self._closed:
            await asyncio.sleep(self._poll_interval)
            await self.load()

    async def insert(self, primary: dict, legacy: Optional[dict], failure: str) -> Optional[dict]:
        self.error = None
        for row in (primary, legacy):
            if row is None:
                continue
            try:
                inserted = await self._store.insert(self.table, row)
            except StoreError as e:
                logging.debug(f"Insert into {self.table} rejected: {e}")
                continue
            await self.merge(inserted)
            return self.adapter.normalize(inserted)
        self.error = failure
        logging.warning(failure)
        return None

    async def update(self, item_id: str, primary: dict, legacy: Optional[dict], failure: str) -> bool:
        self.error = None
        for values in (primary, legacy):
            if values is None:
                continue
            try:
                rows = await self._store.update(self.table, values, {"id": item_id})
            except StoreError as e:
                logging.debug(f"Update of {self.table} rejected: {e}")
                continue
            for row in rows:
                await self.merge(row)
            return len(rows) > 0
        self.error = failure
        logging.warning(failure)
        return False

    async def close(self):
        self._closed = True
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
        if self._channel is not None:
            await self._channel.unsubscribe()
            self._channel = None


def completion(on_complete: Optional[Callable], room) -> Optional[Callable]:
    if on_complete is None:
        return None
    return functools.partial(on_complete, room)


class Library:
    """Question and answer room. Prompts come from a fixed list, two answers per round."""

    def __init__(self, store: Store, session_id: str, player_name: str, on_change: Optional[Callable] = None,
                 poll_interval: float = 1.5, on_complete: Optional[Callable] = None):
        self.player_name = player_name
        self.feed = ContentFeed(store, session_id, MessageAdapter, on_change, poll_interval,
                                is_complete=lambda: self.completed, on_complete=completion(on_complete, self))

    @property
    def messages(self) -> list[dict]:
        return self.feed.items

    @property
    def prompt_count(self) -> int:
        return sum(1 for message in self.messages if message["is_prompt"])

    @property
    def answer_count(self) -> int:
        return sum(1 for message in self.messages if not message["is_prompt"])

    @property
    def answers_since_last_prompt(self) -> int:
        count = 0
        for message in reversed(self.messages):
            if message["is_prompt"]:
                return count
            count += 1
        return 0

    @property
    def completed(self) -> bool:
        return self.answer_count >= REQUIRED_ROUNDS * ANSWERS_PER_ROUND

    def can_send_prompt(self) -> bool:
        if self.prompt_count >= len(PROMPTS):
            return False
        if self.prompt_count == 0:
            return True
        return self.answers_since_last_prompt >= ANSWERS_PER_ROUND

    async def start(self):
        await self.feed.start()

    async def send_prompt(self) -> Optional[dict]:
        if not self.can_send_prompt():
            return None
        primary, legacy = MessageAdapter.rows(self.feed.session_id, LIBRARY_SENDER, PROMPTS[self.prompt_count],
                                              True)
        return await self.feed.insert(primary, legacy,
                                      "Failed to send prompt. Check messages table schema/policies.")

    async def answer(self, text: str) -> Optional[dict]:
        text = text.strip()
        if not text:
            return None
        primary, legacy = MessageAdapter.rows(self.feed.session_id, self.player_name, text, False)
        return await self.feed.insert(primary, legacy,
                                      "Failed to send answer. Check messages table schema/policies.")

    async def close(self):
        await self.feed.close()


class Constellation:

    def __init__(self, store: Store, session_id: str, player_name: str, partner_name: str,
                 on_change: Optional[Callable] = None, poll_interval: float = 1.5,
                 on_complete: Optional[Callable] = None):
        self.player_name = player_name
        self.partner_name = partner_name
        self.feed = ContentFeed(store, session_id, StarAdapter, on_change, poll_interval,
                                is_complete=lambda: self.completed, on_complete=completion(on_complete, self))

    @property
    def stars(self) -> list[dict]:
        return self.feed.items

    def count(self, name: str) -> int:
        return sum(1 for star in self.stars if star["placed_by"] == name)

    @property
    def completed(self) -> bool:
        return self.count(self.player_name) >= REQUIRED_STARS and self.count(self.partner_name) >= REQUIRED_STARS

    async def start(self):
        await self.feed.start()

    async def place_star(self, x: float, y: float) -> Optional[dict]:
        row = {"session_id": self.feed.session_id, "placed_by": self.player_name,
               "x": max(0.0, min(100.0, x)), "y": max(0.0, min(100.0, y))}
        return await self.feed.insert(row, None, "Failed to place star.")

    async def label_star(self, star_id: str, label: str) -> bool:
        label = label.strip().replace("<", "").replace(">", "")
        if not label:
            return False
        return await self.feed.update(star_id, {"label": label}, None, "Failed to save star label.")

    async def close(self):
        await self.feed.close()


class CapsuleGarden:

    def __init__(self, store: Store, session_id: str, player_name: str, on_change: Optional[Callable] = None,
                 poll_interval: float = 1.5, on_complete: Optional[Callable] = None):
        self.player_name = player_name
        self.feed = ContentFeed(store, session_id, CapsuleAdapter, on_change, poll_interval,
                                is_complete=lambda: self.completed, on_complete=completion(on_complete, self))

    @property
    def capsules(self) -> list[dict]:
        return self.feed.items

    @property
    def completed(self) -> bool:
        return len(self.capsules) >= 2 and all(capsule["unlocked"] for capsule in self.capsules)

    async def start(self):
        await self.feed.start()

    async def plant(self, content: str, capsule_type: str = CAPSULE_TYPES[0]) -> Optional[dict]:
        content = content.strip()
        if not content:
            return None
        if capsule_type not in CAPSULE_TYPES:
            raise ValueError(f"Unknown capsule type {capsule_type!r}")
        primary, legacy = CapsuleAdapter.rows(self.feed.session_id, self.player_name, content, capsule_type)
        return await self.feed.insert(primary, legacy, "Failed to plant capsule.")

    async def unlock(self, capsule_id: str) -> bool:
        capsule = self.feed.get(capsule_id)
        if capsule is None:
            return False
        if capsule["unlocked"]:
            return True
        if capsule["author_name"] == self.player_name:
            # only the partner opens a capsule
            return False
        primary, legacy = CapsuleAdapter.unlock_values()
        return await self.feed.update(capsule_id, primary, legacy, "Failed to unlock capsule.")

    async def close(self):
        await self.feed.close()
