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

import logging
import math
import time
from typing import Callable, Optional, Tuple

from day_advance import DayAdvancer
from game_data import Role
from presence import PresenceTracker
from store import Store, dispatch
from synced_document import (
    DocumentSpec,
    LiveChannel,
    SyncedDocument,
    Throttle,
    logical_or,
    longest,
    max_by_key,
    or_by_key,
    role_fields,
    take_max,
    take_min,
)

Point = Tuple[float, float]

TARGET_RADIUS = 20
STITCH_RATE_PER_SEC = 24
REPAIR_RATE_PER_SEC = 24
NOTES_PER_PARTNER = 5
DAY5_REVEAL_SECONDS = 10
WORDS_WRITING_SECONDS = 120


def distance(a: Point, b: Point) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


class TracePath:
    """Polyline built from an ``M x y L x y ...`` path string."""

    def __init__(self, d: str):
        self.points: list[Point] = self.parse(d)
        self.segments = [distance(a, b) for a, b in zip(self.points, self.points[1:])]
        self.length = sum(self.segments)

    @staticmethod
    def parse(d: str) -> list[Point]:
        tokens = d.replace(",", " ").replace("M", " M ").replace("L", " L ").split()
        numbers = [float(token) for token in tokens if token not in ("M", "L")]
        if len(numbers) < 4 or len(numbers) % 2:
            raise ValueError(f"Path needs at least two points: {d!r}")
        return [(numbers[i], numbers[i + 1]) for i in range(0, len(numbers), 2)]

    @property
    def start(self) -> Point:
        return self.points[0]

    def point_at_length(self, length: float) -> Point:
        length = max(0.0, min(self.length, length))
        for (a, b), segment in zip(zip(self.points, self.points[1:]), self.segments):
            if length <= segment and segment > 0:
                t = length / segment
                return a[0] + (b[0] - a[0]) * t, a[1] + (b[1] - a[1]) * t
            length -= segment
        return self.points[-1]

    def point_at_progress(self, progress: float) -> Point:
        return self.point_at_length(self.length * max(0.0, min(100.0, progress)) / 100)


class TracingPuzzle:
    """
    Two partners trace one path together. The target sits at the current progress along the path, and
    progress only grows while both cursors are on the target and both partners hold. Growth is per second
    of tick time, so message jitter changes nothing but how fresh the cursors are.
    """

    def __init__(self, path: TracePath, radius: float = TARGET_RADIUS, rate: float = STITCH_RATE_PER_SEC):
        self.path = path
        self.radius = radius
        self.rate = rate

    def target(self, progress: float) -> Point:
        return self.path.point_at_progress(progress)

    def near_target(self, point: Optional[Point], progress: float) -> bool:
        return point is not None and distance(point, self.target(progress)) <= self.radius

    def can_start(self, point: Optional[Point]) -> bool:
        return point is not None and distance(point, self.path.start) <= self.radius

    def advance(self, progress: float, cursors: tuple, holding: tuple, dt: float) -> float:
        if progress >= 100 or dt <= 0:
            return progress
        if not all(holding):
            return progress
        if not all(self.near_target(cursor, progress) for cursor in cursors):
            return progress
        return min(100.0, progress + self.rate * dt)


def as_point(value) -> Optional[Point]:
    if value is None:
        return None
    if isinstance(value, dict):
        return float(value["x"]), float(value["y"])
    return float(value[0]), float(value[1])


class RevealCountdown:
    """
    Wall-clock countdown shared through a document. Whoever looks first stores the start time; every client
    then works out the remaining time on its own and sets the reveal flag once it runs out.
    """

    def __init__(self, document: SyncedDocument, duration: float, start_field: str, flag_field: str,
                 clock: Callable[[], float] = time.time):
        self.document = document
        self.duration = duration
        self.start_field = start_field
        self.flag_field = flag_field
        self._clock = clock

    def remaining(self, now: Optional[float] = None) -> Optional[float]:
        started = self.document.data.get(self.start_field)
        if started is None:
            return None
        now = self._clock() if now is None else now
        return max(0.0, self.duration - (now - started))

    @property
    def revealed(self) -> bool:
        return bool(self.document.data.get(self.flag_field))

    async def tick(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        if self.document.data.get(self.start_field) is None:
            await self.document.update(**{self.start_field: now})
            return False
        if self.revealed:
            return True
        if self.remaining(now) <= 0:
            await self.document.update(**{self.flag_field: True})
            return True
        return False


# --- the week: one persisted document per day ---

def _trimmed(value) -> bool:
    return bool(value and str(value).strip())


def _derive_chocolate(doc: dict) -> dict:
    computed = (_trimmed(doc["darkMemory"]) and _trimmed(doc["milkMemory"])
                and bool(doc["dateA"]) and doc["dateA"] == doc["dateB"])
    doc["matched"] = bool(doc.get("matched")) or computed
    return doc


def _derive_promise(doc: dict) -> dict:
    hand_a, hand_b = doc["handA"], doc["handB"]
    doc["locked"] = abs(hand_a - hand_b) <= 36 and abs((hand_a + hand_b) / 2) <= 16
    return doc


ROSE = DocumentSpec(
    room_name="bedroom_day_0",
    defaults={"notesA": [], "notesB": []},
    owners=role_fields("notes"),
    strategies={"notesA": longest, "notesB": longest},
    is_complete=lambda doc: len(doc["notesA"]) >= NOTES_PER_PARTNER and len(doc["notesB"]) >= NOTES_PER_PARTNER,
)

PROPOSAL = DocumentSpec(
    room_name="bedroom_day_1",
    defaults={"question": "", "revealed": False, "accepted": False},
    owners={"question": Role.PARTNER_A, "revealed": Role.PARTNER_B, "accepted": Role.PARTNER_B},
    strategies={"revealed": logical_or, "accepted": logical_or},
    is_complete=lambda doc: doc["accepted"],
)

CHOCOLATE_DATES = ("First Call", "First Fight", "First Trip", "First I Love You")

CHOCOLATE = DocumentSpec(
    room_name="bedroom_day_2",
    defaults={"darkMemory": "", "milkMemory": "", "dateA": "", "dateB": "", "matched": False},
    owners={"darkMemory": Role.PARTNER_A, "milkMemory": Role.PARTNER_B, **role_fields("date")},
    strategies={"matched": logical_or},
    derive=_derive_chocolate,
    is_complete=lambda doc: doc["matched"],
)

TEDDY_PATH = "M145 150 L180 175 L160 205 L195 232 L176 260"

TEDDY = DocumentSpec(
    room_name="bedroom_day_3",
    defaults={"progress": 0, "cursorA": None, "cursorB": None, "holdingA": False, "holdingB": False},
    owners=role_fields("cursor", "holding"),
    strategies={"progress": take_max},
    is_complete=lambda doc: doc["progress"] >= 100,
)

HAND_RANGES = ((-160, 0), (0, 160))

PROMISE = DocumentSpec(
    room_name="bedroom_day_4",
    defaults={"handA": -140, "handB": 140, "locked": False, "promiseA": "", "promiseB": ""},
    owners=role_fields("hand", "promise"),
    derive=_derive_promise,
    is_complete=lambda doc: doc["locked"] and _trimmed(doc["promiseA"]) and _trimmed(doc["promiseB"]),
)

HOURGLASS = DocumentSpec(
    room_name="bedroom_day_5",
    defaults={"shownAt": None, "done": False},
    strategies={"shownAt": take_min, "done": logical_or},
    is_complete=lambda doc: doc["done"],
)

KISS = DocumentSpec(
    room_name="bedroom_day_6",
    defaults={"cameraA": False, "cameraB": False, "kissA": False, "kissB": False},
    owners=role_fields("camera", "kiss"),
    strategies={"kissA": logical_or, "kissB": logical_or},
    is_complete=lambda doc: doc["kissA"] and doc["kissB"],
)

FINALE = DocumentSpec(
    room_name="bedroom_day_7",
    defaults={"finished": False},
    strategies={"finished": logical_or},
    is_complete=lambda doc: doc["finished"],
)

WEEK = (ROSE, PROPOSAL, CHOCOLATE, TEDDY, PROMISE, HOURGLASS, KISS, FINALE)

# the "words" room of the main sequence: both write at once, letters open together when time runs out
WORDS = DocumentSpec(
    room_name="words",
    defaults={"letterA": "", "letterB": "", "startedAt": None, "revealed": False},
    owners=role_fields("letter"),
    strategies={"startedAt": take_min, "revealed": logical_or},
    is_complete=lambda doc: doc["revealed"],
    aliases={"letter_partner_a": "letterA", "letter_partner_b": "letterB"},
)


class WeekArc:
    """
    The seven-day arc. Each day is a synced document; when the document for the current day completes, the
    shared day pointer moves on. Interaction is refused while the partner is offline.
    """

    def __init__(self, store: Store, session_id: str, room_code: str, role: Role, player_name: str,
                 clock: Callable[[], float] = time.time, on_day_changed: Optional[Callable] = None,
                 pointer_interval: float = 0.045):
        self._store = store
        self.session_id = session_id
        self.role = role
        self._clock = clock
        self._on_day_changed = on_day_changed
        self.advancer = DayAdvancer(store, room_code, max_day=len(WEEK) - 1, on_day_changed=self._day_changed)
        self.presence = PresenceTracker(store, f"bedroom-{session_id}", role, player_name)
        self.days = [SyncedDocument(store, session_id, spec, role, on_complete=self._day_complete) for spec in WEEK]
        self.stitch = TracingPuzzle(TracePath(TEDDY_PATH), rate=STITCH_RATE_PER_SEC)
        self.hourglass = RevealCountdown(self.days[5], DAY5_REVEAL_SECONDS, "shownAt", "done", clock)
        self._pointer_throttle = Throttle(pointer_interval)
        self.error: Optional[str] = None

    @property
    def current_day(self) -> int:
        return self.advancer.current_day

    @property
    def paused(self) -> bool:
        return self.presence.paused

    def day(self, index: int) -> SyncedDocument:
        return self.days[index]

    async def start(self) -> bool:
        if not await self.advancer.load():
            self.error = self.advancer.error
            return False
        await self.advancer.watch()
        for document in self.days:
            await document.load()
            await document.watch()
        await self.presence.start()
        await self.evaluate()
        return True

    async def evaluate(self):
        # safe to call any time: only the current day's predicate can move the pointer
        current = self.days[self.current_day]
        if current.completed and self.current_day < len(WEEK) - 1:
            await self.advancer.advance(self.current_day + 1)

    async def _day_complete(self, document: SyncedDocument):
        if self.days.index(document) == self.current_day:
            await self.evaluate()

    async def _day_changed(self, day: int):
        if self._on_day_changed is not None:
            await dispatch(self._on_day_changed, day)

    def _interactive(self, day: int) -> bool:
        return not self.paused and self.current_day == day

    # day 0
    async def add_note(self, text: str) -> bool:
        text = text.strip()
        if not text or not self._interactive(0):
            return False
        rose = self.days[0]
        return await rose.update(**{self.role.field("notes"): [*rose.mine("notes"), text]})

    def rose_progress(self) -> int:
        data = self.days[0].data
        return round((len(data["notesA"]) + len(data["notesB"])) / (2 * NOTES_PER_PARTNER) * 100)

    # day 1
    async def write_question(self, question: str) -> bool:
        if self.role != Role.PARTNER_A or not self._interactive(1):
            return False
        return await self.days[1].update(question=question)

    async def reveal(self) -> bool:
        proposal = self.days[1]
        if self.role != Role.PARTNER_B or not self._interactive(1):
            return False
        if proposal.data["revealed"] or not _trimmed(proposal.data["question"]):
            return False
        return await proposal.update(revealed=True)

    async def accept(self) -> bool:
        proposal = self.days[1]
        if self.role != Role.PARTNER_B or not self._interactive(1):
            return False
        if not proposal.data["revealed"] or proposal.data["accepted"]:
            return False
        return await proposal.update(accepted=True)

    # day 2
    async def choose_chocolate(self, memory: Optional[str] = None, date: Optional[str] = None) -> bool:
        if not self._interactive(2):
            return False
        if date is not None and date and date not in CHOCOLATE_DATES:
            raise ValueError(f"Unknown date {date!r}")
        patch = dict()
        if memory is not None:
            patch["darkMemory" if self.role == Role.PARTNER_A else "milkMemory"] = memory
        if date is not None:
            patch[self.role.field("date")] = date
        return await self.days[2].update(**patch) if patch else False

    # day 3
    async def stitch_pointer(self, point: Optional[Point], holding: Optional[bool] = None) -> bool:
        if not self._interactive(3):
            return False
        teddy = self.days[3]
        patch = {self.role.field("cursor"): {"x": point[0], "y": point[1]} if point is not None else None}
        if holding is not None:
            if holding and not self.stitch.near_target(point, teddy.data["progress"]):
                holding = False
            patch[self.role.field("holding")] = holding
        if point is None:
            patch[self.role.field("holding")] = False
        if holding is None and point is not None and not self._pointer_throttle.ready():
            return False
        return await teddy.update(**patch)

    async def stitch_tick(self, dt: float) -> float:
        teddy = self.days[3]
        data = teddy.data
        if self.current_day != 3 or self.paused:
            return data["progress"]
        progress = self.stitch.advance(
            data["progress"],
            (as_point(data["cursorA"]), as_point(data["cursorB"])),
            (data["holdingA"], data["holdingB"]),
            dt,
        )
        if progress > data["progress"]:
            await teddy.update(progress=progress)
        return progress

    # day 4
    async def move_hand(self, position: float) -> bool:
        if not self._interactive(4):
            return False
        low, high = HAND_RANGES[self.role]
        return await self.days[4].update(**{self.role.field("hand"): max(low, min(high, position))})

    async def write_promise(self, text: str) -> bool:
        if not self._interactive(4) or not self.days[4].data["locked"]:
            return False
        return await self.days[4].update(**{self.role.field("promise"): text})

    # day 5
    async def tick_hourglass(self, now: Optional[float] = None) -> bool:
        if self.current_day != 5:
            return False
        return await self.hourglass.tick(now)

    # day 6
    async def set_camera(self, on: bool) -> bool:
        if not self._interactive(6):
            return False
        return await self.days[6].update(**{self.role.field("camera"): on})

    async def kiss(self) -> bool:
        if not self._interactive(6):
            return False
        return await self.days[6].update(**{self.role.field("kiss"): True})

    # day 7
    async def finish(self) -> bool:
        if self.current_day != 7:
            return False
        return await self.days[7].update(finished=True)

    async def close(self):
        for document in self.days:
            await document.close()
        await self.presence.stop()
        await self.advancer.close()


# --- kintsugi: broadcast-only repair of three cracks ---

CRACKS = {
    "long-nights": "M226 132 L214 158 L232 185 L219 214 L238 242 L225 273 L244 305 L232 334",
    "missed-dates": "M286 126 L303 154 L285 183 L302 211 L284 242 L300 272 L282 302 L296 330",
    "silence": "M174 214 L203 225 L227 247 L254 260 L281 282 L312 295 L336 318",
}


class KintsugiRepair:
    """
    Cursor and hold state only ever travel over the broadcast channel. Progress and completion are carried
    in every message and merged with max and or, so either side can drop messages without losing repair.
    """

    def __init__(self, store: Store, session_id: str, role: Role, on_complete: Optional[Callable] = None,
                 interval: float = 0.045, clock: Callable[[], float] = time.monotonic):
        self.role = role
        self._on_complete = on_complete
        self._fired = False
        self.puzzles = {crack_id: TracingPuzzle(TracePath(d), rate=REPAIR_RATE_PER_SEC)
                        for crack_id, d in CRACKS.items()}
        self.live = LiveChannel(store, f"kintsugi-{session_id}", "kintsugi_state", role, self._on_message,
                                interval, clock)

        self.selected: Optional[str] = None
        self.cursors: list[Optional[Point]] = [None, None]
        self.holding = [False, False]
        self.progress = {crack_id: 0.0 for crack_id in CRACKS}
        self.completed = {crack_id: False for crack_id in CRACKS}

    @property
    def all_complete(self) -> bool:
        return all(self.completed.values())

    async def open(self):
        await self.live.open()

    async def publish(self, force: bool = False) -> bool:
        return await self.live.publish({
            "selectedCrackId": self.selected,
            "cursor": list(self.cursors[self.role]) if self.cursors[self.role] is not None else None,
            "holding": self.holding[self.role],
            "progressByCrack": dict(self.progress),
            "completedByCrack": dict(self.completed),
        }, force)

    async def _on_message(self, payload: dict):
        sender = Role.from_tag(payload["role"])
        if sender == self.role:
            return
        if payload.get("selectedCrackId") is not None:
            self.selected = payload["selectedCrackId"]
        self.cursors[sender] = as_point(payload.get("cursor"))
        self.holding[sender] = bool(payload.get("holding"))
        known = set(CRACKS)
        self.progress = {k: v for k, v in max_by_key(self.progress, payload.get("progressByCrack")).items()
                         if k in known}
        self.completed = {k: v for k, v in or_by_key(self.completed, payload.get("completedByCrack")).items()
                          if k in known}
        await self._check_complete()

    async def select(self, crack_id: str):
        if crack_id not in CRACKS:
            raise KeyError(f"Unknown crack {crack_id!r}")
        self.selected = crack_id
        await self.publish(force=True)

    async def move(self, point: Optional[Point]):
        self.cursors[self.role] = point
        if point is None:
            self.holding[self.role] = False
            await self.publish(force=True)
            return
        await self.publish()

    async def press(self, point: Point) -> bool:
        if self.selected is None:
            return False
        self.cursors[self.role] = point
        near = self.puzzles[self.selected].near_target(point, self.progress[self.selected])
        self.holding[self.role] = near
        await self.publish(force=True)
        return near

    async def release(self):
        self.holding[self.role] = False
        await self.publish(force=True)

    async def tick(self, dt: float) -> float:
        crack_id = self.selected
        if crack_id is None or self.completed[crack_id]:
            return 100.0 if crack_id is not None else 0.0
        current = self.progress[crack_id]
        progress = self.puzzles[crack_id].advance(current, tuple(self.cursors), tuple(self.holding), dt)
        if progress > current:
            self.progress[crack_id] = progress
            if progress >= 100:
                self.completed[crack_id] = True
                logging.debug(f"Crack {crack_id} repaired")
                await self.publish(force=True)
                await self._check_complete()
            else:
                await self.publish()
        return progress

    async def _check_complete(self):
        if self._fired or not self.all_complete:
            return
        self._fired = True
        if self._on_complete is not None:
            await dispatch(self._on_complete)

    async def close(self):
        await self.live.close()


async def open_words(store: Store, session_id: str, role: Role, on_complete: Optional[Callable] = None,
                     clock: Callable[[], float] = time.time) -> Tuple[SyncedDocument, RevealCountdown]:
    document = SyncedDocument(store, session_id, WORDS, role, on_complete=on_complete)
    await document.load()
    await document.watch()
    return document, RevealCountdown(document, WORDS_WRITING_SECONDS, "startedAt", "revealed", clock)
