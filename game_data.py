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

import dataclasses
import enum
from typing import Optional

ROOM_SEQUENCE = ("library", "constellation", "kintsugi", "words")

LOBBY = "lobby"
WAITING = "waiting"
DOOR = "door"
THE_END = "the_end"
CELEBRATION = "celebration"

PHASES = (LOBBY, WAITING, DOOR, *ROOM_SEQUENCE, THE_END, CELEBRATION)
TERMINAL_PHASES = (THE_END, CELEBRATION)


class Role(enum.IntEnum):
    """
    The two seats at the table. The value doubles as an index into two-element structures, and role-owned
    document fields carry the role's suffix (``cursorA`` / ``cursorB``).
    """
    PARTNER_A = 0
    PARTNER_B = 1

    @property
    def tag(self) -> str:
        return ("partner_a", "partner_b")[self]

    @property
    def suffix(self) -> str:
        return ("A", "B")[self]

    @property
    def other(self) -> "Role":
        return Role(1 - self)

    def field(self, name: str) -> str:
        return f"{name}{self.suffix}"

    @staticmethod
    def from_tag(tag: str) -> "Role":
        for role in Role:
            if role.tag == tag:
                return role
        raise ValueError(f"Unknown role tag {tag!r}")


@dataclasses.dataclass
class Session:
    id: str
    room_code: str
    player1_name: Optional[str]
    player2_name: Optional[str]
    current_phase: str
    love_meter: int
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @staticmethod
    def from_row(row: dict) -> "Session":
        return Session(
            id=row["id"],
            room_code=row["room_code"],
            player1_name=row.get("player1_name"),
            player2_name=row.get("player2_name"),
            current_phase=row.get("current_phase") or LOBBY,
            love_meter=int(row.get("love_meter") or 0),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def observable(self) -> tuple:
        return self.id, self.current_phase, self.player2_name, self.updated_at, self.love_meter
