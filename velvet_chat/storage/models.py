"""
Data models for storage layer.

Defines the persisted entities: chat messages, the usage record and
character profiles, plus their plain-dict (JSON) conversion.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


def generate_id() -> str:
    """Generate a unique message/profile identifier."""
    return str(uuid.uuid4())


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class Role(Enum):
    """Author of a conversation turn."""
    USER = "user"
    MODEL = "model"


@dataclass
class Message:
    """One turn in a conversation.

    Only ``content`` (while a model reply is streaming) and ``reactions``
    (explicit user action) change after creation.
    """
    role: Role
    content: str
    id: str = field(default_factory=generate_id)
    timestamp: int = field(default_factory=now_ms)
    reactions: List[str] = field(default_factory=list)

    def toggle_reaction(self, emoji: str) -> None:
        """Add the reaction if absent, remove it if present."""
        if not emoji or not emoji.strip():
            raise ValueError("emoji is required and cannot be empty")
        if emoji in self.reactions:
            self.reactions.remove(emoji)
        else:
            self.reactions.append(emoji)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "reactions": list(self.reactions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        reactions: List[str] = []
        for token in data.get("reactions") or []:
            if token not in reactions:
                reactions.append(token)
        return cls(
            id=data["id"],
            role=Role(data["role"]),
            content=data["content"],
            timestamp=int(data["timestamp"]),
            reactions=reactions,
        )


@dataclass
class UsageRecord:
    """Locally persisted approximation of provider rate-limit usage.

    ``timestamps`` holds epoch-millisecond request times in chronological
    order. ``cooldown_until`` of 0 means no cooldown is active.
    """
    last_reset_date: str
    timestamps: List[int] = field(default_factory=list)
    daily_count: int = 0
    cooldown_until: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamps": list(self.timestamps),
            "daily_count": self.daily_count,
            "last_reset_date": self.last_reset_date,
            "cooldown_until": self.cooldown_until,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageRecord":
        return cls(
            timestamps=[int(t) for t in data.get("timestamps", [])],
            daily_count=int(data.get("daily_count", 0)),
            last_reset_date=str(data["last_reset_date"]),
            cooldown_until=int(data.get("cooldown_until", 0)),
        )


class IntimacyLevel(Enum):
    """Persona depth for a character."""
    NORMAL = "normal"
    EXPLICIT = "explicit"


@dataclass(frozen=True)
class CharacterProfile:
    """Character a conversation is held with."""
    id: str
    name: str
    relationship: str
    traits: str
    intimacy_level: IntimacyLevel = IntimacyLevel.NORMAL
    tags: tuple = ()
    avatar_url: Optional[str] = None
    created_at: int = field(default_factory=now_ms)

    def __post_init__(self):
        """Validate required profile fields."""
        if not self.id or not self.id.strip():
            raise ValueError("id is required and cannot be empty")
        if not self.name or not self.name.strip():
            raise ValueError("name is required and cannot be empty")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "relationship": self.relationship,
            "traits": self.traits,
            "intimacy_level": self.intimacy_level.value,
            "tags": list(self.tags),
            "avatar_url": self.avatar_url,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CharacterProfile":
        return cls(
            id=data["id"],
            name=data["name"],
            relationship=data.get("relationship", ""),
            traits=data.get("traits", ""),
            intimacy_level=IntimacyLevel(data.get("intimacy_level", IntimacyLevel.NORMAL.value)),
            tags=tuple(data.get("tags") or ()),
            avatar_url=data.get("avatar_url"),
            created_at=int(data.get("created_at", 0)),
        )
