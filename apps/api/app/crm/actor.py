from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    display_name: str | None = None
    correlation_id: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.user_id


SYSTEM_ACTOR = ActorUser(user_id="system", permissions=set(), display_name="System")
