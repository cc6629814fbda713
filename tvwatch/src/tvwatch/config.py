from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class GameCategory(str, Enum):
    """TV channels served by the directory."""

    BEST = "best"
    BULLET = "bullet"
    BLITZ = "blitz"
    RAPID = "rapid"
    CLASSICAL = "classical"
    CHESS960 = "chess960"
    BOT = "bot"
    COMPUTER = "computer"


@dataclass
class WatcherConfig:
    api_url: str = "https://lichess.org/api"
    site_url: str = "https://lichess.org"
    socket_url: str = "wss://socket2.lichess.org"
    category: GameCategory = GameCategory.BEST
    initial_count: int = 30
    target_count: Optional[int] = None
    replacement_delay_s: float = 3.0
    keepalive_interval_s: float = 5.0
    publish_capacity: int = 100
    max_replacement_attempts: int = 3
    reconnect: bool = False
    reconnect_initial_delay_s: float = 1.0
    reconnect_max_delay_s: float = 30.0
    reconnect_max_attempts: Optional[int] = None

    def __post_init__(self) -> None:
        self.category = GameCategory(self.category)
        if self.initial_count < 1:
            raise ValueError("initial_count must be positive")
        if self.target_count is not None and self.target_count < 1:
            raise ValueError("target_count must be positive")
        if self.keepalive_interval_s <= 0:
            raise ValueError("keepalive_interval_s must be positive")
        if self.replacement_delay_s < 0:
            raise ValueError("replacement_delay_s must be non-negative")
        if self.publish_capacity < 1:
            raise ValueError("publish_capacity must be positive")
        if self.max_replacement_attempts < 1:
            raise ValueError("max_replacement_attempts must be positive")

    def reconnect_delay(self, attempt: int) -> float:
        """Backoff before reconnect ``attempt`` (1-based), doubling up to the cap."""

        delay = self.reconnect_initial_delay_s * (2 ** max(attempt - 1, 0))
        return min(delay, self.reconnect_max_delay_s)
