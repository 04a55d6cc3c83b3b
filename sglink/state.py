"""Canonical device state and the reducer that maintains it."""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .messages import ConsoleStatus, MediaStateMessage, PlaybackStatus, SoundLevel

logger = logging.getLogger(__name__)


class MediaState(Enum):
    STOPPED = "stopped"
    PLAYING = "playing"
    PAUSED = "paused"
    LOADING = "loading"
    INTERRUPTED = "interrupted"


PLAYBACK_TO_MEDIA_STATE = {
    PlaybackStatus.CLOSED: MediaState.STOPPED,
    PlaybackStatus.CHANGING: MediaState.LOADING,
    PlaybackStatus.STOPPED: MediaState.STOPPED,
    PlaybackStatus.PLAYING: MediaState.PLAYING,
    PlaybackStatus.PAUSED: MediaState.PAUSED,
}


@dataclass(frozen=True)
class DeviceState:
    power: bool = False
    title_id: int = 0
    reference: str = ""
    volume: int = 0
    mute: bool = True
    media_state: MediaState = MediaState.STOPPED
    firmware: str = ""
    locale: str = ""

    def merge(self, update: "StatusUpdate") -> "DeviceState":
        """Return a copy with every field *update* carries applied."""
        return dataclasses.replace(self, **update.carried())

    def changed_fields(self, other: "DeviceState") -> Tuple[str, ...]:
        return tuple(
            f.name
            for f in dataclasses.fields(self)
            if getattr(self, f.name) != getattr(other, f.name)
        )


@dataclass
class StatusUpdate:
    """Partial state decoded from one status payload; ``None`` means absent."""

    power: Optional[bool] = None
    title_id: Optional[int] = None
    reference: Optional[str] = None
    volume: Optional[int] = None
    mute: Optional[bool] = None
    media_state: Optional[MediaState] = None
    firmware: Optional[str] = None
    locale: Optional[str] = None

    def carried(self) -> Dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in dataclasses.fields(self)
            if getattr(self, f.name) is not None
        }

    @classmethod
    def from_console_status(cls, status: ConsoleStatus) -> "StatusUpdate":
        title = status.focused_title
        return cls(
            power=True,
            title_id=title.title_id if title else None,
            reference=title.aum if title else None,
            firmware=status.firmware,
            locale=status.locale,
        )

    @classmethod
    def from_media_state(cls, message: MediaStateMessage) -> "StatusUpdate":
        try:
            media_state = PLAYBACK_TO_MEDIA_STATE[PlaybackStatus(message.playback_status)]
        except ValueError:
            media_state = None
        return cls(
            power=True,
            media_state=media_state,
            mute=message.sound_level == SoundLevel.MUTED,
        )

    @classmethod
    def from_json(cls, body: Dict[str, Any]) -> Optional["StatusUpdate"]:
        """Volume/mute notification pushed on the tv-remote channel, if any."""
        params = body.get("params")
        if not isinstance(params, dict):
            return None
        volume = params.get("volume")
        muted = params.get("muted")
        if volume is None and muted is None:
            return None
        try:
            volume = int(volume) if volume is not None else None
        except (TypeError, ValueError):
            logger.debug("Ignoring notification with volume %r", volume)
            return None
        return cls(volume=volume, mute=bool(muted) if muted is not None else None)


class StateTracker:
    """Reduces status updates into one :class:`DeviceState` snapshot.

    :meth:`apply` returns the new snapshot when it should be emitted and
    ``None`` otherwise.  After :meth:`reset_for_session` the next
    update is emitted even when nothing changed, since a reconnecting
    caller has no other way to learn the current state.
    """

    def __init__(self, initial: Optional[DeviceState] = None) -> None:
        self._state = initial or DeviceState()
        self._force_next = True

    @property
    def state(self) -> DeviceState:
        return self._state

    def reset_for_session(self) -> None:
        self._force_next = True

    def apply(self, update: StatusUpdate) -> Optional[DeviceState]:
        previous = self._state
        self._state = previous.merge(update)
        changed = previous.changed_fields(self._state)
        if self._force_next:
            self._force_next = False
            logger.debug("First status of session: %s", self._state)
            return self._state
        if not changed:
            return None
        logger.debug("State changed (%s): %s", ", ".join(changed), self._state)
        return self._state

    def mark_offline(self) -> Optional[DeviceState]:
        """Reduce a lost session into power off without consuming the forced emission."""
        update = StatusUpdate(power=False)
        if self._state.media_state is MediaState.PLAYING:
            update.media_state = MediaState.INTERRUPTED
        previous = self._state
        self._state = previous.merge(update)
        return self._state if previous.changed_fields(self._state) else None
