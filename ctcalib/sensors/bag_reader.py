"""
Recorded log access.

BagReader wraps rosbags' AnyReader (ROS1 .bag files and ROS2 bag directories)
behind the small MessageLog interface the data manager consumes, so the data
manager never touches the bag format directly. Times are float seconds.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional, Protocol

from rosbags.highlevel import AnyReader, AnyReaderError
from rosbags.typesys import Stores, get_typestore

# raised by rosbags for unreadable or malformed bags
LogReadError = AnyReaderError


@dataclass
class LogMessage:
    topic: str
    msgtype: str
    timestamp: float  # log receive time (s)
    msg: Any


class MessageLog(Protocol):
    """Minimal read interface over a recorded multi-topic log."""

    @property
    def start_time(self) -> float: ...

    @property
    def end_time(self) -> float: ...

    def topics(self) -> Dict[str, str]: ...

    def messages(self, topics: Iterable[str], start: float, end: float) -> Iterator[LogMessage]: ...

    def message_count(self, topics: Iterable[str]) -> int: ...

    def __enter__(self) -> "MessageLog": ...

    def __exit__(self, *exc) -> None: ...


def resolve_bag_path(bag_path: str) -> str:
    """Return the bag path if it exists (file for ROS1, directory for ROS2), else ''."""
    if not bag_path:
        return ""
    return bag_path if os.path.exists(bag_path) else ""


class BagReader:
    """
    MessageLog over a ROS1/ROS2 bag.

    Message definitions are taken from the bag when it embeds them (ROS1,
    recent ROS2 storage); otherwise from the given typestore (default: ROS2
    Humble message set).
    """

    def __init__(self, bag_path: str, typestore: Optional[Stores] = None):
        self._path = Path(bag_path)
        self._typestore = get_typestore(typestore or Stores.ROS2_HUMBLE)
        self._reader: Optional[AnyReader] = None

    def __enter__(self) -> "BagReader":
        self._reader = AnyReader([self._path], default_typestore=self._typestore)
        self._reader.open()
        return self

    def __exit__(self, *exc) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None

    @property
    def reader(self) -> AnyReader:
        if self._reader is None:
            raise RuntimeError(f"bag '{self._path}' is not open")
        return self._reader

    @property
    def start_time(self) -> float:
        return self.reader.start_time * 1e-9

    @property
    def end_time(self) -> float:
        return self.reader.end_time * 1e-9

    def topics(self) -> Dict[str, str]:
        return {name: info.msgtype for name, info in self.reader.topics.items()}

    def _connections(self, topics: Iterable[str]):
        wanted = set(topics)
        return [c for c in self.reader.connections if c.topic in wanted]

    def message_count(self, topics: Iterable[str]) -> int:
        return sum(c.msgcount for c in self._connections(topics))

    def messages(self, topics: Iterable[str], start: float, end: float) -> Iterator[LogMessage]:
        connections = self._connections(topics)
        if not connections:
            return
        start_ns = int(round(start * 1e9))
        # rosbags' stop bound is exclusive
        stop_ns = int(round(end * 1e9)) + 1
        for conn, timestamp, rawdata in self.reader.messages(connections=connections, start=start_ns, stop=stop_ns):
            msg = self.reader.deserialize(rawdata, conn.msgtype)
            yield LogMessage(conn.topic, conn.msgtype, timestamp * 1e-9, msg)
