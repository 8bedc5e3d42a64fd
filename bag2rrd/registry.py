"""
Connection registry: maps connection ids to (topic, message type, digest).

Filled by the reader's index pass; the first declaration of an id wins and
later ones (bags repeat every connection record in the index section) are
ignored.
"""

import logging
from typing import Dict, Iterator, List

from .errors import UnknownConnection
from .models import Connection

logger = logging.getLogger(__name__)


def normalize_msgtype(msgtype: str) -> str:
    """'sensor_msgs/Image' -> 'sensor_msgs/msg/Image'."""
    if "/msg/" in msgtype or "/" not in msgtype:
        return msgtype
    return msgtype.replace("/", "/msg/", 1)


class ConnectionRegistry:

    def __init__(self):
        self._connections: Dict[int, Connection] = {}

    def declare(self, connection: Connection) -> Connection:
        existing = self._connections.get(connection.id)
        if existing is not None:
            if existing.topic != connection.topic:
                logger.warning(
                    "connection %d redeclared for %s (already bound to %s), keeping the first",
                    connection.id, connection.topic, existing.topic,
                )
            return existing
        self._connections[connection.id] = connection
        return connection

    def resolve(self, connection_id: int) -> Connection:
        try:
            return self._connections[connection_id]
        except KeyError:
            raise UnknownConnection(connection_id) from None

    def by_topic(self, topic: str) -> List[Connection]:
        return [c for c in self._connections.values() if c.topic == topic]

    def topics(self) -> Dict[str, str]:
        """topic -> message type tag."""
        return {c.topic: c.message_type_tag for c in self._connections.values()}

    def __contains__(self, connection_id: int) -> bool:
        return connection_id in self._connections

    def __iter__(self) -> Iterator[Connection]:
        return iter(sorted(self._connections.values(), key=lambda c: c.id))

    def __len__(self) -> int:
        return len(self._connections)
