import time

CONVERSATIONS_KEY = ("conversations",)


def messages_key(conversation_id):
    return ("messages", conversation_id)


class TTLCache:
    """Small in-memory cache whose entries expire ``ttl`` seconds after being set."""

    def __init__(self, ttl=30.0, clock=time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries = {}

    def get(self, key):
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self.clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key, value):
        self._entries[key] = (self.clock() + self.ttl, value)

    def invalidate(self, key):
        self._entries.pop(key, None)

    def clear(self):
        self._entries.clear()

    def __contains__(self, key):
        return self.get(key) is not None
