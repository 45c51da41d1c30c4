class BoundedBuffer:
    """Accumulates a byte stream up to a fixed cap.

    Bytes past the cap are counted and discarded so a chatty program cannot
    grow host memory without bound. ``truncated`` records whether anything
    was dropped.
    """

    def __init__(self, limit: int):
        if limit <= 0:
            raise ValueError("limit must be positive")
        self.limit = limit
        self._chunks: list[bytes] = []
        self._size = 0
        self.dropped = 0

    def write(self, data: bytes | None) -> None:
        if not data:
            return
        room = self.limit - self._size
        kept = data[:room]
        if kept:
            self._chunks.append(kept)
            self._size += len(kept)
        self.dropped += len(data) - len(kept)

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def __len__(self) -> int:
        return self._size

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)
