from typing import Any, Callable, Dict, Iterable, List, Optional


class LiveList:
    """
    In-memory list fed by fetches and change notifications.

    Rows are upserted by identity, so replayed or duplicated notifications
    are harmless. When `version_key` is set, an incoming row older than the
    one already held is ignored (out-of-order UPDATE delivery). Items are
    kept ordered by `sort_key`.
    """

    def __init__(
        self,
        key: str = "id",
        sort_key: Optional[Callable[[dict], Any]] = None,
        reverse: bool = False,
        version_key: Optional[str] = None,
    ):
        self.key = key
        self.sort_key = sort_key
        self.reverse = reverse
        self.version_key = version_key
        self._rows: Dict[Any, dict] = {}

    def upsert(self, row: dict) -> bool:
        """Returns True when the list changed."""
        ident = row.get(self.key)
        if ident is None:
            return False
        held = self._rows.get(ident)
        if held is not None:
            if held == row:
                return False
            if self.version_key and _older(row.get(self.version_key), held.get(self.version_key)):
                return False
        self._rows[ident] = dict(row)
        return True

    def extend(self, rows: Iterable[dict]) -> int:
        return sum(1 for row in rows if self.upsert(row))

    def remove(self, ident) -> bool:
        return self._rows.pop(ident, None) is not None

    def reset(self, rows: Iterable[dict] = ()):
        self._rows.clear()
        self.extend(rows)

    def get(self, ident) -> Optional[dict]:
        return self._rows.get(ident)

    @property
    def items(self) -> List[dict]:
        rows = list(self._rows.values())
        if self.sort_key is not None:
            rows.sort(key=self.sort_key, reverse=self.reverse)
        return rows

    def __len__(self):
        return len(self._rows)

    def __contains__(self, ident):
        return ident in self._rows

    def __iter__(self):
        return iter(self.items)


def _older(incoming, held) -> bool:
    if incoming is None or held is None:
        return False
    return incoming < held


def conversation_list() -> LiveList:
    """Most recently updated conversation first."""
    return LiveList(sort_key=lambda c: c.get("updated_at") or "", reverse=True, version_key="updated_at")


def message_thread() -> LiveList:
    """Oldest message first, ready for display."""
    return LiveList(sort_key=lambda m: (m.get("created_at") or "", m.get("id") or 0), version_key="updated_at")
