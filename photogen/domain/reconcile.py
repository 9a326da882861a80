import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterable, Optional

from photogen.domain.models import VisualItem, utcnow
from photogen.domain.states import ItemStatus, JobStatus

logger = logging.getLogger(__name__)

# Only used to stop processing -> pending regressions between non-terminal states.
_RANK = {
    ItemStatus.PENDING: 0,
    ItemStatus.PROCESSING: 1,
    ItemStatus.COMPLETED: 2,
    ItemStatus.FAILED: 2,
}

def _newer(candidate: Optional[datetime], held: Optional[datetime]) -> bool:
    if candidate is None or held is None:
        return False
    return candidate > held

def _predates_retry(candidate: VisualItem, retried: VisualItem) -> bool:
    """True when a terminal candidate is the result the retry replaced, or older."""
    if candidate.generated_at is not None and retried.generated_at is not None:
        return candidate.generated_at <= retried.generated_at
    if candidate.generated_at is None:
        # Untimed: only recognisable by repeating the retried result
        return (candidate.status, candidate.error, candidate.image_url) == (
            retried.status, retried.error, retried.image_url,
        )
    return False

def should_adopt(held: VisualItem, candidate: VisualItem, retried: Optional[VisualItem] = None) -> bool:
    """
    Decides whether `candidate` replaces `held` for the same item type.

    - Held terminal: non-terminal candidates never win. Terminal candidates win
      only with a strictly newer generated_at; absent or equal keeps what we hold.
    - Held non-terminal: terminal candidates win unless they predate the retry
      in flight (`retried` is the terminal item the retry reset).
      Non-terminal candidates win unless they go processing -> pending.
    """
    if held.is_terminal:
        if not candidate.is_terminal:
            return False
        return _newer(candidate.generated_at, held.generated_at)

    if candidate.is_terminal:
        return retried is None or not _predates_retry(candidate, retried)

    return _RANK[candidate.status] >= _RANK[held.status]

@dataclass
class ReconcileResult:
    changed: list[VisualItem] = field(default_factory=list)
    discarded: int = 0
    unknown: int = 0

class Reconciler:
    """
    Owns the authoritative per-item state for one job.

    Poll snapshots, push events, execute and retry responses all go through
    apply_update(), which is idempotent and order-independent per item.
    """

    def __init__(self, items: Iterable[VisualItem]):
        self._items: dict[str, VisualItem] = {}
        for item in items:
            if item.type in self._items:
                raise ValueError(f"Duplicate item type {item.type!r}")
            self._items[item.type] = item
        # Terminal item each in-flight retry replaced, by type
        self._retried: dict[str, VisualItem] = {}

    def __contains__(self, item_type: str) -> bool:
        return item_type in self._items

    def __len__(self) -> int:
        return len(self._items)

    def get(self, item_type: str) -> VisualItem:
        return self._items[item_type]

    def items(self) -> list[VisualItem]:
        return list(self._items.values())

    def index_of(self, item_type: str) -> int:
        return list(self._items).index(item_type)

    def type_at(self, index: int) -> Optional[str]:
        types = list(self._items)
        if 0 <= index < len(types):
            return types[index]
        return None

    @property
    def terminal_count(self) -> int:
        return sum(1 for item in self._items.values() if item.is_terminal)

    @property
    def all_terminal(self) -> bool:
        return bool(self._items) and self.terminal_count == len(self._items)

    def aggregate_status(self) -> JobStatus:
        if not self.all_terminal:
            return JobStatus.PROCESSING
        if any(item.status == ItemStatus.COMPLETED for item in self._items.values()):
            return JobStatus.COMPLETED
        return JobStatus.FAILED

    def apply_update(self, candidates: Iterable[VisualItem]) -> ReconcileResult:
        result = ReconcileResult()
        for candidate in candidates:
            held = self._items.get(candidate.type)
            if held is None:
                logger.debug("Ignoring update for unknown item type %s", candidate.type)
                result.unknown += 1
                continue

            if not should_adopt(held, candidate, self._retried.get(candidate.type)):
                result.discarded += 1
                continue

            # Keep the merged prompt if the update didn't carry one
            if candidate.prompt is None and held.prompt is not None:
                candidate = replace(candidate, prompt=held.prompt)

            if candidate == held:
                continue

            self._items[candidate.type] = candidate
            if candidate.is_terminal:
                self._retried.pop(candidate.type, None)
            result.changed.append(candidate)
        return result

    def reset_for_retry(self, item_type: str) -> VisualItem:
        """Optimistically moves a failed item back to processing."""
        held = self._items[item_type]
        # Results that predate this failure are stale until a new terminal arrives
        self._retried[item_type] = held
        item = VisualItem(type=held.type, status=ItemStatus.PROCESSING, prompt=held.prompt)
        self._items[item_type] = item
        return item

    def force_fail(self, error: str, item_types: Optional[Iterable[str]] = None) -> list[VisualItem]:
        """Marks non-terminal items failed. Used by timeouts and failed retry calls."""
        targets = list(self._items) if item_types is None else list(item_types)
        now = utcnow()
        forced = []
        for item_type in targets:
            held = self._items[item_type]
            if held.is_terminal:
                continue
            item = VisualItem(
                type=held.type,
                status=ItemStatus.FAILED,
                error=error,
                generated_at=now,
                prompt=held.prompt,
            )
            self._items[item_type] = item
            self._retried.pop(item_type, None)
            forced.append(item)
        return forced
