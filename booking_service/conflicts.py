from datetime import datetime

from .lifecycle import ACTIVE_STATUSES


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    # half-open: a booking ending at 11:00 does not collide with one starting at 11:00
    return a_start < b_end and a_end > b_start


class ConflictChecker:
    """
    Answers whether a provider already has an active booking in a window.

    Only CONFIRMED and IN_PROGRESS bookings block; pending requests do not block each other.
    The answer is only as good as the transaction it runs in, so callers hold the
    provider's lock around check and write.
    """

    def __init__(self, blocking_statuses=ACTIVE_STATUSES):
        self.blocking_statuses = frozenset(blocking_statuses)

    async def conflicting(self, repo, provider_id: int, start: datetime, end: datetime, exclude_id: int | None = None) -> list:
        candidates = await repo.find_overlapping(
            provider_id, start, end, self.blocking_statuses, exclude_id=exclude_id
        )
        return [b for b in candidates if overlaps(b.scheduled_at, b.ends_at, start, end)]

    async def has_conflict(self, repo, provider_id: int, start: datetime, end: datetime, exclude_id: int | None = None) -> bool:
        return bool(await self.conflicting(repo, provider_id, start, end, exclude_id=exclude_id))
