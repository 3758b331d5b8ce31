"""Durable notification store.

All authoritative notification state lives here. Mutations of a single record
go through a conditional update on ``version`` (read, compute, write only if
nobody else wrote in between), so concurrent writers for different channels
of the same notification are merged instead of lost.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal
from uuid import UUID

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased
from sqlalchemy.orm.attributes import set_committed_value

from notification_service.delivery.state import (
    ChannelOutcome,
    apply_outcome,
    derive_state,
    dispatch_due_at,
    expedite,
    new_channel_vector,
    transition,
)
from notification_service.errors import (
    NotificationFinalized,
    NotificationNotFound,
    StaleRecord,
    StoreUnavailable,
    ValidationFailed,
)
from notification_service.models.enums import (
    Channel,
    NotificationKind,
    NotificationState,
    Priority,
)
from notification_service.models.notification import Notification, as_utc, utcnow
from notification_service.services.idempotency import IDEMPOTENCY_TTL, IdempotencyService

logger = logging.getLogger(__name__)

ChangeHook = Callable[[str], Awaitable[None]]
SortField = Literal["created_at", "updated_at", "priority", "kind"]
SortOrder = Literal["asc", "desc"]

MAX_PAGE_SIZE = 100

_SORT_COLUMNS = {
    "created_at": Notification.created_at,
    "updated_at": Notification.updated_at,
    "priority": Notification.priority_rank,
    "kind": Notification.kind,
}


@dataclass
class NotificationDraft:
    """A validated create request, before it has an id."""

    recipient: str
    producer: str
    title: str
    body: str
    kind: NotificationKind
    priority: Priority = Priority.NORMAL
    metadata: dict[str, Any] = field(default_factory=dict)
    channels: list[Channel] = field(default_factory=list)
    scheduled_for: datetime | None = None
    expires_at: datetime | None = None


@dataclass
class IdempotencyRequest:
    key: str
    request_hash: str


@dataclass
class ListFilter:
    kind: NotificationKind | None = None
    read: bool | None = None
    state: NotificationState | None = None
    priority: Priority | None = None
    include_expired: bool = False


@dataclass
class PageRequest:
    limit: int = 20
    offset: int = 0
    sort: SortField = "created_at"
    order: SortOrder = "desc"

    def __post_init__(self) -> None:
        if not 1 <= self.limit <= MAX_PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if self.offset < 0:
            raise ValueError("offset must be non-negative")
        if self.sort not in _SORT_COLUMNS:
            raise ValueError(f"unsupported sort field {self.sort!r}")
        if self.order not in ("asc", "desc"):
            raise ValueError(f"unsupported sort order {self.order!r}")


@dataclass
class Page:
    items: list[Notification]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


@dataclass
class KindGroup:
    kind: NotificationKind
    total: int
    unread_total: int
    latest: Notification


def parse_id(value: UUID | str) -> UUID | None:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _visible(now: datetime):
    return or_(Notification.expires_at.is_(None), Notification.expires_at > now)


def _due_at(
    record: Notification,
    state: NotificationState,
    per_channel: dict[str, Any],
) -> datetime | None:
    return dispatch_due_at(
        state, per_channel, as_utc(record.scheduled_for), as_utc(record.created_at)
    )


class NotificationStore:
    """Persistence for notifications and their per-channel delivery state."""

    MAX_CONDITIONAL_RETRIES = 10

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        *,
        timeout: float = 2.0,
        on_change: ChangeHook | None = None,
        idempotency_ttl: timedelta = IDEMPOTENCY_TTL,
    ):
        self._sessions = sessions
        self.timeout = timeout
        self._on_change = on_change
        self.idempotency_ttl = idempotency_ttl

    def set_change_hook(self, hook: ChangeHook | None) -> None:
        self._on_change = hook

    async def _guard(self, coro: Awaitable[Any]) -> Any:
        """Run one store operation under the store deadline."""
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable("Notification store deadline exceeded") from exc
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Store operation failed: %s", exc)
            raise StoreUnavailable() from exc

    async def _changed(self, recipient: str) -> None:
        if self._on_change is not None:
            await self._on_change(recipient)

    # --- Create ---

    async def create(
        self,
        draft: NotificationDraft,
        idempotency: IdempotencyRequest | None = None,
    ) -> Notification:
        """
        Persist a new notification.

        Raises:
            DuplicateNotification - the idempotency key replays an earlier create
            IdempotencyConflict - the key was used with a different payload
        """

        async def _create() -> Notification:
            async with self._sessions() as session:
                async with session.begin():
                    keys = IdempotencyService(session, self.idempotency_ttl)
                    if idempotency:
                        await keys.check(idempotency.key, draft.producer, idempotency.request_hash)

                    now = utcnow()
                    vector = new_channel_vector(draft.channels)
                    record = Notification(
                        id=uuid.uuid4(),
                        recipient=draft.recipient,
                        producer=draft.producer,
                        title=draft.title,
                        body=draft.body,
                        kind=draft.kind,
                        priority=draft.priority,
                        priority_rank=draft.priority.rank,
                        state=NotificationState.PENDING,
                        read_flag=False,
                        extra_data=dict(draft.metadata),
                        per_channel=vector,
                        scheduled_for=draft.scheduled_for,
                        expires_at=draft.expires_at,
                        next_dispatch_at=dispatch_due_at(
                            NotificationState.PENDING, vector, draft.scheduled_for, now
                        ),
                        version=1,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(record)
                    await session.flush()

                    if idempotency:
                        await keys.claim(
                            idempotency.key,
                            draft.producer,
                            idempotency.request_hash,
                            record.id,
                            record.to_dict(),
                        )
                return record

        try:
            record = await self._guard(_create())
        except IntegrityError as exc:
            if idempotency is None:
                raise StoreUnavailable() from exc
            # Lost a race for the same key; the winner's row is visible now.
            await self._guard(self._replay(draft.producer, idempotency))
            raise StoreUnavailable("Idempotency key state error") from exc

        await self._changed(record.recipient)
        return record

    async def _replay(self, producer: str, idempotency: IdempotencyRequest) -> None:
        async with self._sessions() as session:
            keys = IdempotencyService(session, self.idempotency_ttl)
            await keys.check(idempotency.key, producer, idempotency.request_hash)

    # --- Reads ---

    async def get(
        self,
        notification_id: UUID | str,
        recipient: str | None = None,
        *,
        include_expired: bool = False,
    ) -> Notification:
        """Fetch one record, scoped to ``recipient`` when supplied."""
        record_id = parse_id(notification_id)
        if record_id is None:
            raise NotificationNotFound()

        async def _get() -> Notification | None:
            async with self._sessions() as session:
                return await session.get(Notification, record_id)

        record = await self._guard(_get())
        if record is None or (recipient is not None and record.recipient != recipient):
            raise NotificationNotFound()
        if not include_expired and record.expires_at is not None:
            if self._is_expired(record):
                raise NotificationNotFound()
        return record

    @staticmethod
    def _is_expired(record: Notification) -> bool:
        return as_utc(record.expires_at) <= utcnow()

    async def list(
        self,
        recipient: str,
        filters: ListFilter | None = None,
        page: PageRequest | None = None,
    ) -> Page:
        """Ordered page of a recipient's records plus the total match count."""
        filters = filters or ListFilter()
        page = page or PageRequest()
        conditions = [Notification.recipient == recipient]
        if filters.kind is not None:
            conditions.append(Notification.kind == filters.kind)
        if filters.read is not None:
            conditions.append(Notification.read_flag.is_(filters.read))
        if filters.state is not None:
            conditions.append(Notification.state == filters.state)
        if filters.priority is not None:
            conditions.append(Notification.priority == filters.priority)
        if not filters.include_expired:
            conditions.append(_visible(utcnow()))

        column = _SORT_COLUMNS[page.sort]
        if page.order == "desc":
            ordering = (column.desc(), Notification.created_at.desc(), Notification.id.desc())
        else:
            ordering = (column.asc(), Notification.created_at.asc(), Notification.id.asc())

        async def _list() -> Page:
            async with self._sessions() as session:
                total = await session.scalar(
                    select(func.count(Notification.id)).where(*conditions)
                )
                result = await session.execute(
                    select(Notification)
                    .where(*conditions)
                    .order_by(*ordering)
                    .limit(page.limit)
                    .offset(page.offset)
                )
                return Page(
                    items=list(result.scalars().all()),
                    total=total or 0,
                    limit=page.limit,
                    offset=page.offset,
                )

        return await self._guard(_list())

    async def count_unread(self, recipient: str, kind: NotificationKind | None = None) -> int:
        conditions = [
            Notification.recipient == recipient,
            Notification.read_flag.is_(False),
            _visible(utcnow()),
        ]
        if kind is not None:
            conditions.append(Notification.kind == kind)

        async def _count() -> int:
            async with self._sessions() as session:
                return await session.scalar(
                    select(func.count(Notification.id)).where(*conditions)
                ) or 0

        return await self._guard(_count())

    async def group_by_kind(
        self,
        recipient: str,
        *,
        include_read: bool = False,
        limit: int = 10,
    ) -> list[KindGroup]:
        """
        Per-kind totals with the newest record of each kind.

        Groups are ordered by their newest record, newest first, and capped
        at ``limit`` kinds.
        """
        conditions = [Notification.recipient == recipient, _visible(utcnow())]
        if not include_read:
            conditions.append(Notification.read_flag.is_(False))

        latest_created = func.max(Notification.created_at)
        unread = func.sum(case((Notification.read_flag.is_(False), 1), else_=0))

        async def _group() -> list[KindGroup]:
            async with self._sessions() as session:
                rows = (
                    await session.execute(
                        select(
                            Notification.kind,
                            func.count(Notification.id).label("total"),
                            unread.label("unread_total"),
                        )
                        .where(*conditions)
                        .group_by(Notification.kind)
                        .order_by(latest_created.desc())
                        .limit(limit)
                    )
                ).all()
                if not rows:
                    return []

                kinds = [row.kind for row in rows]
                ranked = (
                    select(
                        Notification,
                        func.row_number()
                        .over(
                            partition_by=Notification.kind,
                            order_by=(Notification.created_at.desc(), Notification.id.desc()),
                        )
                        .label("rn"),
                    )
                    .where(*conditions, Notification.kind.in_(kinds))
                    .subquery()
                )
                newest = aliased(Notification, ranked)
                result = await session.execute(select(newest).where(ranked.c.rn == 1))
                latest_by_kind = {record.kind: record for record in result.scalars().all()}

                return [
                    KindGroup(
                        kind=row.kind,
                        total=row.total,
                        unread_total=int(row.unread_total or 0),
                        latest=latest_by_kind[row.kind],
                    )
                    for row in rows
                    if row.kind in latest_by_kind
                ]

        return await self._guard(_group())

    async def list_in_flight(
        self,
        limit: int = 500,
        after: tuple[datetime, UUID] | None = None,
    ) -> list[Notification]:
        """
        Records with a dispatch still outstanding, soonest due first.

        Pass the ``(next_dispatch_at, id)`` of the last record of one page as
        ``after`` to fetch the next page.
        """
        query = select(Notification).where(Notification.next_dispatch_at.is_not(None))
        if after is not None:
            due, last_id = after
            query = query.where(
                or_(
                    Notification.next_dispatch_at > due,
                    and_(Notification.next_dispatch_at == due, Notification.id > last_id),
                )
            )

        async def _list() -> list[Notification]:
            async with self._sessions() as session:
                result = await session.execute(
                    query.order_by(
                        Notification.next_dispatch_at.asc(), Notification.id.asc()
                    ).limit(limit)
                )
                return list(result.scalars().all())

        return await self._guard(_list())

    # --- Conditional single-record mutations ---

    async def _mutate(
        self,
        notification_id: UUID | str,
        recipient: str | None,
        compute: Callable[[Notification], dict[str, Any] | None],
    ) -> Notification:
        """
        Read-modify-write loop for one record.

        ``compute`` returns the column values to write, or ``None`` when the
        record is already in the requested shape. The write only lands if the
        version observed by ``compute`` is still current.
        """
        record_id = parse_id(notification_id)
        if record_id is None:
            raise NotificationNotFound()

        async def _attempt() -> tuple[bool, Notification]:
            async with self._sessions() as session:
                async with session.begin():
                    record = await session.get(Notification, record_id)
                    if record is None or (
                        recipient is not None and record.recipient != recipient
                    ):
                        raise NotificationNotFound()
                    values = compute(record)
                    if values is None:
                        return True, record
                    values["version"] = record.version + 1
                    values["updated_at"] = utcnow()
                    result = await session.execute(
                        update(Notification)
                        .where(
                            Notification.id == record_id,
                            Notification.version == record.version,
                        )
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        return False, record
                    for name, value in values.items():
                        set_committed_value(record, name, value)
                    return True, record

        for _ in range(self.MAX_CONDITIONAL_RETRIES):
            applied, record = await self._guard(_attempt())
            if applied:
                await self._changed(record.recipient)
                return record
        raise StaleRecord(f"notification {record_id} kept changing underneath the update")

    async def update_read(
        self,
        notification_id: UUID | str,
        recipient: str,
        read_flag: bool,
    ) -> Notification:
        """Set or clear the read flag; ``read_at`` follows the flag."""

        def compute(record: Notification) -> dict[str, Any] | None:
            if bool(record.read_flag) == read_flag:
                return None
            per_channel = record.per_channel or {}
            if read_flag:
                state = NotificationState.READ
            else:
                state = derive_state(per_channel, False)
            return {
                "read_flag": read_flag,
                "read_at": utcnow() if read_flag else None,
                "state": state,
                "next_dispatch_at": _due_at(record, state, per_channel),
            }

        return await self._mutate(notification_id, recipient, compute)

    async def apply_delivery_outcome(
        self,
        notification_id: UUID | str,
        channel: Channel | str,
        outcome: ChannelOutcome,
    ) -> Notification:
        """Merge one channel's outcome and re-derive the record state."""
        channel = Channel(channel)

        def compute(record: Notification) -> dict[str, Any] | None:
            current = record.per_channel or {}
            try:
                vector = apply_outcome(current, channel, outcome)
            except KeyError as exc:
                raise ValidationFailed(f"Channel '{channel.value}' was not requested") from exc
            state = transition(record.state, vector, bool(record.read_flag))
            if vector == current and state == record.state:
                return None
            values: dict[str, Any] = {
                "per_channel": vector,
                "state": state,
                "next_dispatch_at": _due_at(record, state, vector),
            }
            if state is NotificationState.FAILED and record.state is not NotificationState.FAILED:
                errors = sorted(
                    f"{name}: {entry.get('last_error')}"
                    for name, entry in vector.items()
                    if entry.get("last_error")
                )
                values["failure_reason"] = "; ".join(errors) or "all channels failed"
            return values

        return await self._mutate(notification_id, None, compute)

    async def fail_without_channels(self, notification_id: UUID | str) -> Notification:
        def compute(record: Notification) -> dict[str, Any] | None:
            if record.per_channel or record.state is NotificationState.FAILED:
                return None
            if record.state is NotificationState.READ:
                return None
            return {
                "state": NotificationState.FAILED,
                "failure_reason": "no channels",
                "next_dispatch_at": None,
            }

        return await self._mutate(notification_id, None, compute)

    async def expedite_dispatch(self, notification_id: UUID | str) -> Notification:
        """
        Make every outstanding channel due now and drop any deferral.

        Raises:
            NotificationFinalized - the record is read or failed
        """

        def compute(record: Notification) -> dict[str, Any] | None:
            if record.state in (NotificationState.READ, NotificationState.FAILED):
                raise NotificationFinalized()
            current = record.per_channel or {}
            vector = expedite(current)
            if vector == current and record.scheduled_for is None:
                return None
            return {
                "per_channel": vector,
                "scheduled_for": None,
                "next_dispatch_at": dispatch_due_at(record.state, vector, None, utcnow()),
            }

        return await self._mutate(notification_id, None, compute)

    # --- Bulk mutations ---

    async def update_all_read(self, recipient: str, kind: NotificationKind | None = None) -> int:
        """Mark every unread record of ``recipient`` (optionally one kind) as read."""
        conditions = [
            Notification.recipient == recipient,
            Notification.read_flag.is_(False),
        ]
        if kind is not None:
            conditions.append(Notification.kind == kind)

        async def _update() -> int:
            async with self._sessions() as session:
                async with session.begin():
                    now = utcnow()
                    result = await session.execute(
                        update(Notification)
                        .where(*conditions)
                        .values(
                            read_flag=True,
                            read_at=now,
                            state=NotificationState.READ,
                            next_dispatch_at=None,
                            version=Notification.version + 1,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    return result.rowcount or 0

        modified = await self._guard(_update())
        await self._changed(recipient)
        return modified

    async def delete(self, notification_id: UUID | str, recipient: str) -> None:
        record_id = parse_id(notification_id)
        if record_id is None:
            raise NotificationNotFound()

        async def _delete() -> int:
            async with self._sessions() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(Notification).where(
                            Notification.id == record_id,
                            Notification.recipient == recipient,
                        )
                    )
                    return result.rowcount or 0

        if not await self._guard(_delete()):
            raise NotificationNotFound()
        await self._changed(recipient)

    async def enforce_recipient_cap(self, recipient: str, max_records: int) -> int:
        """Delete the oldest records beyond ``max_records`` for one recipient."""

        async def _trim() -> int:
            async with self._sessions() as session:
                async with session.begin():
                    total = await session.scalar(
                        select(func.count(Notification.id)).where(
                            Notification.recipient == recipient
                        )
                    ) or 0
                    excess = total - max_records
                    if excess <= 0:
                        return 0
                    oldest = (
                        select(Notification.id)
                        .where(Notification.recipient == recipient)
                        .order_by(Notification.created_at.asc())
                        .limit(excess)
                    )
                    ids = list((await session.execute(oldest)).scalars().all())
                    await session.execute(delete(Notification).where(Notification.id.in_(ids)))
                    return len(ids)

        removed = await self._guard(_trim())
        if removed:
            logger.info("Deleted %d old notifications for recipient %s", removed, recipient)
            await self._changed(recipient)
        return removed

    async def sweep_expired(self, now: datetime, grace: timedelta) -> int:
        """Hard-delete records past ``expires_at`` plus ``grace``."""
        cutoff = now - grace

        async def _sweep() -> tuple[int, list[str]]:
            async with self._sessions() as session:
                async with session.begin():
                    expired = and_(
                        Notification.expires_at.is_not(None),
                        Notification.expires_at < cutoff,
                    )
                    recipients = list(
                        (
                            await session.execute(
                                select(Notification.recipient).where(expired).distinct()
                            )
                        )
                        .scalars()
                        .all()
                    )
                    result = await session.execute(delete(Notification).where(expired))
                    await IdempotencyService(session, self.idempotency_ttl).purge_expired(now)
                    return result.rowcount or 0, recipients

        removed, recipients = await self._guard(_sweep())
        for recipient in recipients:
            await self._changed(recipient)
        return removed

    async def cleanup(
        self,
        created_before: datetime,
        *,
        keep_read: bool = False,
        dry_run: bool = True,
    ) -> int:
        """
        Delete records created before ``created_before``.

        With ``keep_read`` read records survive. A dry run only counts what
        would be deleted.
        """
        conditions = [Notification.created_at < created_before]
        if keep_read:
            conditions.append(Notification.read_flag.is_(False))

        async def _count() -> int:
            async with self._sessions() as session:
                return await session.scalar(
                    select(func.count(Notification.id)).where(*conditions)
                ) or 0

        async def _delete() -> tuple[int, list[str]]:
            async with self._sessions() as session:
                async with session.begin():
                    recipients = list(
                        (
                            await session.execute(
                                select(Notification.recipient).where(*conditions).distinct()
                            )
                        )
                        .scalars()
                        .all()
                    )
                    result = await session.execute(delete(Notification).where(*conditions))
                    return result.rowcount or 0, recipients

        if dry_run:
            return await self._guard(_count())

        removed, recipients = await self._guard(_delete())
        for recipient in recipients:
            await self._changed(recipient)
        return removed

    async def health(self) -> dict[str, int]:
        async def _stats() -> dict[str, int]:
            async with self._sessions() as session:
                row = (
                    await session.execute(
                        select(
                            func.count(Notification.id),
                            func.sum(case((Notification.read_flag.is_(False), 1), else_=0)),
                            func.sum(
                                case(
                                    (Notification.state == NotificationState.PENDING, 1),
                                    else_=0,
                                )
                            ),
                        )
                    )
                ).one()
                return {
                    "total": row[0] or 0,
                    "unread": int(row[1] or 0),
                    "pending": int(row[2] or 0),
                }

        return await self._guard(_stats())

    # --- Reporting ---

    async def state_breakdown(self, since: datetime) -> dict[str, int]:
        """Record count per state among records created since ``since``."""

        async def _breakdown() -> dict[str, int]:
            async with self._sessions() as session:
                rows = (
                    await session.execute(
                        select(Notification.state, func.count(Notification.id))
                        .where(Notification.created_at >= since)
                        .group_by(Notification.state)
                    )
                ).all()
                return {NotificationState(state).value: count for state, count in rows}

        return await self._guard(_breakdown())

    async def kind_distribution(
        self,
        since: datetime,
        recipient: str | None = None,
    ) -> list[tuple[NotificationKind, int, int]]:
        """``(kind, total, unread)`` for records created since ``since``, most common first."""
        conditions = [Notification.created_at >= since]
        if recipient is not None:
            conditions.append(Notification.recipient == recipient)
        total = func.count(Notification.id)
        unread = func.sum(case((Notification.read_flag.is_(False), 1), else_=0))

        async def _distribution() -> list[tuple[NotificationKind, int, int]]:
            async with self._sessions() as session:
                rows = (
                    await session.execute(
                        select(Notification.kind, total, unread)
                        .where(*conditions)
                        .group_by(Notification.kind)
                        .order_by(total.desc(), Notification.kind.asc())
                    )
                ).all()
                return [
                    (NotificationKind(kind), count, int(unread_count or 0))
                    for kind, count, unread_count in rows
                ]

        return await self._guard(_distribution())
