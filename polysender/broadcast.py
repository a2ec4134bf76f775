"""Broadcasts, their schedules, runs and per-recipient send records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from enum import IntEnum
from typing import Any, Collection, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .android import Device, device_from_key
from .contacts import Contact
from .email import Identity, smtp_account_from_key
from .schedule import SettingSendHours, SettingTimezone, TimeRange
from .store import NotFoundError, Saveable, Transaction, id_to_string

_DAY = timedelta(hours=24)
_MINUTE_US = 60_000_000
_SECOND_US = 1_000_000


def _load_location(name: str) -> tzinfo | None:
    """Time zone by name; None stands for local time."""
    if name == "UTC":
        return timezone.utc
    if name == "Local":
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError) as e:
        raise ValueError(f"failed to load location {name}: {e}") from e


def _aware(t: datetime) -> datetime:
    return t if t.tzinfo is not None else t.astimezone()


def _add(t: datetime, d: timedelta) -> datetime:
    """Add an elapsed duration, independent of wall-clock shifts."""
    return (t.astimezone(timezone.utc) + d).astimezone(t.tzinfo)


def _since(t: datetime, start: datetime) -> timedelta:
    return t.astimezone(timezone.utc) - start.astimezone(timezone.utc)


def _midnight(t: datetime) -> datetime:
    return datetime(t.year, t.month, t.day, tzinfo=t.tzinfo)


def _round(d: timedelta, unit_us: int) -> int:
    """Round a duration to a unit, halves away from zero; result in units."""
    total = d // timedelta(microseconds=1)
    q, r = divmod(abs(total), unit_us)
    if r * 2 >= unit_us:
        q += 1
    return q if total >= 0 else -q


def _format_seconds(seconds: int) -> str:
    if seconds == 0:
        return "0s"
    sign = "-" if seconds < 0 else ""
    hours, rest = divmod(abs(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{sign}{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{sign}{minutes}m{secs}s"
    return f"{sign}{secs}s"


def _time_to_string(t: datetime | None) -> str:
    return "" if t is None else t.strftime("%Y-%m-%d %H:%M:%S %Z")


def _encode_time(t: datetime | None) -> str | None:
    return None if t is None else t.isoformat()


def _decode_time(value: Any) -> datetime | None:
    return None if not value else datetime.fromisoformat(value)


@dataclass
class Broadcast(Saveable):
    """A message sent to a list of contacts through one gateway."""

    db_table = "broadcast"

    id: bytes = field(default_factory=lambda: bytes(16))
    contacts: list[Contact] = field(default_factory=list)
    msg_subject: str = ""
    msg_body: str = ""
    msg_body_file: str = ""
    gateway_type: str = ""
    gateway_key: bytes = b""
    send_date_from: datetime | None = None
    send_date_to: datetime | None = None
    send_hours: list[TimeRange] = field(default_factory=list)
    timezone: str = ""
    created_at: datetime | None = None
    status: str = field(default="", compare=False)

    def db_key(self) -> bytes:
        return bytes(self.id)

    def to_cbor(self) -> Any:
        return {
            "id": bytes(self.id),
            "contacts": [
                {"recipient": c.recipient, "keywords": dict(c.keywords)} for c in self.contacts
            ],
            "msg_subject": self.msg_subject,
            "msg_body": self.msg_body,
            "msg_body_file": self.msg_body_file,
            "gateway_type": self.gateway_type,
            "gateway_key": bytes(self.gateway_key),
            "send_date_from": _encode_time(self.send_date_from),
            "send_date_to": _encode_time(self.send_date_to),
            "send_hours": [r.to_cbor() for r in self.send_hours],
            "timezone": self.timezone,
            "created_at": _encode_time(self.created_at),
        }

    @classmethod
    def from_cbor(cls, value: Any) -> Broadcast:
        return cls(
            id=bytes(value.get("id", bytes(16))),
            contacts=[
                Contact(recipient=c.get("recipient", ""), keywords=dict(c.get("keywords") or {}))
                for c in value.get("contacts") or []
            ],
            msg_subject=value.get("msg_subject", ""),
            msg_body=value.get("msg_body", ""),
            msg_body_file=value.get("msg_body_file", ""),
            gateway_type=value.get("gateway_type", ""),
            gateway_key=bytes(value.get("gateway_key") or b""),
            send_date_from=_decode_time(value.get("send_date_from")),
            send_date_to=_decode_time(value.get("send_date_to")),
            send_hours=[TimeRange.from_cbor(r) for r in value.get("send_hours") or []],
            timezone=value.get("timezone", ""),
            created_at=_decode_time(value.get("created_at")),
        )

    def _now_in_zone(self, default_timezone: str | None, now: datetime | None) -> datetime:
        now = datetime.now(timezone.utc) if now is None else _aware(now)
        name = self.timezone or str(default_timezone or "")
        if not name:
            return now.astimezone()
        loc = _load_location(name)
        return now.astimezone(loc) if loc is not None else now.astimezone()

    def _hours(self, default_send_hours: Iterable[TimeRange] | None) -> list[TimeRange]:
        return list(self.send_hours) or list(default_send_hours or [])

    def _expired(self, now: datetime) -> bool:
        return self.send_date_to is not None and now > _aware(self.send_date_to) + _DAY

    def startable_now_until(
        self,
        default_send_hours: Iterable[TimeRange] | None = None,
        default_timezone: str | None = None,
        now: datetime | None = None,
    ) -> datetime | None:
        """End of the current sending window, or None if sending is not allowed now."""
        try:
            now = self._now_in_zone(default_timezone, now)
        except ValueError:
            return None
        if self.send_date_from is not None and now < _aware(self.send_date_from):
            return None
        if self._expired(now):
            return None
        today = _midnight(now)
        time_of_day = _since(now, today)
        hours = self._hours(default_send_hours)
        if not hours:
            return _add(today, _DAY)
        for r in hours:
            if r.start <= time_of_day < r.end:
                return _add(today, r.end)
        return None

    def startable_at(
        self,
        default_send_hours: Iterable[TimeRange] | None = None,
        default_timezone: str | None = None,
        now: datetime | None = None,
    ) -> datetime | None:
        """Earliest time the broadcast may send, or None if it never may again."""
        now = self._now_in_zone(default_timezone, now)
        today = _midnight(now)
        time_of_day = _since(now, today)
        if self._expired(now):
            return None
        hours = self._hours(default_send_hours)
        date_from = None if self.send_date_from is None else _aware(self.send_date_from)
        date_to = None if self.send_date_to is None else _aware(self.send_date_to)
        day = today
        while True:
            if date_to is not None and not day < date_to:
                # no later day can fall before the end date either
                return None
            if date_from is None or day > date_from:
                if not hours:
                    return day
                if day == today:
                    for r in hours:
                        if time_of_day < r.end:
                            return _add(day, r.start)
                else:
                    return _add(day, hours[0].start)
            day = _add(day, _DAY)

    def startable_in(self, tx: Transaction, now: datetime | None = None) -> timedelta | None:
        """Time until the broadcast may start, using the stored default settings."""
        now = datetime.now(timezone.utc) if now is None else _aware(now)
        default_hours = tx.get_record_or_default(
            SettingSendHours, SettingSendHours().db_key(), SettingSendHours()
        )
        default_tz = tx.get_record_or_default(
            SettingTimezone, SettingTimezone().db_key(), SettingTimezone()
        )
        at = self.startable_at(default_hours, default_tz, now)
        return None if at is None else _since(at, now)

    def read_status(
        self,
        tx: Transaction,
        running: Collection[str] = (),
        now: datetime | None = None,
    ) -> str:
        """Work out, store and return the status text of the broadcast.

        running holds the text ids of broadcasts currently being sent.
        """
        run = load_run(tx, self)
        done = len(run.done)
        total = len(self.contacts)
        is_running = id_to_string(self.id) in running
        if done == 0:
            if is_running:
                self.status = f"0/{total} sent - running"
                return self.status
            wait = self.startable_in(tx, now)
            if wait is None:
                self.status = "not startable"
            elif wait <= timedelta(0):
                self.status = "starting now"
            elif wait >= timedelta(minutes=1):
                text = _format_seconds(_round(wait, _MINUTE_US) * 60)
                self.status = "starting in " + text.removesuffix("0s")
            else:
                self.status = "starting in " + _format_seconds(_round(wait, _SECOND_US))
        elif is_running:
            self.status = f"{done}/{total} sent - running"
        elif done == total:
            self.status = f"{done}/{total} sent - finished"
        else:
            self.status = f"{done}/{total} sent - paused"
        return self.status

    def details(
        self,
        tx: Transaction,
        running: Collection[str] = (),
        now: datetime | None = None,
    ) -> str:
        """Multi-line description of the broadcast and its status."""
        status = self.read_status(tx, running, now)
        hours = "[" + " ".join(str(r) for r in self.send_hours) + "]"
        return (
            f"ID: {id_to_string(self.id)}\n"
            f"Status: {status}\n"
            f"Contacts: {len(self.contacts)}\n"
            f"Gateway: {bytes(self.gateway_key).decode(errors='replace')}\n"
            f"Send date from: {_time_to_string(self.send_date_from)}\n"
            f"Send date to: {_time_to_string(self.send_date_to)}\n"
            f"Send time: {hours}\n"
            f"Time zone: {self.timezone}\n"
            f"Message subject: {self.msg_subject}\n"
            f"Message body file: {self.msg_body_file}\n"
            f"Message body: {self.msg_body}\n"
        )


class SendState(IntEnum):
    """Outcome of sending to one contact."""

    NOT_SENT = 0
    MAYBE_SENT = 1
    SENT = 2


@dataclass
class Send(Saveable):
    """The record of sending a broadcast to the contact at index."""

    db_table = "broadcast.send"

    broadcast_id: bytes = field(default_factory=lambda: bytes(16))
    index: int = 0
    sent: int = SendState.NOT_SENT
    error_str: str = ""

    def db_key(self) -> bytes:
        return bytes(self.broadcast_id) + (self.index & 0xFFFFFFFF).to_bytes(4, "big")

    def to_cbor(self) -> Any:
        return {
            "broadcast_id": bytes(self.broadcast_id),
            "index": self.index,
            "sent": int(self.sent),
            "error_str": self.error_str,
        }

    def __str__(self) -> str:
        labels = {SendState.NOT_SENT: "NO", SendState.MAYBE_SENT: "?", SendState.SENT: "YES"}
        sent = labels.get(self.sent, "invalid value")
        error = f", error={self.error_str}" if self.error_str else ""
        return f"contact #{self.index + 1}: sent={sent}{error}"


@dataclass
class Run(Saveable):
    """Progress of a broadcast: which contacts are done and which come next."""

    db_table = "broadcast.run"

    broadcast: Broadcast
    gateway: Any = None
    done: set[int] = field(default_factory=set)
    _next: int = field(default=0, repr=False)

    @property
    def broadcast_id(self) -> bytes:
        return bytes(self.broadcast.id)

    def db_key(self) -> bytes:
        return self.broadcast_id

    def take_next_index(self) -> int:
        """Next contact not yet done after the last one taken; len(contacts) when none."""
        total = len(self.broadcast.contacts)
        for i in range(self._next, total):
            if i not in self.done:
                self._next = i + 1
                return i
        return total

    def next_index(self) -> int:
        """First contact not yet done; len(contacts) when all are."""
        return next(
            (i for i in range(len(self.broadcast.contacts)) if i not in self.done),
            len(self.broadcast.contacts),
        )


def load_run(tx: Transaction, broadcast: Broadcast) -> Run:
    """Build the run of a broadcast from its send records and its gateway."""
    done = {send.index for _, send in tx.for_each_prefix(Send, bytes(broadcast.id))}
    key = bytes(broadcast.gateway_key)
    try:
        if broadcast.gateway_type == Identity.db_table:
            gateway: Any = smtp_account_from_key(tx, key)
        elif broadcast.gateway_type == Device.db_table:
            gateway = device_from_key(tx, key)
        else:
            raise ValueError(f"unknown gateway type {broadcast.gateway_type}")
    except NotFoundError as e:
        raise NotFoundError(f"cannot create gateway from key {key!r}: {e}") from e
    return Run(broadcast=broadcast, gateway=gateway, done=done)


def list_broadcasts(tx: Transaction) -> list[Broadcast]:
    """All broadcasts, newest key first."""
    return [b for _, b in tx.for_each_reverse(Broadcast)]


def list_sends(tx: Transaction, broadcast_id: bytes) -> list[Send]:
    """Send records of one broadcast in contact order."""
    return [s for _, s in tx.for_each_prefix(Send, bytes(broadcast_id))]


def delete_broadcast(tx: Transaction, broadcast_id: bytes) -> None:
    """Remove a broadcast together with its run and send records."""
    key = bytes(broadcast_id)
    tx.delete(Broadcast.db_table, key)
    tx.delete(Run.db_table, key)
    tx.delete_prefix(Send.db_table, key)


def sort_by_startable(
    broadcasts: Iterable[Broadcast],
    default_send_hours: Iterable[TimeRange] | None = None,
    default_timezone: str | None = None,
    now: datetime | None = None,
) -> list[Broadcast]:
    """Broadcasts whose sending window closes soonest first; unstartable ones last."""
    now = datetime.now(timezone.utc) if now is None else _aware(now)
    hours = list(default_send_hours or [])

    def key(b: Broadcast) -> tuple:
        until = b.startable_now_until(hours, default_timezone, now)
        return (1, 0) if until is None else (0, until.astimezone(timezone.utc))

    return sorted(broadcasts, key=key)