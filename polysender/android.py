"""Android SMS devices and their per-device sending limits."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from .store import NotFoundError, Saveable, Transaction

_UINT32_MAX = 0xFFFFFFFF


class DeviceUnreachableError(ConnectionError):
    """The Android device cannot be reached by any connection method."""

    def __init__(self, message: str = "device unreachable") -> None:
        super().__init__(message)


class _Limit(int, Saveable):
    """A non-negative 32-bit sending limit kept among the settings."""

    db_table = "settings"
    _key: ClassVar[bytes] = b""

    def __new__(cls, value: Any = 0) -> _Limit:
        number = int(value)
        if not 0 <= number <= _UINT32_MAX:
            raise ValueError(f"limit must be between 0 and {_UINT32_MAX}, got {number}")
        return super().__new__(cls, number)

    def db_key(self) -> bytes:
        return self._key

    def __repr__(self) -> str:
        return f"{type(self).__name__}({int(self)})"


class SettingLimitPerMinute(_Limit):
    """Maximum number of SMS per minute per device."""

    _key = b"gateway.sms.android.limit_per_minute"


class SettingLimitPerHour(_Limit):
    """Maximum number of SMS per hour per device."""

    _key = b"gateway.sms.android.limit_per_hour"


class SettingLimitPerDay(_Limit):
    """Maximum number of SMS per day per device."""

    _key = b"gateway.sms.android.limit_per_day"


@dataclass
class Device(Saveable):
    """A saved Android phone that sends SMS.

    Only the Android ID and the name are stored; the limits are filled in
    from the settings when the device is loaded with device_from_key.
    """

    db_table = "gateway.sms.android.device"

    android_id: str = ""
    name: str = ""
    limit_per_minute: int = 0
    limit_per_hour: int = 0
    limit_per_day: int = 0

    def db_key(self) -> bytes:
        return self.android_id.encode()

    def to_cbor(self) -> Any:
        return {"android_id": self.android_id, "name": self.name}

    def concurrency(self) -> int:
        """A device sends one message at a time."""
        return 1

    def __str__(self) -> str:
        return f"androidID: {self.android_id}, name: {self.name}"


def device_from_key(tx: Transaction, key: bytes) -> Device:
    """Load the device stored under key together with the current limits."""
    try:
        device = tx.get_record(Device, key)
    except NotFoundError as e:
        raise NotFoundError(f"failed to read device from database: {e}") from e
    device.limit_per_minute = int(
        tx.get_record_or_default(SettingLimitPerMinute, SettingLimitPerMinute().db_key(), 0)
    )
    device.limit_per_hour = int(
        tx.get_record_or_default(SettingLimitPerHour, SettingLimitPerHour().db_key(), 0)
    )
    device.limit_per_day = int(
        tx.get_record_or_default(SettingLimitPerDay, SettingLimitPerDay().db_key(), 0)
    )
    return device