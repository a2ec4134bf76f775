"""E-mail identities, SMTP accounts, their settings and an SMTP sender client."""

from __future__ import annotations

import base64
import hashlib
import re
import smtplib
import ssl
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import format_datetime, formataddr, parseaddr
from typing import Any, Callable, Sequence

from .gateway import RetryableError
from .store import NotFoundError, Saveable, Store, Transaction, id_to_string, new_id

_CONNECTION_REUSE_TIME_LIMIT = 300.0  # seconds, the usual MTA default
_INT_RE = re.compile(r"[+-]?[0-9]+")
_UINT_RE = re.compile(r"[0-9]+")
_UINT32_MAX = 0xFFFFFFFF
_FORM_FIELD_COUNT = 12


@dataclass
class Identity(Saveable):
    """A sender address, optionally linked to the SMTP account that sends for it."""

    db_table = "gateway.email.identity"

    email: str = ""
    name: str = ""
    smtp_key: bytes | None = None

    def db_key(self) -> bytes:
        return self.email.encode()

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"


@dataclass
class SMTPAccount(Saveable):
    """Connection details and sending limits of an SMTP server account."""

    db_table = "gateway.email.smtp"

    id: bytes = field(default_factory=lambda: bytes(16))
    host: str = ""
    port: int = 0
    username: str = ""
    password: str = field(default_factory=str)
    auth_type: str = ""
    connection_encryption: str = ""
    tls_insecure_skip_verify: bool = False
    helo_host: str = ""
    limit_per_minute: int = 0
    limit_per_hour: int = 0
    limit_per_day: int = 0
    concurrency_max: int = 0
    connection_reuse_count_limit: int = 0

    def db_key(self) -> bytes:
        return bytes(self.id)

    def __str__(self) -> str:
        return (
            f"ID: {id_to_string(self.id)}, Host: {self.host}, "
            f"Port: {self.port}, Username: {self.username}"
        )

    def concurrency(self) -> int:
        """Maximum number of simultaneous connections; at least 1."""
        return self.concurrency_max if self.concurrency_max > 0 else 1


class SettingListUnsubscribeEnabled(int, Saveable):
    """Whether sent e-mails carry a List-Unsubscribe header."""

    db_table = "settings"

    def __new__(cls, value: Any = False) -> SettingListUnsubscribeEnabled:
        return super().__new__(cls, bool(value))

    def db_key(self) -> bytes:
        return b"gateway.email.list_unsubscribe_enabled"

    def to_cbor(self) -> Any:
        return bool(self)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({bool(self)})"


class SettingListUnsubscribeEmailKey(bytes, Saveable):
    """Key of the identity that receives all unsubscribe requests."""

    db_table = "settings"

    def __new__(cls, value: bytes | str = b"") -> SettingListUnsubscribeEmailKey:
        if isinstance(value, str):
            value = value.encode()
        return super().__new__(cls, value)

    def db_key(self) -> bytes:
        return b"gateway.email.list_unsubscribe_email_key"


class SettingListUnsubscribeHeader(str, Saveable):
    """A custom List-Unsubscribe header value."""

    db_table = "settings"

    def db_key(self) -> bytes:
        return b"gateway.email.list_unsubscribe_header"


def get_list_unsubscribe_email_identity(tx: Transaction) -> Identity:
    """Return the identity chosen for unsubscribe requests, or an empty one."""
    try:
        key = tx.get_record(
            SettingListUnsubscribeEmailKey, SettingListUnsubscribeEmailKey().db_key()
        )
    except NotFoundError:
        return Identity()
    return tx.get_record_or_default(Identity, bytes(key), Identity())


def _read_identity(tx: Transaction, key: bytes) -> Identity:
    try:
        return tx.get_record(Identity, key)
    except NotFoundError as e:
        raise NotFoundError(f"failed to read email identity from database: {e}") from e


def _read_account(tx: Transaction, identity: Identity) -> SMTPAccount:
    if identity.smtp_key is None:
        raise NotFoundError("failed to read SMTP Key from database: not found")
    try:
        return tx.get_record(SMTPAccount, identity.smtp_key)
    except NotFoundError as e:
        raise NotFoundError(f"failed to read SMTP Key from database: {e}") from e


def smtp_account_from_key(tx: Transaction, key: bytes) -> SMTPAccount:
    """Return the SMTP account linked to the identity stored under key."""
    return _read_account(tx, _read_identity(tx, key))


def sender_client_from_key(store: Store, key: bytes) -> SMTPSenderClient:
    """Build a sender client for the identity stored under key."""
    with store.view() as tx:
        identity = _read_identity(tx, key)
        account = _read_account(tx, identity)
        enabled = tx.get_record_or_default(
            SettingListUnsubscribeEnabled,
            SettingListUnsubscribeEnabled().db_key(),
            SettingListUnsubscribeEnabled(False),
        )
        unsubscribe_email = get_list_unsubscribe_email_identity(tx).email if enabled else ""
    return SMTPSenderClient(
        account=account,
        sender=identity,
        list_unsubscribe_enabled=bool(enabled),
        list_unsubscribe_email=unsubscribe_email,
    )


def _parse_uint32(text: str, label: str) -> int:
    if not text:
        return 0
    if not _UINT_RE.fullmatch(text) or int(text) > _UINT32_MAX:
        raise ValueError(f"{label}: invalid value: {text!r}")
    return int(text)


def smtp_account_from_form(
    values: Sequence[str], existing: SMTPAccount | None
) -> SMTPAccount:
    """Validate the twelve SMTP account form values and build an account.

    The values are, in order: host, port, username, password, connection
    encryption, authentication, HELO host, limits per minute, hour and day,
    maximum connections and connection reuse count limit.
    """
    if len(values) != _FORM_FIELD_COUNT:
        raise ValueError(f"expected {_FORM_FIELD_COUNT} values, got {len(values)}")
    (host, port_text, username, secret_value, encryption, auth, helo,
     per_minute_text, per_hour_text, per_day_text, concurrency_text, reuse_text) = values
    if not _INT_RE.fullmatch(port_text):
        raise ValueError(f"invalid port: {port_text!r}")
    port = int(port_text)
    if port < 1 or port > 65535:
        raise ValueError("invalid port: value should be between 1 and 65535")
    if encryption == "":
        raise ValueError("choose connection encryption")
    if auth == "":
        raise ValueError("choose authentication type")
    per_minute = _parse_uint32(per_minute_text, "limit per minute")
    per_hour = _parse_uint32(per_hour_text, "limit per hour")
    if per_hour > 0 and per_minute == 0:
        raise ValueError("you cannot set limit per hour without setting limit per minute")
    per_day = _parse_uint32(per_day_text, "limit per day")
    if per_day > 0 and per_minute == 0:
        raise ValueError("you cannot set limit per day without setting limit per minute")
    concurrency = _parse_uint32(concurrency_text, "Max number of connections")
    reuse = _parse_uint32(reuse_text, "SMTP connection reuse count limit")
    return SMTPAccount(
        id=new_id() if existing is None else existing.id,
        host=host,
        port=port,
        username=username,
        password=secret_value,
        connection_encryption=encryption,
        auth_type=auth,
        helo_host=helo,
        limit_per_minute=per_minute,
        limit_per_hour=per_hour,
        limit_per_day=per_day,
        concurrency_max=concurrency,
        connection_reuse_count_limit=reuse,
    )


def generate_message_id(broadcast_id: str, to: str, domain: str) -> str:
    """Deterministic Message-ID for one recipient of one broadcast."""
    digest = hashlib.sha256(broadcast_id.encode() + to.encode()).digest()[:16]
    local = base64.b32encode(digest).decode("ascii").rstrip("=")
    return f"{local}@{domain}"


def _parse_address(text: str) -> tuple[str, str]:
    name, addr = parseaddr(text)
    local, at, domain = addr.partition("@")
    if not at or not local or not domain:
        raise ValueError(f"failed to parse address {text!r}")
    return name, addr


def _text(reply: Any) -> str:
    return reply.decode(errors="replace") if isinstance(reply, bytes) else str(reply)


@dataclass
class SMTPSenderClient:
    """Sends plain-text e-mails through one SMTP account."""

    account: SMTPAccount
    sender: Identity
    list_unsubscribe_enabled: bool = False
    list_unsubscribe_email: str = ""
    _conn: Any = field(default=None, init=False, repr=False)
    _reuse_counter: int = field(default=0, init=False, repr=False)
    _reuse_started: float = field(default=0.0, init=False, repr=False)

    def pre_send(self) -> None:
        """Open a fresh connection, say hello and authenticate."""
        self.post_send()
        self._reuse_counter = 0
        self._reuse_started = time.monotonic()
        acc = self.account
        if acc.auth_type not in ("PLAIN", "", "NONE"):
            raise ValueError(f"unknown auth type {acc.auth_type}")
        context = ssl.create_default_context()
        if acc.tls_insecure_skip_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        helo = acc.helo_host or "localhost"
        encryption = acc.connection_encryption
        if encryption == "TLS":
            port = acc.port or 465
            self._conn = self._dial(
                lambda: smtplib.SMTP_SSL(acc.host, port, local_hostname=helo, context=context)
            )
        elif encryption in ("STARTTLS", "INSECURE"):
            port = acc.port or 587
            self._conn = self._dial(
                lambda: smtplib.SMTP(acc.host, port, local_hostname=helo)
            )
        else:
            raise ValueError(f"invalid connection encryption value: {encryption}")
        try:
            self._handshake(context)
        except ConnectionError:
            self.post_send()
            raise
        except smtplib.SMTPResponseException as e:
            self.post_send()
            raise ConnectionError(
                f"SMTP failed with code {e.smtp_code}: {_text(e.smtp_error)}"
            ) from e
        except (smtplib.SMTPException, OSError) as e:
            self.post_send()
            raise ConnectionError(f"SMTP failed: {e}") from e

    @staticmethod
    def _dial(connect: Callable[[], Any]) -> Any:
        try:
            return connect()
        except (smtplib.SMTPException, OSError) as e:
            raise ConnectionError(f"failed to connect to SMTP server: {e}") from e

    def _handshake(self, context: ssl.SSLContext) -> None:
        conn = self._conn
        acc = self.account
        if acc.connection_encryption == "STARTTLS":
            conn.ehlo()
            if not conn.has_extn("starttls"):
                raise ConnectionError("SMTP server does not support STARTTLS")
            conn.starttls(context=context)
        conn.ehlo_or_helo_if_needed()
        code, reply = conn.noop()
        if code != 250:
            raise ConnectionError(f"SMTP Noop failed with code {code}: {_text(reply)}")
        if acc.auth_type == "NONE":
            return
        conn.user = acc.username
        conn.password = acc.password
        try:
            conn.auth("PLAIN", conn.auth_plain)
        except smtplib.SMTPResponseException as e:
            raise ConnectionError(
                f"SMTP Auth failed with code {e.smtp_code}: {_text(e.smtp_error)}"
            ) from e
        except smtplib.SMTPException as e:
            raise ConnectionError(f"SMTP Auth failed: {e}") from e

    def post_send(self) -> None:
        """Close the connection, if one is open."""
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.quit()
        except (smtplib.SMTPException, OSError):
            try:
                conn.close()
            except OSError as e:
                raise ConnectionError(f"SMTP connection close failed: {e}") from e

    def _needs_reconnect(self) -> bool:
        limit = self.account.connection_reuse_count_limit
        return (
            self._conn is None
            or limit < 2
            or self._reuse_counter >= limit
            or time.monotonic() - self._reuse_started >= _CONNECTION_REUSE_TIME_LIMIT
        )

    def _command(self, step: str, call: Callable[[], Any]) -> None:
        try:
            code, reply = call()
        except smtplib.SMTPResponseException as e:
            raise RetryableError(
                f"SMTP {step} failed with code {e.smtp_code}: {_text(e.smtp_error)}"
            ) from e
        except (smtplib.SMTPException, OSError) as e:
            raise RetryableError(f"SMTP {step} failed: {e}") from e
        if not 200 <= code < 400:
            raise RetryableError(f"SMTP {step} failed with code {code}: {_text(reply)}")

    def send(self, to: str, subject: str, message: str, broadcast_id: str) -> None:
        """Deliver one message; transient failures raise RetryableError."""
        if self._needs_reconnect():
            try:
                self.pre_send()
            except Exception as e:
                raise RetryableError(f"failed to connect to server: {e}") from e
        self._reuse_counter += 1
        _, from_addr = _parse_address(str(self.sender))
        mail = self.build_message(to, subject, message, broadcast_id)
        conn = self._conn
        self._command("Noop", conn.noop)
        self._command("Mail", lambda: conn.mail(from_addr))
        self._command("Rcpt", lambda: conn.rcpt(to))
        self._command("Data", lambda: conn.data(mail.as_bytes()))

    def build_message(
        self, to: str, subject: str, message: str, broadcast_id: str
    ) -> EmailMessage:
        """Compose the plain-text UTF-8 message for one recipient."""
        from_name, from_addr = _parse_address(str(self.sender))
        to_name, to_addr = _parse_address(to)
        mail = EmailMessage()
        mail["Date"] = format_datetime(datetime.now(timezone.utc))
        mail["From"] = formataddr((from_name, from_addr))
        mail["To"] = formataddr((to_name, to_addr))
        mail["Message-ID"] = f"<{generate_message_id(broadcast_id, to, self.account.host)}>"
        mail["Subject"] = subject
        if self.list_unsubscribe_enabled:
            address = self.list_unsubscribe_email or self.sender.email
            mail["List-Unsubscribe"] = f"<mailto:{address}?subject=unsubscribe>"
        mail.set_content(message, charset="utf-8")
        return mail