import smtplib
from email import message_from_bytes
from unittest.mock import call, patch

import pytest

from polysender.email import (
    Identity,
    SMTPAccount,
    SMTPSenderClient,
    SettingListUnsubscribeEmailKey,
    SettingListUnsubscribeEnabled,
    SettingListUnsubscribeHeader,
    generate_message_id,
    get_list_unsubscribe_email_identity,
    sender_client_from_key,
    smtp_account_from_form,
    smtp_account_from_key,
)
from polysender.gateway import RetryableError, is_retryable
from polysender.store import NotFoundError, Store, id_to_string, new_id

password = "password"


@pytest.fixture
def store(tmp_path):
    s = Store(tmp_path / "data.db")
    yield s
    s.close()


def _account(**kwargs):
    base = dict(
        id=new_id(),
        host="smtp.example.com",
        port=2525,
        username="user",
        password=password,
        auth_type="NONE",
        connection_encryption="INSECURE",
    )
    base.update(kwargs)
    return SMTPAccount(**base)


def _client(account=None, **kwargs):
    return SMTPSenderClient(
        account=account or _account(),
        sender=Identity(email="alice@example.com", name="Alice"),
        **kwargs,
    )


def _fake_conn(smtp_cls):
    conn = smtp_cls.return_value
    conn.noop.return_value = (250, b"OK")
    conn.mail.return_value = (250, b"OK")
    conn.rcpt.return_value = (250, b"OK")
    conn.data.return_value = (250, b"OK")
    conn.has_extn.return_value = True
    return conn


def _form(overrides=None):
    values = ["smtp.example.com", "587", "user", password, "STARTTLS", "PLAIN",
              "", "", "", "", "", ""]
    for index, value in (overrides or {}).items():
        values[index] = value
    return values


def test_identity_key_table_and_string():
    identity = Identity(email="alice@example.com", name="Alice")
    assert identity.db_key() == b"alice@example.com"
    assert identity.db_table == "gateway.email.identity"
    assert str(identity) == "Alice <alice@example.com>"


def test_account_string_and_key():
    account = _account()
    assert account.db_key() == account.id
    assert account.db_table == "gateway.email.smtp"
    assert str(account) == (
        f"ID: {id_to_string(account.id)}, Host: smtp.example.com, Port: 2525, Username: user"
    )


def test_account_concurrency():
    assert _account().concurrency() == 1
    assert _account(concurrency_max=3).concurrency() == 3


def test_account_round_trip(store):
    account = _account(limit_per_minute=5, tls_insecure_skip_verify=True)
    with store.update() as tx:
        tx.upsert(account)
    with store.view() as tx:
        assert tx.get_record(SMTPAccount, account.id) == account


def test_setting_keys():
    assert SettingListUnsubscribeEnabled().db_key() == b"gateway.email.list_unsubscribe_enabled"
    assert SettingListUnsubscribeEmailKey().db_key() == b"gateway.email.list_unsubscribe_email_key"
    assert SettingListUnsubscribeHeader("").db_key() == b"gateway.email.list_unsubscribe_header"
    assert SettingListUnsubscribeEnabled.db_table == "settings"


def test_setting_enabled_round_trip(store):
    key = SettingListUnsubscribeEnabled().db_key()
    with store.update() as tx:
        tx.upsert(SettingListUnsubscribeEnabled(True))
    with store.view() as tx:
        assert tx.get_record(SettingListUnsubscribeEnabled, key) == SettingListUnsubscribeEnabled(True)
        assert bool(tx.get_record(SettingListUnsubscribeEnabled, key)) is True


def test_email_key_accepts_text():
    assert SettingListUnsubscribeEmailKey("bob@example.com") == b"bob@example.com"


def test_unsubscribe_identity_unset(store):
    with store.view() as tx:
        assert get_list_unsubscribe_email_identity(tx) == Identity()


def test_unsubscribe_identity_set(store):
    bob = Identity(email="bob@example.com", name="Bob")
    with store.update() as tx:
        tx.upsert(bob)
        tx.upsert(SettingListUnsubscribeEmailKey("bob@example.com"))
    with store.view() as tx:
        assert get_list_unsubscribe_email_identity(tx) == bob


def test_unsubscribe_identity_missing_record(store):
    with store.update() as tx:
        tx.upsert(SettingListUnsubscribeEmailKey("gone@example.com"))
    with store.view() as tx:
        assert get_list_unsubscribe_email_identity(tx).email == ""


def test_smtp_account_from_key(store):
    account = _account()
    identity = Identity(email="alice@example.com", name="Alice", smtp_key=account.id)
    with store.update() as tx:
        tx.upsert(account)
        tx.upsert(identity)
    with store.view() as tx:
        assert smtp_account_from_key(tx, b"alice@example.com") == account


def test_smtp_account_from_key_missing_identity(store):
    with store.view() as tx:
        with pytest.raises(NotFoundError):
            smtp_account_from_key(tx, b"nobody@example.com")


def test_smtp_account_from_key_without_account(store):
    with store.update() as tx:
        tx.upsert(Identity(email="alice@example.com", name="Alice"))
    with store.view() as tx:
        with pytest.raises(NotFoundError):
            smtp_account_from_key(tx, b"alice@example.com")


def test_sender_client_from_key(store):
    account = _account()
    with store.update() as tx:
        tx.upsert(account)
        tx.upsert(Identity(email="alice@example.com", name="Alice", smtp_key=account.id))
        tx.upsert(Identity(email="bob@example.com", name="Bob"))
        tx.upsert(SettingListUnsubscribeEmailKey("bob@example.com"))
    client = sender_client_from_key(store, b"alice@example.com")
    assert client.account == account
    assert client.sender.email == "alice@example.com"
    assert client.list_unsubscribe_enabled is False
    assert client.list_unsubscribe_email == ""

    with store.update() as tx:
        tx.upsert(SettingListUnsubscribeEnabled(True))
    client = sender_client_from_key(store, b"alice@example.com")
    assert client.list_unsubscribe_enabled is True
    assert client.list_unsubscribe_email == "bob@example.com"


def test_form_valid():
    account = smtp_account_from_form(_form({7: "10", 8: "100", 9: "1000", 10: "2", 11: "5"}), None)
    assert account.host == "smtp.example.com"
    assert account.port == 587
    assert account.password == password
    assert account.connection_encryption == "STARTTLS"
    assert account.auth_type == "PLAIN"
    assert (account.limit_per_minute, account.limit_per_hour, account.limit_per_day) == (10, 100, 1000)
    assert account.concurrency_max == 2
    assert account.connection_reuse_count_limit == 5
    assert len(account.id) == 16


def test_form_keeps_existing_id():
    existing = _account()
    assert smtp_account_from_form(_form(), existing).id == existing.id


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({1: "abc"}, "invalid port"),
        ({1: "0"}, "between 1 and 65535"),
        ({1: "65536"}, "between 1 and 65535"),
        ({4: ""}, "choose connection encryption"),
        ({5: ""}, "choose authentication type"),
        ({8: "5"}, "limit per hour without setting limit per minute"),
        ({9: "5"}, "limit per day without setting limit per minute"),
        ({7: "-1"}, "limit per minute: invalid value"),
        ({7: "4294967296"}, "limit per minute: invalid value"),
        ({10: "x"}, "Max number of connections: invalid value"),
        ({11: "1.5"}, "SMTP connection reuse count limit: invalid value"),
    ],
)
def test_form_errors(overrides, message):
    with pytest.raises(ValueError, match=message):
        smtp_account_from_form(_form(overrides), None)


def test_form_wrong_length():
    with pytest.raises(ValueError):
        smtp_account_from_form(["smtp.example.com"], None)


def test_message_id_invariants():
    first = generate_message_id("B1", "bob@example.com", "smtp.example.com")
    local, _, domain = first.partition("@")
    assert domain == "smtp.example.com"
    assert len(local) == 26
    assert set(local) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")
    assert first == generate_message_id("B1", "bob@example.com", "smtp.example.com")
    assert first != generate_message_id("B1", "carol@example.com", "smtp.example.com")


def test_build_message_headers():
    client = _client(list_unsubscribe_enabled=True, list_unsubscribe_email="unsub@example.com")
    mail = client.build_message("bob@example.com", "Hello", "Hi Bob", "B1")
    assert mail["From"] == "Alice <alice@example.com>"
    assert mail["To"] == "bob@example.com"
    assert mail["Subject"] == "Hello"
    assert mail["Message-ID"] == "<" + generate_message_id("B1", "bob@example.com", "smtp.example.com") + ">"
    assert mail["List-Unsubscribe"] == "<mailto:unsub@example.com?subject=unsubscribe>"
    assert mail.get_content_type() == "text/plain"
    assert mail.get_content_charset() == "utf-8"
    assert mail.get_content().strip() == "Hi Bob"


def test_build_message_unsubscribe_falls_back_to_sender():
    mail = _client(list_unsubscribe_enabled=True).build_message("bob@example.com", "S", "M", "B1")
    assert mail["List-Unsubscribe"] == "<mailto:alice@example.com?subject=unsubscribe>"


def test_build_message_without_unsubscribe():
    mail = _client().build_message("bob@example.com", "S", "M", "B1")
    assert "List-Unsubscribe" not in mail
    assert mail["Subject"] == "S"


def test_build_message_bad_recipient():
    with pytest.raises(ValueError):
        _client().build_message("not an address", "S", "M", "B1")


def test_pre_send_unknown_auth():
    with pytest.raises(ValueError, match="unknown auth type"):
        _client(_account(auth_type="LOGIN")).pre_send()


def test_pre_send_invalid_encryption():
    with pytest.raises(ValueError, match="invalid connection encryption"):
        _client(_account(connection_encryption="BOGUS")).pre_send()


@patch("polysender.email.smtplib.SMTP")
def test_send_success(smtp_cls):
    conn = _fake_conn(smtp_cls)
    client = _client()
    client.send("bob@example.com", "Hello", "Hi Bob", "B1")
    assert smtp_cls.call_args == call("smtp.example.com", 2525, local_hostname="localhost")
    assert conn.mail.call_args == call(client.sender.email)
    assert conn.rcpt.call_args == call("bob@example.com")
    assert conn.auth.call_count == 0
    sent = message_from_bytes(conn.data.call_args[0][0])
    built = client.build_message("bob@example.com", "Hello", "Hi Bob", "B1")
    for header in ("From", "To", "Subject", "Message-ID"):
        assert sent[header] == built[header]
    assert sent["Subject"] == "Hello"


@patch("polysender.email.smtplib.SMTP")
def test_send_reuses_connection(smtp_cls):
    conn = _fake_conn(smtp_cls)
    client = _client(_account(connection_reuse_count_limit=5))
    client.send("bob@example.com", "S", "M", "B1")
    client.send("carol@example.com", "S", "M", "B1")
    assert smtp_cls.call_count == 1
    expected_id = generate_message_id("B1", "carol@example.com", client.account.host)
    assert expected_id.encode() in conn.data.call_args[0][0]


@patch("polysender.email.smtplib.SMTP")
def test_send_reconnects_without_reuse(smtp_cls):
    conn = _fake_conn(smtp_cls)
    client = _client()
    client.send("bob@example.com", "S", "M", "B1")
    client.send("carol@example.com", "S", "M", "B1")
    assert smtp_cls.call_count == 2
    assert conn.quit.call_count == 1
    expected_id = generate_message_id("B1", "carol@example.com", client.account.host)
    assert expected_id.encode() in conn.data.call_args[0][0]


@patch("polysender.email.smtplib.SMTP")
def test_send_mail_rejected_is_retryable(smtp_cls):
    conn = _fake_conn(smtp_cls)
    conn.mail.return_value = (550, b"denied")
    with pytest.raises(RetryableError) as info:
        _client().send("bob@example.com", "S", "M", "B1")
    assert is_retryable(info.value)
    assert "550" in str(info.value)


@patch("polysender.email.smtplib.SMTP")
def test_send_bad_recipient_not_retryable(smtp_cls):
    _fake_conn(smtp_cls)
    with pytest.raises(ValueError) as info:
        _client().send("nonsense", "S", "M", "B1")
    assert not is_retryable(info.value)


@patch("polysender.email.smtplib.SMTP")
def test_send_connect_failure_is_retryable(smtp_cls):
    smtp_cls.side_effect = OSError("refused")
    with pytest.raises(RetryableError) as info:
        _client().send("bob@example.com", "S", "M", "B1")
    assert is_retryable(info.value)


@patch("polysender.email.smtplib.SMTP")
def test_pre_send_connect_failure(smtp_cls):
    smtp_cls.side_effect = OSError("refused")
    with pytest.raises(ConnectionError, match="refused"):
        _client().pre_send()


@patch("polysender.email.smtplib.SMTP")
def test_starttls_unsupported(smtp_cls):
    conn = _fake_conn(smtp_cls)
    conn.has_extn.return_value = False
    with pytest.raises(ConnectionError, match="STARTTLS"):
        _client(_account(connection_encryption="STARTTLS")).pre_send()
    assert conn.quit.call_count == 1


@patch("polysender.email.smtplib.SMTP")
def test_plain_auth(smtp_cls):
    conn = _fake_conn(smtp_cls)
    client = _client(_account(auth_type="PLAIN", helo_host="mail.example.com"))
    client.pre_send()
    assert conn.auth.call_args[0][0] == "PLAIN"
    assert conn.user == client.account.username == "user"
    assert smtp_cls.call_args == call(
        client.account.host, client.account.port, local_hostname="mail.example.com"
    )


@patch("polysender.email.smtplib.SMTP")
def test_auth_failure(smtp_cls):
    conn = _fake_conn(smtp_cls)
    conn.auth.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
    with pytest.raises(ConnectionError, match="535"):
        _client(_account(auth_type="PLAIN")).pre_send()
    assert conn.quit.call_count == 1


@patch("polysender.email.smtplib.SMTP_SSL")
def test_tls_default_port(smtp_ssl_cls):
    _fake_conn(smtp_ssl_cls)
    client = _client(_account(connection_encryption="TLS", port=0))
    client.pre_send()
    assert smtp_ssl_cls.call_args[0] == (client.account.host, 465)
    assert client.account.host == "smtp.example.com"


@patch("polysender.email.smtplib.SMTP")
def test_post_send_closes_once(smtp_cls):
    conn = _fake_conn(smtp_cls)
    client = _client()
    client.pre_send()
    client.post_send()
    client.post_send()
    assert conn.quit.call_count == 1
    client.pre_send()
    assert smtp_cls.call_count == 2
    assert smtp_cls.call_args == call(
        client.account.host, client.account.port, local_hostname="localhost"
    )