# polysender

Building blocks for broadcasting one message to a list of contacts through
an SMTP e-mail account or an Android phone: a small persistent store,
contact readers, send-hour schedules, SMTP sending, sending limits and
per-contact send records that show how far a broadcast has got.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

| Module | Purpose |
| --- | --- |
| `polysender.store` | `Store`, a single-file key/value store (kept in SQLite) with named tables, ordered byte keys and CBOR-encoded values; `Transaction` for reads, writes and prefix scans; the `Saveable` base class; `NotFoundError`, `KeyExistsError`; ULID helpers `new_id`, `id_to_string`, `parse_id` |
| `polysender.gateway` | The `Gateway` and `SenderClient` protocols; `RetryableError`, `NonRetryableError`, `is_retryable`, `wrap_retryable`, `wrap_non_retryable` |
| `polysender.email` | `Identity`, `SMTPAccount`, the List-Unsubscribe settings, `smtp_account_from_form` (validates the twelve account form values), `generate_message_id` and `SMTPSenderClient` |
| `polysender.android` | Saved Android `Device` records, the per-device limits `SettingLimitPerMinute`, `SettingLimitPerHour`, `SettingLimitPerDay`, and `device_from_key` |
| `polysender.schedule` | `TimeRange`, `parse_time_ranges` / `format_time_ranges` for text such as `9-13 15-17`, and the default `SettingSendHours` and `SettingTimezone` |
| `polysender.contacts` | `Contact`, `read_contacts` (one recipient per line) and `read_contacts_csv` (recipient column by header name or index, repeated recipients dropped) |
| `polysender.textutil` | `filter_options`, `first_n_runes`, `remove_newlines`, `field_or_method` for searching option lists and shortening table cells |
| `polysender.broadcast` | `Broadcast` with its send window (`startable_now_until`, `startable_at`, `startable_in`), status text (`read_status`, `details`), `Send` records with `SendState`, `Run` progress, `load_run`, `list_broadcasts`, `list_sends`, `delete_broadcast`, `sort_by_startable` |

## Example

```python
import io

from polysender.contacts import read_contacts_csv
from polysender.schedule import parse_time_ranges, format_time_ranges
from polysender.store import Store

contacts = read_contacts_csv(
    io.StringIO("name,email\nAlice,alice@example.com\nBob,bob@example.com\n"),
    delimiter=",",
    has_header=True,
    recipient_column_name="email",
    recipient_column_index=0,
)
print([c.recipient for c in contacts])   # ['alice@example.com', 'bob@example.com']
print(contacts[0].keywords)              # {'name': 'Alice', 'email': 'alice@example.com'}

hours = parse_time_ranges("9-13 15-17")
print(format_time_ranges(hours))         # 9-13 15-17

store = Store("data.db")
with store.update() as tx:
    tx.put("settings", b"example", 42)
with store.view() as tx:
    print(tx.get("settings", b"example"))  # 42
store.close()
```

`Store.update()` commits when the `with` block ends normally and rolls back
when an exception escapes it; `Store.view()` is read-only.

## Sending e-mail

`SMTPSenderClient` connects with TLS, STARTTLS or no encryption, says
HELO/EHLO with the account's host name (or `localhost`), and authenticates
with PLAIN unless the account's authentication is `NONE`. `send` reconnects
when connection reuse is off, its count limit is reached or the connection
is 300 seconds old, and raises `RetryableError` for failures where trying
again makes sense. `build_message` produces the plain-text UTF-8 message
with Date, From, To, Message-ID, Subject and, when enabled, a
List-Unsubscribe header. `sender_client_from_key` builds a client for an
identity stored in a `Store`.

## What this package does not do

- It has no command, no graphical interface and no background dispatcher:
  nothing here walks the queue, honours the rate limits while sending, or
  writes `Send` records on its own. Those steps are left to the caller.
- It does not fill message subjects or bodies from a contact's keywords; the
  keywords are kept on each `Contact` for the caller to use.
- It cannot talk to Android phones. `Device` stores a phone's id, name and
  limits and acts as a `Gateway`, but it is not a `SenderClient`.