"""Reading broadcast recipients from plain lists and CSV files."""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
from typing import Iterable, Iterator


@dataclass
class Contact:
    """A recipient and the template keywords that go with it."""

    recipient: str
    keywords: dict[str, str] = field(default_factory=dict)


def read_contacts(stream: Iterable[str]) -> list[Contact]:
    """One contact per line; line endings are dropped, empty lines kept."""
    return [
        Contact(recipient=line.removesuffix("\n").removesuffix("\r")) for line in stream
    ]


def _records(stream: Iterable[str], delimiter: str) -> Iterator[list[str]]:
    reader = csv.reader(stream, delimiter=delimiter, strict=True)
    expected = None
    try:
        for row in reader:
            if not row:
                continue
            if expected is None:
                expected = len(row)
            elif len(row) != expected:
                raise ValueError(f"record on line {reader.line_num}: wrong number of fields")
            yield row
    except csv.Error as e:
        raise ValueError(f"record on line {reader.line_num}: {e}") from e


def read_contacts_csv(
    stream: Iterable[str] | None,
    delimiter: str | None = None,
    has_header: bool = False,
    recipient_column_name: str = "",
    recipient_column_index: int = 0,
) -> list[Contact]:
    """Read contacts from CSV, dropping repeated recipients.

    The recipient is taken from the header column named recipient_column_name
    when there is a header and a name, otherwise from the column at
    recipient_column_index, where 0 means not set.
    """
    if stream is None:
        raise ValueError("no input stream")
    delim = delimiter[0] if delimiter else ","
    if delim in '\r\n"':
        raise ValueError("invalid field delimiter")
    headers: list[str] = []
    contacts: list[Contact] = []
    seen: set[str] = set()
    for number, row in enumerate(_records(stream, delim)):
        if number == 0 and has_header:
            headers = row
            continue
        keywords = dict(zip(headers, row)) if has_header else {}
        if has_header and recipient_column_name:
            if recipient_column_name not in keywords:
                raise ValueError(f"recipient column ({recipient_column_name}) not found")
            recipient = keywords[recipient_column_name]
        elif recipient_column_index != 0:
            if not 0 <= recipient_column_index < len(row):
                raise ValueError(
                    f"recipient column ({recipient_column_index}) greater than "
                    f"the number of columns ({len(row)})"
                )
            recipient = row[recipient_column_index]
        else:
            raise ValueError("recipient column not set")
        if recipient in seen:
            continue
        seen.add(recipient)
        contacts.append(Contact(recipient=recipient, keywords=keywords))
    return contacts