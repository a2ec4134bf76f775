"""Store, contacts, schedules, e-mail and SMS gateway records for message broadcasts."""

__version__ = "0.3.0"