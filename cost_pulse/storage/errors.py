"""
Storage error taxonomy.

Every failure raised by the store derives from StoreError so callers can
handle persistence problems without catching sqlite3 directly.
"""


class StoreError(Exception):
    """Base class for all store failures."""


class OpenFailure(StoreError):
    """The backing database could not be created or opened."""


class SchemaFailure(StoreError):
    """A schema migration statement failed while opening the store."""


class WriteFailure(StoreError):
    """An insert or upsert statement failed."""


class MaintenanceFailure(StoreError):
    """A repair transaction failed and was rolled back."""
