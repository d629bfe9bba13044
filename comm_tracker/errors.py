from typing import Optional


class TrackerError(Exception):
    """Base class for errors raised by the import/export pipeline and services."""


class ParseError(TrackerError):
    pass


class ValidationError(TrackerError):
    def __init__(self, field: str, message: str, row_number: Optional[int] = None):
        super().__init__(message)
        self.field = field
        self.message = message
        self.row_number = row_number

    def as_dict(self):
        return {"row": self.row_number, "field": self.field, "message": self.message}


class LinkError(TrackerError):
    def __init__(self, reference, message: str, row_number: Optional[int] = None):
        super().__init__(message)
        self.reference = reference
        self.message = message
        self.row_number = row_number

    def as_dict(self):
        return {"row": self.row_number, "field": "test_pack", "message": self.message}


class WriteError(TrackerError):
    """A batch insert was rejected; ``phase`` is ``test_packs`` or ``tags``."""

    def __init__(self, phase: str, message: str, rows_skipped: int = 0, test_packs_created: int = 0):
        super().__init__(message)
        self.phase = phase
        self.message = message
        self.rows_skipped = rows_skipped
        self.test_packs_created = test_packs_created


class OperationCancelled(TrackerError):
    pass


class NotFoundError(TrackerError):
    def __init__(self, table: str, record_id):
        super().__init__(f"{table} {record_id} no encontrado")
        self.table = table
        self.record_id = record_id
