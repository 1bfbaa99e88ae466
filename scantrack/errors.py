"""Exceptions raised by the scan controller and the event store."""


class ScanTrackError(Exception):
    """Base class for rejected scans and store failures."""


class WorkOrderNotFound(ScanTrackError):
    pass


class TerminalWorkOrder(ScanTrackError):
    """The work order is completed or cancelled; nothing may be appended."""


class InvalidTransition(ScanTrackError):
    """An IN while a session is open, an OUT with none open, or a bad pause change."""


class DebouncedScan(ScanTrackError):
    """The same serial was scanned again before the debounce window elapsed."""


class ConcurrencyConflict(ScanTrackError):
    """Another station changed the serial's events between our read and our write."""


class OpenSessionsRemain(ScanTrackError):
    pass


class PersistenceFailure(ScanTrackError):
    """The underlying store errored. Never retried by the controller."""
