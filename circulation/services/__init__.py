from .catalog import CatalogService
from .inventory import CopyCount, CopyHandle, Discrepancy, InventoryLedger
from .loans import LoanManager
from .locks import BookLocks
from .overdue import OverdueSweeper, is_overdue
from .reservations import QueuedReservation, ReservationQueue

__all__ = [
    "BookLocks",
    "CatalogService",
    "CopyCount",
    "CopyHandle",
    "Discrepancy",
    "InventoryLedger",
    "LoanManager",
    "OverdueSweeper",
    "QueuedReservation",
    "ReservationQueue",
    "is_overdue",
]
