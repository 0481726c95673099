# Models
from .inventory_records import InventoryRecord
from .holds import Hold, HoldStatus, HoldSource
from .bookings import Booking, BookingStatus, BookingStatusHistory
from .inventory_logs import InventoryLog, ChangeType

__all__ = [
    "InventoryRecord",
    "Hold",
    "HoldStatus",
    "HoldSource",
    "Booking",
    "BookingStatus",
    "BookingStatusHistory",
    "InventoryLog",
    "ChangeType",
]
