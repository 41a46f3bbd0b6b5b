"""Entity schemas validated at the store boundary."""

from .agency import Agency, CpcAccount, Subscription, SubscriptionHistoryEntry
from .listing import Copropriety, Diagnostics, GeoPoint, Listing, Location
from .transaction import CpcTransaction, PaymentRefs

__all__ = [
    "Agency",
    "CpcAccount",
    "Copropriety",
    "CpcTransaction",
    "Diagnostics",
    "GeoPoint",
    "Listing",
    "Location",
    "PaymentRefs",
    "Subscription",
    "SubscriptionHistoryEntry",
]
