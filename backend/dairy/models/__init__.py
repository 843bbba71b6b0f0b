from .tenancy import Organization
from .auth import User, SessionToken
from .catalog import Address, Product
from .orders import Order, OrderItem
from .subscriptions import Subscription, SubscriptionDelivery
from .routing import Route, RouteStop
from .billing import Invoice, Payment, LedgerEntry
from .documents import DocumentSequence, DomainEvent

__all__ = [
    'Organization',
    'User', 'SessionToken',
    'Address', 'Product',
    'Order', 'OrderItem',
    'Subscription', 'SubscriptionDelivery',
    'Route', 'RouteStop',
    'Invoice', 'Payment', 'LedgerEntry',
    'DocumentSequence', 'DomainEvent',
]
