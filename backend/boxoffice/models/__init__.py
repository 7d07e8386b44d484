from .auth import User, SessionToken
from .events import Event
from .inventory import TicketType
from .promotions import Promotion
from .orders import Order, OrderItem
from .payments import PaymentTransaction

__all__ = [
    'User', 'SessionToken',
    'Event',
    'TicketType',
    'Promotion',
    'Order', 'OrderItem',
    'PaymentTransaction',
]
