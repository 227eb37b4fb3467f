# Import models so that SQLAlchemy metadata includes them on app startup
from .user import User  # noqa: F401
from .course import Course  # noqa: F401
from .order import Order, OrderStatus  # noqa: F401
from .payment import PaymentTransaction, TransactionStatus  # noqa: F401
from .enrollment import Enrollment  # noqa: F401
