from app.models.user import User
from app.models.product import Product
from app.models.pending_order import PendingOrder
from app.models.order import Order
from app.models.order_item import OrderItem
from app.models.payment_transaction import PaymentTransaction
from app.models.order_status_history import OrderStatusHistory
from app.models.payment_review import PaymentReview

# add ALL models here
