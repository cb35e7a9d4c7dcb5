from .auth import User, SessionToken
from .catalog import Category, SkuSequence, Product
from .inventory import InventoryTransaction
from .customers import Customer
from .channels import SalesChannel, ApiLog
from .orders import Order, OrderLineItem
from .commissions import CommissionConfig, CommissionTransaction

__all__ = [
    'User', 'SessionToken',
    'Category', 'SkuSequence', 'Product',
    'InventoryTransaction',
    'Customer',
    'SalesChannel', 'ApiLog',
    'Order', 'OrderLineItem',
    'CommissionConfig', 'CommissionTransaction',
]
