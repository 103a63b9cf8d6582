from .accounts import User
from .catalog import Product, ProductVariant
from .orders import Order, OrderLine
from .ledger import BalanceAccount, BalanceTransaction, Commission

__all__ = [
    'User',
    'Product', 'ProductVariant',
    'Order', 'OrderLine',
    'BalanceAccount', 'BalanceTransaction', 'Commission',
]
