from .tenancy import Store
from .auth import User, SessionToken
from .inventory import Product, StockMovement
from .sales import Sale
from .debts import Debt, DebtPayment
from .sync import SyncQueueItem

__all__ = [
    'Store',
    'User', 'SessionToken',
    'Product', 'StockMovement',
    'Sale',
    'Debt', 'DebtPayment',
    'SyncQueueItem',
]
