from .customers import Customer, ContractPrice
from .catalog import Product, MarketRate
from .orders import Order, OrderLine, PriceAuditEntry
from .ledger import LedgerEntry
from .system import Counter, DistributedLock
from .auth import User, SessionToken

__all__ = [
    'Customer', 'ContractPrice',
    'Product', 'MarketRate',
    'Order', 'OrderLine', 'PriceAuditEntry',
    'LedgerEntry',
    'Counter', 'DistributedLock',
    'User', 'SessionToken',
]
