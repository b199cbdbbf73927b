# ShillMarket Routers Module
# Exports the API routers for the order pipeline

from routers.offers import router as offers_router
from routers.orders import router as orders_router

__all__ = [
    'offers_router',
    'orders_router',
]
