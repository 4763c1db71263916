# Routers package
from . import (
    admin_router,
    creem_router,
)

__all__ = [
    "admin_router",
    "creem_router",
]
