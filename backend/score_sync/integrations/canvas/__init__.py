from .client import CanvasClient
from .gateway import CanvasGateway

__all__ = [
    "CanvasClient",
    "CanvasGateway"
]
