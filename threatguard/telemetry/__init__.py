from .alerts import AlertEmitter
from .visits import VisitLogger

__all__ = ["AlertEmitter", "VisitLogger"]
