from .inventory import Product, Movement, Category, MovementKind, MovementStatus, UNITS, DEFAULT_CATEGORIES
from .people import Collaborator, CollaboratorPeriodicity
from .sync import PendingOperation, IdMapping, OperationKind, OperationStatus
from .audit import AuditEvent

__all__ = [
    'Product', 'Movement', 'Category', 'MovementKind', 'MovementStatus', 'UNITS', 'DEFAULT_CATEGORIES',
    'Collaborator', 'CollaboratorPeriodicity',
    'PendingOperation', 'IdMapping', 'OperationKind', 'OperationStatus',
    'AuditEvent',
]
