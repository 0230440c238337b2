from .base import Base
from .account import Account
from .transformation import Transformation
from .error_code import ErrorCode

__all__ = [
    "Base",
    "Account",
    "Transformation",
    "ErrorCode",
]
