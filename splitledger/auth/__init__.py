from .jwt import Operator, get_current_operator, require_operator
from .tokens import create_access_token, decode_access_token

__all__ = [
    "Operator",
    "create_access_token",
    "decode_access_token",
    "get_current_operator",
    "require_operator",
]
