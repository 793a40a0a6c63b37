from .authorize_net import AuthorizeNetGateway
from .base import PaymentGateway, clean_gateway_message

__all__ = [
    "AuthorizeNetGateway",
    "PaymentGateway",
    "clean_gateway_message",
]
