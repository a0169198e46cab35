"""
FastAPI dependencies resolving services from the application container
"""
from fastapi import Request

from .container import Container
from .services.auth_service import AuthService
from .services.order_service import OrderConfirmationService
from .services.sms_service import SMSService


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_auth_service(request: Request) -> AuthService:
    return get_container(request).auth_service


def get_sms_service(request: Request) -> SMSService:
    return get_container(request).sms_service


def get_order_service(request: Request) -> OrderConfirmationService:
    return get_container(request).orders
