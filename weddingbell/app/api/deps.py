"""
Dependency injection for API routes.

The application keeps a single ``ServiceContainer`` on ``app.state``; these
functions hand its services to route handlers.

Usage:
    @router.post("")
    async def send_notification(
        request: NotificationRequest,
        service: NotificationService = Depends(get_notification_service)
    ):
        return await service.send(request.to_request())
"""

from fastapi import Request
from fastapi.requests import HTTPConnection

from weddingbell.app.core.container import ServiceContainer
from weddingbell.app.core.exceptions import ConfigurationError, ErrorCode
from weddingbell.app.core.presence_manager import PresenceManager
from weddingbell.app.services.notification_service import NotificationService
from weddingbell.app.services.preference_store import PreferenceStore
from weddingbell.app.services.rule_engine import RuleEngine
from weddingbell.app.services.template_engine import TemplateEngine


def get_container(connection: HTTPConnection) -> ServiceContainer:
    """
    Get the service container of the running application.

    Raises:
        ConfigurationError: If the application was started without one
    """
    container = getattr(connection.app.state, "container", None)
    if container is None:
        raise ConfigurationError(
            "Service container is not initialized",
            error_code=ErrorCode.CONFIG_MISSING_REQUIRED
        )
    return container


async def get_notification_service(request: Request) -> NotificationService:
    return get_container(request).notification_service


async def get_preference_store(request: Request) -> PreferenceStore:
    return get_container(request).preference_store


async def get_template_engine(request: Request) -> TemplateEngine:
    return get_container(request).template_engine


async def get_rule_engine(request: Request) -> RuleEngine:
    return get_container(request).rule_engine


def get_presence_manager(connection: HTTPConnection) -> PresenceManager:
    return get_container(connection).presence
