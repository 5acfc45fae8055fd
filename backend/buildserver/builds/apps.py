import threading

from django.apps import AppConfig, apps
from django.conf import settings

_service_lock = threading.Lock()


class BuildsConfig(AppConfig):
    name = "builds"
    verbose_name = "Builds"
    service = None


def get_build_service():
    """Process-wide BuildService, created and started on first use."""
    config = apps.get_app_config("builds")
    with _service_lock:
        if config.service is None:
            from .worker import create_build_service

            service = create_build_service(settings.BUILD_SERVER)
            service.start()
            config.service = service
    return config.service
