from django.urls import include, path

from builds.views import health

urlpatterns = [
    path("health", health, name="health"),
    path("", include("builds.urls")),
]
