from django.urls import include, path
from rest_framework.routers import DefaultRouter

from .views import BuildViewSet, queue_status

router = DefaultRouter()
router.register(r'builds', BuildViewSet, basename='builds')

urlpatterns = [
    path('api/queue/', queue_status, name='queue-status'),
    path('api/', include(router.urls)),
]
