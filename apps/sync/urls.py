from django.urls import path

from . import views

urlpatterns = [
    path("sync/batch", views.sync_batch, name="sync_batch"),
    path("sync/delta", views.sync_delta, name="sync_delta"),
    path("sync/status", views.sync_status, name="sync_status"),
    path("sync/force", views.sync_force, name="sync_force"),
    path("sync/conflicts", views.sync_conflicts, name="sync_conflicts"),
    path("sync/conflicts/<uuid:conflict_id>/resolve", views.sync_conflict_resolve, name="sync_conflict_resolve"),
]
