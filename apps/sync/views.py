from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from . import services
from .serializers import (
    ConflictFilterSerializer,
    ConflictResolveSerializer,
    DeltaQuerySerializer,
    ForceSyncSerializer,
    SyncBatchRequestSerializer,
    SyncConflictSerializer,
)


@extend_schema(request=SyncBatchRequestSerializer, responses=OpenApiTypes.OBJECT)
@api_view(["POST"])
@permission_classes([IsAuthenticated])
def sync_batch(request):
    serializer = SyncBatchRequestSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data
    payload = services.process_batch(request.user, data["device_id"], data["operations"])
    return Response(payload)


@extend_schema(
    parameters=[
        OpenApiParameter("since", OpenApiTypes.DATETIME),
        OpenApiParameter("limit", OpenApiTypes.INT),
        OpenApiParameter("entity_types", OpenApiTypes.STR, description="Comma separated, e.g. PRODUCT,SALE"),
        OpenApiParameter("device_id", OpenApiTypes.STR),
    ],
    responses=OpenApiTypes.OBJECT,
)
@api_view(["GET"])
@permission_classes([IsAuthenticated])
def sync_delta(request):
    query = DeltaQuerySerializer(data=request.query_params)
    query.is_valid(raise_exception=True)
    params = query.validated_data
    payload = services.build_delta(
        since=params.get("since"),
        limit=params.get("limit"),
        entity_types=params.get("entity_types") or None,
        user=request.user,
        device_id=request.query_params.get("device_id", ""),
    )
    return Response(payload)


@extend_schema(responses=OpenApiTypes.OBJECT)
@api_view(["GET"])
@permission_classes([IsAuthenticated])
def sync_status(request):
    return Response(services.sync_status(request.user))


@extend_schema(request=ForceSyncSerializer, responses=OpenApiTypes.OBJECT)
@api_view(["POST"])
@permission_classes([IsAuthenticated])
def sync_force(request):
    serializer = ForceSyncSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    return Response(services.reconcile_device(request.user, serializer.validated_data["device_id"]))


@extend_schema(
    parameters=[
        OpenApiParameter("entity_type", OpenApiTypes.STR),
        OpenApiParameter("conflict_type", OpenApiTypes.STR),
        OpenApiParameter("device_id", OpenApiTypes.STR),
    ],
    responses=SyncConflictSerializer(many=True),
)
@api_view(["GET"])
@permission_classes([IsAuthenticated])
def sync_conflicts(request):
    filters = ConflictFilterSerializer(data=request.query_params)
    filters.is_valid(raise_exception=True)
    conflicts = services.list_pending_conflicts(request.user, **filters.validated_data)
    return Response(SyncConflictSerializer(conflicts, many=True).data)


@extend_schema(request=ConflictResolveSerializer, responses=SyncConflictSerializer)
@api_view(["POST"])
@permission_classes([IsAuthenticated])
def sync_conflict_resolve(request, conflict_id):
    serializer = ConflictResolveSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data
    conflict = services.resolve_conflict(
        conflict_id,
        data["strategy"],
        merged_data=data.get("merged_data"),
        resolved_by=request.user.get_username(),
        user=request.user,
    )
    return Response(SyncConflictSerializer(conflict).data)
