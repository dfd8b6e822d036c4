from rest_framework import status
from rest_framework.exceptions import APIException


class ConflictAlreadyResolved(APIException):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflict is already resolved."
    default_code = "conflict_already_resolved"


class EntityGone(APIException):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Entity no longer exists on the server."
    default_code = "entity_gone"
