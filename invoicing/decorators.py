# invoicing/decorators.py
import hmac
import json
from functools import wraps

from django.conf import settings
from django.http import JsonResponse

from .tenant_utils import get_request_organization


def organization_required(view_func):
    """
    JSON guard for API views: the caller must be signed in and belong to an
    organization. Sets request.organization for the view.
    """
    @wraps(view_func)
    def _wrapped(request, *args, **kwargs):
        user = getattr(request, "user", None)
        if not user or not user.is_authenticated:
            return JsonResponse({"error": "Unauthorized"}, status=401)

        if get_request_organization(request) is None:
            return JsonResponse({"error": "Unauthorized - Organization required"}, status=401)

        return view_func(request, *args, **kwargs)

    return _wrapped


def cron_secret_required(view_func):
    """
    Guards scheduler endpoints with "Authorization: Bearer <CRON_SECRET>".
    Open when no secret is configured.
    """
    @wraps(view_func)
    def _wrapped(request, *args, **kwargs):
        secret = getattr(settings, "CRON_SECRET", "") or ""
        if secret:
            header = request.META.get("HTTP_AUTHORIZATION", "")
            if not hmac.compare_digest(header, f"Bearer {secret}"):
                return JsonResponse({"error": "Unauthorized"}, status=401)
        return view_func(request, *args, **kwargs)

    return _wrapped


def json_body(view_func):
    """
    Parses a JSON request body into request.json (empty dict when there is none).
    """
    @wraps(view_func)
    def _wrapped(request, *args, **kwargs):
        request.json = {}
        if request.body and request.method in ("POST", "PUT", "PATCH"):
            try:
                data = json.loads(request.body)
            except (TypeError, ValueError):
                return JsonResponse({"error": "Invalid JSON body"}, status=400)
            if not isinstance(data, dict):
                return JsonResponse({"error": "JSON body must be an object"}, status=400)
            request.json = data
        return view_func(request, *args, **kwargs)

    return _wrapped
