# invoicing/permissions.py
from functools import wraps

from django.http import JsonResponse

from .decorators import organization_required
from .tenant_utils import get_role


# =====================================================
# MEMBER ALLOWED: day-to-day billing
# =====================================================
def member_allowed(view_func):
    """
    Any ADMIN or MEMBER of the request's organization (and Django superuser).
    """
    @organization_required
    @wraps(view_func)
    def _wrapped(request, *args, **kwargs):
        if get_role(request.user) not in ("ADMIN", "MEMBER"):
            return JsonResponse({"error": "Forbidden"}, status=403)
        return view_func(request, *args, **kwargs)

    return _wrapped


# =====================================================
# ADMIN ONLY: organization settings and Stripe Connect
# =====================================================
def admin_only(view_func):
    """
    Only ADMIN (and Django superuser). MEMBERs get 403.
    """
    @organization_required
    @wraps(view_func)
    def _wrapped(request, *args, **kwargs):
        if get_role(request.user) != "ADMIN":
            return JsonResponse({"error": "Forbidden - Admin access required"}, status=403)
        return view_func(request, *args, **kwargs)

    return _wrapped
