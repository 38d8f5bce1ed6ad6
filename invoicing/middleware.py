import logging

from django.conf import settings
from django.core.exceptions import PermissionDenied, ValidationError
from django.db import IntegrityError
from django.db.models import ProtectedError
from django.http import Http404, JsonResponse
from django.utils.deprecation import MiddlewareMixin

from .models import Organization
from .services.billing import BillingError
from .tenant_utils import _profile

logger = logging.getLogger(__name__)


class TenantMiddleware(MiddlewareMixin):
    SAFE_PATH_PREFIXES = (
        "/static/",
        "/media/",
        "/admin/",
        "/api/webhooks/",
        "/api/cron/",
    )

    def _host_no_port(self, request):
        return (request.get_host() or "").split(":")[0].lower()

    def _get_base_domain(self):
        base = getattr(settings, "SAAS_BASE_DOMAIN", "") or ""
        return base.lstrip(".").lower()

    def _is_public_host(self, host, base):
        return host == base or host == f"www.{base}"

    def _is_tenant_host(self, host, base):
        return host.endswith(f".{base}") and host != f"www.{base}"

    def _extract_slug(self, host, base):
        # acme.openinvoice.app -> acme
        return host[: -(len(base) + 1)]

    def _profile_organization(self, request):
        user = getattr(request, "user", None)
        if not user or not user.is_authenticated:
            return None
        profile = _profile(user)
        return profile.organization if profile else None

    def process_request(self, request):
        path = request.path or "/"

        # Machine-to-machine paths carry no tenant context
        if any(path.startswith(p) for p in self.SAFE_PATH_PREFIXES):
            request.organization = None
            return None

        host = self._host_no_port(request)
        base = self._get_base_domain()

        # No subdomain routing: the profile decides
        if not base or self._is_public_host(host, base):
            request.organization = self._profile_organization(request)
            return None

        if not self._is_tenant_host(host, base):
            raise PermissionDenied("Invalid host.")

        slug = self._extract_slug(host, base)
        try:
            organization = Organization.objects.get(slug=slug)
        except Organization.DoesNotExist:
            raise PermissionDenied("Unknown tenant.")

        user = getattr(request, "user", None)

        # Anonymous visitors (public invoice links) and superusers keep the host's tenant
        if not user or not user.is_authenticated or user.is_superuser:
            request.organization = organization
            return None

        profile = _profile(user)
        if not profile:
            raise PermissionDenied("User profile missing")

        if profile.organization_id != organization.id:
            raise PermissionDenied("Tenant mismatch.")

        request.organization = organization
        return None


class ApiErrorMiddleware(MiddlewareMixin):
    """
    Turns exceptions escaping /api/ views into {"error": ...} JSON responses.
    """

    def process_exception(self, request, exception):
        if not (request.path or "").startswith("/api/"):
            return None

        if isinstance(exception, Http404):
            return JsonResponse({"error": str(exception) or "Not found"}, status=404)
        if isinstance(exception, PermissionDenied):
            return JsonResponse({"error": str(exception) or "Forbidden"}, status=403)
        if isinstance(exception, BillingError):
            return JsonResponse({"error": str(exception)}, status=400)
        if isinstance(exception, ValidationError):
            return JsonResponse({"error": "; ".join(exception.messages)}, status=400)
        if isinstance(exception, ProtectedError):
            return JsonResponse(
                {"error": "Cannot delete: it is still referenced by invoices or templates"},
                status=409,
            )
        if isinstance(exception, IntegrityError):
            logger.warning("Integrity error on %s: %s", request.path, exception)
            return JsonResponse({"error": "Conflict with an existing record"}, status=409)

        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return JsonResponse({"error": "Internal server error"}, status=500)


class SuperuserAdminMiddleware(MiddlewareMixin):
    """
    /admin/ is for Django superusers. Organization ADMINs work through the API.
    """

    def process_request(self, request):
        if not (request.path_info or "").startswith("/admin/"):
            return None

        user = getattr(request, "user", None)
        # Anonymous users get the admin login page
        if not user or not user.is_authenticated or user.is_superuser:
            return None

        raise PermissionDenied("Admin is superuser-only.")
