# invoicing/tenant_utils.py
from django.core.exceptions import PermissionDenied
from django.shortcuts import get_object_or_404

from .models import UserProfile


def _profile(user):
    """
    Safe access for OneToOne reverse relation: user.profile
    """
    try:
        return user.profile
    except UserProfile.DoesNotExist:
        return None


def get_request_organization(request):
    """
    Returns the organization this request acts for:

    - middleware already resolved it (subdomain or profile) -> that one
    - otherwise the user's profile organization
    - anonymous or no membership -> None
    """
    org = getattr(request, "organization", None)
    if org is not None:
        return org

    user = getattr(request, "user", None)
    if not user or not user.is_authenticated:
        return None

    profile = _profile(user)
    org = profile.organization if profile else None
    request.organization = org
    return org


def _field_name(model):
    """Where the organization lives for this model (direct FK or through the invoice)."""
    names = {f.name for f in model._meta.get_fields()}
    if "organization" in names:
        return "organization"
    if "recurring_template" in names:
        return "recurring_template__organization"
    if "invoice" in names:
        return "invoice__organization"
    if "payment_plan" in names:
        return "payment_plan__invoice__organization"
    if "tax_profile" in names:
        return "tax_profile__organization"
    return None


def org_qs(request, model_or_qs):
    """
    Organization-safe queryset scoping. Nothing leaks when the request has
    no organization.
    """
    qs = model_or_qs.objects.all() if hasattr(model_or_qs, "objects") else model_or_qs

    org = get_request_organization(request)
    if org is None:
        return qs.none()

    name = _field_name(qs.model)
    if name is None:
        raise PermissionDenied(f"{qs.model.__name__} is not organization-scoped.")
    return qs.filter(**{name: org})


def org_get_object_or_404(request, model_or_qs, **kwargs):
    return get_object_or_404(org_qs(request, model_or_qs), **kwargs)


def get_role(user):
    if getattr(user, "is_superuser", False):
        return "ADMIN"
    profile = _profile(user)
    return getattr(profile, "role", None)
