# open_invoice/urls.py
from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),

    # App routes
    path("", include("invoicing.urls")),
]
