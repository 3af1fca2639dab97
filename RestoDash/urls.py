"""
URL configuration for RestoDash project.

The `urlpatterns` list routes URLs to views. For more information please see:
    https://docs.djangoproject.com/en/5.1/topics/http/urls/
"""

from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path("admin/", admin.site.urls),
    # Scheduled WhatsApp campaigns
    path("marketing/", include("marketing.urls")),
    # Ad-hoc WhatsApp messages
    path("messaging/", include("messaging.urls")),
]
